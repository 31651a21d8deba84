# castgate/usage.py
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Usage:
    """Token counts for one LLM call, or an estimate for one row of it."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Usage":
        if not isinstance(data, dict):
            return ZERO_USAGE
        return cls(
            prompt_tokens=int(data.get("promptTokens") or 0),
            completion_tokens=int(data.get("completionTokens") or 0),
            total_tokens=int(data.get("totalTokens") or 0),
        )


ZERO_USAGE = Usage()
