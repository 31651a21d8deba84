# castgate/llm_wrapper.py
"""
LLM clients. Supports OpenAI-compatible endpoints and Anthropic.

Every client exposes:
    await client.send_request(prompt, model, max_tokens) -> LlmResponse(text, usage)
Failures are raised, never returned as sentinel values.

Configuration (env vars):
  LLM_PROVIDER=openai|anthropic   (default: auto-detect based on available keys)
  OPENAI_API_KEY=...
  OPENAI_BASE_URL=...             (any OpenAI-compatible API, e.g. OpenRouter, Groq)
  ANTHROPIC_API_KEY=...
  CAST_LLM_MODEL=...              (default: depends on provider)
  LLM_TIMEOUT_S=60
"""

import os
from dataclasses import dataclass
from typing import Optional

from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from castgate.usage import Usage

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "").strip()
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "").strip() or None
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "").strip()
LLM_TIMEOUT_S = float(os.getenv("LLM_TIMEOUT_S", "60"))

# Auto-detect provider: explicit > anthropic if key present > openai
_explicit_provider = os.getenv("LLM_PROVIDER", "").strip().lower()
if _explicit_provider in ("anthropic", "claude"):
    LLM_PROVIDER = "anthropic"
elif _explicit_provider in ("openai", "gpt"):
    LLM_PROVIDER = "openai"
elif ANTHROPIC_API_KEY:
    LLM_PROVIDER = "anthropic"
else:
    LLM_PROVIDER = "openai"

_ANTHROPIC_DEFAULT = "claude-sonnet-4-20250514"
_OPENAI_DEFAULT = "gpt-4o-mini"

DEFAULT_MODEL = os.getenv(
    "CAST_LLM_MODEL",
    _ANTHROPIC_DEFAULT if LLM_PROVIDER == "anthropic" else _OPENAI_DEFAULT,
)


@dataclass(frozen=True)
class LlmResponse:
    text: str
    usage: Usage


class OpenAILlmClient:
    def __init__(self, api_key: str = OPENAI_API_KEY, base_url: Optional[str] = OPENAI_BASE_URL,
                 timeout: float = LLM_TIMEOUT_S):
        self.client = AsyncOpenAI(api_key=api_key or None, base_url=base_url, timeout=timeout)

    async def send_request(self, prompt: str, model: str, max_tokens: int) -> LlmResponse:
        resp = await self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        choices = getattr(resp, "choices", None) or []
        text = choices[0].message.content if choices else ""
        u = getattr(resp, "usage", None)
        prompt_tokens = getattr(u, "prompt_tokens", 0) or 0
        completion_tokens = getattr(u, "completion_tokens", 0) or 0
        usage = Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=getattr(u, "total_tokens", 0) or prompt_tokens + completion_tokens,
        )
        return LlmResponse(text=text or "", usage=usage)


class AnthropicLlmClient:
    def __init__(self, api_key: str = ANTHROPIC_API_KEY, timeout: float = LLM_TIMEOUT_S):
        self.client = AsyncAnthropic(api_key=api_key or None, timeout=timeout)

    async def send_request(self, prompt: str, model: str, max_tokens: int) -> LlmResponse:
        resp = await self.client.messages.create(
            model=model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        text = ""
        for block in resp.content:
            if hasattr(block, "text"):
                text += block.text
        u = getattr(resp, "usage", None)
        input_tokens = getattr(u, "input_tokens", 0) or 0
        output_tokens = getattr(u, "output_tokens", 0) or 0
        usage = Usage(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
        return LlmResponse(text=text, usage=usage)


_client = None


def get_llm_client():
    """Process-wide client for the configured provider."""
    global _client
    if _client is None:
        if LLM_PROVIDER == "anthropic":
            _client = AnthropicLlmClient()
        else:
            _client = OpenAILlmClient()
    return _client
