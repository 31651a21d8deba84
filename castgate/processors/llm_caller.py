# castgate/processors/llm_caller.py
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List

from castgate.errors import LlmCallError
from castgate.monitoring import inc_llm_attempt
from castgate.usage import Usage, ZERO_USAGE
from castgate.validator import validate_instance

logger = logging.getLogger("castgate")

LLM_MAX_ATTEMPTS = int(os.getenv("LLM_MAX_ATTEMPTS", "3"))

_THINK_RE = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)

# Isolated so tests can monkeypatch the backoff away
_sleep = asyncio.sleep


@dataclass(frozen=True)
class LlmCallResult:
    data: Any
    usage: Usage


def strip_thinking(text: str) -> str:
    return _THINK_RE.sub("", text).strip()


def strip_markdown_fence(text: str) -> str:
    s = text.strip()
    for fence in ("```json", "```"):
        if s.startswith(fence):
            end = s.rfind("```")
            if end > len(fence):
                return s[len(fence):end].strip()
            break
    return text


def parse_llm_json(text: str) -> Any:
    cleaned = strip_markdown_fence(strip_thinking(text or ""))
    try:
        return json.loads(cleaned)
    except ValueError as e:
        raise ValueError(f"Failed to parse LLM response as JSON: {e}")


async def call_llm(client, prompt: str, model: str, max_tokens: int,
                   schema: Dict[str, Any], max_attempts: int = None) -> LlmCallResult:
    """
    Send prompt, extract JSON, validate it against schema. Retries any failure
    with exponential backoff (attempt n waits 2**(n-1) seconds).

    Raises LlmCallError with every attempt's error and the usage incurred.
    """
    max_attempts = max_attempts or LLM_MAX_ATTEMPTS
    errors: List[str] = []
    usage = ZERO_USAGE

    for attempt in range(1, max_attempts + 1):
        try:
            resp = await client.send_request(prompt, model, max_tokens)
            usage = usage + resp.usage
            parsed = parse_llm_json(resp.text)
            problem = validate_instance(parsed, schema)
            if problem:
                raise ValueError(f"Validation failed: {problem}")
            inc_llm_attempt("success")
            return LlmCallResult(data=parsed, usage=usage)
        except Exception as e:
            inc_llm_attempt("failure")
            errors.append(str(e) or e.__class__.__name__)
            if attempt == max_attempts:
                break
            backoff = 2 ** (attempt - 1)
            logger.warning(
                "LLM call attempt failed, retrying",
                extra={"attempt": attempt, "error": str(e), "backoff_s": backoff},
            )
            await _sleep(backoff)

    raise LlmCallError(errors, usage=usage)
