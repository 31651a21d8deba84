# castgate/errors.py
"""
Error taxonomy shared by the cache, the LLM caller and the orchestrator.

- CastValidationError: malformed request shape, bad schema, bad primary key.
  Surfaced to the caller, never retried.
- CastInternalError: stored or derived state that cannot be parsed.
- LlmCallError: the provider call still failed after the bounded retry loop.
- CacheEntryError / CachePhaseError: cache-level faults.
"""

from typing import List, Optional

from castgate.usage import Usage, ZERO_USAGE

# Error kinds (kept as plain strings so they serialize as-is)
VALIDATION_ERROR = "validation-error"
INTERNAL_ERROR = "internal-error"


class CastError(Exception):
    kind = INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CastValidationError(CastError):
    kind = VALIDATION_ERROR


class CastInternalError(CastError):
    kind = INTERNAL_ERROR


class LlmCallError(CastError):
    """Raised once every attempt has failed. Keeps each attempt's error text."""

    def __init__(self, attempt_errors: List[str], usage: Optional[Usage] = None):
        attempts = len(attempt_errors)
        detail = "; ".join(f"attempt {i + 1}: {e}" for i, e in enumerate(attempt_errors))
        super().__init__(f"LLM call failed after {attempts} attempts. {detail}")
        self.attempt_errors = list(attempt_errors)
        self.usage = usage or ZERO_USAGE


class CacheEntryError(CastError):
    pass


class CachePhaseError(CastError):
    pass
