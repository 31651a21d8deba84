# castgate/caching/token_estimator.py
"""
Per-row token attribution for batch LLM calls.

A batch call reports one usage total. To cache each row with its own usage,
prompt tokens are split across rows by serialized input length and completion
tokens by serialized output length. Rounding makes this an approximation:
each row may be off by one per component.
"""

import json
import math
from typing import Any, Dict, List

from castgate.usage import Usage


def _json_len(value: Any) -> int:
    return max(1, len(json.dumps(value, separators=(",", ":"), ensure_ascii=False)))


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _distribute(total: int, weights: List[int]) -> List[int]:
    weight_sum = sum(weights)
    if weight_sum <= 0:
        return [0 for _ in weights]
    return [_round_half_up(total * w / weight_sum) for w in weights]


def estimate_row_tokens(
    input_rows: List[Dict[str, Any]],
    output_rows: List[Dict[str, Any]],
    total_usage: Usage,
) -> List[Usage]:
    """Rows are paired positionally; the result has one Usage per pair."""
    if not input_rows or not output_rows:
        return []
    prompt_parts = _distribute(total_usage.prompt_tokens, [_json_len(r) for r in input_rows])
    completion_parts = _distribute(total_usage.completion_tokens, [_json_len(r) for r in output_rows])
    return [
        Usage(prompt_tokens=p, completion_tokens=c, total_tokens=p + c)
        for p, c in zip(prompt_parts, completion_parts)
    ]


def estimate_row_tokens_by_pk(
    input_rows: List[Dict[str, Any]],
    output_rows: List[Dict[str, Any]],
    total_usage: Usage,
    primary_key: str,
) -> Dict[Any, Usage]:
    estimates = estimate_row_tokens(input_rows, output_rows, total_usage)
    return {out[primary_key]: usage for out, usage in zip(output_rows, estimates)}
