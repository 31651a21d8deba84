# castgate/caching/array_cache.py
"""
Per-row cache for cast/array requests.

Phases, in order:
  1. check_cache    - split rows into cache hits and rows still to compute
  2. store_results  - attribute the LLM batch output back to input rows and cache it
  3. assemble_result - merge both sources in input order (pure)

The phase functions are free functions over explicit state. ArrayCacheService
holds that state for callers and refuses out-of-order calls.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from castgate.caching.cache_entry import decode_entry, serialize_entry
from castgate.caching.token_estimator import estimate_row_tokens_by_pk
from castgate.caching.value_cache import CacheContext, build_context_key
from castgate.errors import CacheEntryError, CachePhaseError
from castgate.hashing import hash_object
from castgate.usage import Usage, ZERO_USAGE

logger = logging.getLogger("castgate")

INVALID_PK = "invalid-pk"
PARSE_ERROR = "parse-error"

Row = Dict[str, Any]


@dataclass(frozen=True)
class CachedRow:
    result: Any
    usage: Usage


@dataclass(frozen=True)
class ArrayCacheError:
    row_index: int
    row: Any
    reason: str
    message: str


@dataclass
class CacheCheck:
    context_key: str
    cache_hits_by_pk: Dict[Any, CachedRow] = field(default_factory=dict)
    uncached_rows: List[Row] = field(default_factory=list)
    errors: List[ArrayCacheError] = field(default_factory=list)


@dataclass
class StoredResults:
    llm_results_by_pk: Dict[Any, CachedRow] = field(default_factory=dict)
    errors: List[ArrayCacheError] = field(default_factory=list)


@dataclass
class AssembledResult:
    data: List[Row]
    rows_with_no_results: List[Any]
    cache_hit_count: int
    llm_usage: Usage
    cache_usage: Usage


def is_valid_pk(value: Any) -> bool:
    # bool is an int subclass but is not a usable key here
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def build_row_key(row: Row, context_key: str) -> str:
    return ":".join(["mapped-row", hash_object(row), context_key])


async def check_cache(store, rows: List[Row], context: CacheContext,
                      invalidate_cache: bool = False) -> CacheCheck:
    context_key = build_context_key(context)
    if invalidate_cache:
        return CacheCheck(context_key=context_key, uncached_rows=list(rows))

    check = CacheCheck(context_key=context_key)
    keyed = []
    for index, row in enumerate(rows):
        pk = row.get(context.primary_key) if isinstance(row, dict) else None
        if not is_valid_pk(pk):
            check.errors.append(ArrayCacheError(
                row_index=index,
                row=row,
                reason=INVALID_PK,
                message=f"Row at index {index} has invalid primary key value. Expected string or number.",
            ))
            continue
        keyed.append((index, row, pk, build_row_key(row, context_key)))

    if not keyed:
        return check

    raw_values = await store.mget([k[3] for k in keyed])
    for (index, row, pk, _), raw in zip(keyed, raw_values):
        if raw is None:
            check.uncached_rows.append(row)
            continue
        try:
            entry = decode_entry(raw)
        except CacheEntryError as e:
            check.errors.append(ArrayCacheError(
                row_index=index, row=row, reason=PARSE_ERROR, message=e.message,
            ))
            check.uncached_rows.append(row)
            continue
        check.cache_hits_by_pk[pk] = CachedRow(result=entry.result, usage=entry.usage)
    return check


async def store_results(store, input_rows: List[Row], context: CacheContext, context_key: str,
                        llm_output_rows: List[Row], llm_usage: Usage) -> StoredResults:
    """input_rows are the rows that were sent to the LLM, not the whole batch."""
    stored = StoredResults()
    if not llm_output_rows:
        return stored

    pk_name = context.primary_key
    input_by_pk: Dict[Any, Row] = {}
    for row in input_rows:
        pk = row.get(pk_name)
        if is_valid_pk(pk):
            input_by_pk[pk] = row

    matched_inputs: List[Row] = []
    matched_outputs: List[Row] = []
    for out in llm_output_rows:
        pk = out.get(pk_name) if isinstance(out, dict) else None
        if is_valid_pk(pk) and pk in input_by_pk:
            matched_inputs.append(input_by_pk[pk])
            matched_outputs.append(out)
        else:
            logger.error(
                "unexpected-situation. LLM returned row with primary key that doesn't exist in input",
                extra={"primary_key_value": repr(pk)},
            )

    usage_by_pk = estimate_row_tokens_by_pk(matched_inputs, matched_outputs, llm_usage, pk_name)

    entries: Dict[str, str] = {}
    for out in matched_outputs:
        pk = out[pk_name]
        value = out.get(context.output_name)
        usage = usage_by_pk.get(pk, ZERO_USAGE)
        entries[build_row_key(input_by_pk[pk], context_key)] = serialize_entry(value, usage)
        stored.llm_results_by_pk[pk] = CachedRow(result=value, usage=usage)

    if entries:
        await store.mset(entries)
    return stored


def assemble_result(input_rows: List[Row], cache_hits_by_pk: Dict[Any, CachedRow],
                    llm_results_by_pk: Dict[Any, CachedRow], primary_key: str,
                    output_name: str) -> AssembledResult:
    data: List[Row] = []
    rows_with_no_results: List[Any] = []
    cache_hit_count = 0
    llm_usage = ZERO_USAGE
    cache_usage = ZERO_USAGE

    for row in input_rows:
        pk = row.get(primary_key)
        fresh = llm_results_by_pk.get(pk) if is_valid_pk(pk) else None
        if fresh is not None:
            data.append({primary_key: pk, output_name: fresh.result})
            llm_usage = llm_usage + fresh.usage
            continue
        cached = cache_hits_by_pk.get(pk) if is_valid_pk(pk) else None
        if cached is not None:
            data.append({primary_key: pk, output_name: cached.result})
            cache_hit_count += 1
            cache_usage = cache_usage + cached.usage
            continue
        rows_with_no_results.append(pk)

    return AssembledResult(
        data=data,
        rows_with_no_results=rows_with_no_results,
        cache_hit_count=cache_hit_count,
        llm_usage=llm_usage,
        cache_usage=cache_usage,
    )


class ArrayCacheService:
    def __init__(self, store, input_rows: List[Row], context: CacheContext):
        self.store = store
        self.input_rows = input_rows
        self.context = context
        self.context_key = build_context_key(context)
        self.errors: List[ArrayCacheError] = []
        self._check: Optional[CacheCheck] = None
        self._llm_results_by_pk: Dict[Any, CachedRow] = {}

    def _require_check(self, phase: str) -> CacheCheck:
        if self._check is None:
            raise CachePhaseError(f"check_cache() must be called before {phase}()")
        return self._check

    @property
    def cache_hits_by_pk(self) -> Dict[Any, CachedRow]:
        return self._require_check("cache_hits_by_pk").cache_hits_by_pk

    @property
    def uncached_rows(self) -> List[Row]:
        return self._require_check("uncached_rows").uncached_rows

    async def check_cache(self, invalidate_cache: bool = False) -> CacheCheck:
        self._check = await check_cache(self.store, self.input_rows, self.context, invalidate_cache)
        self.errors.extend(self._check.errors)
        return self._check

    async def store_results(self, llm_output_rows: List[Row], llm_usage: Usage) -> StoredResults:
        check = self._require_check("store_results")
        stored = await store_results(
            self.store, check.uncached_rows, self.context, self.context_key,
            llm_output_rows, llm_usage,
        )
        self._llm_results_by_pk.update(stored.llm_results_by_pk)
        self.errors.extend(stored.errors)
        return stored

    def assemble_result(self) -> AssembledResult:
        check = self._require_check("assemble_result")
        return assemble_result(
            self.input_rows, check.cache_hits_by_pk, self._llm_results_by_pk,
            self.context.primary_key, self.context.output_name,
        )
