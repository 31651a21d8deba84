# castgate/orchestrator.py
import json
import time
import logging
from typing import Dict, Any, Optional

# Import modules (not bare functions) so monkeypatching in tests works correctly
import castgate.processors.llm_caller as _llm_caller
import castgate.processors.prompt_builder as _prompt_builder
from castgate import db as dbmod
from castgate import monitoring
from castgate import llm_wrapper
from castgate.caching.array_cache import ArrayCacheService
from castgate.caching.stores import get_cache_store
from castgate.caching.value_cache import CacheContext, CacheHit, ValueCache
from castgate.errors import CacheEntryError, CastError, CastInternalError, LlmCallError
from castgate.models import (
    REQUEST_TYPE_ARRAY, REQUEST_TYPE_VALUE, STATUS_FAILED, STATUS_SUCCESS, _utcnow,
)
from castgate.notifications import JOB_SEND_COMPLETION_NOTIFICATION, NOTIFY_MAX_ATTEMPTS
from castgate.usage import Usage, ZERO_USAGE
from castgate.validator import validate_mappable_input_data

logger = logging.getLogger("castgate")


def error_body(message: str, kind: Optional[str] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": message, "isError": True}
    if kind:
        body["kind"] = kind
    if request_id:
        body["llmRequestId"] = request_id
    return body


def _usage_fields(prefix: str, usage: Usage) -> Dict[str, int]:
    return {
        f"{prefix}_prompt_tokens": usage.prompt_tokens,
        f"{prefix}_completion_tokens": usage.completion_tokens,
        f"{prefix}_total_tokens": usage.total_tokens,
    }


class CastOrchestrator:
    """
    Drives one request record from `pending` to a terminal state:

    1. claim the record (pending -> processing, compare-and-swap)
    2. consult the cache; call the LLM only for what is missing
    3. persist result or error, with fresh and cached usage kept apart
    4. schedule the completion notification
    """

    def __init__(self, scheduler, cache_store=None, llm_client=None):
        self.scheduler = scheduler
        self._cache_store = cache_store
        self._llm_client = llm_client

    @property
    def cache_store(self):
        return self._cache_store or get_cache_store()

    @property
    def llm_client(self):
        return self._llm_client or llm_wrapper.get_llm_client()

    async def execute_request(self, request_id: str) -> Dict[str, Any]:
        record = dbmod.find_request(request_id)
        if record is None:
            return error_body(f"Unable to find the llmRequest {request_id} in the db")

        if not dbmod.try_begin_processing(request_id):
            logger.warning(
                "request is not pending, skipping execution",
                extra={"llm_request_id": request_id, "status": record.status},
            )
            return error_body(
                f"llmRequest {request_id} is not pending (status: {record.status})",
                kind=record.kind, request_id=request_id,
            )

        start = time.time()
        kind = record.kind
        incurred = {"llm": ZERO_USAGE}
        try:
            try:
                effective_schema = json.loads(record.output_effective_schema)
            except (TypeError, ValueError) as e:
                raise CastInternalError(f"Stored effective schema cannot be parsed: {e}")

            if record.request_type == REQUEST_TYPE_VALUE:
                response = await self._execute_value(record, effective_schema, incurred)
            elif record.request_type == REQUEST_TYPE_ARRAY:
                response = await self._execute_array(record, effective_schema, incurred)
            else:
                raise CastInternalError(f"Unknown request type {record.request_type}")
        except Exception as e:
            # fresh usage incurred before the failure is still recorded
            fresh_usage = e.usage if isinstance(e, LlmCallError) else incurred["llm"]
            message = e.message if isinstance(e, CastError) else f"internal error {e}"
            logger.error(
                "unexpected-situation. request execution failed",
                extra={"llm_request_id": request_id, "kind": kind, "error": message},
            )
            response = error_body(message, kind=kind, request_id=request_id)
            self._finish(request_id, STATUS_FAILED, response, fresh_usage, ZERO_USAGE, error=message)
            monitoring.observe_execution(start, kind, "failed")
            monitoring.add_tokens("fresh", fresh_usage)
        else:
            llm_usage = Usage.from_dict(response["llmUsage"])
            cache_usage = Usage.from_dict(response["cacheUsage"])
            self._finish(request_id, STATUS_SUCCESS, response, llm_usage, cache_usage)
            monitoring.observe_execution(start, kind, "success")
            monitoring.add_tokens("fresh", llm_usage)
            monitoring.add_tokens("cached", cache_usage)

        await self.scheduler.schedule(
            JOB_SEND_COMPLETION_NOTIFICATION,
            {"llm_request_id": request_id},
            max_attempts=NOTIFY_MAX_ATTEMPTS,
        )
        return response

    def _finish(self, request_id: str, status: str, response: Dict[str, Any],
                llm_usage: Usage, cache_usage: Usage, error: Optional[str] = None):
        fields = {
            "status": status,
            "result": json.dumps(response),
            "error": error,
            "finished_at": _utcnow(),
        }
        fields.update(_usage_fields("llm_usage", llm_usage))
        fields.update(_usage_fields("cache_usage", cache_usage))
        dbmod.update_request(request_id, fields)

    def _cache_context(self, record, effective_schema: Dict[str, Any]) -> CacheContext:
        return CacheContext(
            request_type=record.kind,
            output_name=record.output_name,
            prompt=record.input_prompt or "",
            effective_schema=effective_schema,
            primary_key=record.input_primary_key,
        )

    def _model(self, record) -> str:
        return record.model or llm_wrapper.DEFAULT_MODEL

    async def _execute_value(self, record, effective_schema: Dict[str, Any],
                             incurred: Dict[str, Usage]) -> Dict[str, Any]:
        data = json.loads(record.input_data) if record.input_data else None
        cache = ValueCache(self.cache_store, self._cache_context(record, effective_schema), data)
        base = {"kind": record.kind, "isSuccess": True, "llmRequestId": record.id}

        try:
            cached = await cache.get(invalidate_cache=record.invalidate_cache)
        except CacheEntryError as e:
            logger.error(
                "unexpected-situation. cached value could not be parsed, treating as miss",
                extra={"llm_request_id": record.id, "error": e.message},
            )
            cached = None

        if isinstance(cached, CacheHit):
            monitoring.inc_cache_lookup("value", "hit")
            return dict(base, data=cached.value, isCacheHit=True,
                        llmUsage=ZERO_USAGE.to_dict(), cacheUsage=cached.usage.to_dict())
        monitoring.inc_cache_lookup("value", "miss")

        prompt = _prompt_builder.build_value_prompt(
            record.input_prompt, record.output_name, effective_schema, data,
        )
        dbmod.update_request(record.id, {
            "full_prompt": prompt,
            "system_prompt": _prompt_builder.build_value_system_prompt(record.output_name),
        })
        result = await _llm_caller.call_llm(
            self.llm_client, prompt, self._model(record), record.max_tokens, effective_schema,
        )
        incurred["llm"] = result.usage
        await cache.set(result.data, result.usage)
        return dict(base, data=result.data, isCacheHit=False,
                    llmUsage=result.usage.to_dict(), cacheUsage=ZERO_USAGE.to_dict())

    async def _execute_array(self, record, effective_schema: Dict[str, Any],
                             incurred: Dict[str, Usage]) -> Dict[str, Any]:
        primary_key = record.input_primary_key
        try:
            rows = validate_mappable_input_data(json.loads(record.input_data), primary_key)
        except (CastError, TypeError, ValueError) as e:
            raise CastInternalError(f"unexpected-situation. Invalid data stored in llm record. {e}")

        service = ArrayCacheService(self.cache_store, rows, self._cache_context(record, effective_schema))
        check = await service.check_cache(invalidate_cache=record.invalidate_cache)
        for err in check.errors:
            logger.warning(
                "array cache row error",
                extra={"llm_request_id": record.id, "row_index": err.row_index, "reason": err.reason},
            )
        monitoring.inc_cache_lookup("array", "hit", len(check.cache_hits_by_pk))
        monitoring.inc_cache_lookup("array", "miss", len(check.uncached_rows))

        usage = ZERO_USAGE
        output_rows = []
        if check.uncached_rows:
            prompt = _prompt_builder.build_array_prompt(
                record.input_prompt, primary_key, record.output_name, effective_schema, check.uncached_rows,
            )
            dbmod.update_request(record.id, {
                "full_prompt": prompt,
                "system_prompt": _prompt_builder.build_array_system_prompt(primary_key, record.output_name),
            })
            result = await _llm_caller.call_llm(
                self.llm_client, prompt, self._model(record), record.max_tokens, effective_schema,
            )
            usage = result.usage
            incurred["llm"] = usage
            output_rows = result.data

        await service.store_results(output_rows, usage)
        assembled = service.assemble_result()
        return {
            "kind": record.kind,
            "isSuccess": True,
            "llmRequestId": record.id,
            "data": assembled.data,
            "cacheHits": assembled.cache_hit_count,
            "rowsWithNoResults": assembled.rows_with_no_results,
            "llmUsage": usage.to_dict(),
            "cacheUsage": assembled.cache_usage.to_dict(),
        }
