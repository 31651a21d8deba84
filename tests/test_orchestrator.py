# tests/test_orchestrator.py
"""
End-to-end execution of request records against an in-memory cache and a
scripted LLM client. No network, disposable SQLite DB.
"""
import asyncio
import json

import pytest

import castgate.processors.llm_caller as llm_caller
from castgate import db as dbmod
from castgate.caching.stores import MemoryCacheStore
from castgate.models import STATUS_FAILED, STATUS_SUCCESS
from castgate.notifications import JOB_SEND_COMPLETION_NOTIFICATION
from castgate.orchestrator import CastOrchestrator
from castgate.validator import validate_cast_array_request, validate_cast_value_request

ITEM = {"type": "object", "properties": {"kcal": {"type": "number"}}, "required": ["kcal"]}
ROWS = [
    {"id": 1, "food": "apple"},
    {"id": 2, "food": "bread"},
    {"id": 3, "food": "cheese"},
    {"id": 4, "food": "dates"},
]


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    async def fake_sleep(seconds):
        return None

    monkeypatch.setattr(llm_caller, "_sleep", fake_sleep)


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def orch(temp_db, scheduler, store, fake_llm):
    return CastOrchestrator(scheduler, cache_store=store, llm_client=fake_llm)


def new_value_request(data=None, invalidate=False):
    return dbmod.create_request(validate_cast_value_request({
        "input": {"prompt": "estimate calories", "data": data if data is not None else {"food": "apple"}},
        "output": {"name": "calories", "schema": ITEM},
        "options": {"invalidateCache": invalidate},
    }))


def new_array_request(rows, invalidate=False):
    return dbmod.create_request(validate_cast_array_request({
        "input": {"prompt": "estimate calories", "data": rows},
        "output": {"name": "calories", "schema": ITEM},
        "options": {"invalidateCache": invalidate},
    }))


def llm_rows(*ids):
    return json.dumps([{"id": i, "calories": {"kcal": i * 100}} for i in ids])


def test_value_miss_then_hit(orch, fake_llm, scheduler):
    fake_llm.queue('{"kcal": 52}', 20, 4)
    first = asyncio.run(orch.execute_request(new_value_request()))
    assert first["kind"] == "cast/value"
    assert first["isSuccess"] is True
    assert first["data"] == {"kcal": 52}
    assert first["isCacheHit"] is False
    assert first["llmUsage"] == {"promptTokens": 20, "completionTokens": 4, "totalTokens": 24}

    rid = new_value_request()
    second = asyncio.run(orch.execute_request(rid))
    assert second["isCacheHit"] is True
    assert second["llmUsage"]["totalTokens"] == 0
    assert second["cacheUsage"]["totalTokens"] == 24
    assert len(fake_llm.prompts) == 1

    rec = dbmod.find_request(rid)
    assert rec.status == STATUS_SUCCESS
    assert rec.llm_usage_total_tokens == 0
    assert rec.cache_usage_total_tokens == 24
    assert json.loads(rec.result) == second
    assert rec.finished_at is not None
    assert [j[0] for j in scheduler.jobs] == [JOB_SEND_COMPLETION_NOTIFICATION] * 2
    assert scheduler.jobs[-1] == (JOB_SEND_COMPLETION_NOTIFICATION, {"llm_request_id": rid}, 3)


def test_value_invalidate_forces_llm_call(orch, fake_llm):
    fake_llm.queue('{"kcal": 1}')
    fake_llm.queue('{"kcal": 2}')
    asyncio.run(orch.execute_request(new_value_request()))
    resp = asyncio.run(orch.execute_request(new_value_request(invalidate=True)))
    assert resp["data"] == {"kcal": 2}
    assert resp["isCacheHit"] is False
    assert len(fake_llm.prompts) == 2


def test_corrupt_value_entry_is_treated_as_miss(orch, fake_llm, store):
    from castgate.caching.value_cache import CacheContext, ValueCache

    cache = ValueCache(store, CacheContext("cast/value", "calories", "estimate calories", ITEM), {"food": "apple"})
    asyncio.run(store.set(cache.cache_key, "{corrupt"))
    fake_llm.queue('{"kcal": 52}')
    resp = asyncio.run(orch.execute_request(new_value_request()))
    assert resp["isSuccess"] is True
    assert resp["isCacheHit"] is False


def test_four_row_array_scenario(orch, fake_llm):
    # rows 1 and 3 warm the cache
    fake_llm.queue(llm_rows(1, 3), 40, 10)
    asyncio.run(orch.execute_request(new_array_request([ROWS[0], ROWS[2]])))

    fake_llm.queue(llm_rows(2, 4), 60, 12)
    resp = asyncio.run(orch.execute_request(new_array_request(ROWS)))

    assert resp["kind"] == "cast/array"
    assert [r["id"] for r in resp["data"]] == [1, 2, 3, 4]
    assert resp["data"][1] == {"id": 2, "calories": {"kcal": 200}}
    assert resp["cacheHits"] == 2
    assert resp["rowsWithNoResults"] == []
    assert resp["llmUsage"] == {"promptTokens": 60, "completionTokens": 12, "totalTokens": 72}
    assert resp["cacheUsage"]["totalTokens"] > 0

    # only uncached rows were sent to the LLM
    last_prompt = fake_llm.prompts[-1]
    assert '"food": "bread"' in last_prompt and '"food": "dates"' in last_prompt
    assert '"food": "apple"' not in last_prompt


def test_four_row_array_scenario_with_invalidation(orch, fake_llm):
    fake_llm.queue(llm_rows(1, 3))
    asyncio.run(orch.execute_request(new_array_request([ROWS[0], ROWS[2]])))

    fake_llm.queue(llm_rows(1, 2, 3, 4), 80, 16)
    resp = asyncio.run(orch.execute_request(new_array_request(ROWS, invalidate=True)))
    assert resp["cacheHits"] == 0
    assert resp["cacheUsage"]["totalTokens"] == 0
    assert [r["id"] for r in resp["data"]] == [1, 2, 3, 4]


def test_fully_cached_array_skips_llm(orch, fake_llm):
    fake_llm.queue(llm_rows(1, 2))
    asyncio.run(orch.execute_request(new_array_request(ROWS[:2])))
    rid = new_array_request(ROWS[:2])
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["cacheHits"] == 2
    assert resp["llmUsage"]["totalTokens"] == 0
    assert len(fake_llm.prompts) == 1
    assert dbmod.find_request(rid).full_prompt is None


def test_array_missing_rows_reported(orch, fake_llm):
    # LLM answers for 1 and an unknown key; 2 is left without a result
    fake_llm.queue(llm_rows(1, 99))
    rid = new_array_request(ROWS[:2])
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["data"] == [{"id": 1, "calories": {"kcal": 100}}]
    assert resp["rowsWithNoResults"] == [2]
    assert dbmod.find_request(rid).full_prompt is not None


def test_llm_failure_marks_request_failed_with_usage(orch, fake_llm, scheduler):
    for _ in range(3):
        fake_llm.queue("garbage", 7, 3)
    rid = new_value_request()
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["isError"] is True
    assert resp["llmRequestId"] == rid
    assert "after 3 attempts" in resp["error"]

    rec = dbmod.find_request(rid)
    assert rec.status == STATUS_FAILED
    assert "after 3 attempts" in rec.error
    assert rec.llm_usage_total_tokens == 30
    assert rec.cache_usage_total_tokens == 0
    assert scheduler.jobs == [(JOB_SEND_COMPLETION_NOTIFICATION, {"llm_request_id": rid}, 3)]


def test_corrupt_effective_schema_fails_request(orch, scheduler):
    rid = new_value_request()
    dbmod.update_request(rid, {"output_effective_schema": "{not json"})
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["isError"] is True
    assert dbmod.find_request(rid).status == STATUS_FAILED
    assert len(scheduler.jobs) == 1


def test_non_pending_request_is_a_noop(orch, fake_llm, scheduler):
    fake_llm.queue('{"kcal": 1}')
    rid = new_value_request()
    asyncio.run(orch.execute_request(rid))
    again = asyncio.run(orch.execute_request(rid))
    assert again["isError"] is True
    assert "not pending" in again["error"]
    assert len(fake_llm.prompts) == 1
    assert len(scheduler.jobs) == 1
    assert dbmod.find_request(rid).status == STATUS_SUCCESS


def test_unknown_request_schedules_nothing(orch, scheduler):
    resp = asyncio.run(orch.execute_request("does-not-exist"))
    assert resp == {"error": "Unable to find the llmRequest does-not-exist in the db", "isError": True}
    assert scheduler.jobs == []


def test_value_entry_with_malformed_usage_is_treated_as_miss(orch, fake_llm, store):
    from castgate.caching.value_cache import CacheContext, ValueCache

    cache = ValueCache(store, CacheContext("cast/value", "calories", "estimate calories", ITEM), {"food": "apple"})
    asyncio.run(store.set(cache.cache_key, '{"result": {"kcal": 1}, "usage": {"promptTokens": "x"}}'))
    fake_llm.queue('{"kcal": 52}')
    rid = new_value_request()
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["isSuccess"] is True
    assert resp["isCacheHit"] is False
    assert resp["data"] == {"kcal": 52}
    assert dbmod.find_request(rid).status == STATUS_SUCCESS


def test_array_row_with_malformed_usage_goes_back_to_llm(orch, fake_llm, store):
    from castgate.caching.array_cache import build_row_key
    from castgate.caching.value_cache import CacheContext, build_context_key
    from castgate.schema_wrapper import wrap_array_schema

    ctx = CacheContext("cast/array", "calories", "estimate calories", wrap_array_schema(ITEM, "id", "calories"), "id")
    key = build_row_key(ROWS[0], build_context_key(ctx))
    asyncio.run(store.set(key, '{"result": {"kcal": 1}, "usage": {"promptTokens": "x"}}'))
    fake_llm.queue(llm_rows(1, 2))
    resp = asyncio.run(orch.execute_request(new_array_request(ROWS[:2])))
    assert resp["isSuccess"] is True
    assert resp["cacheHits"] == 0
    assert [r["id"] for r in resp["data"]] == [1, 2]


class FailingWriteStore(MemoryCacheStore):
    async def set(self, key, value, ttl=None):
        raise ConnectionError("cache write refused")

    async def mset(self, entries, ttl=None):
        raise ConnectionError("cache write refused")


@pytest.mark.parametrize("new_request, reply", [
    (lambda: new_value_request(), '{"kcal": 52}'),
    (lambda: new_array_request(ROWS[:2]), llm_rows(1, 2)),
])
def test_usage_is_kept_when_cache_write_fails_after_llm_call(temp_db, scheduler, fake_llm, new_request, reply):
    orch = CastOrchestrator(scheduler, cache_store=FailingWriteStore(), llm_client=fake_llm)
    fake_llm.queue(reply, 40, 10)
    rid = new_request()
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["isError"] is True
    assert "cache write refused" in resp["error"]

    rec = dbmod.find_request(rid)
    assert rec.status == STATUS_FAILED
    assert rec.llm_usage_prompt_tokens == 40
    assert rec.llm_usage_completion_tokens == 10
    assert rec.llm_usage_total_tokens == 50
    assert rec.cache_usage_total_tokens == 0


def test_four_rows_invalidated_on_empty_cache_then_fully_cached(orch, fake_llm):
    fake_llm.queue(llm_rows(1, 2, 3, 4), 80, 16)
    first = asyncio.run(orch.execute_request(new_array_request(ROWS, invalidate=True)))
    assert first["cacheHits"] == 0
    assert first["llmUsage"]["totalTokens"] > 0
    assert [r["id"] for r in first["data"]] == [1, 2, 3, 4]

    second = asyncio.run(orch.execute_request(new_array_request(ROWS)))
    assert second["cacheHits"] == 4
    assert second["llmUsage"]["totalTokens"] == 0
    assert second["cacheUsage"]["totalTokens"] >= 1
    assert second["data"] == first["data"]
    assert len(fake_llm.prompts) == 1


def test_array_prompt_is_saved_even_when_llm_fails(orch, fake_llm):
    for _ in range(3):
        fake_llm.queue("garbage")
    rid = new_array_request(ROWS[:2])
    resp = asyncio.run(orch.execute_request(rid))
    assert resp["isError"] is True

    rec = dbmod.find_request(rid)
    assert rec.status == STATUS_FAILED
    assert '"food": "apple"' in rec.full_prompt
    assert rec.system_prompt
