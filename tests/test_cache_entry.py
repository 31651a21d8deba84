# tests/test_cache_entry.py
import pytest

from castgate.caching.cache_entry import CurrentEntry, LegacyEntry, decode_entry, serialize_entry
from castgate.errors import CacheEntryError
from castgate.usage import Usage, ZERO_USAGE


def test_current_format_keeps_usage():
    raw = serialize_entry({"a": 1}, Usage(3, 4, 7))
    entry = decode_entry(raw)
    assert isinstance(entry, CurrentEntry)
    assert entry.result == {"a": 1}
    assert entry.usage == Usage(3, 4, 7)


def test_bare_value_is_legacy_with_zero_usage():
    entry = decode_entry('{"name": "x"}')
    assert isinstance(entry, LegacyEntry)
    assert entry.result == {"name": "x"}
    assert entry.usage == ZERO_USAGE


def test_object_with_only_result_is_legacy():
    entry = decode_entry('{"result": 5}')
    assert isinstance(entry, LegacyEntry)
    assert entry.result == {"result": 5}


def test_garbage_raises_cache_entry_error():
    with pytest.raises(CacheEntryError):
        decode_entry("{not json")


@pytest.mark.parametrize("usage", ['{"promptTokens": "x"}', '{"totalTokens": [1]}', '{"completionTokens": 1e400}'])
def test_malformed_usage_raises_cache_entry_error(usage):
    with pytest.raises(CacheEntryError):
        decode_entry('{"result": {"kcal": 1}, "usage": %s}' % usage)
