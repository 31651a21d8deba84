# tests/test_schema_wrapper.py
from castgate.schema_wrapper import unwrap_array_schema, wrap_array_schema

ITEM = {"type": "object", "properties": {"kcal": {"type": "number"}}, "required": ["kcal"]}


def test_wrap_requires_pk_and_output_name():
    wrapped = wrap_array_schema(ITEM, "id", "calories")
    assert wrapped["type"] == "array"
    items = wrapped["items"]
    assert items["required"] == ["id", "calories"]
    assert items["properties"]["calories"] is ITEM
    assert {"type": "integer"} in items["properties"]["id"]["anyOf"]


def test_wrap_preserves_schema_draft():
    s = dict(ITEM, **{"$schema": "http://json-schema.org/draft-07/schema#"})
    assert wrap_array_schema(s, "id", "v")["$schema"] == "http://json-schema.org/draft-07/schema#"
    assert "$schema" not in wrap_array_schema(ITEM, "id", "v")


def test_unwrap_inverts_wrap():
    assert unwrap_array_schema(wrap_array_schema(ITEM, "id", "v"), "v") == ITEM


def test_unwrap_returns_none_for_non_array_shapes():
    assert unwrap_array_schema({"type": "object"}, "v") is None
    assert unwrap_array_schema({"type": "array", "items": []}, "v") is None
    assert unwrap_array_schema(None, "v") is None
    assert unwrap_array_schema(wrap_array_schema(ITEM, "id", "v"), "other") is None
