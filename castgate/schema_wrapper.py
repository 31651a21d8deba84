# castgate/schema_wrapper.py
"""
Batch schema wrapping for cast/array requests.

Each element of the LLM's array answer carries the row's primary key plus the
item under a semantically named key, e.g. {"id": 3, "calories": {...}}. LLMs
stick to the contract noticeably better that way than with a bare array of
items.
"""

from typing import Any, Dict, Optional

JsonSchema = Dict[str, Any]


def wrap_array_schema(item_schema: JsonSchema, primary_key: str, output_name: str) -> JsonSchema:
    wrapped: JsonSchema = {
        "type": "array",
        "items": {
            "type": "object",
            "required": [primary_key, output_name],
            "properties": {
                primary_key: {
                    "anyOf": [{"type": "string"}, {"type": "number"}, {"type": "integer"}]
                },
                output_name: item_schema,
            },
        },
    }
    draft = item_schema.get("$schema") if isinstance(item_schema, dict) else None
    if isinstance(draft, str):
        wrapped["$schema"] = draft
    return wrapped


def unwrap_array_schema(wrapped: Any, output_name: str) -> Optional[JsonSchema]:
    if not isinstance(wrapped, dict) or wrapped.get("type") != "array":
        return None
    items = wrapped.get("items")
    if not isinstance(items, dict):
        return None
    properties = items.get("properties")
    if not isinstance(properties, dict):
        return None
    return properties.get(output_name)
