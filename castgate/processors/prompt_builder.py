# castgate/processors/prompt_builder.py
import json
from typing import Any, Dict, List

DEFAULT_USER_PROMPT = "Transform the provided data according to the schema."


def _var(name: str) -> str:
    return "<<{" + name + "}>>"


def _fill(template: str, **values: str) -> str:
    for name, value in values.items():
        template = template.replace(_var(name), value)
    return template


# Output type names make the LLM answer noticeably more concise.
VALUE_SYSTEM_PROMPT = " ".join([
    f"Please respond with a single JSON object that represents '{_var('OUTPUT_TYPE_NAME')}'.",
    "The schema for this object (which uses the JSON Schema spec), is defined below for your reference.",
    "Your task is to create an instance of this object. Respond with only the instance, not the schema.",
    f"Your entire response should be just the value of '{_var('OUTPUT_TYPE_NAME')}', as valid JSON.",
    "And it should not be wrapped in any wrapper object -- return exactly what the JSON schema is expecting.",
    "We will validate the result with a JSON Schema validator against the given schema, and we expect",
    "it to validate correctly.",
])

ARRAY_SYSTEM_PROMPT = " ".join([
    "Your task is to transform the provided <input-data> into a JSON array, that represents a list of",
    f"{_var('OUTPUT_TYPE_NAME')}. The schema for this JSON array is defined below in <json-schema-spec> for you reference.",
    "It uses the JSON Schema spec.",
    "Respond with only the instance, not the schema. It should not be wrapped in any wrapper object -- return exactly what the JSON schema is expecting.",
    f"Your entire response should be just the value of the JSON array containing objects with '{_var('OUTPUT_TYPE_NAME')}'",
    f"and its primary key '{_var('PRIMARY_KEY')}', as valid JSON.",
    "We will validate the result with a JSON Schema validator against the JSON schema, and we expect it to validate correctly.",
    f"Note that the primary key of each element in the input-data is '{_var('PRIMARY_KEY')}'. In the output JSON array,",
    "each object should have the same key with the same value of the original data, so we can map the input element against the output element.",
])


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def build_value_system_prompt(output_name: str) -> str:
    return _fill(VALUE_SYSTEM_PROMPT, OUTPUT_TYPE_NAME=output_name)


def build_array_system_prompt(primary_key: str, output_name: str) -> str:
    return _fill(ARRAY_SYSTEM_PROMPT, PRIMARY_KEY=primary_key, OUTPUT_TYPE_NAME=output_name)


def build_value_prompt(prompt: str, output_name: str, effective_schema: Dict[str, Any], data: Any) -> str:
    return "\n".join([
        prompt or DEFAULT_USER_PROMPT,
        build_value_system_prompt(output_name),
        f"<json-schema-spec> {_dumps(effective_schema)} </json-schema-spec>",
        f"<input-data>{_dumps(data)}</input-data>" if data else "",
    ])


def build_array_prompt(prompt: str, primary_key: str, output_name: str,
                       effective_schema: Dict[str, Any], rows: List[Dict[str, Any]]) -> str:
    """rows should be only the uncached rows; cached ones are never re-sent."""
    return "\n".join([
        prompt or DEFAULT_USER_PROMPT,
        build_array_system_prompt(primary_key, output_name),
        f"<json-schema-spec> {_dumps(effective_schema)} </json-schema-spec>",
        f"<input-data>{_dumps(rows)}</input-data>",
    ])
