# castgate/validator.py
"""
Request validation and JSON Schema checks for cast requests.

This module provides:
- validate_json_schema(schema)            -> None, raises CastValidationError
- validate_instance(instance, schema)     -> None | error message
- validate_mappable_input_data(data, pk)  -> rows, raises CastValidationError
- validate_cast_value_request(params)     -> ValidCastRequest
- validate_cast_array_request(params)     -> ValidCastRequest (with wrapped effective schema)

Malformed requests are rejected here, before any request record exists.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from jsonschema import validators
from jsonschema.exceptions import SchemaError

from castgate.errors import CastInternalError, CastValidationError
from castgate.schema_wrapper import wrap_array_schema

DEFAULT_PRIMARY_KEY = "id"


@dataclass
class ValidCastRequest:
    request_type: str  # "value" | "array"
    prompt: str
    data: Any
    output_name: str
    output_schema: Dict[str, Any]
    effective_schema: Dict[str, Any]
    primary_key: Optional[str] = None
    invalidate_cache: bool = False
    model: Optional[str] = None


def _validator_for(schema: Dict[str, Any]):
    cls = validators.validator_for(schema, default=validators.Draft202012Validator)
    return cls


def validate_json_schema(schema: Any):
    if not isinstance(schema, dict):
        raise CastValidationError("output.schema must exist and be a valid JSON schema object")
    try:
        _validator_for(schema).check_schema(schema)
    except SchemaError as e:
        raise CastValidationError(f"output.schema is not a valid JSON schema: {e.message}")


def validate_instance(instance: Any, schema: Dict[str, Any]) -> Optional[str]:
    """Return None when the instance conforms, otherwise a readable error listing."""
    validator = _validator_for(schema)(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path))
    if not errors:
        return None
    parts = []
    for e in errors[:10]:
        path = "/".join(str(p) for p in e.absolute_path)
        parts.append(f"/{path}: {e.message}" if path else e.message)
    return "; ".join(parts)


def validate_mappable_input_data(data: Any, primary_key: str) -> List[Dict[str, Any]]:
    if not isinstance(data, list):
        raise CastValidationError("input.data must be an array")
    if not isinstance(primary_key, str) or not primary_key.strip():
        raise CastValidationError("input.primaryKey must be a non-empty string")

    invalid = (
        "Each item in 'data' must be an object with at least two keys "
        f"including the primary key '{primary_key}'"
    )
    for item in data:
        if not isinstance(item, dict):
            raise CastValidationError(invalid)
        if len(item) < 2 or primary_key not in item:
            raise CastValidationError(invalid)
    return data


def _resolve_primary_key(value: Any) -> str:
    if value is None:
        return DEFAULT_PRIMARY_KEY
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise CastValidationError("input.primaryKey must be a non-empty string")


def _resolve_model(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise CastValidationError("model must be a non-empty string when provided")


def validate_cast_value_request(params: Dict[str, Any]) -> ValidCastRequest:
    params = params or {}
    inp = params.get("input") or {}
    out = params.get("output") or {}
    options = params.get("options") or {}

    if not isinstance(inp, dict) or not inp.get("prompt"):
        raise CastValidationError("input.prompt must be provided")
    if not isinstance(inp["prompt"], str):
        raise CastValidationError("input.prompt must be a string")
    if not isinstance(out, dict) or not isinstance(out.get("schema"), dict):
        raise CastValidationError("output.schema must exist and be a valid JSON schema object")
    name = out.get("name")
    if not (isinstance(name, str) and len(name) > 0):
        raise CastValidationError("output.name must be a non-empty string")

    validate_json_schema(out["schema"])

    return ValidCastRequest(
        request_type="value",
        prompt=inp["prompt"],
        data=inp.get("data"),
        output_name=name,
        output_schema=out["schema"],
        effective_schema=out["schema"],
        invalidate_cache=bool(options.get("invalidateCache", False)) if isinstance(options, dict) else False,
        model=_resolve_model(params.get("model")),
    )


def validate_cast_array_request(params: Dict[str, Any]) -> ValidCastRequest:
    base = validate_cast_value_request(params)
    inp = params.get("input") or {}

    primary_key = _resolve_primary_key(inp.get("primaryKey"))
    if base.output_name == primary_key:
        raise CastValidationError("output.name must be different from the input.primaryKey")

    rows = validate_mappable_input_data(inp.get("data"), primary_key)

    effective = wrap_array_schema(base.output_schema, primary_key, base.output_name)
    try:
        validate_json_schema(effective)
    except CastValidationError as e:
        raise CastInternalError(f"Wrapped array schema is invalid: {e.message}")

    base.request_type = "array"
    base.data = rows
    base.primary_key = primary_key
    base.effective_schema = effective
    return base
