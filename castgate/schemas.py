# castgate/schemas.py
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# Bodies are deliberately loose: shape rules live in castgate.validator so that
# every rejection carries the same {error, isError} body and 400 status.


class CastInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: Any = None
    data: Any = None
    primaryKey: Any = None


class CastOutput(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: Any = None
    json_schema: Any = Field(default=None, alias="schema")


class CastOptions(BaseModel):
    invalidateCache: bool = False


class CastRequestBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    input: Optional[CastInput] = None
    output: Optional[CastOutput] = None
    options: Optional[CastOptions] = None
    model: Any = None

    def to_params(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=False)
