"""Shared base model for stored documents and request parameters."""
from typing import Any, Dict, Type, TypeVar, Union
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from timeout_app.core.errors import InvalidArgument

M = TypeVar("M", bound=BaseModel)


class DocumentModel(BaseModel):
    """Base for every stored document and nested map."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """JSON-compatible dict with camelCase keys, as written to the store."""
        return self.model_dump(mode="json", by_alias=True)


class ParamsModel(BaseModel):
    """Base for operation inputs; unknown fields are rejected."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


def coerce_params(model_cls: Type[M], value: Union[M, Dict[str, Any], None]) -> M:
    """Build ``model_cls`` from a dict, mapping validation errors to InvalidArgument."""
    if isinstance(value, model_cls):
        return value
    try:
        return model_cls.model_validate(value or {})
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidArgument(problems)
