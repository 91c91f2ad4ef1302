"""
decision_sdk.tier1_runtime.validate
──────────────────────────────────────
Request validation via Pydantic v2. Raises the core's ValidationError (not
raw Pydantic errors) so every malformed request is rejected the same way,
before anything is read from or written to a store.
"""
from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from decision_sdk.tier0_core.errors import ValidationError

T = TypeVar("T", bound=BaseModel)


def validate_input(model: Type[T], data: Any) -> T:
    """
    Validate raw data against a Pydantic model.

    Usage:
        req = validate_input(AssignVariantRequest, {"ab_test_id": "t_1", "user_id": "u_1"})
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        fields = {
            ".".join(str(loc) for loc in err["loc"]) or "__root__": err["msg"]
            for err in exc.errors()
        }
        raise ValidationError(
            code="validation_error",
            user_message="Request validation failed.",
            fields=fields,
        ) from exc


__all__ = ["validate_input"]
