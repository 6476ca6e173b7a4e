"""Field validator capability: an opaque "type marker + check" object attached to a schema field."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Annotated, Any, Callable, get_args, get_origin

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError


@dataclass
class ValidatorResult:
    ok: bool
    detail: str | None = None


class FieldValidator(ABC):
    """
    Capability consumed by the document engine when validating a field.

    Attributes:
        type (Any): Raw schema type of the values this validator accepts (e.g. ``str``, ``dict``).
        required (bool): Whether a field declared only through this validator is required.
    """

    type: Any = dict
    required: bool = False

    @abstractmethod
    def check(self, value: Any) -> ValidatorResult:
        """
        Checks a single non-null value.

        Returns:
            ValidatorResult: ok=False with an optional detail message when the value is rejected.
        """
        pass


_SIMPLE_TYPES = (str, int, float, bool, datetime, date, bytes, bytearray, dict, list)


def _infer_type(annotation: Any) -> Any:
    if get_origin(annotation) is Annotated:
        annotation = get_args(annotation)[0]
    if annotation in _SIMPLE_TYPES:
        return annotation
    origin = get_origin(annotation)
    if origin in (list, tuple, set):
        return list
    # mappings, TypedDicts and pydantic models all describe objects
    return dict


class PydanticFieldValidator(FieldValidator):
    """
    Validates values against any pydantic-understood annotation.

    Example::

        schema = {
            "malevolence": PydanticFieldValidator(Annotated[int, Field(ge=0, le=10)], required=True),
            "name": {"type": dict, "validator": PydanticFieldValidator(FullName)},
        }
    """

    def __init__(self, annotation: Any, *, type: Any = None, required: bool = False):
        if isinstance(annotation, TypeAdapter):
            self._adapter = annotation
            self.type = type if type is not None else dict
        else:
            self._adapter = TypeAdapter(annotation)
            self.type = type if type is not None else _infer_type(annotation)
        self.required = required

    def check(self, value: Any) -> ValidatorResult:
        try:
            self._adapter.validate_python(value)
        except PydanticValidationError as e:
            return ValidatorResult(ok=False, detail="; ".join(err["msg"] for err in e.errors()))
        return ValidatorResult(ok=True)


class CallableFieldValidator(FieldValidator):
    """Wraps a plain predicate. Returning False (or a message string) rejects the value."""

    def __init__(self, func: Callable[[Any], Any], *, type: Any = dict, required: bool = False):
        self._func = func
        self.type = type
        self.required = required

    def check(self, value: Any) -> ValidatorResult:
        outcome = self._func(value)
        if isinstance(outcome, str):
            return ValidatorResult(ok=False, detail=outcome)
        return ValidatorResult(ok=bool(outcome))


def as_field_validator(candidate: Any) -> FieldValidator | None:
    """Normalises a descriptor's ``validator`` entry into a FieldValidator."""
    if candidate is None or isinstance(candidate, FieldValidator):
        return candidate
    if isinstance(candidate, TypeAdapter):
        return PydanticFieldValidator(candidate)
    if callable(candidate):
        return CallableFieldValidator(candidate)
    raise TypeError(f"Unsupported field validator: {candidate!r}")
