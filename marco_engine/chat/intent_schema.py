"""Intent schema and validation for dispatchable commands."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .command_registry import CapabilityDescriptor

PARAM_TYPES = ("string", "integer", "number", "boolean", "object", "array")

RECOVERABLE_CODES = frozenset({"missing", "type", "choice"})

_TRUE_STRINGS = {"true", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "no", "n", "0", "off"}


def _freeze(parameters: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(parameters or {}))


@dataclass(frozen=True)
class Intent:
    module: str
    action: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    raw_input: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", _freeze(self.parameters))

    @property
    def key(self) -> str:
        return f"{self.module}.{self.action}"

    def with_parameters(self, updates: Mapping[str, Any], *, drop: tuple[str, ...] = ()) -> "Intent":
        merged = {k: v for k, v in self.parameters.items() if k not in drop}
        merged.update(updates)
        return Intent(module=self.module, action=self.action, parameters=merged, raw_input=self.raw_input)

    def describe(self) -> str:
        args = ", ".join(f"{key}={value!r}" for key, value in sorted(self.parameters.items()))
        return f"{self.key}({args})"


@dataclass(frozen=True)
class IntentCandidate:
    intent: Intent
    confidence: float
    missing_fields: frozenset[str] = frozenset()
    ambiguous_fields: frozenset[str] = frozenset()
    follow_up: str | None = None

    @property
    def unresolved_fields(self) -> frozenset[str]:
        return self.missing_fields | self.ambiguous_fields

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields and not self.ambiguous_fields


@dataclass(frozen=True)
class ClarificationRequest:
    question: str
    context: Intent | None
    fields: tuple[str, ...] = ()
    options: tuple[str, ...] = ()
    kind: str = "complete_fields"
    follow_up: str | None = None


@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: str = "string"
    required: bool = False
    choices: tuple[Any, ...] | None = None
    default: Any = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.type not in PARAM_TYPES:
            raise ValueError(f"Unsupported parameter type {self.type!r} for {self.name!r}")


@dataclass(frozen=True)
class ActionSchema:
    params: tuple[ParamSpec, ...] = ()
    description: str = ""

    def param(self, name: str) -> ParamSpec | None:
        for spec in self.params:
            if spec.name == name:
                return spec
        return None

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.params if spec.required)


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str

    @property
    def recoverable(self) -> bool:
        return self.code in RECOVERABLE_CODES


@dataclass(frozen=True)
class ValidationResult:
    intent: Intent | None
    errors: tuple[FieldError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def recoverable(self) -> bool:
        return bool(self.errors) and all(error.recoverable for error in self.errors)

    def fields_with(self, *codes: str) -> frozenset[str]:
        return frozenset(error.field for error in self.errors if error.code in codes)


def validate(intent: Intent, descriptor: "CapabilityDescriptor | None", *, strict: bool = True) -> ValidationResult:
    """Check an intent against its module's descriptor.

    Returns a normalized copy of the intent (coerced types, defaults filled in,
    unknown parameters dropped in lenient mode) alongside every field-level error
    found. Unknown module/action short-circuit because nothing else can be checked.
    """
    if descriptor is None or not intent.module or descriptor.name != intent.module:
        return ValidationResult(
            intent=None,
            errors=(FieldError("module", "unknown_module", f"Unknown module: {intent.module or '<empty>'}"),),
        )
    schema = descriptor.actions.get(intent.action)
    if schema is None:
        return ValidationResult(
            intent=None,
            errors=(
                FieldError(
                    "action",
                    "unknown_action",
                    f"Module {descriptor.name} does not support action {intent.action or '<empty>'}",
                ),
            ),
        )

    errors: list[FieldError] = []
    normalized: dict[str, Any] = {}
    for name, value in intent.parameters.items():
        spec = schema.param(name)
        if spec is None:
            if strict:
                errors.append(FieldError(name, "unknown_parameter", f"Unknown parameter {name!r} for {intent.key}"))
            continue
        if value is None:
            continue
        coerced, error = _coerce(spec, value)
        if error:
            errors.append(error)
            continue
        normalized[name] = coerced

    for spec in schema.params:
        if spec.name in normalized or any(error.field == spec.name for error in errors):
            continue
        if spec.default is not None:
            normalized[spec.name] = spec.default
        elif spec.required:
            errors.append(FieldError(spec.name, "missing", f"Missing required parameter {spec.name!r}"))

    resolved = Intent(module=intent.module, action=intent.action, parameters=normalized, raw_input=intent.raw_input)
    return ValidationResult(intent=resolved, errors=tuple(errors))


def _coerce(spec: ParamSpec, value: Any) -> tuple[Any, FieldError | None]:
    kind = spec.type
    coerced: Any = value
    if kind == "string":
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            return value, _type_error(spec, value)
        coerced = str(value).strip()
        if not coerced and spec.required:
            return value, FieldError(spec.name, "missing", f"Parameter {spec.name!r} is empty")
    elif kind == "integer":
        if isinstance(value, bool):
            return value, _type_error(spec, value)
        if isinstance(value, int):
            coerced = value
        elif isinstance(value, float) and value.is_integer():
            coerced = int(value)
        elif isinstance(value, str):
            try:
                coerced = int(value.strip())
            except ValueError:
                return value, _type_error(spec, value)
        else:
            return value, _type_error(spec, value)
    elif kind == "number":
        if isinstance(value, bool):
            return value, _type_error(spec, value)
        if isinstance(value, (int, float)):
            coerced = value
        elif isinstance(value, str):
            try:
                coerced = float(value.strip())
            except ValueError:
                return value, _type_error(spec, value)
        else:
            return value, _type_error(spec, value)
    elif kind == "boolean":
        if isinstance(value, bool):
            coerced = value
        elif isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
            coerced = True
        elif isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
            coerced = False
        else:
            return value, _type_error(spec, value)
    elif kind == "object":
        if not isinstance(value, Mapping):
            return value, _type_error(spec, value)
        coerced = dict(value)
    elif kind == "array":
        if not isinstance(value, (list, tuple)):
            return value, _type_error(spec, value)
        coerced = list(value)

    if spec.choices is not None and coerced not in spec.choices:
        allowed = ", ".join(str(choice) for choice in spec.choices)
        return value, FieldError(spec.name, "choice", f"Parameter {spec.name!r} must be one of: {allowed}")
    return coerced, None


def _type_error(spec: ParamSpec, value: Any) -> FieldError:
    return FieldError(spec.name, "type", f"Parameter {spec.name!r} expects {spec.type}, got {value!r}")
