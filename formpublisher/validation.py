"""JSON Schema validation for stored forms and signup payloads.

The ValidationEngine validates documents against a Draft 7 schema and translates
jsonschema errors into FieldError records with stable codes and dotted paths.

Two schemas ship with the library:
- COMPOSITION_SCHEMA: the persisted form document ({fields, theme})
- SIGNUP_PAYLOAD_SCHEMA: the body accepted by the signup intake
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jsonschema
from jsonschema import Draft7Validator

from formpublisher.errors import FieldError
from formpublisher.types import FieldKind, FieldRole, FieldErrorCode


COMPOSITION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "fields": {
            "type": "array",
            "maxItems": 100,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": ["string", "integer"]},
                    "type": {"enum": [k.value for k in FieldKind]},
                    "label": {"type": "string", "maxLength": 200},
                    "placeholder": {"type": "string", "maxLength": 200},
                    "required": {"type": "boolean"},
                    "locked": {"type": "boolean"},
                    "role": {"enum": [r.value for r in FieldRole] + [None]},
                    "options": {
                        "type": ["array", "null"],
                        "items": {
                            "type": "object",
                            "properties": {
                                "label": {"type": "string"},
                                "value": {"type": "string"},
                            },
                            "required": ["label", "value"],
                        },
                    },
                    "pairGroup": {"type": ["string", "integer", "null"]},
                },
                "required": ["id", "type"],
            },
        },
        "theme": {"type": "object"},
    },
    "required": ["fields"],
}


_IDEMPOTENCY_KEY: Dict[str, Any] = {
    "type": ["string", "null"],
    "minLength": 1,
    "maxLength": 200,
}

SIGNUP_PAYLOAD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "email": {
            "type": ["string", "null"],
            "maxLength": 254,
            "pattern": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
        },
        "idempotencyKey": _IDEMPOTENCY_KEY,
        "idempotency_key": _IDEMPOTENCY_KEY,
        "data": {"type": "object"},
        "meta": {
            "type": "object",
            "properties": {
                "ip": {"type": ["string", "null"]},
                "origin": {"type": ["string", "null"]},
                "userAgent": {"type": ["string", "null"]},
            },
        },
    },
    "required": ["data"],
}


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating a document against a JSON Schema.

    Attributes:
        is_valid: Whether the data passed all validation checks
        errors: List of field-level validation errors (empty if valid)
        missing_fields: Required field paths that are missing
        invalid_fields: Field paths that failed validation

    Examples:
        >>> engine = ValidationEngine(SIGNUP_PAYLOAD_SCHEMA)
        >>> engine.validate({"data": {}}).is_valid
        True
    """
    is_valid: bool
    errors: List[FieldError]
    missing_fields: Optional[List[str]] = None
    invalid_fields: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "isValid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.missing_fields is not None:
            result["missingFields"] = self.missing_fields
        if self.invalid_fields is not None:
            result["invalidFields"] = self.invalid_fields
        return result


class ValidationEngine:
    """JSON Schema validation engine.

    Wraps the jsonschema library and translates validation errors into the
    structured FieldError format with field paths and error codes.

    Examples:
        >>> engine = ValidationEngine(COMPOSITION_SCHEMA)
        >>> result = engine.validate({"fields": [{"id": "a", "type": "bogus"}]})
        >>> result.is_valid
        False
        >>> result.errors[0].path
        'fields.0.type'
    """

    def __init__(self, schema: Dict[str, Any]) -> None:
        """Initialize the validation engine with a JSON Schema.

        Raises:
            jsonschema.SchemaError: If the provided schema is invalid
        """
        self.schema = schema
        Draft7Validator.check_schema(schema)
        self.validator = Draft7Validator(schema)

    def validate(self, data: Any) -> ValidationResult:
        """Validate a document against the schema."""
        errors = sorted(
            self.validator.iter_errors(data), key=lambda e: list(map(str, e.path))
        )

        if not errors:
            return ValidationResult(
                is_valid=True, errors=[], missing_fields=[], invalid_fields=[]
            )

        field_errors: List[FieldError] = []
        missing_fields: List[str] = []
        invalid_fields: List[str] = []

        for error in errors:
            field_error = self._translate_error(error)
            field_errors.append(field_error)
            if field_error.code == FieldErrorCode.REQUIRED:
                missing_fields.append(field_error.path)
            else:
                invalid_fields.append(field_error.path)

        return ValidationResult(
            is_valid=False,
            errors=field_errors,
            missing_fields=missing_fields,
            invalid_fields=invalid_fields,
        )

    def _translate_error(self, error: jsonschema.ValidationError) -> FieldError:
        """Translate a jsonschema ValidationError to a FieldError.

        Error mapping:
            - 'required' property errors -> REQUIRED
            - 'type' errors -> INVALID_TYPE
            - 'format' / 'pattern' errors -> INVALID_FORMAT
            - 'enum' or 'const' errors -> INVALID_VALUE
            - 'minLength' / 'minItems' errors -> TOO_SHORT
            - 'maxLength' / 'maxItems' errors -> TOO_LONG
            - Other constraint errors -> CUSTOM
        """
        path = ".".join(str(p) for p in error.path)

        if error.validator == "required":
            message = error.message
            missing_prop = message.split("'")[1] if "'" in message else "field"
            full_path = f"{path}.{missing_prop}" if path else missing_prop
            return FieldError(
                path=full_path,
                code=FieldErrorCode.REQUIRED,
                message=f"Field '{full_path}' is required but was not provided",
                expected="required field",
            )

        if error.validator == "type":
            received_type = type(error.instance).__name__
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_TYPE,
                message=(
                    f"Field '{path}' has invalid type. "
                    f"Expected {error.validator_value}, got {received_type}"
                ),
                expected=error.validator_value,
                received=received_type,
            )

        if error.validator in ("format", "pattern"):
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_FORMAT,
                message=f"Field '{path}' has invalid format",
                expected=error.validator_value,
                received=error.instance,
            )

        if error.validator in ("enum", "const"):
            return FieldError(
                path=path,
                code=FieldErrorCode.INVALID_VALUE,
                message=(
                    f"Field '{path}' has invalid value. "
                    f"Must be one of: {error.validator_value}"
                ),
                expected=error.validator_value,
                received=error.instance,
            )

        if error.validator in ("minLength", "minItems"):
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_SHORT,
                message=(
                    f"Field '{path}' is too short. Minimum: {error.validator_value}"
                ),
                expected=f"minimum {error.validator_value}",
                received=len(error.instance) if error.instance is not None else 0,
            )

        if error.validator in ("maxLength", "maxItems"):
            return FieldError(
                path=path,
                code=FieldErrorCode.TOO_LONG,
                message=f"Field '{path}' is too long. Maximum: {error.validator_value}",
                expected=f"maximum {error.validator_value}",
                received=len(error.instance) if error.instance is not None else 0,
            )

        return FieldError(
            path=path,
            code=FieldErrorCode.CUSTOM,
            message=f"Field '{path}' validation failed: {error.message}",
            expected=error.validator_value,
            received=error.instance,
        )


composition_validator = ValidationEngine(COMPOSITION_SCHEMA)
signup_payload_validator = ValidationEngine(SIGNUP_PAYLOAD_SCHEMA)


__all__ = [
    "COMPOSITION_SCHEMA",
    "SIGNUP_PAYLOAD_SCHEMA",
    "ValidationEngine",
    "ValidationResult",
    "composition_validator",
    "signup_payload_validator",
]
