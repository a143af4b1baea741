"""Error taxonomy and structured error envelopes for formpublisher.

Every failure raised by the library is a FormPublisherError subclass carrying a
stable ErrorCode. Errors serialize to a single envelope (ErrorDetail) with
optional field-level details (FieldError), so a transport layer can turn any
of them into a response without string matching.

Registry outcomes are typed: an "already gone" response from the script
registry is a NotFoundRegistryError, matched structurally by the orchestrator.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from formpublisher.types import ErrorCode, FieldErrorCode


@dataclass(frozen=True)
class FieldError:
    """Per-field validation error details.

    Attributes:
        path: Dot-notation field path (e.g., "data.company", "email")
        code: Specific validation error code
        message: Human-readable error description
        expected: Optional - what was expected
        received: Optional - what was actually received

    Examples:
        >>> err = FieldError(
        ...     path="email",
        ...     code=FieldErrorCode.INVALID_FORMAT,
        ...     message="Invalid email format",
        ...     expected="email",
        ...     received="not-an-email"
        ... )
        >>> err.path
        'email'
    """
    path: str
    code: FieldErrorCode
    message: str
    expected: Optional[Any] = None
    received: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "path": self.path,
            "code": (
                self.code.value if isinstance(self.code, FieldErrorCode) else self.code
            ),
            "message": self.message,
        }
        if self.expected is not None:
            result["expected"] = self.expected
        if self.received is not None:
            result["received"] = self.received
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldError":
        """Create FieldError from dict."""
        return cls(
            path=data["path"],
            code=FieldErrorCode(data["code"]),
            message=data["message"],
            expected=data.get("expected"),
            received=data.get("received"),
        )


@dataclass(frozen=True)
class ErrorDetail:
    """Serializable description of a failure.

    Attributes:
        code: Stable error code
        retryable: Whether repeating the same call may succeed
        message: Human-readable summary
        fields: Optional list of per-field validation errors
        context: Optional extra data (ids, statuses) useful to the caller
    """
    code: ErrorCode
    retryable: bool
    message: str
    fields: Optional[List[FieldError]] = None
    context: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "ok": False,
            "code": self.code.value,
            "retryable": self.retryable,
            "message": self.message,
        }
        if self.fields is not None:
            result["fields"] = [f.to_dict() for f in self.fields]
        if self.context:
            result["context"] = self.context
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorDetail":
        """Create ErrorDetail from dict."""
        fields = None
        if data.get("fields") is not None:
            fields = [FieldError.from_dict(f) for f in data["fields"]]
        return cls(
            code=ErrorCode(data["code"]),
            retryable=data["retryable"],
            message=data["message"],
            fields=fields,
            context=data.get("context"),
        )


class FormPublisherError(Exception):
    """Base class of every error raised by formpublisher."""

    code: ErrorCode = ErrorCode.INVALID
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        fields: Optional[List[FieldError]] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.fields = fields
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            retryable=self.retryable,
            message=self.message,
            fields=self.fields,
            context=self.context or None,
        )


# Composition model

class CompositionError(FormPublisherError):
    """A composition violates one of its structural invariants."""


class DuplicateFieldIdError(CompositionError):
    """Two fields in one composition share an id."""

    def __init__(self, field_id: str):
        super().__init__(f"Duplicate field id '{field_id}'", field_id=field_id)
        self.field_id = field_id


class FieldNotFoundError(FormPublisherError, KeyError):
    """No field with the given id exists in the composition."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, field_id: str):
        super().__init__(f"Field '{field_id}' not found", field_id=field_id)
        self.field_id = field_id

    def __str__(self) -> str:
        return self.message


class ImmutableFieldError(FormPublisherError):
    """Attempt to delete, unrequire or re-role a locked core field."""

    code = ErrorCode.IMMUTABLE_FIELD

    def __init__(self, field_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Field '{field_id}' is required and cannot be removed",
            field_id=field_id,
        )
        self.field_id = field_id


# Version store

class VersionNotFoundError(FormPublisherError, KeyError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, tenant: str, version_id: str):
        super().__init__(
            f"Version '{version_id}' not found", tenant=tenant, version_id=version_id
        )
        self.tenant = tenant
        self.version_id = version_id

    def __str__(self) -> str:
        return self.message


class ActiveVersionError(FormPublisherError):
    """An active version cannot be deleted without withdrawing it first."""

    code = ErrorCode.ACTIVE_VERSION

    def __init__(self, tenant: str, version_id: str):
        super().__init__(
            f"Version '{version_id}' is active; withdraw it before deleting",
            tenant=tenant,
            version_id=version_id,
        )
        self.version_id = version_id


class DraftActivationError(FormPublisherError):
    code = ErrorCode.DRAFT_ACTIVATION

    def __init__(self, tenant: str, version_id: str):
        super().__init__(
            "Draft forms cannot be activated. Save it as a version first.",
            tenant=tenant,
            version_id=version_id,
        )
        self.version_id = version_id


# External collaborators

class GenerationError(FormPublisherError):
    """The artifact generator failed. Fatal for publish."""

    code = ErrorCode.GENERATION_FAILED
    retryable = True


class RegistryError(FormPublisherError):
    """The script registry rejected or failed a request."""

    code = ErrorCode.REGISTRY_FAILED
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        script_id: Optional[str] = None,
    ):
        super().__init__(message, status_code=status_code, script_id=script_id)
        self.status_code = status_code
        self.script_id = script_id


class NotFoundRegistryError(RegistryError):
    """The registry has no resource with the given script id."""

    code = ErrorCode.REGISTRY_NOT_FOUND
    retryable = False


# Orchestration

class ConcurrentOperationError(FormPublisherError):
    """Another publish/withdraw is already running for this tenant."""

    code = ErrorCode.CONCURRENT_OPERATION
    retryable = True

    def __init__(self, tenant: str):
        super().__init__(
            f"An operation is already in progress for '{tenant}'", tenant=tenant
        )
        self.tenant = tenant


# Signup intake

class InvalidSubmissionError(FormPublisherError):
    """A signup payload failed schema validation."""

    code = ErrorCode.INVALID


class DuplicateSubmissionError(FormPublisherError):
    """A request for the same canonical email already exists."""

    code = ErrorCode.DUPLICATE

    def __init__(
        self, email: str, existing_id: str, existing_status: Optional[str] = None
    ):
        super().__init__(
            "You have already submitted a request. "
            "Please wait for approval or contact the store admin.",
            existing_id=existing_id,
            existing_status=existing_status,
        )
        self.email = email
        self.existing_id = existing_id
        self.existing_status = existing_status


class RequestNotFoundError(FormPublisherError, KeyError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, tenant: str, request_id: str):
        super().__init__(
            f"Signup request '{request_id}' not found",
            tenant=tenant,
            request_id=request_id,
        )
        self.request_id = request_id

    def __str__(self) -> str:
        return self.message


__all__ = [
    "FieldError",
    "ErrorDetail",
    "FormPublisherError",
    "CompositionError",
    "DuplicateFieldIdError",
    "FieldNotFoundError",
    "ImmutableFieldError",
    "VersionNotFoundError",
    "ActiveVersionError",
    "DraftActivationError",
    "GenerationError",
    "RegistryError",
    "NotFoundRegistryError",
    "ConcurrentOperationError",
    "InvalidSubmissionError",
    "DuplicateSubmissionError",
    "RequestNotFoundError",
]
