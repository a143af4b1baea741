"""Core type definitions for formpublisher.

This module defines the fundamental types shared by every component:
- FieldKind / FieldRole: what a form field is and which semantic slot it fills
- Field / FieldOption / Composition: the ordered, constraint-bearing form model
- VersionKind: draft vs. activatable version snapshots
- RequestStatus: review lifecycle of a signup request
- StepStatus / StepId / OperationKind: the publish/withdraw progress contract
- EventType: lifecycle events emitted to listeners
- Actor: identity of whoever triggered an operation

Values are immutable. Editing operations (see ``formpublisher.composition``)
return new instances instead of mutating existing ones.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class FieldKind(str, Enum):
    """Input kinds a form field can render as."""
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    NUMBER = "number"
    TEXTAREA = "textarea"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    DATE = "date"
    FILE = "file"
    URL = "url"


class FieldRole(str, Enum):
    """Semantic roles. The first four are the mandatory core roles."""
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    EMAIL = "email"
    PASSWORD = "password"
    COUNTRY = "country"
    STATE = "state"


class VersionKind(str, Enum):
    """Kinds of saved form snapshots. Only VERSION can be activated."""
    DRAFT = "draft"
    VERSION = "version"


class RequestStatus(str, Enum):
    """Review states of a signup request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class StepStatus(str, Enum):
    """Status of a single orchestrator step as shown to progress listeners."""
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"


class StepId(str, Enum):
    """Stable step identifiers of the publish and withdraw operations."""
    GENERATE_ARTIFACT = "generate-artifact"
    REGISTER_SCRIPT = "register-script"
    COMMIT_DURABLE_STATE = "commit-durable-state"
    SETTLE = "settle"
    UNREGISTER_SCRIPT = "unregister-script"
    CLEAR_DURABLE_STATE = "clear-durable-state"
    DEACTIVATE_VERSIONS = "deactivate-versions"


class OperationKind(str, Enum):
    """Multi-step operations driven by the activation orchestrator."""
    PUBLISH = "publish"
    WITHDRAW = "withdraw"


class EventType(str, Enum):
    """Lifecycle event types delivered through the EventEmitter."""
    VERSION_SAVED = "version.saved"
    VERSION_RENAMED = "version.renamed"
    VERSION_UPDATED = "version.updated"
    VERSION_DELETED = "version.deleted"
    VERSIONS_DEACTIVATED = "versions.deactivated"
    OPERATION_STARTED = "operation.started"
    OPERATION_PROGRESS = "operation.progress"
    OPERATION_FINISHED = "operation.finished"
    STATE_RECONFIRMED = "state.reconfirmed"
    SIGNUP_RECEIVED = "signup.received"
    SIGNUP_DUPLICATE = "signup.duplicate"
    SIGNUP_REVIEWED = "signup.reviewed"


class ErrorCode(str, Enum):
    """Stable error codes carried by every FormPublisherError.

    Codes are part of the wire contract: transports map them to responses
    (e.g. DUPLICATE becomes a 409 on the signup intake endpoint).
    """
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    IMMUTABLE_FIELD = "immutable_field"
    GENERATION_FAILED = "generation_failed"
    REGISTRY_FAILED = "registry_failed"
    REGISTRY_NOT_FOUND = "registry_not_found"
    CONCURRENT_OPERATION = "concurrent_operation"
    ACTIVE_VERSION = "active_version"
    DRAFT_ACTIVATION = "draft_activation"
    DUPLICATE = "DUPLICATE"
    INVALID_TRANSITION = "invalid_transition"


class FieldErrorCode(str, Enum):
    """Validation error codes for individual field failures."""
    REQUIRED = "required"
    INVALID_TYPE = "invalid_type"
    INVALID_FORMAT = "invalid_format"
    INVALID_VALUE = "invalid_value"
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    CUSTOM = "custom"


class ActorKind(str, Enum):
    """Who is acting: a store admin, the storefront script, or the system."""
    ADMIN = "admin"
    STOREFRONT = "storefront"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Identity of an actor performing an operation.

    Attributes:
        kind: Type of actor
        id: Unique identifier for this actor
        name: Optional display name

    Examples:
        >>> admin = Actor(kind=ActorKind.ADMIN, id="user_42", name="Store Owner")
        >>> admin.to_dict()
        {'kind': 'admin', 'id': 'user_42', 'name': 'Store Owner'}
    """
    kind: ActorKind
    id: str
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        result: Dict[str, Any] = {
            "kind": self.kind.value if isinstance(self.kind, ActorKind) else self.kind,
            "id": self.id,
        }
        if self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Actor":
        """Create Actor from dict."""
        return cls(kind=ActorKind(data["kind"]), id=data["id"], name=data.get("name"))


SYSTEM_ACTOR = Actor(kind=ActorKind.SYSTEM, id="formpublisher")


@dataclass(frozen=True)
class FieldOption:
    """A single choice of a select/radio/checkbox field."""
    label: str
    value: str

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "value": self.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldOption":
        return cls(label=str(data.get("label", "")), value=str(data.get("value", "")))


# Keys consumed by Field.from_dict; everything else is opaque style.
_FIELD_KEYS = frozenset(
    {"id", "type", "kind", "label", "placeholder", "required", "locked",
     "role", "options", "pairGroup", "rowGroup"}
)


@dataclass(frozen=True)
class Field:
    """A single input definition inside a Composition.

    Display attributes (colors, sizes, padding, ...) are opaque to the engine
    and carried verbatim in ``style``.

    Attributes:
        id: Identifier, unique within a composition
        kind: Input kind
        label: Display label
        placeholder: Placeholder text
        required: Whether a value must be submitted
        locked: Locked fields cannot be deleted or unrequired
        role: Optional semantic role (core roles are mandatory)
        options: Ordered choices for select/radio/checkbox fields
        pair_group: Token shared by exactly two adjacent fields rendered side by side
        style: Opaque display attributes

    Examples:
        >>> f = Field(id="fld_1", kind="select", label="Shirt Size",
        ...           options=[{"label": "Small", "value": "s"}])
        >>> f.kind
        <FieldKind.SELECT: 'select'>
        >>> f.options[0].value
        's'
    """
    id: str
    kind: FieldKind
    label: str = ""
    placeholder: str = ""
    required: bool = False
    locked: bool = False
    role: Optional[FieldRole] = None
    options: Optional[Tuple[FieldOption, ...]] = None
    pair_group: Optional[str] = None
    style: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        """Normalize enum strings and option lists."""
        if not isinstance(self.id, str):
            object.__setattr__(self, "id", str(self.id))
        if isinstance(self.kind, str) and not isinstance(self.kind, FieldKind):
            object.__setattr__(self, "kind", FieldKind(self.kind))
        if isinstance(self.role, str) and not isinstance(self.role, FieldRole):
            object.__setattr__(self, "role", FieldRole(self.role))
        if self.options is not None and not isinstance(self.options, tuple):
            object.__setattr__(
                self,
                "options",
                tuple(
                    o if isinstance(o, FieldOption) else FieldOption.from_dict(o)
                    for o in self.options
                ),
            )
        if self.pair_group is not None and not isinstance(self.pair_group, str):
            object.__setattr__(self, "pair_group", str(self.pair_group))

    @property
    def is_paired(self) -> bool:
        return self.pair_group is not None

    def with_changes(self, **changes: Any) -> "Field":
        """Return a copy with the given attributes replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization (style keys are inlined)."""
        result: Dict[str, Any] = dict(self.style)
        result.update({
            "id": self.id,
            "type": self.kind.value,
            "label": self.label,
            "placeholder": self.placeholder,
            "required": self.required,
            "locked": self.locked,
        })
        if self.role is not None:
            result["role"] = self.role.value
        if self.options is not None:
            result["options"] = [o.to_dict() for o in self.options]
        result["pairGroup"] = self.pair_group
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Field":
        """Create Field from dict.

        Accepts ``rowGroup`` as an alias of ``pairGroup`` and ``kind`` as an
        alias of ``type``. Unrecognized keys are kept as style.
        """
        pair_group = data.get("pairGroup", data.get("rowGroup"))
        return cls(
            id=str(data["id"]),
            kind=FieldKind(data.get("type", data.get("kind", FieldKind.TEXT.value))),
            label=data.get("label") or "",
            placeholder=data.get("placeholder") or "",
            required=bool(data.get("required", False)),
            locked=bool(data.get("locked", False)),
            role=FieldRole(data["role"]) if data.get("role") else None,
            options=data.get("options"),
            pair_group=str(pair_group) if pair_group is not None else None,
            style={k: v for k, v in data.items() if k not in _FIELD_KEYS},
        )


@dataclass(frozen=True)
class Composition:
    """An ordered sequence of Fields plus an opaque theme record.

    Instances are snapshots: editing helpers always build new ones.

    Examples:
        >>> c = Composition(fields=[{"id": "a", "type": "text", "label": "Company"}])
        >>> c.ids()
        ['a']
        >>> c.find("missing") is None
        True
    """
    fields: Tuple[Field, ...] = ()
    theme: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        fields = self.fields
        typed = isinstance(fields, tuple) and all(isinstance(f, Field) for f in fields)
        if not typed:
            object.__setattr__(
                self,
                "fields",
                tuple(
                    f if isinstance(f, Field) else Field.from_dict(f) for f in fields
                ),
            )

    def __len__(self) -> int:
        return len(self.fields)

    def ids(self) -> List[str]:
        return [f.id for f in self.fields]

    def find(self, field_id: str) -> Optional[int]:
        """Index of the field with ``field_id``, or None."""
        for index, f in enumerate(self.fields):
            if f.id == field_id:
                return index
        return None

    def with_fields(self, fields: Iterable[Field]) -> "Composition":
        return Composition(fields=tuple(fields), theme=dict(self.theme))

    def with_theme(self, theme: Dict[str, Any]) -> "Composition":
        return Composition(fields=self.fields, theme=dict(theme))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for serialization."""
        return {
            "fields": [f.to_dict() for f in self.fields],
            "theme": dict(self.theme),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Composition":
        """Create Composition from dict."""
        return cls(
            fields=tuple(Field.from_dict(f) for f in data.get("fields") or []),
            theme=dict(data.get("theme") or {}),
        )


__all__ = [
    "FieldKind",
    "FieldRole",
    "VersionKind",
    "RequestStatus",
    "StepStatus",
    "StepId",
    "OperationKind",
    "EventType",
    "ErrorCode",
    "FieldErrorCode",
    "ActorKind",
    "Actor",
    "SYSTEM_ACTOR",
    "FieldOption",
    "Field",
    "Composition",
]
