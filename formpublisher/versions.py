"""Version store and per-tenant activation state.

VersionStore keeps named snapshots of a Composition per tenant. Records are
immutable Version values; every write replaces the stored value. The
``is_active`` flag is written only by the activation orchestrator, through
``deactivate_all`` and ``activate`` issued inside ``atomic``.

ActivationStateStore keeps the StoreActivationState singleton of each tenant:
the published composition, the published flag, and the script registration id.

Both stores are in-memory and thread-safe. Every read and write takes the
tenant's re-entrant lock, so a sequence of writes wrapped in ``atomic`` is
never observed half-applied.
"""

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
import itertools
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from dateutil.parser import isoparse

from formpublisher.composition import normalize
from formpublisher.errors import (
    ActiveVersionError,
    CompositionError,
    FormPublisherError,
    VersionNotFoundError,
)
from formpublisher.events import EventEmitter, utcnow
from formpublisher.types import Actor, Composition, EventType, VersionKind
from formpublisher.validation import ValidationEngine, composition_validator

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
CompositionInput = Union[Composition, Dict[str, Any]]


@dataclass(frozen=True)
class Version:
    """A named, persisted snapshot of a Composition.

    Attributes:
        id: Version identifier
        tenant: Owning store
        name: User-facing name (not required to be unique)
        kind: draft or version; only versions can be activated
        composition: Snapshot of fields and theme
        is_active: Whether this is the published version
        created_at: Creation time (UTC)
        updated_at: Time of the last rename or re-save (UTC)
    """
    id: str
    tenant: str
    name: str
    kind: VersionKind
    composition: Composition
    is_active: bool
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant": self.tenant,
            "name": self.name,
            "type": self.kind.value,
            "form": self.composition.to_dict(),
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        return cls(
            id=data["id"],
            tenant=data["tenant"],
            name=data["name"],
            kind=VersionKind(data["type"]),
            composition=Composition.from_dict(data["form"]),
            is_active=bool(data.get("isActive", False)),
            created_at=isoparse(data["createdAt"]),
            updated_at=isoparse(data["updatedAt"]),
        )


@dataclass(frozen=True)
class StoreActivationState:
    """What the storefront currently serves for one tenant.

    ``is_published`` is never true without an ``active_composition``.

    Examples:
        >>> StoreActivationState(tenant="store_1").is_published
        False
        >>> StoreActivationState(tenant="store_1", is_published=True)
        Traceback (most recent call last):
        ...
        ValueError: A published store needs an active composition
    """
    tenant: str
    active_composition: Optional[Composition] = None
    is_published: bool = False
    registered_script_ref: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.is_published and self.active_composition is None:
            raise ValueError("A published store needs an active composition")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant": self.tenant,
            "activeComposition": (
                self.active_composition.to_dict() if self.active_composition else None
            ),
            "isPublished": self.is_published,
            "registeredScriptRef": self.registered_script_ref,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreActivationState":
        active = data.get("activeComposition")
        updated_at = data.get("updatedAt")
        return cls(
            tenant=data["tenant"],
            active_composition=Composition.from_dict(active) if active else None,
            is_published=bool(data.get("isPublished", False)),
            registered_script_ref=data.get("registeredScriptRef") or None,
            updated_at=isoparse(updated_at) if updated_at else None,
        )


class _TenantLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, tenant: str) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(tenant, threading.RLock())


class VersionStore:
    """In-memory store of Version records, scoped by tenant.

    Compositions are normalized and schema-validated on every persist.

    Examples:
        >>> store = VersionStore()
        >>> vid = store.save("store_1", "Spring", VersionKind.VERSION, Composition())
        >>> store.get("store_1", vid).name
        'Spring'
        >>> [f.role.value for f in store.get("store_1", vid).composition.fields]
        ['first_name', 'last_name', 'email', 'password']
    """

    def __init__(
        self,
        emitter: Optional[EventEmitter] = None,
        clock: Optional[Clock] = None,
        validator: ValidationEngine = composition_validator,
    ):
        self._emitter = emitter or EventEmitter()
        self._clock = clock or utcnow
        self._validator = validator
        self._records: Dict[str, Dict[str, Version]] = {}
        # Write sequence per version id; breaks updated_at ties in list().
        self._write_seq: Dict[str, int] = {}
        self._counter = itertools.count()
        self._locks = _TenantLocks()

    @contextmanager
    def atomic(self, tenant: str) -> Iterator[None]:
        """Hold the tenant lock so the enclosed writes appear as one."""
        with self._locks.get(tenant):
            yield

    def _prepare(self, composition: CompositionInput) -> Composition:
        if isinstance(composition, dict):
            result = self._validator.validate(composition)
            if not result.is_valid:
                raise CompositionError("Form validation error", fields=result.errors)
            composition = Composition.from_dict(composition)
        normalized = normalize(composition)
        result = self._validator.validate(normalized.to_dict())
        if not result.is_valid:
            raise CompositionError("Form validation error", fields=result.errors)
        return normalized

    def _put(self, version: Version) -> None:
        self._records.setdefault(version.tenant, {})[version.id] = version
        self._write_seq[version.id] = next(self._counter)

    def _require(self, tenant: str, version_id: str) -> Version:
        version = self._records.get(tenant, {}).get(version_id)
        if version is None:
            raise VersionNotFoundError(tenant, version_id)
        return version

    def save(
        self,
        tenant: str,
        name: str,
        kind: Union[VersionKind, str],
        composition: CompositionInput,
        actor: Optional[Actor] = None,
    ) -> str:
        """Persist a new snapshot and return its id.

        Raises:
            CompositionError: If the composition fails schema validation
            FormPublisherError: If the name is blank
        """
        name = (name or "").strip()
        if not name:
            raise FormPublisherError("Version name is required")
        kind = VersionKind(kind)
        snapshot = self._prepare(composition)
        with self._locks.get(tenant):
            now = self._clock()
            version = Version(
                id=f"ver_{uuid.uuid4().hex[:16]}",
                tenant=tenant,
                name=name,
                kind=kind,
                composition=snapshot,
                is_active=False,
                created_at=now,
                updated_at=now,
            )
            self._put(version)
        logger.info(
            f"Form version saved: tenant={tenant} id={version.id} type={kind.value}"
        )
        self._emitter.emit_new(
            EventType.VERSION_SAVED,
            tenant,
            {"versionId": version.id, "name": name, "type": kind.value},
            actor,
        )
        return version.id

    def rename(
        self,
        tenant: str,
        version_id: str,
        name: str,
        actor: Optional[Actor] = None,
    ) -> Version:
        name = (name or "").strip()
        if not name:
            raise FormPublisherError("Version name is required")
        with self._locks.get(tenant):
            current = self._require(tenant, version_id)
            version = replace(current, name=name, updated_at=self._clock())
            self._put(version)
        self._emitter.emit_new(
            EventType.VERSION_RENAMED,
            tenant,
            {"versionId": version_id, "name": name},
            actor,
        )
        return version

    def update(
        self,
        tenant: str,
        version_id: str,
        composition: CompositionInput,
        actor: Optional[Actor] = None,
    ) -> Version:
        """Re-save a version with a new composition snapshot.

        The active flag is left untouched: re-saving the active version does not
        republish it.
        """
        snapshot = self._prepare(composition)
        with self._locks.get(tenant):
            current = self._require(tenant, version_id)
            version = replace(
                current, composition=snapshot, updated_at=self._clock()
            )
            self._put(version)
        logger.info(f"Form version updated: tenant={tenant} id={version_id}")
        self._emitter.emit_new(
            EventType.VERSION_UPDATED, tenant, {"versionId": version_id}, actor
        )
        return version

    def get(self, tenant: str, version_id: str) -> Version:
        """Return a version.

        Raises:
            VersionNotFoundError: If no such version exists for the tenant
        """
        with self._locks.get(tenant):
            return self._require(tenant, version_id)

    def list(self, tenant: str) -> List[Version]:
        """All versions of a tenant, most recently updated first."""
        with self._locks.get(tenant):
            versions = list(self._records.get(tenant, {}).values())
            return sorted(
                versions,
                key=lambda v: (v.updated_at, self._write_seq[v.id]),
                reverse=True,
            )

    def active_versions(self, tenant: str) -> List[Version]:
        return [v for v in self.list(tenant) if v.is_active]

    def name_exists(
        self, tenant: str, name: str, exclude_id: Optional[str] = None
    ) -> bool:
        wanted = (name or "").strip()
        if not wanted:
            return False
        return any(v.name == wanted and v.id != exclude_id for v in self.list(tenant))

    def delete(
        self, tenant: str, version_id: str, actor: Optional[Actor] = None
    ) -> Version:
        """Remove an inactive version.

        Raises:
            ActiveVersionError: If the version is active (withdraw it first)
            VersionNotFoundError: If no such version exists
        """
        with self._locks.get(tenant):
            version = self._require(tenant, version_id)
            if version.is_active:
                raise ActiveVersionError(tenant, version_id)
            del self._records[tenant][version_id]
            self._write_seq.pop(version_id, None)
        logger.info(f"Form version deleted: tenant={tenant} id={version_id}")
        self._emitter.emit_new(
            EventType.VERSION_DELETED, tenant, {"versionId": version_id}, actor
        )
        return version

    def deactivate_all(self, tenant: str) -> int:
        """Clear the active flag on every version of the tenant.

        Does not touch StoreActivationState. Returns the number of versions
        that were active.
        """
        with self._locks.get(tenant):
            changed = 0
            records = self._records.get(tenant, {})
            for version in list(records.values()):
                if version.is_active:
                    records[version.id] = replace(version, is_active=False)
                    changed += 1
        self._emitter.emit_new(
            EventType.VERSIONS_DEACTIVATED, tenant, {"count": changed}
        )
        return changed

    def activate(self, tenant: str, version_id: str) -> Version:
        """Set the active flag on one version. Other flags are not touched."""
        with self._locks.get(tenant):
            version = self._require(tenant, version_id)
            if not version.is_active:
                version = replace(version, is_active=True)
                self._records[tenant][version_id] = version
            return version


class ActivationStateStore:
    """In-memory StoreActivationState per tenant.

    Written only by the activation orchestrator; read by anything that needs
    the published form.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow
        self._states: Dict[str, StoreActivationState] = {}
        self._locks = _TenantLocks()

    @contextmanager
    def atomic(self, tenant: str) -> Iterator[None]:
        with self._locks.get(tenant):
            yield

    def get(self, tenant: str) -> StoreActivationState:
        with self._locks.get(tenant):
            return self._states.get(tenant) or StoreActivationState(tenant=tenant)

    def put(self, state: StoreActivationState) -> StoreActivationState:
        with self._locks.get(state.tenant):
            stored = replace(state, updated_at=self._clock())
            self._states[state.tenant] = stored
            return stored


__all__ = [
    "Version",
    "StoreActivationState",
    "VersionStore",
    "ActivationStateStore",
]
