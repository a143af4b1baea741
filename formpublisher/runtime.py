"""FormRuntime: one entry point wiring the stores, orchestrator and intake.

The runtime owns the collaborators of a form publisher process and exposes
the operations an admin UI or a storefront endpoint needs. Editing happens in
an EditingSession, a small buffer over the pure composition functions that
tracks unsaved changes against the last saved snapshot.

Usage:
    >>> from formpublisher.runtime import FormRuntime
    >>> from formpublisher.types import FieldKind
    >>> runtime = FormRuntime()
    >>> session = runtime.session("store_1")
    >>> shirt_id = session.add_field(FieldKind.SELECT, "Shirt Size")
    >>> session.is_dirty
    True
    >>> version_id = session.save_as("Spring")
    >>> session.is_dirty
    False
"""

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from formpublisher import composition as model
from formpublisher.artifacts import ArtifactGenerator, SignupScriptGenerator
from formpublisher.config import Settings, get_settings
from formpublisher.errors import FormPublisherError
from formpublisher.events import EventEmitter, ProgressListener
from formpublisher.intake import (
    RequestPage,
    RequestStats,
    SignupIntake,
    SignupRequest,
    SubmitResult,
)
from formpublisher.orchestrator import ActivationOrchestrator, OperationResult
from formpublisher.registry import HttpScriptRegistry, ScriptRegistry
from formpublisher.singleflight import SingleFlight
from formpublisher.types import (
    Actor,
    Composition,
    FieldKind,
    RequestStatus,
    VersionKind,
)
from formpublisher.versions import (
    ActivationStateStore,
    StoreActivationState,
    Version,
    VersionStore,
)

logger = logging.getLogger(__name__)


class EditingSession:
    """Editing buffer for one composition of one tenant.

    Every edit replaces ``composition`` with a new normalized snapshot. The
    previous snapshots are kept for ``undo``.
    """

    def __init__(
        self, tenant: str, versions: VersionStore, actor: Optional[Actor] = None
    ):
        self.tenant = tenant
        self.versions = versions
        self.actor = actor
        self.version_id: Optional[str] = None
        self.composition = model.normalize(Composition(theme=model.default_theme()))
        self._saved = self.composition
        self._history: List[Composition] = []

    @property
    def is_dirty(self) -> bool:
        return not model.same_content(self.composition, self._saved)

    def _apply(self, updated: Composition) -> Composition:
        if updated is not self.composition:
            self._history.append(self.composition)
            self.composition = updated
        return updated

    def load_version(self, version_id: str) -> Version:
        """Replace the buffer with a saved version. Unsaved changes are dropped."""
        version = self.versions.get(self.tenant, version_id)
        self.version_id = version.id
        self.composition = model.normalize(version.composition)
        self._saved = self.composition
        self._history.clear()
        return version

    def undo(self) -> bool:
        if not self._history:
            return False
        self.composition = self._history.pop()
        return True

    def add_field(
        self,
        kind: Union[FieldKind, str],
        label: str,
        index: Optional[int] = None,
        **attrs: Any,
    ) -> str:
        """Add a new field and return its id."""
        new = model.make_field(kind, label, **attrs)
        self._apply(model.add_field(self.composition, new, index))
        return new.id

    def update_field(self, field_id: str, **changes: Any) -> Composition:
        return self._apply(model.update_field(self.composition, field_id, **changes))

    def delete_field(self, field_id: str) -> Composition:
        return self._apply(model.delete(self.composition, field_id))

    def pair(self, field_id: str) -> Composition:
        return self._apply(model.pair(self.composition, field_id))

    def unpair(self, field_id: str) -> Composition:
        return self._apply(model.unpair(self.composition, field_id))

    def toggle_pair(self, field_id: str) -> Composition:
        return self._apply(model.toggle_pair(self.composition, field_id))

    def reorder(self, from_id: str, to_index: int) -> Composition:
        return self._apply(model.reorder(self.composition, from_id, to_index))

    def set_theme(self, theme: Dict[str, Any]) -> Composition:
        merged = dict(self.composition.theme)
        merged.update(theme)
        theme = model.normalize_theme_layout(merged)
        return self._apply(self.composition.with_theme(theme))

    def save_as(
        self, name: str, kind: Union[VersionKind, str] = VersionKind.VERSION
    ) -> str:
        """Store the buffer as a new version and continue editing that one."""
        version_id = self.versions.save(
            self.tenant, name, kind, self.composition, self.actor
        )
        self.load_version(version_id)
        return version_id

    def save(self) -> Version:
        """Re-save the loaded version with the buffer contents.

        Raises:
            FormPublisherError: If no version is loaded (use save_as)
        """
        if self.version_id is None:
            raise FormPublisherError("No version loaded; use save_as to create one")
        version = self.versions.update(
            self.tenant, self.version_id, self.composition, self.actor
        )
        self.composition = version.composition
        self._saved = version.composition
        return version


class FormRuntime:
    """Runtime for form versions, publishing and signup intake.

    Collaborators default to the in-memory stores, the signup script generator
    and the HTTP script registry configured by ``settings``.

    Attributes:
        settings: Active configuration
        emitter: Receives every lifecycle event of this runtime
        versions: Version store
        states: Activation state store
        orchestrator: Publish/withdraw driver
        intake: Signup intake
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[ScriptRegistry] = None,
        generator: Optional[ArtifactGenerator] = None,
        emitter: Optional[EventEmitter] = None,
        clock: Optional[Callable] = None,
    ):
        self.settings = settings or get_settings()
        self.emitter = emitter or EventEmitter()
        self.versions = VersionStore(emitter=self.emitter, clock=clock)
        self.states = ActivationStateStore(clock=clock)
        self.orchestrator = ActivationOrchestrator(
            versions=self.versions,
            states=self.states,
            generator=(
                generator or SignupScriptGenerator(self.settings.script_container_id)
            ),
            registry=registry or HttpScriptRegistry(self.settings),
            settings=self.settings,
            emitter=self.emitter,
            guard=SingleFlight(),
        )
        self.intake = SignupIntake(
            emitter=self.emitter,
            clock=clock,
            page_size=self.settings.signup_page_size,
        )

    # Versions

    def session(
        self,
        tenant: str,
        version_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> EditingSession:
        session = EditingSession(tenant, self.versions, actor)
        if version_id is not None:
            session.load_version(version_id)
        return session

    def list_versions(self, tenant: str) -> List[Version]:
        return self.versions.list(tenant)

    def rename_version(
        self,
        tenant: str,
        version_id: str,
        name: str,
        actor: Optional[Actor] = None,
    ) -> Version:
        return self.versions.rename(tenant, version_id, name, actor)

    def name_exists(
        self, tenant: str, name: str, exclude_id: Optional[str] = None
    ) -> bool:
        return self.versions.name_exists(tenant, name, exclude_id)

    # Activation

    async def publish(
        self,
        tenant: str,
        version_id: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        return await self.orchestrator.publish(tenant, version_id, listener, actor)

    async def withdraw(
        self,
        tenant: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        return await self.orchestrator.withdraw(tenant, listener, actor)

    async def delete_version(
        self,
        tenant: str,
        version_id: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> Optional[OperationResult]:
        return await self.orchestrator.delete_version(
            tenant, version_id, listener, actor
        )

    def activation_state(self, tenant: str) -> StoreActivationState:
        return self.states.get(tenant)

    def published_form(self, tenant: str) -> Optional[Dict[str, Any]]:
        """Configuration the storefront script renders, or None when unpublished."""
        state = self.states.get(tenant)
        if not state.is_published:
            return None
        published = state.active_composition.to_dict()
        return {
            "fields": published["fields"],
            "theme": model.normalize_theme_layout(published["theme"]),
            "containerId": self.settings.script_container_id,
        }

    # Signup intake

    def submit_signup(
        self,
        tenant: str,
        payload: Dict[str, Any],
        actor: Optional[Actor] = None,
        idempotency_key: Optional[str] = None,
    ) -> SubmitResult:
        return self.intake.submit(tenant, payload, actor, idempotency_key)

    def list_signup_requests(
        self,
        tenant: str,
        status: Optional[Union[RequestStatus, str]] = None,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> RequestPage:
        return self.intake.list_requests(tenant, status, page_size, cursor)

    def signup_stats(self, tenant: str, now: Optional[datetime] = None) -> RequestStats:
        return self.intake.stats(tenant, now)

    def review_signup(
        self,
        tenant: str,
        request_id: str,
        status: Union[RequestStatus, str],
        actor: Optional[Actor] = None,
    ) -> SignupRequest:
        return self.intake.review(tenant, request_id, status, actor)


__all__ = ["EditingSession", "FormRuntime"]
