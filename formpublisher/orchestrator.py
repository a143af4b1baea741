"""Activation orchestrator: publish and withdraw a form version.

Publishing keeps three independently failing resources consistent: the
version records, the generated storefront script, and the script's
registration with the storefront. Each operation is a fixed list of named
steps; every status change is delivered to the caller as an immutable
ProgressSnapshot.

Publish(version):
    generate-artifact     render the script (fatal on failure)
    register-script       update the stored registration, or create one when
                          there is none or the registry no longer has it;
                          other failures are recorded and the operation goes on
    commit-durable-state  deactivate every version, activate the target and
                          record the published composition (re-raises)
    settle                re-read and confirm, then re-confirm after a delay

Withdraw():
    unregister-script     delete the registration; "not found" is success
    clear-durable-state   unpublish, and drop the registration id once the
                          registration is gone (re-raises)
    deactivate-versions   deactivate every version (re-raises)
    settle

A registration that could not be deleted stays recorded, so a retried
withdraw deletes it and the next publish updates it rather than creating a
second one.

Operations are single-flight per tenant: a second call while one is running
fails with ConcurrentOperationError. Each external call is bounded by
``Settings.external_call_timeout_seconds``; a timeout counts as a failure of
that step. Nothing is retried automatically.
"""

import asyncio
from dataclasses import dataclass, replace
import logging
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from formpublisher.artifacts import ArtifactGenerator, ArtifactRef, artifact_ref_for
from formpublisher.config import Settings, get_settings
from formpublisher.errors import (
    DraftActivationError,
    FormPublisherError,
    NotFoundRegistryError,
)
from formpublisher.events import (
    EventEmitter,
    ProgressListener,
    ProgressSnapshot,
    StepView,
)
from formpublisher.registry import ScriptRegistry
from formpublisher.singleflight import SingleFlight
from formpublisher.state_machine import StepStateMachine
from formpublisher.types import (
    Actor,
    EventType,
    OperationKind,
    StepId,
    StepStatus,
    VersionKind,
)
from formpublisher.versions import (
    ActivationStateStore,
    StoreActivationState,
    Version,
    VersionStore,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


STEP_LABELS: Dict[StepId, str] = {
    StepId.GENERATE_ARTIFACT: "Generating form script",
    StepId.REGISTER_SCRIPT: "Registering script with the storefront",
    StepId.COMMIT_DURABLE_STATE: "Activating version",
    StepId.SETTLE: "Confirming changes",
    StepId.UNREGISTER_SCRIPT: "Removing script from the storefront",
    StepId.CLEAR_DURABLE_STATE: "Unpublishing form",
    StepId.DEACTIVATE_VERSIONS: "Deactivating versions",
}

PUBLISH_STEPS: Tuple[StepId, ...] = (
    StepId.GENERATE_ARTIFACT,
    StepId.REGISTER_SCRIPT,
    StepId.COMMIT_DURABLE_STATE,
    StepId.SETTLE,
)

WITHDRAW_STEPS: Tuple[StepId, ...] = (
    StepId.UNREGISTER_SCRIPT,
    StepId.CLEAR_DURABLE_STATE,
    StepId.DEACTIVATE_VERSIONS,
    StepId.SETTLE,
)

# Steps that must complete for the operation to count as successful.
REQUIRED_STEPS: Dict[OperationKind, Tuple[StepId, ...]] = {
    OperationKind.PUBLISH: (StepId.COMMIT_DURABLE_STATE, StepId.SETTLE),
    OperationKind.WITHDRAW: (
        StepId.CLEAR_DURABLE_STATE,
        StepId.DEACTIVATE_VERSIONS,
        StepId.SETTLE,
    ),
}


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a publish or withdraw.

    Attributes:
        operation: Which operation ran
        tenant: Store it ran for
        ok: True when every required step completed
        steps: Final status of every step, in order
        script_ref: Registration id recorded after the operation (publish)
        orphaned_script_ref: Registration that could not be removed (withdraw)
        version_id: Target version (publish)
    """
    operation: OperationKind
    tenant: str
    ok: bool
    steps: Tuple[StepView, ...]
    script_ref: Optional[str] = None
    orphaned_script_ref: Optional[str] = None
    version_id: Optional[str] = None

    def step(self, step_id: StepId) -> StepView:
        for view in self.steps:
            if view.id == step_id:
                return view
        raise KeyError(step_id)

    @property
    def degraded(self) -> bool:
        """Completed, but with a failed registry step needing a manual retry."""
        return self.ok and any(s.status == StepStatus.ERROR for s in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "operation": self.operation.value,
            "tenant": self.tenant,
            "ok": self.ok,
            "steps": [s.to_dict() for s in self.steps],
            "scriptRef": self.script_ref,
            "orphanedScriptRef": self.orphaned_script_ref,
        }
        if self.version_id is not None:
            result["versionId"] = self.version_id
        return result


class OperationProgress:
    """Step tracker for one operation.

    Every transition produces a new ProgressSnapshot, delivered to the
    caller's listener and emitted as an ``operation.progress`` event.
    """

    def __init__(
        self,
        operation: OperationKind,
        tenant: str,
        step_ids: Sequence[StepId],
        listener: Optional[ProgressListener] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.operation = operation
        self.tenant = tenant
        self._steps = [
            StepStateMachine(step_id=s, label=STEP_LABELS[s]) for s in step_ids
        ]
        self._listener = listener
        self._emitter = emitter
        self._sequence = 0
        self._publish()

    def _machine(self, step_id: StepId) -> StepStateMachine:
        for step in self._steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def views(self) -> Tuple[StepView, ...]:
        return tuple(
            StepView(id=s.step_id, label=s.label, status=s.status, error=s.error)
            for s in self._steps
        )

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            operation=self.operation,
            tenant=self.tenant,
            steps=self.views(),
            sequence=self._sequence,
        )

    def _publish(self) -> None:
        snapshot = self.snapshot()
        self._sequence += 1
        if self._listener is not None:
            try:
                self._listener(snapshot)
            except Exception:
                logger.exception(
                    f"Progress listener failed for {self.operation.value} "
                    f"tenant={self.tenant}"
                )
        if self._emitter is not None:
            self._emitter.emit_new(
                EventType.OPERATION_PROGRESS, self.tenant, snapshot.to_dict()
            )

    def _log(self, step_id: StepId, outcome: str) -> str:
        return (
            f"[{self.operation.value}] tenant={self.tenant} "
            f"step={step_id.value} {outcome}"
        )

    def start(self, step_id: StepId) -> None:
        self._machine(step_id).transition_to(StepStatus.IN_PROGRESS)
        logger.info(self._log(step_id, "started"))
        self._publish()

    def complete(self, step_id: StepId) -> None:
        self._machine(step_id).transition_to(StepStatus.COMPLETED)
        logger.info(self._log(step_id, "completed"))
        self._publish()

    def fail(self, step_id: StepId, error: str) -> None:
        self._machine(step_id).transition_to(StepStatus.ERROR, error=error)
        logger.warning(self._log(step_id, f"failed: {error}"))
        self._publish()

    def is_ok(self) -> bool:
        return all(
            self._machine(s).status == StepStatus.COMPLETED
            for s in REQUIRED_STEPS[self.operation]
        )

    def result(self, **extra: Any) -> OperationResult:
        return OperationResult(
            operation=self.operation,
            tenant=self.tenant,
            ok=self.is_ok(),
            steps=self.views(),
            **extra,
        )


class ActivationOrchestrator:
    """Drives publish and withdraw of form versions.

    The orchestrator is the only writer of StoreActivationState and of the
    versions' active flags.

    Args:
        versions: Version store
        states: Per-tenant activation state store
        generator: Artifact generator (``async generate(fields, theme)``)
        registry: Script registry adapter
        settings: Timeouts, settle delay, script src
        emitter: Receives operation lifecycle events
        guard: Single-flight guard, shared when several orchestrators serve
            one process
    """

    def __init__(
        self,
        versions: VersionStore,
        states: ActivationStateStore,
        generator: ArtifactGenerator,
        registry: ScriptRegistry,
        settings: Optional[Settings] = None,
        emitter: Optional[EventEmitter] = None,
        guard: Optional[SingleFlight] = None,
    ):
        self.versions = versions
        self.states = states
        self.generator = generator
        self.registry = registry
        self.settings = settings or get_settings()
        self.emitter = emitter or EventEmitter()
        self.guard = guard or SingleFlight()
        self._confirmations: Set["asyncio.Task[None]"] = set()
        # Bumped by every settle; a re-confirmation only reports on the latest one.
        self._settle_seq: Dict[str, int] = {}

    def is_busy(self, tenant: str) -> bool:
        return self.guard.is_busy(tenant)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        timeout = self.settings.external_call_timeout_seconds
        return await asyncio.wait_for(awaitable, timeout=timeout)

    def _describe(self, error: BaseException) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Timed out after {self.settings.external_call_timeout_seconds:g}s"
        if isinstance(error, FormPublisherError):
            return error.message
        return str(error) or type(error).__name__

    def _finish(
        self, progress: OperationProgress, actor: Optional[Actor], **extra: Any
    ) -> OperationResult:
        result = progress.result(**extra)
        logger.info(
            f"[{result.operation.value}] tenant={result.tenant} finished ok={result.ok}"
        )
        self.emitter.emit_new(
            EventType.OPERATION_FINISHED, result.tenant, result.to_dict(), actor
        )
        return result

    # Publish

    async def publish(
        self,
        tenant: str,
        version_id: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        """Make ``version_id`` the live form of ``tenant``.

        Raises:
            ConcurrentOperationError: If an operation is running for the tenant
            VersionNotFoundError: If the version does not exist
            DraftActivationError: If the version is a draft
            Exception: Whatever the durable commit raised
        """
        async with self.guard.hold(tenant):
            version = self.versions.get(tenant, version_id)
            if version.kind != VersionKind.VERSION:
                raise DraftActivationError(tenant, version_id)
            return await self._publish(tenant, version, listener, actor)

    async def _publish(
        self,
        tenant: str,
        version: Version,
        listener: Optional[ProgressListener],
        actor: Optional[Actor],
    ) -> OperationResult:
        self.emitter.emit_new(
            EventType.OPERATION_STARTED,
            tenant,
            {"operation": OperationKind.PUBLISH.value, "versionId": version.id},
            actor,
        )
        progress = OperationProgress(
            OperationKind.PUBLISH, tenant, PUBLISH_STEPS, listener, self.emitter
        )
        composition = version.composition

        progress.start(StepId.GENERATE_ARTIFACT)
        try:
            content = await self._call(
                self.generator.generate(composition.fields, composition.theme)
            )
        except Exception as e:
            if not isinstance(e, (FormPublisherError, asyncio.TimeoutError)):
                logger.exception(f"Artifact generator crashed for tenant={tenant}")
            progress.fail(StepId.GENERATE_ARTIFACT, self._describe(e))
            return self._finish(progress, actor, version_id=version.id)
        progress.complete(StepId.GENERATE_ARTIFACT)
        ref = artifact_ref_for(tenant, content, self.settings.script_src_url)

        script_ref = self.states.get(tenant).registered_script_ref
        progress.start(StepId.REGISTER_SCRIPT)
        try:
            script_ref = await self._register(tenant, script_ref, ref)
        except Exception as e:
            if not isinstance(e, (FormPublisherError, asyncio.TimeoutError)):
                logger.exception(f"Script registry crashed for tenant={tenant}")
            progress.fail(StepId.REGISTER_SCRIPT, self._describe(e))
        else:
            progress.complete(StepId.REGISTER_SCRIPT)

        progress.start(StepId.COMMIT_DURABLE_STATE)
        try:
            with self.versions.atomic(tenant), self.states.atomic(tenant):
                self.versions.deactivate_all(tenant)
                self.versions.activate(tenant, version.id)
                self.states.put(StoreActivationState(
                    tenant=tenant,
                    active_composition=composition,
                    is_published=True,
                    registered_script_ref=script_ref,
                ))
        except Exception as e:
            logger.exception(
                f"Commit of version {version.id} failed for tenant={tenant}"
            )
            progress.fail(StepId.COMMIT_DURABLE_STATE, self._describe(e))
            self._finish(progress, actor, script_ref=script_ref, version_id=version.id)
            raise
        progress.complete(StepId.COMMIT_DURABLE_STATE)

        self._settle(progress, tenant, OperationKind.PUBLISH, version.id)
        return self._finish(
            progress, actor, script_ref=script_ref, version_id=version.id
        )

    async def _register(
        self, tenant: str, script_ref: Optional[str], ref: ArtifactRef
    ) -> str:
        if script_ref:
            try:
                await self._call(self.registry.update(tenant, script_ref, ref))
                return script_ref
            except NotFoundRegistryError:
                logger.warning(
                    f"Registered script {script_ref} is gone for tenant={tenant}; "
                    "creating a new one"
                )
        return await self._call(self.registry.create(tenant, ref))

    # Withdraw

    async def withdraw(
        self,
        tenant: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> OperationResult:
        """Take the live form of ``tenant`` down.

        Raises:
            ConcurrentOperationError: If an operation is running for the tenant
            Exception: Whatever a durable write raised
        """
        async with self.guard.hold(tenant):
            return await self._withdraw(tenant, listener, actor)

    async def _withdraw(
        self,
        tenant: str,
        listener: Optional[ProgressListener],
        actor: Optional[Actor],
    ) -> OperationResult:
        self.emitter.emit_new(
            EventType.OPERATION_STARTED,
            tenant,
            {"operation": OperationKind.WITHDRAW.value},
            actor,
        )
        progress = OperationProgress(
            OperationKind.WITHDRAW, tenant, WITHDRAW_STEPS, listener, self.emitter
        )

        script_ref = self.states.get(tenant).registered_script_ref
        orphaned: Optional[str] = None
        progress.start(StepId.UNREGISTER_SCRIPT)
        if script_ref:
            try:
                await self._call(self.registry.delete(tenant, script_ref))
            except NotFoundRegistryError:
                logger.info(
                    f"Registered script {script_ref} already gone for tenant={tenant}"
                )
            except Exception as e:
                if not isinstance(e, (FormPublisherError, asyncio.TimeoutError)):
                    logger.exception(f"Script registry crashed for tenant={tenant}")
                orphaned = script_ref
                progress.fail(StepId.UNREGISTER_SCRIPT, self._describe(e))
        if orphaned is None:
            progress.complete(StepId.UNREGISTER_SCRIPT)

        progress.start(StepId.CLEAR_DURABLE_STATE)
        try:
            with self.states.atomic(tenant):
                current = self.states.get(tenant)
                # The id is only dropped once the registration is gone.
                self.states.put(
                    replace(current, is_published=False, registered_script_ref=orphaned)
                )
        except Exception as e:
            logger.exception(f"Clearing published state failed for tenant={tenant}")
            progress.fail(StepId.CLEAR_DURABLE_STATE, self._describe(e))
            self._finish(progress, actor, orphaned_script_ref=orphaned)
            raise
        progress.complete(StepId.CLEAR_DURABLE_STATE)

        progress.start(StepId.DEACTIVATE_VERSIONS)
        try:
            self.versions.deactivate_all(tenant)
        except Exception as e:
            logger.exception(f"Deactivating versions failed for tenant={tenant}")
            progress.fail(StepId.DEACTIVATE_VERSIONS, self._describe(e))
            self._finish(progress, actor, orphaned_script_ref=orphaned)
            raise
        progress.complete(StepId.DEACTIVATE_VERSIONS)

        self._settle(progress, tenant, OperationKind.WITHDRAW, script_ref=orphaned)
        return self._finish(progress, actor, orphaned_script_ref=orphaned)

    # Delete

    async def delete_version(
        self,
        tenant: str,
        version_id: str,
        listener: Optional[ProgressListener] = None,
        actor: Optional[Actor] = None,
    ) -> Optional[OperationResult]:
        """Delete a version, withdrawing it first when it is active.

        Returns the withdraw result, or None when no withdraw was needed.

        Raises:
            ConcurrentOperationError: If an operation is running for the tenant
            VersionNotFoundError: If the version does not exist
            ActiveVersionError: If the version is still active after withdrawing
        """
        async with self.guard.hold(tenant):
            version = self.versions.get(tenant, version_id)
            result = None
            if version.is_active:
                logger.info(
                    f"Version {version_id} is active; withdrawing before delete "
                    f"(tenant={tenant})"
                )
                result = await self._withdraw(tenant, listener, actor)
            self.versions.delete(tenant, version_id, actor)
            return result

    # Settle

    def _confirm(
        self,
        tenant: str,
        operation: OperationKind,
        version_id: Optional[str] = None,
        script_ref: Optional[str] = None,
    ) -> List[str]:
        """Describe every way the durable state differs from the expected outcome.

        For a withdraw, ``script_ref`` is the registration it failed to remove
        and is therefore expected to stay recorded.
        """
        state = self.states.get(tenant)
        active = [v.id for v in self.versions.active_versions(tenant)]
        problems: List[str] = []
        if len(active) > 1:
            problems.append(f"{len(active)} versions are active")
        if operation == OperationKind.PUBLISH:
            if not state.is_published:
                problems.append("store is not published")
            if active != [version_id]:
                problems.append(f"version {version_id} is not the active version")
            else:
                version = self.versions.get(tenant, version_id)
                if state.active_composition != version.composition:
                    problems.append(
                        "published composition differs from the active version"
                    )
        else:
            if state.is_published:
                problems.append("store is still published")
            if state.registered_script_ref not in (None, script_ref):
                problems.append("a script registration is still recorded")
            if active:
                problems.append("a version is still active")
        return problems

    def _settle(
        self,
        progress: OperationProgress,
        tenant: str,
        operation: OperationKind,
        version_id: Optional[str] = None,
        script_ref: Optional[str] = None,
    ) -> None:
        progress.start(StepId.SETTLE)
        problems = self._confirm(tenant, operation, version_id, script_ref)
        if problems:
            progress.fail(StepId.SETTLE, "; ".join(problems))
        else:
            progress.complete(StepId.SETTLE)
        seq = self._settle_seq.get(tenant, 0) + 1
        self._settle_seq[tenant] = seq
        task = asyncio.get_running_loop().create_task(
            self._reconfirm(tenant, operation, version_id, script_ref, seq)
        )
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)

    async def _reconfirm(
        self,
        tenant: str,
        operation: OperationKind,
        version_id: Optional[str],
        script_ref: Optional[str],
        seq: int,
    ) -> None:
        await asyncio.sleep(self.settings.settle_delay_seconds)
        if self.guard.is_busy(tenant) or self._settle_seq.get(tenant) != seq:
            # A newer operation owns the outcome now.
            return
        problems = self._confirm(tenant, operation, version_id, script_ref)
        if problems:
            logger.warning(
                f"[{operation.value}] tenant={tenant} state drifted after settle: "
                f"{'; '.join(problems)}"
            )
        self.emitter.emit_new(
            EventType.STATE_RECONFIRMED,
            tenant,
            {
                "operation": operation.value,
                "consistent": not problems,
                "problems": problems,
            },
        )

    async def wait_for_settled(self) -> None:
        """Wait for every scheduled re-confirmation to finish."""
        if self._confirmations:
            await asyncio.gather(*list(self._confirmations))


__all__ = [
    "STEP_LABELS",
    "PUBLISH_STEPS",
    "WITHDRAW_STEPS",
    "REQUIRED_STEPS",
    "OperationResult",
    "OperationProgress",
    "ActivationOrchestrator",
]
