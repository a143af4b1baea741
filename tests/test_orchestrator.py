"""Tests for publish / withdraw orchestration.

Tests cover:
- Publish happy path, registry update and self-healing re-create
- Fatal generation failures and timeouts
- Registry failures that let the operation continue
- Withdraw with already-deleted and undeletable registrations
- Single active version across publish sequences
- Single-flight rejection of concurrent operations
- Progress snapshots and post-settle re-confirmation
"""

import asyncio

import httpx
import pytest

from formpublisher.errors import (
    ConcurrentOperationError,
    DraftActivationError,
    GenerationError,
    RegistryError,
    VersionNotFoundError,
)
from formpublisher.orchestrator import (
    PUBLISH_STEPS,
    WITHDRAW_STEPS,
    ActivationOrchestrator,
)
from formpublisher.registry import HttpScriptRegistry
from formpublisher.types import (
    EventType,
    OperationKind,
    StepId,
    StepStatus,
    VersionKind,
)
from formpublisher.versions import StoreActivationState

from tests.conftest import TENANT


def statuses(result):
    return {s.id: s.status for s in result.steps}


class TestPublish:
    """Test the publish operation."""

    @pytest.mark.anyio
    async def test_first_publish_creates_registration(
        self, orchestrator, versions, states, registry, make_version
    ):
        vid = make_version()
        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert not result.degraded
        assert result.operation == OperationKind.PUBLISH
        assert result.version_id == vid
        assert [s.id for s in result.steps] == list(PUBLISH_STEPS)
        assert all(s.status == StepStatus.COMPLETED for s in result.steps)
        assert result.script_ref == "script_1"
        assert registry.calls == [("create", TENANT)]

        state = states.get(TENANT)
        assert state.is_published
        assert state.registered_script_ref == "script_1"
        assert state.active_composition == versions.get(TENANT, vid).composition
        assert [v.id for v in versions.active_versions(TENANT)] == [vid]

    @pytest.mark.anyio
    async def test_registered_src_carries_tenant_and_digest(
        self, orchestrator, registry, make_version
    ):
        await orchestrator.publish(TENANT, make_version())
        ref = registry.live()["script_1"]
        assert ref.src.startswith(f"/custom-signup.min.js?pub={TENANT}&v=")
        assert ref.src.endswith(ref.digest[:12])

    @pytest.mark.anyio
    async def test_republish_updates_existing_registration(
        self, orchestrator, registry, make_version
    ):
        a = make_version("A")
        b = make_version("B")
        await orchestrator.publish(TENANT, a)
        result = await orchestrator.publish(TENANT, b)

        assert result.ok
        assert result.script_ref == "script_1"
        assert registry.calls == [("create", TENANT), ("update", TENANT)]
        assert list(registry.live()) == ["script_1"]

    @pytest.mark.anyio
    async def test_vanished_registration_is_recreated(
        self, orchestrator, states, registry, make_version
    ):
        """A registration removed out of band is replaced on the next publish."""
        vid = make_version()
        await orchestrator.publish(TENANT, vid)
        registry.expire(TENANT, "script_1")

        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert result.step(StepId.REGISTER_SCRIPT).status == StepStatus.COMPLETED
        assert result.script_ref == "script_2"
        assert states.get(TENANT).registered_script_ref == "script_2"
        assert registry.calls == [
            ("create", TENANT),
            ("update", TENANT),
            ("create", TENANT),
        ]

    @pytest.mark.anyio
    async def test_only_one_version_active_after_any_sequence(
        self, orchestrator, versions, make_version
    ):
        ids = [make_version(name) for name in ("A", "B", "C")]
        for vid in [ids[0], ids[1], ids[2], ids[0], ids[2]]:
            await orchestrator.publish(TENANT, vid)
            assert [v.id for v in versions.active_versions(TENANT)] == [vid]
        await orchestrator.withdraw(TENANT)
        assert versions.active_versions(TENANT) == []

    @pytest.mark.anyio
    async def test_draft_cannot_be_published(
        self, orchestrator, generator, registry, make_version
    ):
        vid = make_version(kind=VersionKind.DRAFT)
        with pytest.raises(DraftActivationError):
            await orchestrator.publish(TENANT, vid)
        assert generator.calls == 0
        assert registry.calls == []
        assert not orchestrator.is_busy(TENANT)

    @pytest.mark.anyio
    async def test_unknown_version(self, orchestrator):
        with pytest.raises(VersionNotFoundError):
            await orchestrator.publish(TENANT, "ver_missing")
        assert not orchestrator.is_busy(TENANT)

    @pytest.mark.anyio
    async def test_other_tenant_versions_are_untouched(
        self, orchestrator, versions, make_version
    ):
        other = make_version("Other", tenant="store_2")
        await orchestrator.publish("store_2", other)
        await orchestrator.publish(TENANT, make_version())
        assert [v.id for v in versions.active_versions("store_2")] == [other]


class TestPublishFailures:
    """Test failure handling during publish."""

    @pytest.mark.anyio
    async def test_generation_failure_is_fatal(
        self, orchestrator, versions, states, registry, generator, make_version
    ):
        generator.error = GenerationError("template broke")
        vid = make_version()

        result = await orchestrator.publish(TENANT, vid)

        assert not result.ok
        steps = statuses(result)
        assert steps[StepId.GENERATE_ARTIFACT] == StepStatus.ERROR
        assert steps[StepId.REGISTER_SCRIPT] == StepStatus.PENDING
        assert steps[StepId.COMMIT_DURABLE_STATE] == StepStatus.PENDING
        assert steps[StepId.SETTLE] == StepStatus.PENDING
        assert result.step(StepId.GENERATE_ARTIFACT).error == "template broke"
        assert registry.calls == []
        assert not states.get(TENANT).is_published
        assert versions.active_versions(TENANT) == []

    @pytest.mark.anyio
    async def test_generator_crash_is_reported_not_raised(
        self, orchestrator, generator, make_version
    ):
        generator.error = RuntimeError("segfault-ish")
        result = await orchestrator.publish(TENANT, make_version())
        assert not result.ok
        assert result.step(StepId.GENERATE_ARTIFACT).error == "segfault-ish"

    @pytest.mark.anyio
    async def test_generation_timeout(
        self, orchestrator, generator, registry, make_version
    ):
        generator.delay = 5
        result = await orchestrator.publish(TENANT, make_version())
        assert not result.ok
        assert result.step(StepId.GENERATE_ARTIFACT).status == StepStatus.ERROR
        assert result.step(StepId.GENERATE_ARTIFACT).error.startswith("Timed out")
        assert registry.calls == []
        assert not orchestrator.is_busy(TENANT)

    @pytest.mark.anyio
    async def test_failed_publish_keeps_previous_live_version(
        self, orchestrator, versions, states, generator, make_version
    ):
        a = make_version("A")
        await orchestrator.publish(TENANT, a)
        generator.error = GenerationError("down")
        await orchestrator.publish(TENANT, make_version("B"))
        assert [v.id for v in versions.active_versions(TENANT)] == [a]
        assert states.get(TENANT).is_published

    @pytest.mark.anyio
    async def test_registry_failure_continues_to_commit(
        self, orchestrator, versions, states, registry, make_version
    ):
        registry.failures["create"] = RegistryError("HTTP 500", status_code=500)
        vid = make_version()

        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert result.degraded
        steps = statuses(result)
        assert steps[StepId.REGISTER_SCRIPT] == StepStatus.ERROR
        assert steps[StepId.COMMIT_DURABLE_STATE] == StepStatus.COMPLETED
        assert steps[StepId.SETTLE] == StepStatus.COMPLETED
        assert result.script_ref is None
        state = states.get(TENANT)
        assert state.is_published
        assert state.registered_script_ref is None
        assert [v.id for v in versions.active_versions(TENANT)] == [vid]

    @pytest.mark.anyio
    async def test_unexpected_registry_error_continues_to_commit(
        self, orchestrator, versions, registry, make_version, caplog
    ):
        registry.failures["create"] = AttributeError(
            "'list' object has no attribute 'get'"
        )
        vid = make_version()

        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert result.degraded
        assert result.step(StepId.REGISTER_SCRIPT).status == StepStatus.ERROR
        assert "no attribute" in result.step(StepId.REGISTER_SCRIPT).error
        assert result.step(StepId.COMMIT_DURABLE_STATE).status == StepStatus.COMPLETED
        assert [v.id for v in versions.active_versions(TENANT)] == [vid]
        assert "Script registry crashed" in caplog.text
        assert not orchestrator.is_busy(TENANT)

    @pytest.mark.anyio
    async def test_malformed_registry_response_continues_to_commit(
        self, versions, states, generator, settings, emitter, make_version
    ):
        def handler(request):
            return httpx.Response(200, json=["unexpected"])

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        orchestrator = ActivationOrchestrator(
            versions=versions,
            states=states,
            generator=generator,
            registry=HttpScriptRegistry(settings, client=client),
            settings=settings,
            emitter=emitter,
        )
        vid = make_version()

        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert result.step(StepId.REGISTER_SCRIPT).status == StepStatus.ERROR
        assert states.get(TENANT).is_published
        assert [v.id for v in versions.active_versions(TENANT)] == [vid]

    @pytest.mark.anyio
    async def test_registry_update_failure_keeps_old_ref(
        self, orchestrator, states, registry, make_version
    ):
        vid = make_version()
        await orchestrator.publish(TENANT, vid)
        registry.failures["update"] = RegistryError("HTTP 503", status_code=503)

        result = await orchestrator.publish(TENANT, vid)

        assert result.degraded
        assert result.script_ref == "script_1"
        assert states.get(TENANT).registered_script_ref == "script_1"

    @pytest.mark.anyio
    async def test_registry_timeout(self, orchestrator, registry, make_version):
        registry.delay = 5
        result = await orchestrator.publish(TENANT, make_version())
        assert result.ok
        assert result.step(StepId.REGISTER_SCRIPT).error.startswith("Timed out")

    @pytest.mark.anyio
    async def test_commit_failure_is_raised(
        self, orchestrator, versions, emitter, make_version, monkeypatch
    ):
        vid = make_version()
        finished = []
        emitter.on(EventType.OPERATION_FINISHED, finished.append)

        def broken(tenant, version_id):
            raise OSError("disk full")

        monkeypatch.setattr(versions, "activate", broken)
        with pytest.raises(OSError):
            await orchestrator.publish(TENANT, vid)

        assert finished[0].payload["ok"] is False
        steps = {s["id"]: s["status"] for s in finished[0].payload["steps"]}
        assert steps["commit-durable-state"] == "error"
        assert steps["settle"] == "pending"
        assert not orchestrator.is_busy(TENANT)


class TestWithdraw:
    """Test the withdraw operation."""

    @pytest.mark.anyio
    async def test_withdraw_removes_registration(
        self, orchestrator, versions, states, registry, make_version
    ):
        vid = make_version()
        await orchestrator.publish(TENANT, vid)

        result = await orchestrator.withdraw(TENANT)

        assert result.ok
        assert [s.id for s in result.steps] == list(WITHDRAW_STEPS)
        assert all(s.status == StepStatus.COMPLETED for s in result.steps)
        assert result.orphaned_script_ref is None
        assert registry.live() == {}
        state = states.get(TENANT)
        assert not state.is_published
        assert state.registered_script_ref is None
        assert state.active_composition is not None
        assert versions.active_versions(TENANT) == []

    @pytest.mark.anyio
    async def test_already_deleted_registration_counts_as_success(
        self, orchestrator, registry, make_version
    ):
        await orchestrator.publish(TENANT, make_version())
        registry.expire(TENANT, "script_1")

        result = await orchestrator.withdraw(TENANT)

        assert result.ok
        assert result.step(StepId.UNREGISTER_SCRIPT).status == StepStatus.COMPLETED
        assert result.orphaned_script_ref is None

    @pytest.mark.anyio
    async def test_failed_delete_keeps_registration_recorded(
        self, orchestrator, versions, states, registry, make_version
    ):
        await orchestrator.publish(TENANT, make_version())
        registry.failures["delete"] = RegistryError("HTTP 500", status_code=500)

        result = await orchestrator.withdraw(TENANT)

        assert result.ok
        assert result.degraded
        assert result.step(StepId.UNREGISTER_SCRIPT).status == StepStatus.ERROR
        assert result.step(StepId.SETTLE).status == StepStatus.COMPLETED
        assert result.orphaned_script_ref == "script_1"
        assert result.to_dict()["orphanedScriptRef"] == "script_1"
        assert "script_1" in registry.live()
        state = states.get(TENANT)
        assert not state.is_published
        assert state.registered_script_ref == "script_1"
        assert versions.active_versions(TENANT) == []

    @pytest.mark.anyio
    async def test_unexpected_delete_error_keeps_registration_recorded(
        self, orchestrator, states, registry, make_version, caplog
    ):
        await orchestrator.publish(TENANT, make_version())
        registry.failures["delete"] = KeyError("uuid")

        result = await orchestrator.withdraw(TENANT)

        assert result.ok
        assert result.step(StepId.UNREGISTER_SCRIPT).status == StepStatus.ERROR
        assert result.orphaned_script_ref == "script_1"
        assert states.get(TENANT).registered_script_ref == "script_1"
        assert "Script registry crashed" in caplog.text
        assert not orchestrator.is_busy(TENANT)

    @pytest.mark.anyio
    async def test_publish_after_failed_withdraw_reuses_registration(
        self, orchestrator, states, registry, make_version
    ):
        vid = make_version()
        await orchestrator.publish(TENANT, vid)
        registry.failures["delete"] = RegistryError("HTTP 500", status_code=500)
        await orchestrator.withdraw(TENANT)

        result = await orchestrator.publish(TENANT, vid)

        assert result.ok
        assert not result.degraded
        assert result.script_ref == "script_1"
        assert list(registry.live()) == ["script_1"]
        assert registry.calls[-1] == ("update", TENANT)
        assert states.get(TENANT).registered_script_ref == "script_1"

    @pytest.mark.anyio
    async def test_retried_withdraw_removes_orphan(
        self, orchestrator, states, registry, make_version, emitter
    ):
        seen = []
        emitter.on(EventType.STATE_RECONFIRMED, seen.append)
        await orchestrator.publish(TENANT, make_version())
        registry.failures["delete"] = RegistryError("HTTP 500", status_code=500)
        await orchestrator.withdraw(TENANT)
        await orchestrator.wait_for_settled()
        assert seen[-1].payload["consistent"] is True

        result = await orchestrator.withdraw(TENANT)

        assert result.ok
        assert not result.degraded
        assert result.orphaned_script_ref is None
        assert registry.live() == {}
        assert states.get(TENANT).registered_script_ref is None

    @pytest.mark.anyio
    async def test_withdraw_without_registration(self, orchestrator, registry):
        result = await orchestrator.withdraw(TENANT)
        assert result.ok
        assert registry.calls == []

    @pytest.mark.anyio
    async def test_withdraw_is_idempotent(self, orchestrator, make_version):
        await orchestrator.publish(TENANT, make_version())
        first = await orchestrator.withdraw(TENANT)
        second = await orchestrator.withdraw(TENANT)
        assert first.ok and second.ok


class TestDeleteVersion:
    """Test deleting versions through the orchestrator."""

    @pytest.mark.anyio
    async def test_delete_inactive_version(
        self, orchestrator, versions, registry, make_version
    ):
        vid = make_version()
        assert await orchestrator.delete_version(TENANT, vid) is None
        assert versions.list(TENANT) == []
        assert registry.calls == []

    @pytest.mark.anyio
    async def test_delete_active_version_withdraws_first(
        self, orchestrator, versions, states, registry, make_version
    ):
        vid = make_version()
        await orchestrator.publish(TENANT, vid)

        result = await orchestrator.delete_version(TENANT, vid)

        assert result is not None and result.ok
        assert result.operation == OperationKind.WITHDRAW
        assert versions.list(TENANT) == []
        assert registry.live() == {}
        assert not states.get(TENANT).is_published


class TestSingleFlight:
    """Test per-tenant single-flight."""

    @pytest.mark.anyio
    async def test_concurrent_operation_is_rejected(
        self, orchestrator, versions, generator, make_version
    ):
        vid = make_version()
        generator.gate = asyncio.Event()
        generator.started = asyncio.Event()

        running = asyncio.create_task(orchestrator.publish(TENANT, vid))
        await generator.started.wait()
        assert orchestrator.is_busy(TENANT)

        with pytest.raises(ConcurrentOperationError) as exc_info:
            await orchestrator.withdraw(TENANT)
        assert exc_info.value.tenant == TENANT
        with pytest.raises(ConcurrentOperationError):
            await orchestrator.publish(TENANT, vid)
        with pytest.raises(ConcurrentOperationError):
            await orchestrator.delete_version(TENANT, vid)

        generator.gate.set()
        result = await running
        assert result.ok
        assert generator.calls == 1
        assert not orchestrator.is_busy(TENANT)
        assert [v.id for v in versions.active_versions(TENANT)] == [vid]

    @pytest.mark.anyio
    async def test_other_tenants_run_concurrently(
        self, orchestrator, generator, make_version
    ):
        vid = make_version()
        other = make_version("Other", tenant="store_2")
        generator.gate = asyncio.Event()
        generator.started = asyncio.Event()

        running = asyncio.create_task(orchestrator.publish(TENANT, vid))
        await generator.started.wait()
        assert not orchestrator.is_busy("store_2")
        generator.gate.set()
        second = await orchestrator.publish("store_2", other)
        first = await running
        assert first.ok and second.ok


class TestProgress:
    """Test progress snapshots and lifecycle events."""

    @pytest.mark.anyio
    async def test_snapshot_sequence(self, orchestrator, make_version):
        snapshots = []
        await orchestrator.publish(TENANT, make_version(), listener=snapshots.append)

        assert [s.sequence for s in snapshots] == list(range(len(snapshots)))
        assert all(
            snapshots[0].status_of(step) == StepStatus.PENDING for step in PUBLISH_STEPS
        )
        first, second = snapshots[1], snapshots[-1]
        assert first.status_of(StepId.GENERATE_ARTIFACT) == StepStatus.IN_PROGRESS
        assert first.status_of(StepId.REGISTER_SCRIPT) == StepStatus.PENDING
        assert all(
            second.status_of(step) == StepStatus.COMPLETED for step in PUBLISH_STEPS
        )
        # Initial list plus start and finish of each step.
        assert len(snapshots) == 1 + 2 * len(PUBLISH_STEPS)

    @pytest.mark.anyio
    async def test_snapshots_are_independent(self, orchestrator, make_version):
        snapshots = []
        await orchestrator.publish(TENANT, make_version(), listener=snapshots.append)
        assert snapshots[0].status_of(StepId.SETTLE) == StepStatus.PENDING

    @pytest.mark.anyio
    async def test_failing_listener_does_not_break_publish(
        self, orchestrator, make_version
    ):
        def broken(_snapshot):
            raise RuntimeError("ui gone")

        result = await orchestrator.publish(TENANT, make_version(), listener=broken)
        assert result.ok

    @pytest.mark.anyio
    async def test_lifecycle_events(self, orchestrator, emitter, make_version):
        seen = []
        emitter.on_any(seen.append)
        vid = make_version()
        seen.clear()

        await orchestrator.publish(TENANT, vid)

        types = [e.type for e in seen]
        assert types[0] == EventType.OPERATION_STARTED
        assert seen[0].payload == {"operation": "publish", "versionId": vid}
        assert EventType.OPERATION_PROGRESS in types
        assert types[-1] == EventType.OPERATION_FINISHED
        assert seen[-1].payload["versionId"] == vid
        assert seen[-1].payload["scriptRef"] == "script_1"


class TestSettle:
    """Test the settle step and the delayed re-confirmation."""

    @pytest.mark.anyio
    async def test_reconfirmation_reports_consistent_state(
        self, orchestrator, emitter, make_version
    ):
        seen = []
        emitter.on(EventType.STATE_RECONFIRMED, seen.append)
        await orchestrator.publish(TENANT, make_version())
        await orchestrator.wait_for_settled()

        assert len(seen) == 1
        assert seen[0].payload == {
            "operation": "publish",
            "consistent": True,
            "problems": [],
        }

    @pytest.mark.anyio
    async def test_reconfirmation_detects_drift(
        self, orchestrator, states, emitter, make_version, caplog
    ):
        seen = []
        emitter.on(EventType.STATE_RECONFIRMED, seen.append)
        await orchestrator.publish(TENANT, make_version())
        states.put(StoreActivationState(tenant=TENANT))
        await orchestrator.wait_for_settled()

        assert seen[0].payload["consistent"] is False
        assert "store is not published" in seen[0].payload["problems"]
        assert "drifted after settle" in caplog.text

    @pytest.mark.anyio
    async def test_withdraw_settle_flags_unexpected_registration(
        self, orchestrator, states, emitter, make_version
    ):
        seen = []
        emitter.on(EventType.STATE_RECONFIRMED, seen.append)
        await orchestrator.publish(TENANT, make_version())
        await orchestrator.withdraw(TENANT)
        states.put(StoreActivationState(tenant=TENANT, registered_script_ref="stray"))
        await orchestrator.wait_for_settled()

        assert seen[-1].payload["operation"] == "withdraw"
        assert "a script registration is still recorded" in seen[-1].payload["problems"]

    @pytest.mark.anyio
    async def test_superseded_reconfirmation_is_skipped(
        self, orchestrator, emitter, make_version
    ):
        seen = []
        emitter.on(EventType.STATE_RECONFIRMED, seen.append)
        await orchestrator.publish(TENANT, make_version())
        await orchestrator.withdraw(TENANT)
        await orchestrator.wait_for_settled()

        assert [e.payload["operation"] for e in seen] == ["withdraw"]
        assert seen[0].payload["consistent"] is True

    @pytest.mark.anyio
    async def test_settle_fails_on_inconsistent_state(
        self, orchestrator, versions, make_version, monkeypatch
    ):
        vid = make_version()
        monkeypatch.setattr(versions, "deactivate_all", lambda tenant: 0)
        other = make_version("Other")
        versions.activate(TENANT, other)

        result = await orchestrator.publish(TENANT, vid)

        assert not result.ok
        assert result.step(StepId.COMMIT_DURABLE_STATE).status == StepStatus.COMPLETED
        assert result.step(StepId.SETTLE).status == StepStatus.ERROR
        assert "2 versions are active" in result.step(StepId.SETTLE).error
