"""Shared fixtures: in-memory stores, a scripted registry and generator."""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from formpublisher.artifacts import ArtifactRef
from formpublisher.composition import make_field, normalize
from formpublisher.config import Settings
from formpublisher.errors import NotFoundRegistryError
from formpublisher.events import EventEmitter
from formpublisher.orchestrator import ActivationOrchestrator
from formpublisher.types import FieldKind, VersionKind
from formpublisher.versions import ActivationStateStore, VersionStore


TENANT = "store_1"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


class StepClock:
    """Clock that advances by ``step`` on every call."""

    def __init__(self, step: timedelta = timedelta(seconds=1)):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


class FakeRegistry:
    """In-memory script registry with injectable failures.

    ``failures[op]`` is raised (once) by the next call of that operation.
    """

    def __init__(self):
        self.scripts: Dict[str, Dict[str, ArtifactRef]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[str, BaseException] = {}
        self.delay = 0.0
        self._ids = itertools.count(1)

    def live(self, tenant: str = TENANT) -> Dict[str, ArtifactRef]:
        return dict(self.scripts.get(tenant, {}))

    def expire(self, tenant: str, script_id: str) -> None:
        """Remove a registration out of band."""
        self.scripts.get(tenant, {}).pop(script_id, None)

    async def _enter(self, op: str, tenant: str) -> None:
        self.calls.append((op, tenant))
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.pop(op, None)
        if failure is not None:
            raise failure

    async def create(self, tenant: str, ref: ArtifactRef) -> str:
        await self._enter("create", tenant)
        script_id = f"script_{next(self._ids)}"
        self.scripts.setdefault(tenant, {})[script_id] = ref
        return script_id

    async def update(self, tenant: str, script_id: str, ref: ArtifactRef) -> None:
        await self._enter("update", tenant)
        if script_id not in self.scripts.get(tenant, {}):
            raise NotFoundRegistryError("gone", status_code=404, script_id=script_id)
        self.scripts[tenant][script_id] = ref

    async def delete(self, tenant: str, script_id: str) -> None:
        await self._enter("delete", tenant)
        if script_id not in self.scripts.get(tenant, {}):
            raise NotFoundRegistryError("gone", status_code=404, script_id=script_id)
        del self.scripts[tenant][script_id]


class FakeGenerator:
    """Generator returning a fixed script; can fail, stall, or wait on a gate."""

    def __init__(self):
        self.error: Optional[BaseException] = None
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None
        self.calls = 0

    async def generate(self, fields, theme) -> bytes:
        self.calls += 1
        if self.started is not None:
            self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ("script:" + ",".join(f.id for f in fields)).encode("utf-8")


@pytest.fixture
def settings():
    return Settings(
        registry_auth_token="test-token",
        external_call_timeout_seconds=0.2,
        settle_delay_seconds=0.0,
    )


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def versions(emitter, clock):
    return VersionStore(emitter=emitter, clock=clock)


@pytest.fixture
def states(clock):
    return ActivationStateStore(clock=clock)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def orchestrator(versions, states, generator, registry, settings, emitter):
    return ActivationOrchestrator(
        versions=versions,
        states=states,
        generator=generator,
        registry=registry,
        settings=settings,
        emitter=emitter,
    )


@pytest.fixture
def make_version(versions):
    """Save a version with one extra field and return its id."""

    def _make(
        name: str = "Spring",
        kind: VersionKind = VersionKind.VERSION,
        tenant: str = TENANT,
    ) -> str:
        composition = normalize([make_field(FieldKind.TEXT, f"{name} company")])
        return versions.save(tenant, name, kind, composition)

    return _make

