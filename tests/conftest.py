from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from codemonitor.adapters.event_bus import EventBus
from codemonitor.engine.models import SessionKind
from codemonitor.engine.session_registry import SessionRegistry
from codemonitor.engine.transports.registry import TransportRegistry
from codemonitor.engine.workspace import WorkspaceManager
from fakes import FakeTransport


@pytest.fixture
def stack(tmp_path):
    """Registry wired to fake remote and local transports."""
    bus = EventBus()
    remote = FakeTransport(SessionKind.REMOTE)
    local = FakeTransport(SessionKind.LOCAL_PROCESS)
    transports = TransportRegistry()
    transports.register(remote)
    transports.register(local)
    workspaces = WorkspaceManager(event_bus=bus)
    registry = SessionRegistry(
        transports,
        workspaces,
        event_bus=bus,
        approval_timeout=5.0,
        abort_confirm_timeout=0.5,
    )
    (tmp_path / "alpha").mkdir()
    (tmp_path / "beta").mkdir()
    alpha = workspaces.add(str(tmp_path / "alpha"))
    beta = workspaces.add(str(tmp_path / "beta"))
    return SimpleNamespace(
        bus=bus,
        remote=remote,
        local=local,
        transports=transports,
        workspaces=workspaces,
        registry=registry,
        alpha=alpha,
        beta=beta,
    )


@pytest.fixture
def wait_until():
    async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait_until
