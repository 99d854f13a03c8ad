"""
Tests for the Grafana port-forward singleton.

kubectl is replaced by small Python scripts so readiness, stderr and
early exit behave like a real child process.
"""

import asyncio
import sys

import pytest

from eksdeck.config.provider import PortForwardSettings
from eksdeck.modules.portforward import PortForwardError, PortForwardManager
from eksdeck.modules.portforward import portforward as portforward_module

READY = "import time; print('Forwarding from 127.0.0.1:8080 -> 3000', flush=True); time.sleep(30)"
STDERR = (
    "import sys, time; sys.stderr.write('error: services \"grafana-service\" not found\\n'); "
    "sys.stderr.flush(); time.sleep(30)"
)
EXITS = "import sys; sys.exit(1)"
HANGS = "import time; time.sleep(30)"

_real_exec = asyncio.create_subprocess_exec


@pytest.fixture
def fake_kubectl(monkeypatch):
    """Route `kubectl port-forward ...` to a Python script; records each spawn."""
    spawned = []
    state = {"script": READY}

    async def create_subprocess_exec(program, *args, **kwargs):
        spawned.append([program, *args])
        if state["script"] is None:
            raise FileNotFoundError(2, "No such file or directory", program)
        return await _real_exec(sys.executable, "-c", state["script"], **kwargs)

    monkeypatch.setattr(portforward_module.asyncio, "create_subprocess_exec", create_subprocess_exec)
    state["spawned"] = spawned
    return state


@pytest.fixture
def manager():
    manager = PortForwardManager(PortForwardSettings(ready_timeout=5.0))
    yield manager


@pytest.mark.subprocess
class TestPortForward:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager, fake_kubectl):
        try:
            assert await manager.start() == 8080
            assert manager.active
            assert await manager.start() == 8080
            assert len(fake_kubectl["spawned"]) == 1
            assert fake_kubectl["spawned"][0] == [
                "kubectl", "port-forward", "--namespace", "monitoring",
                "service/grafana-service", "8080:3000",
            ]
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_concurrent_starts_share_one_process(self, manager, fake_kubectl):
        try:
            ports = await asyncio.gather(manager.start(), manager.start(), manager.start())
            assert ports == [8080, 8080, 8080]
            assert len(fake_kubectl["spawned"]) == 1
        finally:
            await manager.stop()

    @pytest.mark.asyncio
    async def test_stop(self, manager, fake_kubectl):
        await manager.start()
        assert await manager.stop() is True
        assert not manager.active
        assert await manager.stop() is False

    @pytest.mark.asyncio
    async def test_stderr_before_ready(self, manager, fake_kubectl):
        fake_kubectl["script"] = STDERR
        with pytest.raises(PortForwardError, match='services "grafana-service" not found'):
            await manager.start()
        assert not manager.active

    @pytest.mark.asyncio
    async def test_exit_before_ready(self, manager, fake_kubectl):
        fake_kubectl["script"] = EXITS
        with pytest.raises(PortForwardError, match="exited before it was ready"):
            await manager.start()
        assert not manager.active

    @pytest.mark.asyncio
    async def test_ready_timeout(self, fake_kubectl):
        fake_kubectl["script"] = HANGS
        manager = PortForwardManager(PortForwardSettings(ready_timeout=0.5))
        with pytest.raises(PortForwardError, match="did not become ready within 0.5 seconds"):
            await manager.start()
        assert not manager.active

    @pytest.mark.asyncio
    async def test_spawn_failure(self, manager, fake_kubectl):
        fake_kubectl["script"] = None
        with pytest.raises(PortForwardError, match="Failed to spawn kubectl port-forward process"):
            await manager.start()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, manager, fake_kubectl):
        await manager.start()
        await manager.stop()
        try:
            await manager.start()
            assert len(fake_kubectl["spawned"]) == 2
        finally:
            await manager.stop()
