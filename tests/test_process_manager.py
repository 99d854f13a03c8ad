"""Tests for per-session child process bookkeeping."""

from unittest.mock import AsyncMock

import pytest

from conftest import FakeProcess
from eksdeck.modules.executor import ProcessLifecycleManager, TrackedProcess


class GoneProcess(FakeProcess):
    def kill(self):
        raise ProcessLookupError()


def test_track_releases_previous_handle():
    manager = ProcessLifecycleManager(owner="test")
    first = TrackedProcess(FakeProcess(), AsyncMock())
    second = TrackedProcess(FakeProcess(), AsyncMock())

    manager.track(first)
    manager.track(second)

    assert first.process.killed
    assert first.detached
    assert manager.current is second
    assert manager.has_live_process


def test_release_without_kill_detaches_only():
    manager = ProcessLifecycleManager()
    handle = TrackedProcess(FakeProcess(), AsyncMock())
    manager.track(handle)

    assert manager.release(kill=False) is handle
    assert handle.detached
    assert not handle.process.killed
    assert manager.current is None


def test_release_skips_kill_for_exited_process():
    manager = ProcessLifecycleManager()
    process = FakeProcess()
    process.returncode = 0
    manager.track(TrackedProcess(process))

    manager.release(kill=True)
    assert not process.killed


def test_release_with_nothing_tracked():
    assert ProcessLifecycleManager().release() is None


def test_forget_ignores_other_handles():
    manager = ProcessLifecycleManager()
    handle = TrackedProcess(FakeProcess())
    manager.track(handle)
    manager.forget(TrackedProcess(FakeProcess()))
    assert manager.current is handle
    manager.forget(handle)
    assert manager.current is None


def test_kill_tolerates_vanished_process():
    assert TrackedProcess(GoneProcess()).kill() is False


@pytest.mark.asyncio
async def test_detached_handle_stops_forwarding():
    sink = AsyncMock()
    handle = TrackedProcess(FakeProcess(), sink)
    await handle.emit("first")
    handle.detach()
    await handle.emit("second")
    sink.log.assert_awaited_once_with("first")
