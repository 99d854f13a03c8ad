"""
Per-session child process bookkeeping.

A session may own at most one live child process. Releasing it always
detaches the output listener first so a chunk still buffered in the pipe
cannot reach a socket that is being torn down, and only then kills the
process (when the caller asks for it).
"""

import logging
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class LogSink(Protocol):
    """Anything that accepts streamed command output."""

    async def log(self, text: str) -> None:
        ...


class TrackedProcess:
    """A spawned child process plus the sink its output is forwarded to."""

    def __init__(self, process, sink: Optional[LogSink] = None):
        self.process = process
        self.sink = sink

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None

    @property
    def detached(self) -> bool:
        return self.sink is None

    def detach(self) -> None:
        """Stop forwarding output. The process keeps running."""
        self.sink = None

    async def emit(self, text: str) -> None:
        sink = self.sink
        if sink is not None:
            await sink.log(text)

    def kill(self) -> bool:
        """
        Force-kill the process if it is still running.

        Returns:
            True if a kill signal was delivered
        """
        if self.exited:
            return False
        try:
            self.process.kill()
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already gone before kill")
            return False
        return True


class ProcessLifecycleManager:
    """
    Tracks the single live child process of one session.

    Invariant: 0 or 1 tracked handle. Tracking a new handle while another
    is live releases (detach + kill) the old one first.
    """

    def __init__(self, owner: str = "session"):
        self.owner = owner
        self._current: Optional[TrackedProcess] = None

    @property
    def current(self) -> Optional[TrackedProcess]:
        return self._current

    @property
    def has_live_process(self) -> bool:
        return self._current is not None and not self._current.exited

    def track(self, handle: TrackedProcess) -> None:
        """Register a freshly spawned process for this session."""
        if self._current is not None and self._current is not handle:
            logger.warning(
                f"{self.owner}: replacing tracked process {self._current.pid}, releasing it first"
            )
            self.release(kill=True)
        self._current = handle
        logger.debug(f"{self.owner}: tracking process {handle.pid}")

    def forget(self, handle: TrackedProcess) -> None:
        """Drop the reference once the process has exited on its own."""
        if self._current is handle:
            self._current = None

    def release(self, kill: bool = True) -> Optional[TrackedProcess]:
        """
        Detach listeners from the tracked process, then kill it if asked.

        Args:
            kill: Force-kill the process if it has not exited yet

        Returns:
            The released handle, or None if nothing was tracked
        """
        handle = self._current
        if handle is None:
            return None

        handle.detach()
        if kill:
            if handle.kill():
                logger.info(f"{self.owner}: killed process {handle.pid}")
        elif not handle.exited:
            logger.info(
                f"{self.owner}: process {handle.pid} detached and left running to completion"
            )
        self._current = None
        return handle
