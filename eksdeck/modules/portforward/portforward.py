import asyncio
import logging
from typing import Optional

from eksdeck.config.provider import PortForwardSettings

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0


class PortForwardError(RuntimeError):
    """kubectl port-forward could not be started."""


class PortForwardManager:
    """
    Holds the one Grafana port-forward for the whole server.

    Invariant: at most one kubectl port-forward child at any time. start()
    is serialized by a lock, so overlapping callers share one process.
    """

    def __init__(self, settings: PortForwardSettings):
        """
        Initialize port-forward manager.

        Args:
            settings: Target service, ports, readiness pattern and timeout
        """
        self.settings = settings
        self._process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self._process is not None

    @property
    def local_port(self) -> int:
        return self.settings.local_port

    async def start(self) -> int:
        """
        Start forwarding unless already active.

        Returns:
            Local port being forwarded

        Raises:
            PortForwardError: Spawn failure, stderr output or exit before
                readiness, or readiness timeout
        """
        async with self._lock:
            if self._process is not None:
                logger.info("Port-forwarding is already active.")
                return self.settings.local_port

            s = self.settings
            args = [
                "port-forward",
                "--namespace",
                s.namespace,
                s.target,
                f"{s.local_port}:{s.target_port}",
            ]
            logger.info(f"Executing command: kubectl {' '.join(args)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    "kubectl",
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.error(f"Failed to spawn kubectl port-forward: {e}")
                raise PortForwardError(f"Failed to spawn kubectl port-forward process: {e}") from e

            try:
                await self._wait_ready(process)
            except (PortForwardError, asyncio.CancelledError):
                self._kill(process)
                raise

            self._process = process
            self._watcher = asyncio.create_task(self._watch(process), name="port-forward-watcher")
            logger.info(f"Port-forwarding started on local port {s.local_port}")
            return s.local_port

    async def stop(self) -> bool:
        """
        Terminate the forward if one is running.

        Returns:
            True if a process was stopped
        """
        process = self._process
        if process is None:
            return False

        logger.info("Stopping port-forward process.")
        self._process = None
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            try:
                await asyncio.wait_for(watcher, timeout=STOP_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Port-forward did not exit after SIGTERM, killing it")
                self._kill(process)
        return True

    async def _wait_ready(self, process) -> None:
        ready = asyncio.ensure_future(self._read_until_ready(process.stdout))
        failed = asyncio.ensure_future(process.stderr.read(4096))
        try:
            done, _ = await asyncio.wait(
                {ready, failed},
                timeout=self.settings.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready, failed):
                if not task.done():
                    task.cancel()

        if ready in done and ready.result():
            return
        if failed in done and failed.result():
            message = failed.result().decode("utf-8", errors="replace").strip()
            logger.error(f"Port-forward stderr: {message}")
            raise PortForwardError(f"Failed to start port-forwarding: {message}")
        if not done:
            raise PortForwardError(
                f"Port-forwarding did not become ready within {self.settings.ready_timeout:g} seconds"
            )
        raise PortForwardError("kubectl port-forward exited before it was ready")

    async def _read_until_ready(self, stream) -> bool:
        while True:
            line = await stream.readline()
            if not line:
                return False
            text = line.decode("utf-8", errors="replace").rstrip()
            logger.info(f"Port-forward stdout: {text}")
            if self.settings.ready_pattern in text:
                return True

    async def _watch(self, process) -> None:
        """Drain both pipes until exit, then clear the handle if it is still ours."""

        async def drain(stream, label: str) -> None:
            while True:
                line = await stream.readline()
                if not line:
                    return
                logger.debug(f"Port-forward {label}: {line.decode('utf-8', errors='replace').rstrip()}")

        await asyncio.gather(drain(process.stdout, "stdout"), drain(process.stderr, "stderr"))
        code = await process.wait()
        logger.info(f"Port-forward process exited with code {code}")
        if self._process is process:
            self._process = None

    @staticmethod
    def _kill(process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
