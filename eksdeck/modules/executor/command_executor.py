"""
Command Executor for eksctl, kubectl and the aws CLI.

Three modes over one primitive (spawn, capture, wait):
- run_once: buffer everything, return trimmed stdout or raise CommandError
- run_streaming: forward output chunks to a live sink, never raise on exit status
- run_with_retry: run_streaming with a fixed delay between bounded attempts

Every spawned child is awaited to exit. If the awaiting coroutine is
cancelled the child is killed before the cancellation propagates.
"""

import asyncio
import codecs
import logging
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .process_manager import LogSink, ProcessLifecycleManager, TrackedProcess

logger = logging.getLogger(__name__)

STDERR_MARKER = "\x1b[31m{}\x1b[0m"
RETRY_MARKER = "\x1b[33m{}\x1b[0m"
CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ExecutionRequest:
    """One external command invocation. Immutable once issued."""

    command: str
    args: Tuple[str, ...] = ()
    stdin_payload: Optional[str] = None
    sensitive: bool = False

    @classmethod
    def build(
        cls,
        command: str,
        args: Sequence[str] = (),
        stdin_payload: Optional[str] = None,
        sensitive: bool = False,
    ) -> "ExecutionRequest":
        return cls(command, tuple(args), stdin_payload, sensitive)

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]

    def display(self) -> str:
        """Printable command line; the last argument is masked for sensitive calls."""
        argv = self.argv
        if self.sensitive and len(argv) > 1:
            argv = argv[:-1] + ["****"]
        return shlex.join(argv)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a completed subprocess."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def failure_message(self) -> str:
        """stderr, else stdout, else a generic exit code message."""
        return (self.stderr or self.stdout or f"Command exited with code {self.exit_code}").strip()


@dataclass(frozen=True)
class StreamOutcome:
    """Result of a streaming (or retried) invocation."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None


class CommandError(RuntimeError):
    """An external command could not be spawned or exited nonzero."""

    def __init__(
        self,
        message: str,
        request: Optional[ExecutionRequest] = None,
        result: Optional[ExecutionResult] = None,
    ):
        super().__init__(message)
        self.request = request
        self.result = result

    @property
    def exit_code(self) -> Optional[int]:
        return self.result.exit_code if self.result else None


def _encode(payload: Optional[str]) -> Optional[bytes]:
    return payload.encode("utf-8") if payload is not None else None


def _decode(data: Optional[bytes]) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class CommandExecutor:
    """Runs external CLIs as asyncio subprocesses."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        """
        Initialize executor.

        Args:
            env: Environment for child processes (inherits the server's when None)
        """
        self.env = env

    async def _spawn(self, request: ExecutionRequest):
        return await asyncio.create_subprocess_exec(
            *request.argv,
            stdin=(
                asyncio.subprocess.PIPE
                if request.stdin_payload is not None
                else asyncio.subprocess.DEVNULL
            ),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
        )

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Spawn once and buffer all output.

        Never raises for a nonzero exit code; raises CommandError only when
        the process cannot be spawned.
        """
        logger.info(f"Executing command: {request.display()}")
        try:
            process = await self._spawn(request)
        except OSError as e:
            logger.error(f"Spawn error for command {request.display()}: {e}")
            raise CommandError(
                f'Failed to execute command "{request.display()}": {e}', request=request
            ) from e

        try:
            stdout, stderr = await process.communicate(_encode(request.stdin_payload))
        except asyncio.CancelledError:
            TrackedProcess(process).kill()
            raise

        result = ExecutionResult(
            exit_code=process.returncode, stdout=_decode(stdout), stderr=_decode(stderr)
        )
        if result.stdout:
            logger.debug(f"Command stdout for {request.display()}:\n{result.stdout}")
        if result.stderr:
            logger.debug(f"Command stderr for {request.display()}:\n{result.stderr}")
        return result

    async def run_once(
        self,
        command: str,
        args: Sequence[str] = (),
        stdin: Optional[str] = None,
        sensitive: bool = False,
    ) -> str:
        """
        Run a short CLI query or configuration command.

        Args:
            command: Executable name
            args: Argument list
            stdin: Optional payload piped to the process
            sensitive: Mask the last argument in logs

        Returns:
            Trimmed stdout

        Raises:
            CommandError: Spawn failure or nonzero exit (message: stderr, else
                stdout, else "Command exited with code N")
        """
        request = ExecutionRequest.build(command, args, stdin, sensitive)
        result = await self.execute(request)
        if result.ok:
            return result.stdout.strip()

        logger.error(
            f"Command failed: {request.display()} (exit code {result.exit_code}): "
            f"{result.failure_message()}"
        )
        raise CommandError(result.failure_message(), request=request, result=result)

    async def run_streaming(
        self,
        command: str,
        args: Sequence[str],
        sink: LogSink,
        stdin: Optional[str] = None,
        tracker: Optional[ProcessLifecycleManager] = None,
    ) -> StreamOutcome:
        """
        Run a command while a live audience watches.

        stdout chunks go to the sink as-is, stderr chunks wrapped in a red
        marker, interleaved in arrival order.

        Args:
            command: Executable name
            args: Argument list
            sink: Receiver for output chunks
            stdin: Optional payload piped to the process
            tracker: Session process manager to register the child with

        Returns:
            StreamOutcome; failure carries captured stderr or the exit code
        """
        request = ExecutionRequest.build(command, args, stdin)
        logger.info(f"Executing command: {request.display()}")
        try:
            process = await self._spawn(request)
        except OSError as e:
            logger.error(f"Spawn error for command {request.display()}: {e}")
            return StreamOutcome(success=False, error=str(e))

        handle = TrackedProcess(process, sink)
        if tracker is not None:
            tracker.track(handle)

        output: List[str] = []
        errors: List[str] = []
        try:
            await asyncio.gather(
                self._pump(process.stdout, handle, output),
                self._pump(process.stderr, handle, errors, marker=STDERR_MARKER),
                self._feed_stdin(process, request.stdin_payload),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            handle.detach()
            handle.kill()
            raise
        finally:
            if tracker is not None:
                tracker.forget(handle)

        logger.info(f"Command {request.display()} exited with code {exit_code}")
        if exit_code == 0:
            return StreamOutcome(success=True, output="".join(output), exit_code=0)
        return StreamOutcome(
            success=False,
            output="".join(output),
            error="".join(errors) or f"Command exited with code {exit_code}",
            exit_code=exit_code,
        )

    async def run_with_retry(
        self,
        command: str,
        args: Sequence[str],
        sink: LogSink,
        max_attempts: int = 5,
        delay: float = 15.0,
        stdin: Optional[str] = None,
        tracker: Optional[ProcessLifecycleManager] = None,
    ) -> StreamOutcome:
        """
        Re-run a streaming command until it succeeds or attempts run out.

        Used for known-transient readiness waits only.
        """
        display = ExecutionRequest.build(command, args).display()
        outcome = StreamOutcome(success=False)
        for attempt in range(1, max_attempts + 1):
            outcome = await self.run_streaming(command, args, sink, stdin=stdin, tracker=tracker)
            if outcome.success:
                return outcome
            if attempt < max_attempts:
                logger.warning(f"Attempt {attempt}/{max_attempts} failed for {display}")
                await sink.log(
                    RETRY_MARKER.format(
                        f"Retrying command (attempt {attempt}/{max_attempts}): {display}"
                    )
                    + "\n"
                )
                await asyncio.sleep(delay)

        return StreamOutcome(
            success=False,
            output=outcome.output,
            error=f"Command failed after {max_attempts} attempts: {display}",
            exit_code=outcome.exit_code,
        )

    @staticmethod
    async def _pump(stream, handle: TrackedProcess, collected: List[str], marker: Optional[str] = None):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                collected.append(text)
                await handle.emit(marker.format(text) if marker else text)
            if not chunk:
                break

    @staticmethod
    async def _feed_stdin(process, payload: Optional[str]) -> None:
        if payload is None or process.stdin is None:
            return
        try:
            process.stdin.write(payload.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Process closed stdin before the payload was fully written")
        finally:
            process.stdin.close()
