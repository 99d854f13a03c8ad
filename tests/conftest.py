"""
Shared pytest fixtures for eksdeck tests.

This module provides common fixtures including:
- FakeExecutor: Scripted eksctl/kubectl/aws responses with call history
- FakeChannel: In-memory frame channel for session tests
- Fast provisioning settings (no sleeps) and a controllable clock
"""

import json
import os
import sys
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Pattern, Union

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from eksdeck.config.provider import (  # noqa: E402
    CacheSettings,
    PortForwardSettings,
    ProvisioningSettings,
)
from eksdeck.modules.executor import (  # noqa: E402
    CommandError,
    CommandExecutor,
    ExecutionRequest,
    ExecutionResult,
    StreamOutcome,
    TrackedProcess,
)
from eksdeck.modules.executor.command_executor import STDERR_MARKER  # noqa: E402


# =============================================================================
# CLI Mocking Infrastructure
# =============================================================================

@dataclass
class CliResponse:
    """Represents a mocked CLI command response."""
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    chunks: Optional[List[str]] = None
    spawn_error: Optional[str] = None
    # Awaited while a streaming command is "running" (after its stdout)
    while_running: Optional[Callable[[], Awaitable[None]]] = None


class FakeProcess:
    """Stands in for asyncio.subprocess.Process inside a TrackedProcess."""

    _next_pid = 4000

    def __init__(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: Optional[int] = None
        self.killed = False

    def kill(self):
        self.killed = True
        self.returncode = -9


@dataclass
class CliCall:
    """Record of a CLI call made during testing."""
    argv: List[str]
    command_str: str
    stdin: Optional[str]
    streaming: bool
    matched_pattern: Optional[str] = None
    process: Optional[FakeProcess] = None


class FakeExecutor(CommandExecutor):
    """
    CommandExecutor with pattern-matched canned responses.

    execute() and run_streaming() are scripted; run_once() and
    run_with_retry() are the real implementations on top of them.

    Usage:
        def test_list(fake_executor):
            fake_executor.register("get pods", CliResponse(stdout='{"items": []}'))
            ...
            assert fake_executor.was_called_with("kubectl get pods")
    """

    def __init__(self):
        super().__init__()
        self._responses: List[tuple] = []
        self._call_history: List[CliCall] = []
        self._default_response = CliResponse(
            stderr="Error: mock not configured for this command", returncode=1
        )

    def register(
        self,
        pattern: Union[str, Pattern],
        response: Union[CliResponse, List[CliResponse]],
        priority: int = 0,
    ) -> "FakeExecutor":
        """
        Register a response (or a sequence consumed call by call) for matching commands.

        Args:
            pattern: Substring of the full command line, or compiled regex
            response: CliResponse, or list of them; the last one repeats
            priority: Higher priority patterns are checked first
        """
        queue = list(response) if isinstance(response, list) else [response]
        self._responses.append((pattern, queue, priority))
        self._responses.sort(key=lambda x: x[2], reverse=True)
        return self

    def _match(self, request: ExecutionRequest, streaming: bool) -> tuple:
        command_str = " ".join(request.argv)
        for pattern, queue, _ in self._responses:
            if isinstance(pattern, str):
                hit = pattern in command_str
                name = pattern
            else:
                hit = bool(pattern.search(command_str))
                name = pattern.pattern
            if hit:
                response = queue.pop(0) if len(queue) > 1 else queue[0]
                break
        else:
            name, response = None, self._default_response

        call = CliCall(
            argv=request.argv,
            command_str=command_str,
            stdin=request.stdin_payload,
            streaming=streaming,
            matched_pattern=name,
        )
        self._call_history.append(call)
        return call, response

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        _, response = self._match(request, streaming=False)
        if response.spawn_error:
            raise CommandError(
                f'Failed to execute command "{request.display()}": {response.spawn_error}',
                request=request,
            )
        return ExecutionResult(response.returncode, response.stdout, response.stderr)

    async def run_streaming(self, command, args, sink, stdin=None, tracker=None) -> StreamOutcome:
        call, response = self._match(ExecutionRequest.build(command, args, stdin), streaming=True)
        if response.spawn_error:
            return StreamOutcome(success=False, error=response.spawn_error)

        call.process = FakeProcess()
        handle = TrackedProcess(call.process, sink)
        if tracker is not None:
            tracker.track(handle)
        try:
            chunks = response.chunks if response.chunks is not None else (
                [response.stdout] if response.stdout else []
            )
            for chunk in chunks:
                await handle.emit(chunk)
            if response.while_running is not None:
                await response.while_running()
            if response.stderr:
                await handle.emit(STDERR_MARKER.format(response.stderr))
            if not call.process.killed:
                call.process.returncode = response.returncode
        finally:
            if tracker is not None:
                tracker.forget(handle)

        code = call.process.returncode
        if code == 0:
            return StreamOutcome(success=True, output="".join(chunks), exit_code=0)
        return StreamOutcome(
            success=False,
            output="".join(chunks),
            error=response.stderr or f"Command exited with code {code}",
            exit_code=code,
        )

    @property
    def calls(self) -> List[CliCall]:
        return self._call_history

    def was_called_with(self, pattern: str) -> bool:
        return any(pattern in call.command_str for call in self._call_history)

    def get_calls_matching(self, pattern: str) -> List[CliCall]:
        return [c for c in self._call_history if pattern in c.command_str]

    def index_of(self, pattern: str) -> int:
        """Position of the first call containing pattern, -1 if never called."""
        for i, call in enumerate(self._call_history):
            if pattern in call.command_str:
                return i
        return -1

    def reset(self):
        self._call_history = []


@pytest.fixture
def fake_executor():
    return FakeExecutor()


# =============================================================================
# Channel / Session Infrastructure
# =============================================================================

class FakeChannel:
    """Records frames and text instead of writing to a socket."""

    def __init__(self):
        self.frames = []
        self.texts: List[str] = []
        self.peer_connected = True
        self.closed = False

    def is_open(self) -> bool:
        return self.peer_connected and not self.closed

    def mark_closed(self) -> None:
        self.peer_connected = False

    async def send_frame(self, frame) -> None:
        if self.is_open():
            self.frames.append(frame)

    async def send_text(self, text: str) -> None:
        if self.is_open():
            self.texts.append(text)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    @property
    def types(self) -> List[str]:
        return [frame.type for frame in self.frames]

    @property
    def log_text(self) -> str:
        return "".join(frame.data for frame in self.frames if frame.type == "log")

    @property
    def terminal(self):
        terminals = [frame for frame in self.frames if frame.type != "log"]
        assert len(terminals) == 1, f"expected exactly one terminal frame, got {self.types}"
        return terminals[0]


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def fast_settings():
    """Provisioning settings with every delay removed."""
    return ProvisioningSettings(
        monitoring_delay=0,
        close_grace=0,
        retry_attempts=2,
        retry_delay=0,
        cert_manager_manifest_url="https://example.test/cert-manager.yaml",
        alb_controller_manifest_url="https://example.test/alb.yaml",
        alb_iam_policy_url="https://example.test/iam_policy.json",
    )


@pytest.fixture
def cache_settings():
    return CacheSettings()


@pytest.fixture
def port_forward_settings():
    return PortForwardSettings(ready_timeout=5.0)


@dataclass
class FakeClock:
    now: float = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# Canned CLI output
# =============================================================================

CALLER_ARN = "arn:aws:iam::123456789012:user/dev"


def simulation_output(denied: Optional[dict] = None) -> str:
    """aws iam simulate-principal-policy JSON; denied maps action -> decision."""
    denied = denied or {}
    actions = [
        "iam:CreateRole",
        "iam:AttachRolePolicy",
        "iam:PutRolePolicy",
        "iam:CreateServiceLinkedRole",
    ]
    return json.dumps(
        {
            "EvaluationResults": [
                {"EvalActionName": a, "EvalDecision": denied.get(a, "allowed")} for a in actions
            ]
        }
    )


def register_preflight_ok(executor: FakeExecutor) -> None:
    executor.register("sts get-caller-identity --query Arn", CliResponse(stdout=CALLER_ARN + "\n"))
    executor.register("simulate-principal-policy", CliResponse(stdout=simulation_output()))


def register_cluster_absent(executor: FakeExecutor) -> None:
    executor.register(
        "eksctl get cluster",
        CliResponse(
            stderr="Error: unable to describe cluster control plane: "
            "ResourceNotFoundException: No cluster found for name: demo.",
            returncode=1,
        ),
    )


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "subprocess: Tests that spawn real child processes (the Python interpreter)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )
