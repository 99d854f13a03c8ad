import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Coroutine, Dict, Optional, Protocol, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from eksdeck.modules.api.models import (
    CompleteFrame,
    CreateClusterCommand,
    DeleteClusterCommand,
    ErrorFrame,
    LogFrame,
    StreamFrame,
)
from eksdeck.modules.executor import ProcessLifecycleManager

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Stages of a streaming cluster session."""

    IDLE = "idle"
    PREFLIGHT_CHECK = "preflight_check"
    EXISTENCE_CHECK = "existence_check"
    CONFIG_GENERATED = "config_generated"
    CLUSTER_CREATING = "cluster_creating"
    POST_CREATE_STORAGE_CLASS = "post_create_storage_class"
    POST_CREATE_ALB_SETUP = "post_create_alb_setup"
    MONITORING_DELAY = "monitoring_delay"
    DELETING = "deleting"
    COMPLETE = "complete"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StagePolicy:
    """What a client disconnect means while the session is in a given stage."""

    persists_after_disconnect: bool


# Once eksctl is creating (or deleting) real cloud resources the work is
# allowed to finish server-side; before that a disconnect abandons it.
STAGE_POLICIES: Dict[SessionState, StagePolicy] = {
    SessionState.IDLE: StagePolicy(persists_after_disconnect=False),
    SessionState.PREFLIGHT_CHECK: StagePolicy(persists_after_disconnect=False),
    SessionState.EXISTENCE_CHECK: StagePolicy(persists_after_disconnect=False),
    SessionState.CONFIG_GENERATED: StagePolicy(persists_after_disconnect=False),
    SessionState.CLUSTER_CREATING: StagePolicy(persists_after_disconnect=True),
    SessionState.POST_CREATE_STORAGE_CLASS: StagePolicy(persists_after_disconnect=True),
    SessionState.POST_CREATE_ALB_SETUP: StagePolicy(persists_after_disconnect=True),
    SessionState.MONITORING_DELAY: StagePolicy(persists_after_disconnect=True),
    SessionState.DELETING: StagePolicy(persists_after_disconnect=True),
    SessionState.COMPLETE: StagePolicy(persists_after_disconnect=False),
    SessionState.ABORTED: StagePolicy(persists_after_disconnect=False),
}


class FrameChannel(Protocol):
    """Outbound side of a client connection."""

    def is_open(self) -> bool:
        ...

    def mark_closed(self) -> None:
        ...

    async def send_frame(self, frame: StreamFrame) -> None:
        ...

    async def send_text(self, text: str) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class WebSocketChannel:
    """FrameChannel over a Starlette WebSocket. Sends after close are dropped."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def mark_closed(self) -> None:
        self._closed = True

    async def send_frame(self, frame: StreamFrame) -> None:
        await self.send_text(frame.model_dump_json())

    async def send_text(self, text: str) -> None:
        if not self.is_open():
            return
        try:
            await self.websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"WebSocket send failed, marking channel closed: {e}")
            self._closed = True

    async def close(self, code: int = 1000) -> None:
        if not self.is_open():
            self._closed = True
            return
        self._closed = True
        try:
            await self.websocket.close(code=code)
        except (RuntimeError, OSError) as e:
            logger.debug(f"WebSocket close failed: {e}")


class ProvisioningSession:
    """
    One eks-cli-stream WebSocket connection.

    Owns the frame channel, the session's child process and the current
    stage. Guarantees zero or more log frames followed by exactly one
    terminal frame; anything emitted afterwards is dropped.
    """

    def __init__(
        self,
        channel: FrameChannel,
        close_grace: float = 1.0,
        session_id: Optional[str] = None,
    ):
        """
        Initialize session.

        Args:
            channel: Outbound frame channel
            close_grace: Seconds between the terminal frame and closing the socket
            session_id: Identifier for logs (random when omitted)
        """
        self.session_id = session_id or uuid.uuid4().hex[:8]
        self.channel = channel
        self.close_grace = close_grace
        self.processes = ProcessLifecycleManager(owner=f"session {self.session_id}")
        self.state = SessionState.IDLE
        self.command: Optional[Union[CreateClusterCommand, DeleteClusterCommand]] = None
        self.task: Optional[asyncio.Task] = None
        self.terminated = False
        self.disconnected = False

    @property
    def policy(self) -> StagePolicy:
        return STAGE_POLICIES[self.state]

    @property
    def busy(self) -> bool:
        return self.command is not None

    def transition(self, state: SessionState) -> None:
        logger.info(f"Session {self.session_id}: {self.state.value} -> {state.value}")
        self.state = state

    def start(
        self,
        command: Union[CreateClusterCommand, DeleteClusterCommand],
        work: Coroutine,
    ) -> asyncio.Task:
        """
        Bind the session to its command and run the orchestration as a task.

        The task is not tied to the WebSocket handler, so it can outlive the
        connection when the current stage persists after disconnect.
        """
        self.command = command
        self.task = asyncio.create_task(work, name=f"session-{self.session_id}")
        return self.task

    async def log(self, text: str) -> None:
        """Emit a log frame; silently dropped after termination or disconnect."""
        if self.terminated or self.disconnected:
            return
        await self.channel.send_frame(LogFrame(data=text))

    async def complete(self, message: str) -> None:
        if not self.terminated:
            self.transition(SessionState.COMPLETE)
        await self._terminate(CompleteFrame(message=message))

    async def fail(self, message: str) -> None:
        if not self.terminated:
            self.transition(SessionState.ABORTED)
        await self._terminate(ErrorFrame(message=message))

    async def reject(self, detail: str) -> None:
        """
        Malformed inbound message: report it and close the socket.

        A running task is treated as on disconnect: early stages are
        cancelled and their child killed, persisting stages finish
        server-side without further frames.
        """
        logger.warning(f"Session {self.session_id}: invalid message format: {detail}")
        self._abandon_task()
        await self._terminate(ErrorFrame(message=f"Invalid message format: {detail}"))

    def disconnect(self) -> None:
        """
        Peer closed the socket (or it errored).

        Logic:
        1. No further frames are sent
        2. Stage does not persist -> kill the child, cancel the task
        3. Stage persists -> detach the child, let the task run to the end
        """
        if self.disconnected:
            return
        self.disconnected = True
        self.channel.mark_closed()
        logger.info(f"Session {self.session_id}: client disconnected during {self.state.value}")
        self._abandon_task()

    def _abandon_task(self) -> None:
        task = self.task
        finished = self.state in (SessionState.COMPLETE, SessionState.ABORTED)
        if finished or task is None or task.done() or task is asyncio.current_task():
            self.processes.release(kill=True)
            return

        if self.policy.persists_after_disconnect:
            logger.warning(
                f"Session {self.session_id}: {self.state.value} continues server-side "
                f"without a client"
            )
            self.processes.release(kill=False)
        else:
            logger.warning(f"Session {self.session_id}: cancelling during {self.state.value}")
            self.processes.release(kill=True)
            task.cancel()

    async def _terminate(self, frame: Union[CompleteFrame, ErrorFrame]) -> None:
        if self.terminated:
            logger.warning(
                f"Session {self.session_id}: dropping {frame.type} frame after terminal frame"
            )
            return
        self.terminated = True

        if self.disconnected:
            logger.info(
                f"Session {self.session_id} finished without a client: {frame.type}: {frame.message}"
            )
        else:
            await self.channel.send_frame(frame)

        self.processes.release(kill=True)
        if self.close_grace > 0:
            await asyncio.sleep(self.close_grace)
        await self.channel.close()
