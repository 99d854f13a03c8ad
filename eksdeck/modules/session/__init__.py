"""
Session Module - Black Box Interface

Purpose: Per-WebSocket streaming session lifecycle
Interface: ProvisioningSession.log(), complete(), fail(), disconnect(); PodLogStream.run()
Hidden: Frame ordering, stage disconnect policy, child process release

Replaceable with any FrameChannel implementation (tests use an in-memory channel).
"""

from .log_stream import MISSING_PARAMS_MESSAGE, PodLogStream
from .session import (
    STAGE_POLICIES,
    FrameChannel,
    ProvisioningSession,
    SessionState,
    StagePolicy,
    WebSocketChannel,
)

__all__ = [
    "FrameChannel",
    "MISSING_PARAMS_MESSAGE",
    "PodLogStream",
    "ProvisioningSession",
    "STAGE_POLICIES",
    "SessionState",
    "StagePolicy",
    "WebSocketChannel",
]
