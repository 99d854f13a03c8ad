"""
Executor Module - Black Box Interface

Purpose: Run eksctl/kubectl/aws CLIs as child processes
Interface: CommandExecutor.run_once(), run_streaming(), run_with_retry()
Hidden: Subprocess plumbing, chunk decoding, kill-on-cancel

Can be replaced with any executor exposing the same coroutine methods
(tests use a scripted fake).
"""

from .command_executor import (
    CommandError,
    CommandExecutor,
    ExecutionRequest,
    ExecutionResult,
    StreamOutcome,
)
from .json_parsing import CLIOutputError, parse_cli_json
from .process_manager import LogSink, ProcessLifecycleManager, TrackedProcess

__all__ = [
    "CLIOutputError",
    "CommandError",
    "CommandExecutor",
    "ExecutionRequest",
    "ExecutionResult",
    "LogSink",
    "ProcessLifecycleManager",
    "StreamOutcome",
    "TrackedProcess",
    "parse_cli_json",
]
