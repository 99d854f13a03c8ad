"""
API Module - Black Box Interface

Purpose: HTTP routing and wire models
Interface: REST endpoints (routes.create_api_router), pydantic models
Hidden: Request validation, error response shaping

The API module only orchestrates - it contains no business logic.
All logic is delegated to the kube, credentials and portforward modules.
"""

from .models import (
    ClusterCommand,
    CompleteFrame,
    CreateClusterCommand,
    CreateClusterSpec,
    DeleteClusterCommand,
    DeleteClusterSpec,
    ErrorFrame,
    ErrorResponse,
    HealthResponse,
    LogFrame,
    MalformedCommand,
    StreamFrame,
    StreamType,
    parse_cluster_command,
)

__all__ = [
    "ClusterCommand",
    "CompleteFrame",
    "CreateClusterCommand",
    "CreateClusterSpec",
    "DeleteClusterCommand",
    "DeleteClusterSpec",
    "ErrorFrame",
    "ErrorResponse",
    "HealthResponse",
    "LogFrame",
    "MalformedCommand",
    "StreamFrame",
    "StreamType",
    "parse_cluster_command",
]
