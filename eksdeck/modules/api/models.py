"""
eksdeck shared data models.

These models define the structure of everything crossing the WebSocket
and HTTP boundaries: inbound cluster commands, outbound stream frames,
and request/response bodies for the thin HTTP layer.
"""

import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

# Enums


class StreamType(str, Enum):
    """WebSocket connection types selected by the ?type= query parameter."""

    EKS_CLI_STREAM = "eks-cli-stream"
    KUBE_LOGS = "kube-logs"


class ResourceKind(str, Enum):
    """Kubernetes resource kinds served by the /kube-resources routes."""

    NODES = "nodes"
    PODS = "pods"
    DEPLOYMENTS = "deployments"
    SERVICES = "services"
    INGRESSES = "ingresses"
    PVCS = "pvcs"
    PVS = "pvs"
    STORAGECLASSES = "storageclasses"
    NAMESPACES = "namespaces"
    CONFIGMAPS = "configmaps"
    SECRETS = "secrets"
    ROLES = "roles"
    ROLEBINDINGS = "rolebindings"


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True)


# Stream frames (server -> client)


class LogFrame(BaseModel):
    """Incremental output chunk."""

    type: Literal["log"] = "log"
    data: str


class CompleteFrame(BaseModel):
    """Terminal success frame."""

    type: Literal["complete"] = "complete"
    message: str


class ErrorFrame(BaseModel):
    """Terminal failure frame."""

    type: Literal["error"] = "error"
    message: str


StreamFrame = Union[LogFrame, CompleteFrame, ErrorFrame]


# Cluster commands (client -> server)


class CreateClusterSpec(_WireModel):
    """Parameters of a create request, already normalized."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cluster_name: str = Field(..., alias="clusterName", min_length=1, description="EKS cluster name")
    region: str = Field(..., min_length=1, description="AWS region")
    kubernetes_version: str = Field("1.29", alias="kubernetesVersion")
    node_group_name: str = Field("standard-workers", alias="nodeGroupName", min_length=1)
    instance_type: str = Field("t3.medium", alias="instanceType", min_length=1)
    desired_capacity: int = Field(2, alias="desiredCapacity", ge=0)
    min_nodes: int = Field(1, alias="minNodes", ge=0)
    max_nodes: int = Field(3, alias="maxNodes", ge=1)
    volume_size: int = Field(20, alias="volumeSize", ge=1, description="Node volume size in GiB")
    volume_type: str = Field("gp3", alias="volumeType")
    enable_ssh: bool = Field(False, alias="enableSsh")
    ssh_key_name: Optional[str] = Field(None, alias="sshKeyName")
    enable_ebs_csi_access: bool = Field(False, alias="enableEbsCsiAccess")
    enable_efs_csi_access: bool = Field(False, alias="enableEfsCsiAccess")
    alb_ingress_access: bool = Field(False, alias="albIngressAccess")

    @field_validator("cluster_name")
    @classmethod
    def normalize_cluster_name(cls, v: str) -> str:
        """Whitespace runs become '-', then lowercase."""
        name = re.sub(r"\s+", "-", v.strip()).lower()
        if not name:
            raise ValueError("Cluster name must not be blank")
        return name

    @field_validator("kubernetes_version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> str:
        # Forms sometimes send 1.29 as a number
        return str(v) if isinstance(v, (int, float)) else v

    @field_validator("ssh_key_name")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v is not None else None

    @model_validator(mode="after")
    def check_capacity(self) -> "CreateClusterSpec":
        if not self.min_nodes <= self.desired_capacity <= self.max_nodes:
            raise ValueError(
                f"Node counts must satisfy min <= desired <= max "
                f"(got {self.min_nodes}/{self.desired_capacity}/{self.max_nodes})"
            )
        return self


class DeleteClusterSpec(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cluster_name: str = Field(..., alias="clusterName", min_length=1)
    region: str = Field(..., min_length=1)


class CreateClusterCommand(_WireModel):
    command_type: Literal["create"] = Field("create", alias="commandType")
    payload: CreateClusterSpec


class DeleteClusterCommand(_WireModel):
    command_type: Literal["delete"] = Field("delete", alias="commandType")
    payload: DeleteClusterSpec


ClusterCommand = Annotated[
    Union[CreateClusterCommand, DeleteClusterCommand],
    Field(discriminator="command_type"),
]

_cluster_command_adapter: TypeAdapter = TypeAdapter(ClusterCommand)


class MalformedCommand(ValueError):
    """Inbound WebSocket message is not a valid cluster command."""


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(p) for p in error.get("loc", ()) if p != "__root__")
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "; ".join(parts)


def parse_cluster_command(raw: Union[str, bytes]) -> Union[CreateClusterCommand, DeleteClusterCommand]:
    """
    Parse a raw WebSocket text message into a cluster command.

    Args:
        raw: JSON text of the form {"commandType": ..., "payload": {...}}

    Returns:
        CreateClusterCommand or DeleteClusterCommand

    Raises:
        MalformedCommand: Invalid JSON, unknown commandType or bad payload
    """
    try:
        return _cluster_command_adapter.validate_json(raw)
    except ValidationError as e:
        raise MalformedCommand(_describe_validation_error(e)) from e


# Request Models (API Input)


class AwsCredentialsRequest(_WireModel):
    """Credentials for `aws configure set`."""

    access_key_id: str = Field(..., alias="accessKeyId", min_length=1)
    secret_access_key: str = Field(..., alias="secretAccessKey", min_length=1)
    region: str = Field(..., min_length=1)


class ClusterRef(_WireModel):
    """Identifies an EKS cluster."""

    cluster_name: str = Field(..., alias="clusterName", min_length=1)
    region: str = Field(..., min_length=1)


class ScaleDeploymentRequest(BaseModel):
    name: str = Field(..., min_length=1)
    namespace: str = Field(default="default", min_length=1)
    replicas: int = Field(..., ge=0, description="Target replica count")


class ApplyManifestRequest(BaseModel):
    """Raw manifest text piped to `kubectl apply -f -`."""

    manifest: str = Field(..., min_length=1)
    namespace: Optional[str] = Field(None, description="Apply into this namespace")


class PolicyRule(_WireModel):
    """One rule of a namespaced Role."""

    api_groups: List[str] = Field(..., alias="apiGroups", description='[""] for the core group')
    resources: List[str] = Field(..., min_length=1)
    verbs: List[str] = Field(..., min_length=1)


class CreateUserMappingRequest(_WireModel):
    """Map an IAM role to a Kubernetes user and grant it a Role in one namespace."""

    iam_role_arn: str = Field(..., alias="iamRoleArn")
    kubernetes_username: str = Field(..., alias="kubernetesUsername")
    namespace: str
    role_name: str = Field(..., alias="roleName")
    rules: List[PolicyRule] = Field(..., min_length=1)

    @field_validator("iam_role_arn")
    @classmethod
    def validate_role_arn(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith("arn:aws:iam::"):
            raise ValueError("A valid AWS IAM Role ARN is required.")
        return v

    @field_validator("kubernetes_username", "namespace", "role_name")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


# Response Models (API Output)


class MessageResponse(BaseModel):
    message: str
    output: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    details: Optional[str] = None


class ConnectionStatus(BaseModel):
    connected: bool
    message: Optional[str] = None
    error: Optional[str] = None


class CountResponse(BaseModel):
    count: int


class WorkerNode(BaseModel):
    name: str
    type: str = "worker"
    status: str
    version: str


class RoleBindingRef(_WireModel):
    namespace: Optional[str] = None
    role: str
    role_binding_name: str = Field(..., alias="roleBindingName")


class UserMapping(_WireModel):
    """An aws-auth mapRoles entry and the RoleBindings granting it access."""

    iam_role_arn: Optional[str] = Field(None, alias="iamRoleArn")
    kubernetes_username: Optional[str] = Field(None, alias="kubernetesUsername")
    bindings: List[RoleBindingRef] = Field(default_factory=list)


class GrafanaUrlResponse(BaseModel):
    url: str


class PortForwardResponse(BaseModel):
    message: str
    port: Optional[int] = None


class HealthResponse(BaseModel):
    status: str = "ok"


TreeResources = Dict[str, List[Dict[str, Any]]]


__all__ = [
    "StreamType",
    "ResourceKind",
    "LogFrame",
    "CompleteFrame",
    "ErrorFrame",
    "StreamFrame",
    "CreateClusterSpec",
    "DeleteClusterSpec",
    "CreateClusterCommand",
    "DeleteClusterCommand",
    "ClusterCommand",
    "MalformedCommand",
    "parse_cluster_command",
    "AwsCredentialsRequest",
    "ClusterRef",
    "ScaleDeploymentRequest",
    "ApplyManifestRequest",
    "PolicyRule",
    "CreateUserMappingRequest",
    "MessageResponse",
    "ErrorResponse",
    "ConnectionStatus",
    "CountResponse",
    "WorkerNode",
    "RoleBindingRef",
    "UserMapping",
    "GrafanaUrlResponse",
    "PortForwardResponse",
    "HealthResponse",
    "TreeResources",
]
