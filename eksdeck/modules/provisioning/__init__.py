"""
Provisioning Module - Black Box Interface

Purpose: EKS cluster create/delete state machines
Interface: ProvisioningOrchestrator.create_cluster(), TeardownOrchestrator.delete_cluster()
Hidden: Pre-flight checks, eksctl config rendering, post-create add-ons

Both orchestrators report through a ProvisioningSession and never raise
past their boundary except on cancellation.
"""

from .addons import ClusterAddons, prepare_alb_manifest, render_storage_class
from .cluster_config import build_cluster_config, render_cluster_config
from .errors import (
    AddonStepFailed,
    ArtifactDownloadFailed,
    ClusterAlreadyExists,
    ClusterCheckFailed,
    ClusterCreationFailed,
    PermissionCheckFailed,
    ProvisioningAborted,
)
from .orchestrator import REQUIRED_IAM_ACTIONS, ProvisioningOrchestrator
from .teardown import TeardownOrchestrator

__all__ = [
    "AddonStepFailed",
    "ArtifactDownloadFailed",
    "ClusterAddons",
    "ClusterAlreadyExists",
    "ClusterCheckFailed",
    "ClusterCreationFailed",
    "PermissionCheckFailed",
    "ProvisioningAborted",
    "ProvisioningOrchestrator",
    "REQUIRED_IAM_ACTIONS",
    "TeardownOrchestrator",
    "build_cluster_config",
    "prepare_alb_manifest",
    "render_cluster_config",
    "render_storage_class",
]
