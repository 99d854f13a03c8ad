"""
Kube Module - Black Box Interface

Purpose: CLI-backed Kubernetes and EKS queries for the HTTP layer
Interface: KubeResourceService (kinds, apply, tree, nodes, user mappings,
           Grafana URL), EksClusterService (clusters, context, CSI add-ons),
           MonitoringStack (Prometheus and Grafana deployment)
Hidden: kubectl/eksctl argument building, JSON/YAML extraction, cache keys
"""

from .clusters import CLUSTERS_CACHE_PREFIX, EksClusterService
from .monitoring import MonitoringStack
from .resources import (
    KINDS,
    TREE_KINDS,
    KindSpec,
    KubeResourceService,
    PreconditionFailed,
    ResourceNotFound,
)

__all__ = [
    "CLUSTERS_CACHE_PREFIX",
    "EksClusterService",
    "KINDS",
    "KindSpec",
    "KubeResourceService",
    "MonitoringStack",
    "PreconditionFailed",
    "ResourceNotFound",
    "TREE_KINDS",
]
