"""eksctl ClusterConfig generation."""

from typing import Any, Dict, List

import yaml

from eksdeck.modules.api.models import CreateClusterSpec

EKSCTL_API_VERSION = "eksctl.io/v1alpha5"


def _addons(spec: CreateClusterSpec) -> List[Dict[str, Any]]:
    addons: List[Dict[str, Any]] = []
    if spec.enable_ebs_csi_access:
        addons.append(
            {"name": "aws-ebs-csi-driver", "wellKnownPolicies": {"ebsCSIController": True}}
        )
    if spec.enable_efs_csi_access:
        addons.append(
            {"name": "aws-efs-csi-driver", "wellKnownPolicies": {"efsCSIController": True}}
        )
    addons.append({"name": "vpc-cni"})
    return addons


def build_cluster_config(spec: CreateClusterSpec) -> Dict[str, Any]:
    """
    Build the eksctl ClusterConfig document for a create request.

    OIDC is always enabled so IAM service accounts can be created after the
    cluster is up. Service accounts are deliberately absent from the document.
    """
    ssh: Dict[str, Any] = {"allow": spec.enable_ssh}
    if spec.enable_ssh and spec.ssh_key_name:
        ssh["publicKeyName"] = spec.ssh_key_name

    return {
        "apiVersion": EKSCTL_API_VERSION,
        "kind": "ClusterConfig",
        "metadata": {
            "name": spec.cluster_name,
            "region": spec.region,
            "version": spec.kubernetes_version,
        },
        "iam": {"withOIDC": True},
        "managedNodeGroups": [
            {
                "name": spec.node_group_name,
                "instanceType": spec.instance_type,
                "desiredCapacity": spec.desired_capacity,
                "minSize": spec.min_nodes,
                "maxSize": spec.max_nodes,
                "volumeSize": spec.volume_size,
                "volumeType": spec.volume_type,
                "ssh": ssh,
            }
        ],
        "addons": _addons(spec),
    }


def render_cluster_config(spec: CreateClusterSpec) -> str:
    """Render the ClusterConfig as YAML for `eksctl create cluster -f -`."""
    return yaml.safe_dump(build_cluster_config(spec), sort_keys=False, default_flow_style=False)
