"""Configuration provider following Black Box Design principles."""
import os
from dataclasses import dataclass, field
from typing import Dict, Protocol


CERT_MANAGER_MANIFEST_URL = (
    "https://github.com/cert-manager/cert-manager/releases/download/v1.14.4/cert-manager.yaml"
)
ALB_CONTROLLER_MANIFEST_URL = (
    "https://github.com/kubernetes-sigs/aws-load-balancer-controller/releases/download/"
    "v2.7.2/v2_7_2_full.yaml"
)
ALB_IAM_POLICY_URL = (
    "https://raw.githubusercontent.com/kubernetes-sigs/aws-load-balancer-controller/"
    "v2.7.2/docs/install/iam_policy.json"
)

# Seconds a cached CLI listing stays fresh, per resource family
DEFAULT_CACHE_TTLS: Dict[str, float] = {
    "nodes": 30,
    "pods": 30,
    "deployments": 30,
    "services": 30,
    "ingresses": 30,
    "pvcs": 30,
    "pvs": 30,
    "storageclasses": 30,
    "configmaps": 30,
    "secrets": 30,
    "roles": 30,
    "rolebindings": 30,
    "namespaces": 60,
    "eks_clusters": 60,
    "tree_view": 15,
}


@dataclass
class ProvisioningSettings:
    """Timing and add-on settings for the create/delete orchestrators."""
    monitoring_delay: float = 15.0
    close_grace: float = 1.0
    retry_attempts: int = 5
    retry_delay: float = 15.0
    http_timeout: float = 30.0
    cert_manager_manifest_url: str = CERT_MANAGER_MANIFEST_URL
    alb_controller_manifest_url: str = ALB_CONTROLLER_MANIFEST_URL
    alb_iam_policy_url: str = ALB_IAM_POLICY_URL
    alb_policy_name: str = "AWSLoadBalancerControllerIAMPolicy"


@dataclass
class CacheSettings:
    """Response cache TTLs in seconds."""
    ttls: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CACHE_TTLS))

    def ttl_for(self, family: str) -> float:
        """TTL for a resource family; unknown families get the shortest listing TTL."""
        return self.ttls.get(family, DEFAULT_CACHE_TTLS["pods"])


@dataclass
class PortForwardSettings:
    """Grafana port-forward target."""
    namespace: str = "monitoring"
    target: str = "service/grafana-service"
    local_port: int = 8080
    target_port: int = 3000
    ready_timeout: float = 30.0
    ready_pattern: str = "Forwarding from"


class ConfigProvider(Protocol):
    """Protocol for configuration providers."""

    def get_provisioning_settings(self) -> ProvisioningSettings:
        """Get provisioning settings."""
        ...

    def get_cache_settings(self) -> CacheSettings:
        """Get cache settings."""
        ...

    def get_port_forward_settings(self) -> PortForwardSettings:
        """Get port-forward settings."""
        ...


class EnvConfigProvider:
    """Environment-based configuration provider."""

    def get_provisioning_settings(self) -> ProvisioningSettings:
        """Get provisioning settings from environment variables."""
        return ProvisioningSettings(
            monitoring_delay=float(os.getenv("MONITORING_DELAY_SECONDS", "15")),
            close_grace=float(os.getenv("CLOSE_GRACE_SECONDS", "1")),
            retry_attempts=int(os.getenv("RETRY_ATTEMPTS", "5")),
            retry_delay=float(os.getenv("RETRY_DELAY_SECONDS", "15")),
            http_timeout=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            cert_manager_manifest_url=os.getenv(
                "CERT_MANAGER_MANIFEST_URL", CERT_MANAGER_MANIFEST_URL
            ),
            alb_controller_manifest_url=os.getenv(
                "ALB_CONTROLLER_MANIFEST_URL", ALB_CONTROLLER_MANIFEST_URL
            ),
            alb_iam_policy_url=os.getenv("ALB_IAM_POLICY_URL", ALB_IAM_POLICY_URL),
            alb_policy_name=os.getenv("ALB_POLICY_NAME", "AWSLoadBalancerControllerIAMPolicy"),
        )

    def get_cache_settings(self) -> CacheSettings:
        """Get cache TTLs; each family can be overridden with CACHE_TTL_<FAMILY>."""
        ttls = {}
        for family, default in DEFAULT_CACHE_TTLS.items():
            ttls[family] = float(os.getenv(f"CACHE_TTL_{family.upper()}", str(default)))
        return CacheSettings(ttls=ttls)

    def get_port_forward_settings(self) -> PortForwardSettings:
        """Get port-forward settings from environment variables."""
        return PortForwardSettings(
            namespace=os.getenv("GRAFANA_NAMESPACE", "monitoring"),
            target=os.getenv("GRAFANA_SERVICE", "service/grafana-service"),
            local_port=int(os.getenv("PORT_FORWARD_LOCAL_PORT", "8080")),
            target_port=int(os.getenv("GRAFANA_TARGET_PORT", "3000")),
            ready_timeout=float(os.getenv("PORT_FORWARD_READY_TIMEOUT", "30")),
        )
