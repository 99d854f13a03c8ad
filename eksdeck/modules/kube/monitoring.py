"""
Prometheus and Grafana deployment.

The stack is deployed on demand from the dashboard once a cluster is up.
Grafana gets two services: grafana-service (ClusterIP, the port-forward
target) and grafana-nlb-service (an internet-facing NLB whose hostname is
reported as the Grafana URL).
"""

import logging
from typing import Any, Dict, List

import yaml

logger = logging.getLogger(__name__)

PROMETHEUS_IMAGE = "prom/prometheus:v2.47.0"
GRAFANA_IMAGE = "grafana/grafana:10.4.3"
PROMETHEUS_SERVICE = "prometheus-service"
GRAFANA_SERVICE = "grafana-service"
GRAFANA_NLB_SERVICE = "grafana-nlb-service"
GRAFANA_PORT = 3000
PROMETHEUS_PORT = 9090

_SA_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"


def _node_scrape_job(job_name: str, metrics_path: str) -> Dict[str, Any]:
    """Kubelet endpoints scraped through the API server proxy."""
    return {
        "job_name": job_name,
        "kubernetes_sd_configs": [{"role": "node"}],
        "scheme": "https",
        "tls_config": {"insecure_skip_verify": True},
        "bearer_token_file": _SA_TOKEN,
        "relabel_configs": [
            {"action": "labelmap", "regex": "__meta_kubernetes_node_label_(.+)"},
            {"target_label": "__address__", "replacement": "kubernetes.default.svc:443"},
            {
                "source_labels": ["__meta_kubernetes_node_name"],
                "regex": "(.+)",
                "target_label": "__metrics_path__",
                "replacement": metrics_path,
            },
        ],
    }


def prometheus_config() -> Dict[str, Any]:
    return {
        "global": {"scrape_interval": "15s"},
        "scrape_configs": [
            _node_scrape_job("kubernetes-nodes", "/api/v1/nodes/$1/proxy/metrics"),
            _node_scrape_job("kubernetes-cadvisor", "/api/v1/nodes/$1/proxy/metrics/cadvisor"),
            {
                "job_name": "kubernetes-pods",
                "kubernetes_sd_configs": [{"role": "pod"}],
                "relabel_configs": [
                    {
                        "source_labels": ["__meta_kubernetes_pod_annotation_prometheus_io_scrape"],
                        "action": "keep",
                        "regex": "true",
                    },
                    {
                        "source_labels": ["__meta_kubernetes_pod_annotation_prometheus_io_path"],
                        "action": "replace",
                        "target_label": "__metrics_path__",
                        "regex": "(.+)",
                    },
                    {
                        "source_labels": [
                            "__address__",
                            "__meta_kubernetes_pod_annotation_prometheus_io_port",
                        ],
                        "action": "replace",
                        "regex": r"([^:]+)(?::\d+)?;(\d+)",
                        "replacement": "$1:$2",
                        "target_label": "__address__",
                    },
                    {"action": "labelmap", "regex": "__meta_kubernetes_pod_label_(.+)"},
                    {
                        "source_labels": ["__meta_kubernetes_namespace"],
                        "action": "replace",
                        "target_label": "kubernetes_namespace",
                    },
                    {
                        "source_labels": ["__meta_kubernetes_pod_name"],
                        "action": "replace",
                        "target_label": "kubernetes_pod_name",
                    },
                ],
            },
        ],
    }


def _deployment(name: str, namespace: str, app: str, pod_spec: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": app}},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": {"app": app}},
            "template": {"metadata": {"labels": {"app": app}}, "spec": pod_spec},
        },
    }


def _service(name: str, namespace: str, app: str, port: int, target_port: int) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": app}},
        "spec": {
            "selector": {"app": app},
            "ports": [{"protocol": "TCP", "port": port, "targetPort": target_port}],
            "type": "ClusterIP",
        },
    }


def render_prometheus_manifest(namespace: str = "monitoring") -> str:
    """Namespace, RBAC, scrape config, Deployment and ClusterIP Service."""
    documents: List[Dict[str, Any]] = [
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}},
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": "prometheus", "namespace": namespace},
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": "prometheus"},
            "rules": [
                {
                    "apiGroups": [""],
                    "resources": [
                        "nodes",
                        "nodes/proxy",
                        "nodes/metrics",
                        "services",
                        "endpoints",
                        "pods",
                        "configmaps",
                    ],
                    "verbs": ["get", "list", "watch"],
                },
                {
                    "apiGroups": ["networking.k8s.io"],
                    "resources": ["ingresses"],
                    "verbs": ["get", "list", "watch"],
                },
                {"nonResourceURLs": ["/metrics"], "verbs": ["get"]},
            ],
        },
        {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRoleBinding",
            "metadata": {"name": "prometheus"},
            "subjects": [{"kind": "ServiceAccount", "name": "prometheus", "namespace": namespace}],
            "roleRef": {
                "apiGroup": "rbac.authorization.k8s.io",
                "kind": "ClusterRole",
                "name": "prometheus",
            },
        },
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "prometheus-config", "namespace": namespace},
            "data": {"prometheus.yml": yaml.safe_dump(prometheus_config(), sort_keys=False)},
        },
        _deployment(
            "prometheus-deployment",
            namespace,
            "prometheus",
            {
                "serviceAccountName": "prometheus",
                "containers": [
                    {
                        "name": "prometheus",
                        "image": PROMETHEUS_IMAGE,
                        "args": [
                            "--config.file=/etc/prometheus/prometheus.yml",
                            "--storage.tsdb.path=/prometheus",
                        ],
                        "ports": [{"containerPort": PROMETHEUS_PORT}],
                        "volumeMounts": [
                            {"name": "prometheus-config-volume", "mountPath": "/etc/prometheus/"},
                            {"name": "prometheus-storage-volume", "mountPath": "/prometheus"},
                        ],
                    }
                ],
                "volumes": [
                    {"name": "prometheus-config-volume", "configMap": {"name": "prometheus-config"}},
                    {"name": "prometheus-storage-volume", "emptyDir": {}},
                ],
            },
        ),
        _service(PROMETHEUS_SERVICE, namespace, "prometheus", PROMETHEUS_PORT, PROMETHEUS_PORT),
    ]
    return yaml.safe_dump_all(documents, sort_keys=False)


def render_grafana_manifest(namespace: str = "monitoring") -> str:
    """Grafana Deployment, its ClusterIP service and the public NLB service."""
    nlb_service = _service(GRAFANA_NLB_SERVICE, namespace, "grafana", 80, GRAFANA_PORT)
    nlb_service["metadata"]["annotations"] = {
        "service.beta.kubernetes.io/aws-load-balancer-type": "nlb",
        "service.beta.kubernetes.io/aws-load-balancer-nlb-target-type": "ip",
    }
    nlb_service["spec"].update({"type": "LoadBalancer", "externalTrafficPolicy": "Cluster"})

    documents: List[Dict[str, Any]] = [
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": "grafana", "namespace": namespace},
        },
        _deployment(
            "grafana-deployment",
            namespace,
            "grafana",
            {
                "serviceAccountName": "grafana",
                "containers": [
                    {
                        "name": "grafana",
                        "image": GRAFANA_IMAGE,
                        "ports": [{"containerPort": GRAFANA_PORT}],
                        "env": [
                            {"name": "GF_SECURITY_ADMIN_USER", "value": "admin"},
                            {"name": "GF_SECURITY_ADMIN_PASSWORD", "value": "admin"},
                        ],
                        "volumeMounts": [
                            {"name": "grafana-storage", "mountPath": "/var/lib/grafana"},
                            {
                                "name": "grafana-datasources",
                                "mountPath": "/etc/grafana/provisioning/datasources",
                            },
                        ],
                    }
                ],
                "volumes": [
                    {"name": "grafana-storage", "emptyDir": {}},
                    {"name": "grafana-datasources", "configMap": {"name": "grafana-datasources"}},
                ],
            },
        ),
        _service(GRAFANA_SERVICE, namespace, "grafana", GRAFANA_PORT, GRAFANA_PORT),
        nlb_service,
    ]
    return yaml.safe_dump_all(documents, sort_keys=False)


def render_grafana_datasources(namespace: str = "monitoring") -> str:
    """Provisioned Prometheus data source pointing at the in-cluster service."""
    datasources = {
        "apiVersion": 1,
        "datasources": [
            {
                "name": "Prometheus",
                "type": "prometheus",
                "url": f"http://{PROMETHEUS_SERVICE}.{namespace}.svc.cluster.local:{PROMETHEUS_PORT}",
                "access": "proxy",
                "isDefault": True,
                "version": 1,
                "editable": True,
            }
        ],
    }
    return yaml.safe_dump(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "grafana-datasources", "namespace": namespace},
            "data": {"prometheus.yaml": yaml.safe_dump(datasources, sort_keys=False)},
        },
        sort_keys=False,
    )


class MonitoringStack:
    """Applies the Prometheus and Grafana manifests through KubeResourceService."""

    def __init__(self, kube, namespace: str = "monitoring"):
        """
        Initialize monitoring stack deployer.

        Args:
            kube: KubeResourceService used to apply (and invalidate the cache)
            namespace: Namespace for both components
        """
        self.kube = kube
        self.namespace = namespace

    async def deploy_prometheus(self) -> str:
        logger.info(f"Deploying Prometheus into namespace {self.namespace}")
        return await self.kube.apply_manifest(render_prometheus_manifest(self.namespace))

    async def deploy_grafana(self) -> str:
        """
        Deploy Grafana, then its data source config.

        The datasource ConfigMap is applied second; its output is returned.
        """
        logger.info(f"Deploying Grafana into namespace {self.namespace}")
        await self.kube.apply_manifest(render_grafana_manifest(self.namespace))
        return await self.kube.apply_manifest(render_grafana_datasources(self.namespace))
