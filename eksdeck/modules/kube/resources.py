"""
Cache-fronted kubectl queries and mutations.

Listings and details are memoized in the ResponseCache under
"<kind>:..." keys; every mutation of a kind drops that kind's keys plus
the tree view.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import yaml

from eksdeck.config.provider import CacheSettings
from eksdeck.modules.cache import ResponseCache
from eksdeck.modules.executor import CLIOutputError, CommandError, CommandExecutor, parse_cli_json

from .monitoring import GRAFANA_NLB_SERVICE

logger = logging.getLogger(__name__)

TREE_CACHE_PREFIX = "tree:"
CONTROL_PLANE_LABELS = (
    "node-role.kubernetes.io/control-plane",
    "node-role.kubernetes.io/master",
)
TREE_KINDS = (
    "nodes",
    "pods",
    "deployments",
    "services",
    "ingresses",
    "pvcs",
    "pvs",
    "secrets",
    "configmaps",
)


class ResourceNotFound(LookupError):
    """The requested object does not exist (yet)."""


class PreconditionFailed(Exception):
    """A resource the request depends on is in an unusable state."""


@dataclass(frozen=True)
class KindSpec:
    """How a served kind maps onto kubectl."""

    resource: str
    namespaced: bool
    scalable: bool = False


KINDS: Dict[str, KindSpec] = {
    "nodes": KindSpec("nodes", namespaced=False),
    "pods": KindSpec("pods", namespaced=True),
    "deployments": KindSpec("deployments", namespaced=True, scalable=True),
    "services": KindSpec("services", namespaced=True),
    "ingresses": KindSpec("ingresses", namespaced=True),
    "pvcs": KindSpec("pvc", namespaced=True),
    "pvs": KindSpec("pv", namespaced=False),
    "storageclasses": KindSpec("storageclass", namespaced=False),
    "namespaces": KindSpec("namespaces", namespaced=False),
    "configmaps": KindSpec("configmaps", namespaced=True),
    "secrets": KindSpec("secrets", namespaced=True),
    "roles": KindSpec("roles", namespaced=True),
    "rolebindings": KindSpec("rolebindings", namespaced=True),
}


# Pending is accepted: WaitForFirstConsumer classes bind only once a pod is scheduled
USABLE_PVC_PHASES = ("Bound", "Pending")
MAPPED_ROLE_GROUPS = ["system:authenticated"]
RBAC_API_GROUP = "rbac.authorization.k8s.io"


def _is_missing(error: Exception) -> bool:
    message = str(error)
    return "NotFound" in message or "no resources found" in message.lower()


def _load_yaml(raw: str, context: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {context} as YAML: {e}")
        raise CLIOutputError(f"Failed to parse {context} as YAML. Error: {e}", raw=raw) from e


def _sanitize_name(name: str) -> str:
    """Lowercase and replace characters Kubernetes object names do not allow."""
    return re.sub(r"[^a-z0-9.-]", "-", name.lower()).strip("-")


def _pod_spec(doc: Dict[str, Any]) -> Dict[str, Any]:
    kind = doc.get("kind")
    spec = doc.get("spec") or {}
    if kind == "Pod":
        return spec
    if kind == "CronJob":
        spec = (spec.get("jobTemplate") or {}).get("spec") or {}
    return (spec.get("template") or {}).get("spec") or {}


def claimed_pvcs(documents: List[Dict[str, Any]], namespace: Optional[str]) -> List[Tuple[str, str]]:
    """(claim name, namespace) for every PVC volume a pod template mounts."""
    claims = []
    for doc in documents:
        doc_namespace = (doc.get("metadata") or {}).get("namespace") or namespace or "default"
        for volume in _pod_spec(doc).get("volumes") or []:
            claim = (volume.get("persistentVolumeClaim") or {}).get("claimName")
            if claim and (claim, doc_namespace) not in claims:
                claims.append((claim, doc_namespace))
    return claims


def render_role(name: str, namespace: str, rules: List[Dict[str, List[str]]]) -> Dict[str, Any]:
    return {
        "apiVersion": f"{RBAC_API_GROUP}/v1",
        "kind": "Role",
        "metadata": {"name": _sanitize_name(name), "namespace": namespace},
        "rules": rules,
    }


def render_role_binding(name: str, namespace: str, role_name: str, username: str) -> Dict[str, Any]:
    return {
        "apiVersion": f"{RBAC_API_GROUP}/v1",
        "kind": "RoleBinding",
        "metadata": {"name": _sanitize_name(name), "namespace": namespace},
        "subjects": [{"kind": "User", "name": username, "apiGroup": RBAC_API_GROUP}],
        "roleRef": {"kind": "Role", "name": _sanitize_name(role_name), "apiGroup": RBAC_API_GROUP},
    }


class KubeResourceService:
    def __init__(
        self,
        executor: CommandExecutor,
        cache: ResponseCache,
        cache_settings: CacheSettings,
        monitoring_namespace: str = "monitoring",
    ):
        """
        Initialize resource service.

        Args:
            executor: Command executor
            cache: Shared response cache
            cache_settings: Per-family TTLs
            monitoring_namespace: Namespace of the Grafana NLB service
        """
        self.executor = executor
        self.cache = cache
        self.cache_settings = cache_settings
        self.monitoring_namespace = monitoring_namespace

    @staticmethod
    def kind(kind: str) -> KindSpec:
        try:
            return KINDS[kind]
        except KeyError:
            raise ValueError(f"Unsupported resource kind: {kind}") from None

    def _scope(self, spec: KindSpec, namespace: str) -> str:
        return namespace if spec.namespaced else "-"

    def _ns_args(self, spec: KindSpec, namespace: str) -> List[str]:
        return [f"--namespace={namespace}"] if spec.namespaced else []

    async def _get_json(self, args: List[str], context: str) -> Any:
        raw = await self.executor.run_once("kubectl", args)
        return parse_cli_json(raw, context)

    async def _fetch_items(self, kind: str, namespace: str) -> List[Dict[str, Any]]:
        spec = self.kind(kind)
        data = await self._get_json(
            ["get", spec.resource, "-o", "json", *self._ns_args(spec, namespace)],
            f"kubectl get {spec.resource} output",
        )
        return data.get("items", []) if isinstance(data, dict) else []

    def invalidate(self, kind: str) -> None:
        """Drop cached listings, counts and details of a kind, plus the tree view."""
        self.cache.clear_prefix(f"{kind}:")
        self.cache.clear_prefix(TREE_CACHE_PREFIX)
        if kind == "nodes":
            self.cache.clear_prefix("worker-nodes")

    async def list_resources(
        self, kind: str, namespace: str = "default", force_refresh: bool = False
    ) -> List[Dict[str, Any]]:
        spec = self.kind(kind)
        key = f"{kind}:list:{self._scope(spec, namespace)}"
        return await self.cache.get_or_load(
            key,
            self.cache_settings.ttl_for(kind),
            lambda: self._fetch_items(kind, namespace),
            force_refresh,
        )

    async def count_resources(
        self, kind: str, namespace: str = "default", force_refresh: bool = False
    ) -> int:
        spec = self.kind(kind)
        key = f"{kind}:count:{self._scope(spec, namespace)}"

        async def load() -> Dict[str, int]:
            return {"count": len(await self._fetch_items(kind, namespace))}

        counted = await self.cache.get_or_load(
            key, self.cache_settings.ttl_for(kind), load, force_refresh
        )
        return counted["count"]

    async def get_resource(
        self, kind: str, name: str, namespace: str = "default", force_refresh: bool = False
    ) -> Dict[str, Any]:
        spec = self.kind(kind)
        key = f"{kind}:detail:{self._scope(spec, namespace)}:{name}"
        return await self.cache.get_or_load(
            key,
            self.cache_settings.ttl_for(kind),
            lambda: self._get_json(
                ["get", spec.resource, name, "-o", "json", *self._ns_args(spec, namespace)],
                f"kubectl get {spec.resource} {name} output",
            ),
            force_refresh,
        )

    async def delete_resource(self, kind: str, name: str, namespace: str = "default") -> str:
        spec = self.kind(kind)
        output = await self.executor.run_once(
            "kubectl", ["delete", spec.resource, name, *self._ns_args(spec, namespace)]
        )
        self.invalidate(kind)
        return output

    async def scale_deployment(self, name: str, namespace: str, replicas: int) -> str:
        output = await self.executor.run_once(
            "kubectl",
            ["scale", "deployment", name, f"--replicas={replicas}", f"--namespace={namespace}"],
        )
        self.invalidate("deployments")
        self.invalidate("pods")
        return output

    async def apply_manifest(self, manifest: str, namespace: Optional[str] = None) -> str:
        """
        Pipe a manifest to `kubectl apply -f -`.

        Every PersistentVolumeClaim mounted by a pod template must exist and
        be Bound or Pending before anything is applied.

        Raises:
            ValueError: Manifest is not YAML or has a document without a kind
            ResourceNotFound: A mounted PVC does not exist
            PreconditionFailed: A mounted PVC is Lost or otherwise unusable
        """
        try:
            documents = [doc for doc in yaml.safe_load_all(manifest) if doc]
        except yaml.YAMLError as e:
            raise ValueError(f"Manifest is not valid YAML: {e}") from e
        if not documents:
            raise ValueError("Manifest contains no documents")
        for doc in documents:
            if not isinstance(doc, dict) or not doc.get("kind"):
                raise ValueError("Every manifest document needs a 'kind'")

        for claim, claim_namespace in claimed_pvcs(documents, namespace):
            await self.check_pvc(claim, claim_namespace)

        args = ["apply", "-f", "-"]
        if namespace:
            args.append(f"--namespace={namespace}")
        output = await self.executor.run_once("kubectl", args, stdin=manifest)
        # A manifest can touch any kind
        self.cache.clear_all()
        return output

    async def check_pvc(self, name: str, namespace: str) -> str:
        """
        Verify a PVC can be mounted.

        Returns:
            The claim's phase

        Raises:
            ResourceNotFound: The claim does not exist in the namespace
            PreconditionFailed: Phase is neither Bound nor Pending
        """
        try:
            details = await self._get_json(
                ["get", "pvc", name, f"--namespace={namespace}", "-o", "json"], "PVC details"
            )
        except CommandError as e:
            raise ResourceNotFound(
                f"The selected PersistentVolumeClaim '{name}' was not found in the "
                f"'{namespace}' namespace."
            ) from e

        phase = (details.get("status") or {}).get("phase") if isinstance(details, dict) else None
        if phase not in USABLE_PVC_PHASES:
            raise PreconditionFailed(
                f"The selected PersistentVolumeClaim '{name}' is not in a usable state. "
                f"Current state: '{phase}'."
            )
        return phase

    async def _apply_documents(self, *documents: Dict[str, Any]) -> str:
        return await self.executor.run_once(
            "kubectl",
            ["apply", "-f", "-"],
            stdin=yaml.safe_dump_all(documents, sort_keys=False),
        )

    async def _aws_auth(self) -> Optional[Dict[str, Any]]:
        """The aws-auth ConfigMap, or None when the cluster has none."""
        try:
            raw = await self.executor.run_once(
                "kubectl", ["get", "configmap", "aws-auth", "-n", "kube-system", "-o", "yaml"]
            )
        except CommandError as e:
            if "not found" in str(e).lower():
                return None
            raise
        config = _load_yaml(raw, "aws-auth ConfigMap")
        if not isinstance(config, dict):
            raise CLIOutputError("aws-auth ConfigMap is not a YAML mapping", raw=raw)
        return config

    @staticmethod
    def _map_roles(config: Dict[str, Any]) -> List[Dict[str, Any]]:
        raw = (config.get("data") or {}).get("mapRoles") or "[]"
        map_roles = _load_yaml(raw, "aws-auth mapRoles")
        return [role for role in map_roles if isinstance(role, dict)] if isinstance(map_roles, list) else []

    async def create_user_mapping(
        self,
        iam_role_arn: str,
        username: str,
        namespace: str,
        role_name: str,
        rules: List[Dict[str, List[str]]],
    ) -> bool:
        """
        Map an IAM role to a Kubernetes user and grant it a namespaced Role.

        Logic:
        1. Add the role to aws-auth mapRoles unless it is already mapped
        2. Apply the Role
        3. Apply a RoleBinding "<username>-<role>-binding" for the user

        Returns:
            True if aws-auth was changed

        Raises:
            ResourceNotFound: The cluster has no aws-auth ConfigMap
        """
        config = await self._aws_auth()
        if config is None:
            raise ResourceNotFound("aws-auth ConfigMap not found in kube-system.")

        map_roles = self._map_roles(config)
        added = not any(role.get("rolearn") == iam_role_arn for role in map_roles)
        if added:
            map_roles.append(
                {"rolearn": iam_role_arn, "username": username, "groups": list(MAPPED_ROLE_GROUPS)}
            )
            config.setdefault("data", {})["mapRoles"] = yaml.safe_dump(map_roles, sort_keys=False)
            logger.info(f"Mapping {iam_role_arn} to Kubernetes user {username} in aws-auth")
            await self._apply_documents(config)
        else:
            logger.info(f"IAM role {iam_role_arn} already mapped in aws-auth, leaving it unchanged")

        await self._apply_documents(
            render_role(role_name, namespace, rules),
            render_role_binding(f"{username}-{role_name}-binding", namespace, role_name, username),
        )
        self.invalidate("configmaps")
        self.invalidate("roles")
        self.invalidate("rolebindings")
        return added

    async def tree_resources(
        self, namespace: str = "default", force_refresh: bool = False
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Everything the tree view shows, fetched concurrently.

        A kind that does not exist yields an empty list; any other failure
        fails the whole request.
        """

        async def fetch(kind: str) -> List[Dict[str, Any]]:
            try:
                return await self._fetch_items(kind, namespace)
            except CommandError as e:
                if _is_missing(e):
                    logger.warning(f"No resources of type '{kind}' found in namespace '{namespace}'.")
                    return []
                raise CommandError(f"Failed to fetch {kind}: {e}", e.request, e.result) from e

        async def load() -> Dict[str, List[Dict[str, Any]]]:
            results = await asyncio.gather(*(fetch(kind) for kind in TREE_KINDS))
            return dict(zip(TREE_KINDS, results))

        return await self.cache.get_or_load(
            f"{TREE_CACHE_PREFIX}{namespace}",
            self.cache_settings.ttl_for("tree_view"),
            load,
            force_refresh,
        )

    async def worker_nodes(self, force_refresh: bool = False) -> List[Dict[str, str]]:
        """Nodes without a control-plane role label, summarized."""

        async def load() -> List[Dict[str, str]]:
            workers = []
            for node in await self._fetch_items("nodes", "-"):
                metadata = node.get("metadata") or {}
                labels = metadata.get("labels") or {}
                if any(label in labels for label in CONTROL_PLANE_LABELS):
                    continue
                status = node.get("status") or {}
                ready = next(
                    (c for c in status.get("conditions") or [] if c.get("type") == "Ready"), {}
                )
                workers.append(
                    {
                        "name": metadata.get("name", ""),
                        "type": "worker",
                        "status": ready.get("status", "Unknown"),
                        "version": (status.get("nodeInfo") or {}).get("kubeletVersion") or "N/A",
                    }
                )
            return workers

        return await self.cache.get_or_load(
            "worker-nodes", self.cache_settings.ttl_for("nodes"), load, force_refresh
        )

    async def user_mappings(self) -> List[Dict[str, Any]]:
        """
        Correlate aws-auth mapRoles entries with the RoleBindings naming them.

        Returns:
            [] when aws-auth does not exist or maps no roles

        Raises:
            CLIOutputError: aws-auth or its mapRoles is not valid YAML
        """
        config = await self._aws_auth()
        if config is None:
            return []
        map_roles = self._map_roles(config)
        if not map_roles:
            return []

        bindings = (
            await self._get_json(
                ["get", "rolebindings", "--all-namespaces", "-o", "json"],
                "kubectl get rolebindings output",
            )
        ).get("items", [])

        mappings = []
        for role in map_roles:
            username = role.get("username")
            granted = [
                binding
                for binding in bindings
                if any(
                    subject.get("kind") == "User" and subject.get("name") == username
                    for subject in binding.get("subjects") or []
                )
            ]
            mappings.append(
                {
                    "iamRoleArn": role.get("rolearn"),
                    "kubernetesUsername": username,
                    "bindings": [
                        {
                            "namespace": b["metadata"].get("namespace"),
                            "role": b["roleRef"]["name"],
                            "roleBindingName": b["metadata"]["name"],
                        }
                        for b in granted
                    ],
                }
            )
        return mappings

    async def grafana_url(self) -> Optional[str]:
        """
        Public URL of the Grafana NLB service.

        Returns:
            URL, or None while the load balancer is still provisioning

        Raises:
            ResourceNotFound: The service does not exist
        """
        try:
            details = await self._get_json(
                [
                    "get",
                    "service",
                    GRAFANA_NLB_SERVICE,
                    f"--namespace={self.monitoring_namespace}",
                    "-o",
                    "json",
                ],
                "Grafana NLB service details",
            )
        except CommandError as e:
            if "not found" in str(e).lower():
                raise ResourceNotFound(
                    "Grafana NLB service not found. It may still be deploying."
                ) from e
            raise

        ingress = ((details.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
        if ingress:
            host = ingress[0].get("hostname") or ingress[0].get("ip")
            if host:
                return f"http://{host}"
        return None
