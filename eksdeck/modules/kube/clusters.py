import logging
from typing import Any, Dict, List

from eksdeck.config.provider import CacheSettings
from eksdeck.modules.cache import ResponseCache
from eksdeck.modules.executor import CLIOutputError, CommandExecutor, parse_cli_json

logger = logging.getLogger(__name__)

CLUSTERS_CACHE_PREFIX = "eks-clusters"

EBS_CSI_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEBSCSIDriverPolicy"
EFS_CSI_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEFSCSIDriverPolicy"


class EksClusterService:
    """eksctl/aws eks queries and cluster-level add-on deployment."""

    def __init__(self, executor: CommandExecutor, cache: ResponseCache, cache_settings: CacheSettings):
        self.executor = executor
        self.cache = cache
        self.cache_settings = cache_settings

    def invalidate_clusters(self) -> None:
        self.cache.clear_prefix(CLUSTERS_CACHE_PREFIX)

    async def list_clusters(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        async def load() -> List[Dict[str, Any]]:
            raw = await self.executor.run_once("eksctl", ["get", "clusters", "--output", "json"])
            clusters = parse_cli_json(raw, "eksctl get clusters output")
            return clusters if isinstance(clusters, list) else [clusters]

        return await self.cache.get_or_load(
            f"{CLUSTERS_CACHE_PREFIX}:list",
            self.cache_settings.ttl_for("eks_clusters"),
            load,
            force_refresh,
        )

    async def cluster_details(
        self, cluster_name: str, region: str, force_refresh: bool = False
    ) -> Dict[str, Any]:
        async def load() -> Dict[str, Any]:
            raw = await self.executor.run_once(
                "aws",
                ["eks", "describe-cluster", "--name", cluster_name, "--region", region, "--output", "json"],
            )
            return parse_cli_json(raw, f"aws eks describe-cluster {cluster_name} output")

        return await self.cache.get_or_load(
            f"{CLUSTERS_CACHE_PREFIX}:details:{region}:{cluster_name}",
            self.cache_settings.ttl_for("eks_clusters"),
            load,
            force_refresh,
        )

    async def set_context(self, cluster_name: str, region: str) -> str:
        """Point kubectl at a cluster; every cached kubectl listing becomes stale."""
        output = await self.executor.run_once(
            "eksctl",
            ["utils", "write-kubeconfig", "--cluster", cluster_name, "--region", region],
        )
        self.cache.clear_all()
        return output

    async def service_account_role_arn(
        self, cluster_name: str, region: str, namespace: str, name: str
    ) -> str:
        """
        Look up the IAM role eksctl created for a service account.

        Raises:
            CLIOutputError: eksctl reports no role for the account
        """
        raw = await self.executor.run_once(
            "eksctl",
            [
                "get",
                "iamserviceaccount",
                f"--cluster={cluster_name}",
                f"--region={region}",
                f"--namespace={namespace}",
                f"--name={name}",
                "--output",
                "json",
            ],
        )
        accounts = parse_cli_json(raw, f"eksctl get iamserviceaccount {name} output")
        if isinstance(accounts, dict):
            accounts = [accounts]
        for account in accounts:
            arn = (account.get("status") or {}).get("roleARN")
            if arn:
                return arn
        raise CLIOutputError(f"No IAM role found for service account {namespace}/{name}", raw=raw)

    async def _deploy_csi_addon(
        self,
        cluster_name: str,
        region: str,
        addon: str,
        service_account: str,
        policy_arn: str,
        role_only: bool,
    ) -> str:
        create_sa = [
            "create",
            "iamserviceaccount",
            f"--name={service_account}",
            "--namespace=kube-system",
            f"--cluster={cluster_name}",
            f"--region={region}",
            f"--attach-policy-arn={policy_arn}",
            "--approve",
        ]
        # The addon manages its own ServiceAccount; only the role is needed
        create_sa.append("--role-only" if role_only else "--override-existing-serviceaccounts")
        await self.executor.run_once("eksctl", create_sa)

        role_arn = await self.service_account_role_arn(
            cluster_name, region, "kube-system", service_account
        )
        logger.info(f"Deploying {addon} to {cluster_name} with role {role_arn}")
        return await self.executor.run_once(
            "eksctl",
            [
                "create",
                "addon",
                f"--name={addon}",
                f"--cluster={cluster_name}",
                f"--region={region}",
                f"--service-account-role-arn={role_arn}",
                "--force",
            ],
        )

    async def deploy_ebs_csi(self, cluster_name: str, region: str) -> str:
        return await self._deploy_csi_addon(
            cluster_name,
            region,
            "aws-ebs-csi-driver",
            "ebs-csi-controller-sa",
            EBS_CSI_POLICY_ARN,
            role_only=True,
        )

    async def deploy_efs_csi(self, cluster_name: str, region: str) -> str:
        return await self._deploy_csi_addon(
            cluster_name,
            region,
            "aws-efs-csi-driver",
            "efs-csi-controller-sa",
            EFS_CSI_POLICY_ARN,
            role_only=False,
        )
