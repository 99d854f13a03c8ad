"""
Post-create cluster add-ons.

Each step either succeeds or raises AddonStepFailed. Readiness waits that
are known to be transient (API server, webhooks) go through
run_with_retry; everything else runs once.
"""

import logging
from typing import List, Optional

import httpx
import yaml

from eksdeck.config.provider import ProvisioningSettings
from eksdeck.modules.api.models import CreateClusterSpec
from eksdeck.modules.executor import (
    CLIOutputError,
    CommandError,
    CommandExecutor,
    parse_cli_json,
)
from eksdeck.modules.executor.command_executor import STDERR_MARKER

from .errors import AddonStepFailed, ArtifactDownloadFailed

logger = logging.getLogger(__name__)

DEFAULT_CLASS_ANNOTATION = "storageclass.kubernetes.io/is-default-class"
ALB_SERVICE_ACCOUNT = "aws-load-balancer-controller"
ALB_CLUSTER_PLACEHOLDER = "your-cluster-name"


def render_storage_class(use_ebs_csi: bool) -> str:
    """Default gp3 StorageClass; CSI provisioner when the EBS CSI add-on is installed."""
    if use_ebs_csi:
        provisioner = "ebs.csi.aws.com"
        parameters = {"type": "gp3", "csi.storage.k8s.io/fstype": "ext4"}
    else:
        provisioner = "kubernetes.io/aws-ebs"
        parameters = {"type": "gp3", "fsType": "ext4"}

    manifest = {
        "apiVersion": "storage.k8s.io/v1",
        "kind": "StorageClass",
        "metadata": {
            "name": "gp3",
            "annotations": {DEFAULT_CLASS_ANNOTATION: "true"},
        },
        "provisioner": provisioner,
        "parameters": parameters,
        "reclaimPolicy": "Delete",
        "volumeBindingMode": "WaitForFirstConsumer",
        "allowVolumeExpansion": True,
    }
    return yaml.safe_dump(manifest, sort_keys=False)


def prepare_alb_manifest(raw_manifest: str, cluster_name: str) -> str:
    """
    Substitute the cluster name and drop ServiceAccount documents.

    eksctl already created (and IAM-annotated) the controller's service
    account; applying the manifest's own copy would strip the annotation.
    """
    documents = yaml.safe_load_all(raw_manifest.replace(ALB_CLUSTER_PLACEHOLDER, cluster_name))
    kept = [doc for doc in documents if doc and doc.get("kind") != "ServiceAccount"]
    return yaml.safe_dump_all(kept, sort_keys=False)


class ClusterAddons:
    """Runs the post-create steps for one cluster against a session sink."""

    def __init__(
        self,
        executor: CommandExecutor,
        settings: ProvisioningSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize add-on runner.

        Args:
            executor: Command executor
            settings: Retry, timeout and manifest URL settings
            transport: httpx transport override for downloads
        """
        self.executor = executor
        self.settings = settings
        self.transport = transport

    async def fetch_text(self, url: str) -> str:
        """
        Download a release artifact (manifest or policy document).

        Raises:
            ArtifactDownloadFailed: Transport error, HTTP error status or a
                malformed URL
        """
        logger.info(f"Fetching {url!r}")
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.http_timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Download of {url!r} failed: {e}")
            raise ArtifactDownloadFailed(str(e) or type(e).__name__) from e

    async def _retry(self, session, args: List[str], stdin=None):
        return await self.executor.run_with_retry(
            "kubectl",
            args,
            session,
            max_attempts=self.settings.retry_attempts,
            delay=self.settings.retry_delay,
            stdin=stdin,
            tracker=session.processes,
        )

    async def apply_default_storage_class(self, session, spec: CreateClusterSpec) -> None:
        """Apply the default gp3 StorageClass and demote gp2."""
        await session.log("\n--- Applying default gp3 StorageClass ---\n")
        outcome = await self._retry(
            session,
            ["apply", "-f", "-"],
            stdin=render_storage_class(spec.enable_ebs_csi_access),
        )
        if not outcome.success:
            raise AddonStepFailed(f"Failed to apply default StorageClass: {outcome.error}")

        try:
            await self.executor.run_once(
                "kubectl",
                [
                    "patch",
                    "storageclass",
                    "gp2",
                    "-p",
                    '{"metadata": {"annotations": {"%s": "false"}}}' % DEFAULT_CLASS_ANNOTATION,
                ],
            )
        except CommandError as e:
            # Newer EKS versions ship without gp2
            logger.info(f"gp2 StorageClass not demoted: {e}")
        await session.log("Default StorageClass 'gp3' applied.\n")

    async def install_cert_manager(self, session) -> None:
        await session.log("\n--- Installing cert-manager (ALB Controller prerequisite) ---\n")
        outcome = await self._retry(
            session, ["apply", "-f", self.settings.cert_manager_manifest_url]
        )
        if not outcome.success:
            raise AddonStepFailed(f"Failed to install cert-manager: {outcome.error}")

        await session.log("Waiting for cert-manager deployments to become available...\n")
        outcome = await self._retry(
            session,
            [
                "wait",
                "--for=condition=Available",
                "deployment",
                "--all",
                "-n",
                "cert-manager",
                "--timeout=300s",
            ],
        )
        if not outcome.success:
            raise AddonStepFailed(f"cert-manager did not become ready: {outcome.error}")

    async def ensure_alb_policy(self, session) -> str:
        """
        Reuse the controller IAM policy if it exists, otherwise create it.

        Returns:
            Policy ARN
        """
        name = self.settings.alb_policy_name
        await session.log(f"\n--- Verifying IAM policy '{name}' ---\n")
        try:
            account_id = await self.executor.run_once(
                "aws", ["sts", "get-caller-identity", "--query", "Account", "--output", "text"]
            )
        except CommandError as e:
            raise AddonStepFailed(f"Could not determine AWS account ID: {e}") from e

        policy_arn = f"arn:aws:iam::{account_id}:policy/{name}"
        try:
            await self.executor.run_once("aws", ["iam", "get-policy", "--policy-arn", policy_arn])
            await session.log(f"IAM policy '{name}' already exists.\n")
            return policy_arn
        except CommandError as e:
            if "NoSuchEntity" not in str(e):
                raise AddonStepFailed(f"Could not verify IAM policy '{name}': {e}") from e

        await session.log(f"Creating IAM policy '{name}'...\n")
        try:
            document = await self.fetch_text(self.settings.alb_iam_policy_url)
            raw = await self.executor.run_once(
                "aws",
                [
                    "iam",
                    "create-policy",
                    "--policy-name",
                    name,
                    "--policy-document",
                    document,
                    "--output",
                    "json",
                ],
            )
            created = parse_cli_json(raw, "aws iam create-policy output")
            policy_arn = created["Policy"]["Arn"]
        except ArtifactDownloadFailed as e:
            raise AddonStepFailed(f"Could not download ALB IAM policy document: {e}") from e
        except (CommandError, CLIOutputError, KeyError, TypeError) as e:
            raise AddonStepFailed(f"Could not create IAM policy '{name}': {e}") from e

        await session.log(f"IAM policy created: {policy_arn}\n")
        return policy_arn

    async def create_alb_service_account(
        self, session, spec: CreateClusterSpec, policy_arn: str
    ) -> None:
        await session.log("\n--- Creating IAM service account for the ALB Controller ---\n")
        outcome = await self.executor.run_streaming(
            "eksctl",
            [
                "create",
                "iamserviceaccount",
                f"--cluster={spec.cluster_name}",
                f"--region={spec.region}",
                "--namespace=kube-system",
                f"--name={ALB_SERVICE_ACCOUNT}",
                f"--attach-policy-arn={policy_arn}",
                "--override-existing-serviceaccounts",
                "--approve",
            ],
            session,
            tracker=session.processes,
        )
        if not outcome.success:
            raise AddonStepFailed(
                "Could not create IAM Service Account for ALB. "
                "The controller will not function correctly"
            )

    async def install_alb_controller(self, session, spec: CreateClusterSpec) -> None:
        await session.log("\n--- Installing AWS Load Balancer Controller ---\n")
        try:
            raw = await self.fetch_text(self.settings.alb_controller_manifest_url)
        except ArtifactDownloadFailed as e:
            raise AddonStepFailed(f"Could not download ALB Controller manifest: {e}") from e

        try:
            manifest = prepare_alb_manifest(raw, spec.cluster_name)
        except yaml.YAMLError as e:
            raise AddonStepFailed(f"ALB Controller manifest is not valid YAML: {e}") from e

        # cert-manager's webhook may still be warming up
        outcome = await self._retry(session, ["apply", "-f", "-"], stdin=manifest)
        if not outcome.success:
            raise AddonStepFailed(f"Failed to apply ALB Controller manifest: {outcome.error}")
        await session.log("AWS Load Balancer Controller installed.\n")

    async def setup_alb(self, session, spec: CreateClusterSpec) -> bool:
        """
        Run the ALB Controller chain; a failed sub-step skips the rest.

        Returns:
            True if every sub-step succeeded
        """
        try:
            await self.install_cert_manager(session)
            policy_arn = await self.ensure_alb_policy(session)
            await self.create_alb_service_account(session, spec, policy_arn)
            await self.install_alb_controller(session, spec)
        except AddonStepFailed as e:
            logger.warning(f"ALB setup for {spec.cluster_name} stopped: {e}")
            await session.log(
                STDERR_MARKER.format(f"{e}. Skipping remaining ALB Controller steps.") + "\n"
            )
            return False
        return True
