import asyncio
import logging
from typing import Callable, List, Optional

from eksdeck.config.provider import ProvisioningSettings
from eksdeck.modules.api.models import CreateClusterSpec
from eksdeck.modules.executor import (
    CLIOutputError,
    CommandError,
    CommandExecutor,
    parse_cli_json,
)
from eksdeck.modules.executor.command_executor import STDERR_MARKER
from eksdeck.modules.session import ProvisioningSession, SessionState

from .addons import ClusterAddons
from .cluster_config import render_cluster_config
from .errors import (
    AddonStepFailed,
    ClusterAlreadyExists,
    ClusterCheckFailed,
    ClusterCreationFailed,
    PermissionCheckFailed,
    ProvisioningAborted,
)

logger = logging.getLogger(__name__)

# IAM actions eksctl needs to create the cluster, node and add-on roles
REQUIRED_IAM_ACTIONS = (
    "iam:CreateRole",
    "iam:AttachRolePolicy",
    "iam:PutRolePolicy",
    "iam:CreateServiceLinkedRole",
)


class ProvisioningOrchestrator:
    def __init__(
        self,
        executor: CommandExecutor,
        addons: ClusterAddons,
        settings: ProvisioningSettings,
        on_cluster_change: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize provisioning orchestrator.

        Args:
            executor: Command executor
            addons: Post-create add-on runner
            settings: Monitoring delay and retry settings
            on_cluster_change: Called once eksctl has created a cluster
                (used to invalidate cached cluster listings)
        """
        self.executor = executor
        self.addons = addons
        self.settings = settings
        self.on_cluster_change = on_cluster_change

    async def create_cluster(self, session: ProvisioningSession, spec: CreateClusterSpec) -> None:
        """
        Drive one cluster creation from pre-flight check to the terminal frame.

        Logic:
        1. PREFLIGHT_CHECK: caller ARN + IAM policy simulation
        2. EXISTENCE_CHECK: abort unless eksctl reports ResourceNotFoundException
        3. CONFIG_GENERATED: render and echo the ClusterConfig
        4. CLUSTER_CREATING: eksctl create cluster -f - (config on stdin)
        5. POST_CREATE_*: storage class, optional ALB chain (failures are warnings)
        6. MONITORING_DELAY, then one complete frame

        Never raises except CancelledError; aborts become one error frame.
        """
        logger.info(
            f"Session {session.session_id}: creating cluster {spec.cluster_name} in {spec.region}"
        )
        try:
            await self._preflight_check(session)
            await self._check_existing(session, spec)
            document = await self._generate_config(session, spec)
            await self._create(session, spec, document)
            failed_addons = await self._post_create(session, spec)
        except ProvisioningAborted as e:
            logger.warning(
                f"Session {session.session_id}: provisioning aborted during "
                f"{session.state.value}: {e}"
            )
            await session.fail(str(e))
            return
        except Exception as e:
            logger.exception(f"Session {session.session_id}: unexpected provisioning error")
            await session.fail(f"Unexpected error during cluster creation: {e}")
            return

        if failed_addons:
            message = (
                f"Cluster '{spec.cluster_name}' created successfully. "
                f"Some add-ons need attention: {', '.join(failed_addons)}."
            )
        else:
            message = f"Cluster '{spec.cluster_name}' and all selected add-ons created successfully."
        await session.complete(message)

    async def _preflight_check(self, session: ProvisioningSession) -> None:
        session.transition(SessionState.PREFLIGHT_CHECK)
        await session.log("\n--- Running pre-flight permission check for IAM role creation ---\n")
        try:
            caller_arn = await self.executor.run_once(
                "aws", ["sts", "get-caller-identity", "--query", "Arn", "--output", "text"]
            )
            raw = await self.executor.run_once(
                "aws",
                [
                    "iam",
                    "simulate-principal-policy",
                    "--policy-source-arn",
                    caller_arn,
                    "--action-names",
                    *REQUIRED_IAM_ACTIONS,
                    "--output",
                    "json",
                ],
            )
            simulation = parse_cli_json(raw, "aws iam simulate-principal-policy output")
            results = simulation["EvaluationResults"]
        except (CommandError, CLIOutputError, KeyError, TypeError) as e:
            raise PermissionCheckFailed(
                f"Failed during IAM pre-flight check: {e}. This could be due to missing "
                f"'iam:SimulatePrincipalPolicy' or 'sts:GetCallerIdentity' permissions."
            ) from e

        denied = [
            result.get("EvalActionName", "unknown")
            for result in results
            if result.get("EvalDecision") != "allowed"
        ]
        if denied:
            raise PermissionCheckFailed(
                f"Pre-flight check failed. Missing permissions: {', '.join(denied)}. "
                f"Please grant these permissions to your IAM user and try again."
            )
        await session.log("IAM permission check successful. Proceeding with cluster creation.\n")

    async def _check_existing(self, session: ProvisioningSession, spec: CreateClusterSpec) -> None:
        session.transition(SessionState.EXISTENCE_CHECK)
        name, region = spec.cluster_name, spec.region
        await session.log(f"\nChecking for existing cluster '{name}' in region '{region}'...\n")

        outcome = await self.executor.run_streaming(
            "eksctl",
            ["get", "cluster", f"--name={name}", f"--region={region}", "--output", "json"],
            session,
            tracker=session.processes,
        )
        if outcome.success:
            raise ClusterAlreadyExists(f"Cluster '{name}' already exists in region '{region}'.")
        error = (outcome.error or "").strip()
        if "ResourceNotFoundException" not in error:
            raise ClusterCheckFailed(f"Failed to check for existing cluster: {error}")
        await session.log(f"Cluster '{name}' does not exist. Proceeding with creation.\n")

    async def _generate_config(self, session: ProvisioningSession, spec: CreateClusterSpec) -> str:
        session.transition(SessionState.CONFIG_GENERATED)
        document = render_cluster_config(spec)
        logger.debug(f"Generated eksctl config for {spec.cluster_name}:\n{document}")
        await session.log(
            f"\n--- Generated eksctl Configuration ---\n{document}\n"
            f"------------------------------------\n"
        )
        return document

    async def _create(
        self, session: ProvisioningSession, spec: CreateClusterSpec, document: str
    ) -> None:
        session.transition(SessionState.CLUSTER_CREATING)
        outcome = await self.executor.run_streaming(
            "eksctl",
            ["create", "cluster", "-f", "-"],
            session,
            stdin=document,
            tracker=session.processes,
        )
        if outcome.success:
            if self.on_cluster_change is not None:
                self.on_cluster_change()
            return
        if outcome.exit_code is None:
            raise ClusterCreationFailed(f"Failed to spawn EKS process: {outcome.error}")
        raise ClusterCreationFailed(f"Cluster creation failed with code {outcome.exit_code}.")

    async def _post_create(self, session: ProvisioningSession, spec: CreateClusterSpec) -> List[str]:
        """Run optional steps; returns the names of the ones that failed."""
        failed: List[str] = []

        session.transition(SessionState.POST_CREATE_STORAGE_CLASS)
        try:
            await self.addons.apply_default_storage_class(session, spec)
        except AddonStepFailed as e:
            logger.warning(f"Session {session.session_id}: {e}")
            await session.log(STDERR_MARKER.format(f"{e}. Continuing.") + "\n")
            failed.append("default StorageClass")

        if spec.alb_ingress_access:
            session.transition(SessionState.POST_CREATE_ALB_SETUP)
            if not await self.addons.setup_alb(session, spec):
                failed.append("AWS Load Balancer Controller")

        session.transition(SessionState.MONITORING_DELAY)
        delay = self.settings.monitoring_delay
        await session.log(
            f"\n--- Waiting for {delay:g} seconds for API server to stabilize "
            f"before deploying monitoring stack... ---\n"
        )
        await asyncio.sleep(delay)
        return failed
