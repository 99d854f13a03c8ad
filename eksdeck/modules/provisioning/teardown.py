import logging
from typing import Callable, Optional

from eksdeck.modules.api.models import DeleteClusterSpec
from eksdeck.modules.executor import CommandExecutor
from eksdeck.modules.session import ProvisioningSession, SessionState

logger = logging.getLogger(__name__)


class TeardownOrchestrator:
    """Single-step cluster deletion streamed to a session."""

    def __init__(
        self,
        executor: CommandExecutor,
        on_cluster_change: Optional[Callable[[], None]] = None,
    ):
        self.executor = executor
        self.on_cluster_change = on_cluster_change

    async def delete_cluster(self, session: ProvisioningSession, spec: DeleteClusterSpec) -> None:
        """
        Run `eksctl delete cluster` and report its exit status.

        Deletion persists after a client disconnect; the outcome is then only logged.
        """
        name, region = spec.cluster_name, spec.region
        session.transition(SessionState.DELETING)
        logger.info(f"Session {session.session_id}: deleting cluster {name} in {region}")
        try:
            await session.log(f"\nDeleting cluster '{name}' in region '{region}'...\n")
            outcome = await self.executor.run_streaming(
                "eksctl",
                ["delete", "cluster", f"--name={name}", f"--region={region}"],
                session,
                tracker=session.processes,
            )
        except Exception as e:
            logger.exception(f"Session {session.session_id}: unexpected teardown error")
            await session.fail(f"Unexpected error during cluster deletion: {e}")
            return

        if outcome.success:
            if self.on_cluster_change is not None:
                self.on_cluster_change()
            await session.complete(f"Cluster '{name}' deleted successfully.")
        elif outcome.exit_code is None:
            await session.fail(f"Failed to spawn EKS delete process: {outcome.error}")
        else:
            await session.fail(f"Cluster deletion failed with code {outcome.exit_code}.")
