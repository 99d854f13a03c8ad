"""Pod log streaming for kube-logs WebSocket connections."""

import logging
from typing import Optional

from eksdeck.modules.executor import CommandExecutor, ProcessLifecycleManager

logger = logging.getLogger(__name__)

MISSING_PARAMS_MESSAGE = "Error: Pod name and namespace are required for logs."


class PodLogStream:
    """
    Follows `kubectl logs -f` for one pod and forwards raw text to the client.

    Unlike cluster sessions nothing here outlives the connection: a
    disconnect always kills the kubectl child.
    """

    def __init__(self, executor: CommandExecutor, channel):
        self.executor = executor
        self.channel = channel
        self.processes = ProcessLifecycleManager(owner="kube-logs")

    async def log(self, text: str) -> None:
        await self.channel.send_text(text)

    async def run(self, pod_name: Optional[str], namespace: Optional[str]) -> None:
        """
        Stream logs until kubectl exits or the stream is cancelled.

        Args:
            pod_name: Pod to follow
            namespace: Pod namespace
        """
        if not pod_name or not namespace:
            logger.error("Pod name or namespace not provided for kube logs")
            await self.channel.send_text(MISSING_PARAMS_MESSAGE)
            await self.channel.close()
            return

        logger.info(f"Streaming logs for pod {pod_name} in namespace {namespace}")
        outcome = await self.executor.run_streaming(
            "kubectl",
            ["logs", "-f", pod_name, "-n", namespace],
            self,
            tracker=self.processes,
        )
        if not outcome.success:
            await self.channel.send_text(f"Error: {outcome.error}")
        await self.channel.close()

    def disconnect(self) -> None:
        self.channel.mark_closed()
        self.processes.release(kill=True)
