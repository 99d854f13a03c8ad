"""
Application composition root.

Builds every long-lived component once at startup and wires them
together, so request handlers receive collaborators instead of reaching
for module globals.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Set

from eksdeck.config.provider import ConfigProvider, ProvisioningSettings
from eksdeck.modules.cache import ResponseCache
from eksdeck.modules.credentials import AwsCredentialManager
from eksdeck.modules.executor import CommandExecutor
from eksdeck.modules.kube import EksClusterService, KubeResourceService, MonitoringStack
from eksdeck.modules.portforward import PortForwardManager
from eksdeck.modules.provisioning import (
    ClusterAddons,
    ProvisioningOrchestrator,
    TeardownOrchestrator,
)

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Everything a request or WebSocket handler may need."""

    executor: CommandExecutor
    cache: ResponseCache
    provisioning_settings: ProvisioningSettings
    kube: KubeResourceService
    clusters: EksClusterService
    monitoring: MonitoringStack
    credentials: AwsCredentialManager
    port_forward: PortForwardManager
    provisioner: ProvisioningOrchestrator
    teardown: TeardownOrchestrator
    background_tasks: Set[asyncio.Task] = field(default_factory=set)

    def track_task(self, task: asyncio.Task) -> asyncio.Task:
        """Keep a reference to an orchestration task until it finishes."""
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel running orchestrations and stop the port-forward."""
        tasks = list(self.background_tasks)
        if tasks:
            logger.info(f"Cancelling {len(tasks)} running cluster session(s)")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.port_forward.stop()


def build_context(
    config_provider: ConfigProvider, executor: Optional[CommandExecutor] = None
) -> AppContext:
    """
    Build the application context.

    Args:
        config_provider: Configuration provider
        executor: Command executor override (tests pass a fake)

    Returns:
        Fully wired AppContext
    """
    provisioning = config_provider.get_provisioning_settings()
    cache_settings = config_provider.get_cache_settings()
    port_forward_settings = config_provider.get_port_forward_settings()

    executor = executor or CommandExecutor()
    cache = ResponseCache()
    kube = KubeResourceService(
        executor, cache, cache_settings, monitoring_namespace=port_forward_settings.namespace
    )
    clusters = EksClusterService(executor, cache, cache_settings)

    context = AppContext(
        executor=executor,
        cache=cache,
        provisioning_settings=provisioning,
        kube=kube,
        clusters=clusters,
        monitoring=MonitoringStack(kube, namespace=port_forward_settings.namespace),
        credentials=AwsCredentialManager(executor),
        port_forward=PortForwardManager(port_forward_settings),
        provisioner=ProvisioningOrchestrator(
            executor,
            ClusterAddons(executor, provisioning),
            provisioning,
            on_cluster_change=clusters.invalidate_clusters,
        ),
        teardown=TeardownOrchestrator(executor, on_cluster_change=clusters.invalidate_clusters),
    )
    logger.info("Application context built")
    return context
