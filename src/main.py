"""
Main entry point for the ROSA control plane operator.

Wires the Kubernetes client, the OpenShift Cluster Manager client, the
controller and the health probes together and runs them until a shutdown
signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

import click

from config import Config, get_config
from controller import Controller
from health import HealthServer
from kube import KubeClient
from ocm import OCMClusterService
from scheme import register_known_types

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the controller and probes."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.client: Optional[KubeClient] = None
        self.cluster_service: Optional[OCMClusterService] = None
        self.controller: Optional[Controller] = None
        self.health: Optional[HealthServer] = None
        self.running = False

    async def initialize(
        self, kubeconfig: Optional[str] = None, kube_context: Optional[str] = None
    ):
        """Initialize all components."""
        logger.info("Initializing ROSA control plane operator")

        scheme = register_known_types()
        if kubeconfig:
            self.client = await KubeClient.from_kubeconfig(
                kubeconfig, kube_context, scheme=scheme
            )
        else:
            self.client = await KubeClient.from_env(kube_context, scheme=scheme)

        ocm_config = self.config.ocm
        self.cluster_service = OCMClusterService(
            token=ocm_config.token,
            api_url=ocm_config.api_url,
            token_url=ocm_config.token_url,
            client_id=ocm_config.client_id,
            timeout=ocm_config.timeout,
        )

        self.controller = Controller(
            client=self.client,
            cluster_service=self.cluster_service,
            config=self.config.controller,
        )

        health_config = self.config.health
        self.health = HealthServer(
            ready_check=lambda: self.controller is not None and self.controller.is_ready,
            host=health_config.host,
            port=health_config.port,
            log_level=health_config.log_level,
        )

        logger.info("All components initialized")

    async def start(self):
        """Start the application."""
        if not self.controller:
            await self.initialize()

        self.running = True
        logger.info("Starting ROSA control plane operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.health.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping ROSA control plane operator")
        self.running = False

        if self.health:
            await self.health.stop()

        if self.controller:
            await self.controller.stop()

        if self.cluster_service:
            await self.cluster_service.close()

        if self.client:
            await self.client.close()

        logger.info("ROSA control plane operator stopped")


async def run(
    config: Config,
    kubeconfig: Optional[str] = None,
    kube_context: Optional[str] = None,
):
    """Run the application until interrupted."""
    app = Application(config)
    await app.initialize(kubeconfig, kube_context)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


@click.command()
@click.option(
    "--kubeconfig", envvar="KUBECONFIG", default=None, help="Path to a kubeconfig file"
)
@click.option("--context", "kube_context", default=None, help="Kubeconfig context to use")
@click.option(
    "--watch-filter",
    default=None,
    help="Only reconcile objects with this watch-filter label value",
)
@click.option(
    "--namespace", default=None, help="Namespace to watch (default: all namespaces)"
)
@click.option(
    "--max-concurrent-reconciles",
    type=int,
    default=None,
    help="Number of reconciles that may run at once",
)
@click.option("--health-port", type=int, default=None, help="Port for the health probes")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level",
)
def main(
    kubeconfig,
    kube_context,
    watch_filter,
    namespace,
    max_concurrent_reconciles,
    health_port,
    log_level,
):
    """ROSA control plane operator."""
    config = get_config()
    if watch_filter is not None:
        config.controller.watch_filter_value = watch_filter
    if namespace is not None:
        config.controller.watch_namespace = namespace
    if max_concurrent_reconciles is not None:
        config.controller.max_concurrent_reconciles = max_concurrent_reconciles
    if health_port is not None:
        config.health.port = health_port
    if log_level is not None:
        config.health.log_level = log_level.upper()

    logging.basicConfig(
        level=config.health.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    asyncio.run(run(config, kubeconfig, kube_context))


if __name__ == "__main__":
    main()
