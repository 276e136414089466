"""
Main entry point for the gateway operator.

This module wires the platform store, access broker, reconciler, controller
and HTTP API together and runs them until a shutdown signal arrives.
"""

import asyncio
import logging
import signal
from typing import Optional

from access import AccessRequestBroker
from api import APIServer
from config import get_config
from controller import Controller, ControllerConfig
from events import EventBus, EventRecorder
from kube.client import KubernetesStore
from kube.registry import platform_registry, target_registry
from kube.store import Store
from reconciler import ClusterReconciler

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Application:
    """Main application that orchestrates the controller and the API."""

    def __init__(self):
        self.config = get_config()
        self.platform_store: Optional[Store] = None
        self.broker: Optional[AccessRequestBroker] = None
        self.controller: Optional[Controller] = None
        self.api: Optional[APIServer] = None
        self.event_bus: Optional[EventBus] = None
        self.running = False

    async def _platform_store(self) -> Store:
        platform = self.config.platform
        registry = platform_registry()
        if platform.kubeconfig:
            logger.info(f"Using platform kubeconfig {platform.kubeconfig}")
            return await KubernetesStore.from_kubeconfig_file(
                platform.kubeconfig, registry, request_timeout=platform.request_timeout
            )
        logger.info("Using in-cluster service account for the platform cluster")
        return KubernetesStore.in_cluster(
            registry, request_timeout=platform.request_timeout
        )

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing gateway operator")

        self.platform_store = await self._platform_store()
        self.event_bus = EventBus()
        recorder = EventRecorder(
            event_bus=self.event_bus,
            store=self.platform_store
            if self.config.events.record_kubernetes_events
            else None,
        )

        provider = self.config.provider
        self.broker = AccessRequestBroker(
            platform_store=self.platform_store,
            provider_name=provider.name,
            target_registry=target_registry(),
        )

        ctrl_config = self.config.controller
        reconciler = ClusterReconciler(
            platform_store=self.platform_store,
            broker=self.broker,
            provider_name=provider.name,
            provider_namespace=provider.namespace,
            recorder=recorder,
            resync_after=ctrl_config.requeue_after_success,
        )

        # Create controller configuration
        controller_config = ControllerConfig(
            resync_interval=ctrl_config.resync_interval,
            config_watch_timeout=ctrl_config.config_watch_timeout,
            max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
            backoff_base_delay=ctrl_config.backoff_base_delay,
            backoff_max_delay=ctrl_config.backoff_max_delay,
            backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
        )
        self.controller = Controller(
            reconciler=reconciler,
            config=controller_config,
            recorder=recorder,
        )

        api_config = self.config.api
        self.api = APIServer(
            controller=self.controller,
            event_bus=self.event_bus,
            host=api_config.host,
            port=api_config.port,
            log_level=api_config.log_level,
        )

        logger.info(
            f"All components initialized for provider '{provider.name}' "
            f"in namespace '{provider.namespace}'"
        )

    async def start(self):
        """Start the application."""
        if not self.controller or not self.api:
            await self.initialize()

        self.running = True
        logger.info("Starting gateway operator")

        tasks = [
            asyncio.create_task(self.controller.start()),
            asyncio.create_task(self.api.start()),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping gateway operator")
        self.running = False

        if self.api:
            await self.api.stop()

        if self.controller:
            await self.controller.stop()

        if self.broker:
            await self.broker.close()

        if self.platform_store:
            await self.platform_store.close()

        logger.info("Gateway operator stopped")


async def main():
    """Main entry point."""
    configure_logging(get_config().api.log_level)
    app = Application()

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


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
