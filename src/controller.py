"""
Operator Controller - Dispatches watch events to the ROSA control plane
reconciler.

Watches ROSAControlPlane, Cluster and ROSACluster objects, maps each event
to the control plane it concerns, and feeds those keys through a
deduplicating work queue to a bounded pool of reconciles.
"""

import asyncio
import logging
from typing import List, Optional, Set

from config import ControllerConfig
from controlplane import (
    CLUSTER_KIND,
    ROSA_CLUSTER_KIND,
    ROSA_CONTROL_PLANE_KIND,
    Cluster,
    KubeObject,
    ObjectKey,
    ROSAControlPlane,
)
from events import EventType, Watcher, WatchEvent
from kube import KubeClient
from ocm import ClusterService
from predicates import (
    cluster_unpaused_and_infrastructure_ready,
    resource_not_paused_and_has_filter_label,
)
from reconciler import ROSAControlPlaneReconciler, cluster_to_rosa_control_plane
from workqueue import ExponentialBackoff, WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    A key is reconciled by at most one worker at a time; distinct keys are
    reconciled concurrently up to max_concurrent_reconciles.
    """

    def __init__(
        self,
        client: KubeClient,
        cluster_service: ClusterService,
        config: Optional[ControllerConfig] = None,
        reconciler: Optional[ROSAControlPlaneReconciler] = None,
    ):
        self.client = client
        self.config = config or ControllerConfig()
        self.reconciler = reconciler or ROSAControlPlaneReconciler(
            client=client,
            cluster_service=cluster_service,
            wait_infra_period=self.config.wait_infra_period,
            external_retry_delay=self.config.external_retry_delay,
            cluster_poll_interval=self.config.cluster_poll_interval,
        )
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.queue = WorkQueue(
            ExponentialBackoff(
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
            )
        )
        self.watchers: List[Watcher] = [
            Watcher(
                client,
                ROSA_CONTROL_PLANE_KIND,
                self._on_control_plane_event,
                namespace=self.config.watch_namespace,
            ),
            Watcher(
                client,
                CLUSTER_KIND,
                self._on_cluster_event,
                namespace=self.config.watch_namespace,
            ),
            Watcher(
                client,
                ROSA_CLUSTER_KIND,
                self._on_rosa_cluster_event,
                namespace=self.config.watch_namespace,
            ),
        ]
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._reconcile_tasks: Set[asyncio.Task] = set()

    @property
    def is_ready(self) -> bool:
        """True once running and every watch has delivered its initial list."""
        return self.running and all(w.has_synced for w in self.watchers)

    async def start(self):
        """Start the watches and the dispatch loop."""
        logger.info("Starting Operator Controller")
        self.running = True

        self._tasks = [asyncio.create_task(w.run()) for w in self.watchers]
        self._tasks.append(asyncio.create_task(self._dispatch_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")
        except Exception as e:
            logger.error(f"Controller error: {e}")
            raise

    async def stop(self):
        """Stop the controller, cancelling in-flight reconciles."""
        logger.info("Stopping Operator Controller")
        self.running = False
        self.queue.shutdown()

        for watcher in self.watchers:
            watcher.stop()

        tasks = self._tasks + list(self._reconcile_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._reconcile_tasks.clear()

    def trigger_reconciliation(self, key: ObjectKey) -> None:
        """Manually trigger reconciliation for a specific control plane."""
        logger.info(f"Manually triggering reconciliation for {key}")
        self.queue.add(key)

    # Event handlers

    def _accept(self, obj: KubeObject) -> bool:
        return resource_not_paused_and_has_filter_label(
            obj, self.config.watch_filter_value
        )

    async def _on_control_plane_event(self, event: WatchEvent) -> None:
        control_plane = ROSAControlPlane(event.object)
        if self._accept(control_plane):
            self.queue.add(control_plane.key)

    async def _on_cluster_event(self, event: WatchEvent) -> None:
        if event.event_type == EventType.DELETED:
            return
        cluster = Cluster(event.object)
        if not self._accept(cluster):
            return
        if not cluster_unpaused_and_infrastructure_ready(cluster):
            return
        for key in cluster_to_rosa_control_plane(event.object):
            self.queue.add(key)

    async def _on_rosa_cluster_event(self, event: WatchEvent) -> None:
        if event.event_type == EventType.DELETED:
            return
        if not self._accept(KubeObject(event.object)):
            return
        for key in await self.reconciler.rosa_cluster_to_rosa_control_plane(
            event.object
        ):
            self.queue.add(key)

    # Dispatch

    async def _dispatch_loop(self):
        """Hand queued keys to reconciles, at most max_concurrent_reconciles at once."""
        while self.running:
            await self.semaphore.acquire()
            key = await self.queue.get()
            if key is None:
                self.semaphore.release()
                break

            task = asyncio.create_task(self._reconcile_key(key))
            self._reconcile_tasks.add(task)
            task.add_done_callback(self._reconcile_tasks.discard)

    async def _reconcile_key(self, key: ObjectKey):
        """
        Reconcile a single control plane and decide when it runs next.

        A requested delay schedules the next run exactly; an error or a bare
        requeue backs off exponentially; success resets the backoff.
        """
        try:
            result = await self.reconciler.reconcile(key)

            if result.requeue_after:
                self.queue.forget(key)
                self.queue.add_after(key, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(key)
            else:
                self.queue.forget(key)
        except Exception as e:
            logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            self.queue.add_rate_limited(key)
        finally:
            self.queue.done(key)
            self.semaphore.release()
