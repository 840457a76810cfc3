"""
ROSA control plane reconciler - Drives a ROSAControlPlane toward its
desired state in OpenShift Cluster Manager.

Every call starts from scratch: the object is re-read, the owner resolved,
and the normal or delete path re-executed. Nothing is carried in memory
between calls; progress lives on the object's status and in OCM.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from clusterspec import build_cluster_record
from controlplane import (
    READY_CONDITION,
    REASON_CREATING,
    REASON_DELETING,
    REASON_DELETION_FAILED,
    REASON_FAILED,
    REASON_INVALID_SPEC,
    REASON_RECONCILIATION_FAILED,
    ROSA_CONTROL_PLANE_FINALIZER,
    ROSA_CONTROL_PLANE_KIND,
    ROSA_CONTROL_PLANE_READY_CONDITION,
    ROSA_CONTROL_PLANE_VALID_CONDITION,
    Cluster,
    ConditionSeverity,
    ObjectKey,
    ROSACluster,
    ROSAControlPlane,
    get_owner_cluster,
    is_paused,
)
from kube import ApiError, KubeClient, NotFoundError
from ocm import ClusterService, ExternalCluster, OCMError
from scope import ROSAControlPlaneScope
from validation import validate_cluster_record_spec

logger = logging.getLogger(__name__)

CONTROLLER_NAME = ROSA_CONTROL_PLANE_KIND.lower()


@dataclass
class Result:
    """Outcome of a reconcile call. Errors are raised rather than returned."""

    requeue: bool = False
    requeue_after: Optional[float] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _mark_not_ready(
    control_plane: ROSAControlPlane,
    reason: str,
    severity: ConditionSeverity,
    message: str = "",
) -> None:
    control_plane.status["ready"] = False
    for condition_type in (ROSA_CONTROL_PLANE_READY_CONDITION, READY_CONDITION):
        control_plane.mark_false(condition_type, reason, severity, message)


class ROSAControlPlaneReconciler:
    """
    Reconciles ROSAControlPlane objects.

    Args:
        client: Object-store client
        cluster_service: External cluster-management service
        wait_infra_period: When positive, wait this long for the owner
            Cluster's infrastructure to be ready before creating
        external_retry_delay: Delay before retrying a failed OCM call
        cluster_poll_interval: Delay between checks on a cluster that is
            still being installed or uninstalled
        now: Clock used for the cluster expiration hint
    """

    def __init__(
        self,
        client: KubeClient,
        cluster_service: ClusterService,
        wait_infra_period: float = 0.0,
        external_retry_delay: float = 10.0,
        cluster_poll_interval: float = 60.0,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.cluster_service = cluster_service
        self.wait_infra_period = wait_infra_period
        self.external_retry_delay = external_retry_delay
        self.cluster_poll_interval = cluster_poll_interval
        self._now = now

    async def reconcile(self, request: ObjectKey) -> Result:
        """
        Reconcile a single ROSAControlPlane.

        Args:
            request: Namespace and name of the control plane

        Returns:
            Result describing whether and when to reconcile again

        Raises:
            ApiError: If the owner Cluster cannot be resolved or the
                control plane cannot be persisted
        """
        try:
            raw = await self.client.get(
                ROSA_CONTROL_PLANE_KIND, request.namespace, request.name
            )
        except NotFoundError:
            return Result()
        except ApiError as e:
            logger.warning(f"Failed to get ROSAControlPlane {request}: {e}")
            return Result(requeue=True)

        control_plane = ROSAControlPlane(raw)

        try:
            cluster = await get_owner_cluster(self.client, control_plane)
        except ApiError as e:
            logger.error(
                f"Failed to retrieve owner Cluster from the API Server for {request}: {e}"
            )
            raise
        if cluster is None:
            logger.info(f"Cluster Controller has not yet set OwnerRef on {request}")
            return Result()

        if is_paused(cluster, control_plane):
            logger.info(f"Reconciliation is paused for {request}")
            return Result()

        async with ROSAControlPlaneScope(
            client=self.client,
            cluster=cluster,
            control_plane=control_plane,
            controller_name=CONTROLLER_NAME,
        ) as rosa_scope:
            if control_plane.is_deleting:
                return await self.reconcile_delete(rosa_scope)
            return await self.reconcile_normal(rosa_scope)

    async def reconcile_normal(self, rosa_scope: ROSAControlPlaneScope) -> Result:
        """Create the cluster in OCM if needed and propagate its state."""
        rosa_scope.info("Reconciling ROSAControlPlane")
        control_plane = rosa_scope.control_plane

        if control_plane.add_finalizer(ROSA_CONTROL_PLANE_FINALIZER):
            await rosa_scope.patch_object()

        is_valid, error = validate_cluster_record_spec(control_plane.spec)
        if is_valid:
            control_plane.mark_true(ROSA_CONTROL_PLANE_VALID_CONDITION)
            control_plane.status.pop("failureMessage", None)
        else:
            logger.warning(f"ROSAControlPlane {control_plane.key} spec is incomplete: {error}")
            control_plane.mark_false(
                ROSA_CONTROL_PLANE_VALID_CONDITION,
                REASON_INVALID_SPEC,
                ConditionSeverity.ERROR,
                error or "",
            )

        if self.wait_infra_period > 0 and not rosa_scope.cluster.infrastructure_ready:
            rosa_scope.info("Cluster infrastructure is not ready yet")
            return Result(requeue_after=self.wait_infra_period)

        try:
            external = await self._find_external_cluster(rosa_scope)
            if external is None:
                record = build_cluster_record(
                    control_plane, rosa_scope.cluster_name, self._now()
                )
                external = await self.cluster_service.create_cluster(record)
                logger.info(
                    f"Created OCM cluster {external.name} ({external.id}) "
                    f"for {control_plane.key}"
                )
        except OCMError as e:
            logger.info(f"Error creating OCM cluster for {control_plane.key}: {e}")
            _mark_not_ready(
                control_plane,
                REASON_RECONCILIATION_FAILED,
                ConditionSeverity.ERROR,
                e.message,
            )
            return Result(requeue_after=self.external_retry_delay)

        return self._update_status(control_plane, external)

    async def reconcile_delete(self, rosa_scope: ROSAControlPlaneScope) -> Result:
        """
        Deprovision the cluster in OCM, then release the finalizer.

        The finalizer is only removed once OCM no longer knows the cluster.
        """
        rosa_scope.info("Reconciling ROSAControlPlane delete")
        control_plane = rosa_scope.control_plane

        if not control_plane.has_finalizer(ROSA_CONTROL_PLANE_FINALIZER):
            return Result()

        try:
            external = await self._find_external_cluster(rosa_scope)
            if external is None:
                rosa_scope.info("OCM cluster is gone, removing finalizer")
                control_plane.remove_finalizer(ROSA_CONTROL_PLANE_FINALIZER)
                return Result()

            if not external.is_uninstalling:
                await self.cluster_service.delete_cluster(external.id)
        except OCMError as e:
            logger.info(f"Error deleting OCM cluster for {control_plane.key}: {e}")
            _mark_not_ready(
                control_plane,
                REASON_DELETION_FAILED,
                ConditionSeverity.ERROR,
                e.message,
            )
            return Result(requeue_after=self.external_retry_delay)

        _mark_not_ready(
            control_plane,
            REASON_DELETING,
            ConditionSeverity.INFO,
            f"OCM cluster {external.name} is being uninstalled",
        )
        return Result(requeue_after=self.cluster_poll_interval)

    async def _find_external_cluster(
        self, rosa_scope: ROSAControlPlaneScope
    ) -> Optional[ExternalCluster]:
        """Look the cluster up by recorded id first, then by derived name."""
        external_id = rosa_scope.control_plane.external_id
        if external_id:
            external = await self.cluster_service.get_cluster(external_id)
            if external is not None:
                return external
        return await self.cluster_service.find_cluster(rosa_scope.cluster_name)

    def _update_status(
        self, control_plane: ROSAControlPlane, external: ExternalCluster
    ) -> Result:
        status = control_plane.status
        status["id"] = external.id
        if external.console_url:
            status["consoleURL"] = external.console_url
        if external.oidc_endpoint_url:
            status["oidcEndpointURL"] = external.oidc_endpoint_url

        if external.is_ready:
            status["ready"] = True
            status["initialized"] = True
            control_plane.mark_true(ROSA_CONTROL_PLANE_READY_CONDITION)
            control_plane.mark_true(READY_CONDITION)
            return Result()

        if external.is_error:
            message = f"OCM cluster {external.name} failed: {external.status_description}"
            status["failureMessage"] = message
            _mark_not_ready(control_plane, REASON_FAILED, ConditionSeverity.ERROR, message)
            return Result()

        _mark_not_ready(
            control_plane,
            REASON_CREATING,
            ConditionSeverity.INFO,
            f"OCM cluster {external.name} is {external.state}",
        )
        return Result(requeue_after=self.cluster_poll_interval)

    # Watch mapping

    async def rosa_cluster_to_rosa_control_plane(
        self, obj: Dict[str, Any]
    ) -> List[ObjectKey]:
        """Map a ROSACluster event to the control plane of its owning Cluster."""
        rosa_cluster = ROSACluster(obj)

        if rosa_cluster.is_deleting:
            logger.debug("ROSACluster has a deletion timestamp, skipping mapping")
            return []

        try:
            cluster = await get_owner_cluster(self.client, rosa_cluster)
        except ApiError as e:
            logger.error(f"Failed to get owning cluster of {rosa_cluster.key}: {e}")
            return []
        if cluster is None:
            logger.debug("Owning cluster not set on ROSACluster, skipping mapping")
            return []

        return cluster_to_rosa_control_plane(cluster.raw)


def cluster_to_rosa_control_plane(obj: Dict[str, Any]) -> List[ObjectKey]:
    """Map a Cluster to its control plane if that is a ROSAControlPlane."""
    cluster = Cluster(obj)
    control_plane_ref = cluster.control_plane_ref
    if control_plane_ref is None or control_plane_ref.kind != ROSA_CONTROL_PLANE_KIND:
        logger.debug("ControlPlaneRef is nil or not ROSAControlPlane, skipping mapping")
        return []

    return [ObjectKey(control_plane_ref.namespace or cluster.namespace, control_plane_ref.name)]
