"""
ROSA control plane scope - Per-reconcile context for a ROSAControlPlane.

Binds the control plane, its owning Cluster and the object-store client for
the duration of one reconcile call. Closing the scope flushes every change
made to the control plane through the patch helper.
"""

import base64
import logging
from typing import List, Optional

import yaml

from clusterspec import MAX_CLUSTER_NAME_LENGTH, generate_cluster_name
from controlplane import (
    READY_CONDITION,
    ROSA_CONTROL_PLANE_READY_CONDITION,
    ROSA_CONTROL_PLANE_VALID_CONDITION,
    Cluster,
    ROSAControlPlane,
)
from kube import KubeClient
from patch import PatchHelper

logger = logging.getLogger(__name__)

# Conditions this controller always writes from its own copy.
OWNED_CONDITIONS: List[str] = [
    READY_CONDITION,
    ROSA_CONTROL_PLANE_READY_CONDITION,
    ROSA_CONTROL_PLANE_VALID_CONDITION,
]

REMOTE_CLIENT_TIMEOUT = 60.0
KUBECONFIG_SECRET_KEY = "value"


class ROSAControlPlaneScope:
    """
    Defines the basic context for an actuator to operate upon.

    Raises ValueError on construction when the cluster or control plane is
    missing; nothing remote is touched in that case.
    """

    def __init__(
        self,
        client: KubeClient,
        cluster: Optional[Cluster],
        control_plane: Optional[ROSAControlPlane],
        controller_name: str = "rosacontrolplane",
    ):
        if cluster is None:
            raise ValueError("failed to generate new scope from nil Cluster")
        if control_plane is None:
            raise ValueError("failed to generate new scope from nil ROSAControlPlane")

        self.client = client
        self.cluster = cluster
        self.control_plane = control_plane
        self.controller_name = controller_name
        self._patch_helper = PatchHelper(control_plane, client)

    @property
    def name(self) -> str:
        """The Cluster API cluster name."""
        return self.cluster.name

    @property
    def namespace(self) -> str:
        """The cluster namespace."""
        return self.cluster.namespace

    @property
    def infra_cluster_name(self) -> str:
        """The name of the ROSA control plane object."""
        return self.control_plane.name

    @property
    def cluster_name(self) -> str:
        """The name of the cluster in the external cluster-management service."""
        if self.control_plane.rosa_cluster_name:
            return self.control_plane.rosa_cluster_name
        return generate_cluster_name(
            self.control_plane.name,
            self.control_plane.namespace,
            MAX_CLUSTER_NAME_LENGTH,
        )

    def info(self, message: str) -> None:
        logger.info(f"{message} [{self.control_plane.key}]")

    async def patch_object(self) -> None:
        """Persist the control plane configuration and status."""
        await self._patch_helper.patch(
            self.control_plane, owned_conditions=OWNED_CONDITIONS
        )

    async def close(self) -> None:
        """Close the scope, persisting the control plane configuration and status."""
        await self.patch_object()

    async def remote_client(self) -> KubeClient:
        """
        Build a client for the workload cluster managed by this control plane.

        The caller owns the returned client and must close it.

        Raises:
            kube.ApiError: If the kubeconfig secret cannot be read
            ValueError: If the secret does not hold a usable kubeconfig
        """
        secret_name = f"{self.name}-kubeconfig"
        secret = await self.client.get("Secret", self.namespace, secret_name)
        encoded = (secret.get("data") or {}).get(KUBECONFIG_SECRET_KEY)
        if not encoded:
            raise ValueError(
                f"secret {self.namespace}/{secret_name} has no "
                f"'{KUBECONFIG_SECRET_KEY}' key"
            )

        kubeconfig = yaml.safe_load(base64.b64decode(encoded).decode())
        if not isinstance(kubeconfig, dict):
            raise ValueError(f"secret {self.namespace}/{secret_name} holds no kubeconfig")
        return await KubeClient.from_kubeconfig_dict(
            kubeconfig,
            scheme=self.client.scheme,
            request_timeout=REMOTE_CLIENT_TIMEOUT,
        )

    async def __aenter__(self) -> "ROSAControlPlaneScope":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and not issubclass(exc_type, Exception):
            # Cancelled or interpreter exit: abort without another round trip.
            return False
        try:
            await self.close()
        except Exception as close_error:
            if exc is None:
                raise
            logger.error(
                f"Failed to patch {self.control_plane.kind} "
                f"{self.control_plane.key} after error: {close_error}"
            )
        return False
