"""
Control plane types - Typed views over raw Kubernetes objects.

Objects are kept as the raw dicts returned by the API server so the patch
helper can diff them; the classes here only add accessors and the small
amount of behaviour (conditions, finalizers, owner lookup) the reconciler
needs.
"""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, NamedTuple, Optional

from scheme import CLUSTER_API_GROUP

if TYPE_CHECKING:
    from kube import KubeClient

logger = logging.getLogger(__name__)

ROSA_CONTROL_PLANE_KIND = "ROSAControlPlane"
ROSA_CLUSTER_KIND = "ROSACluster"
CLUSTER_KIND = "Cluster"

# Allows the controller to clean up external resources on delete.
ROSA_CONTROL_PLANE_FINALIZER = "rosacontrolplane.controlplane.cluster.x-k8s.io"

PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"
WATCH_FILTER_LABEL = "cluster.x-k8s.io/watch-filter"

# Condition types
READY_CONDITION = "Ready"
ROSA_CONTROL_PLANE_READY_CONDITION = "ROSAControlPlaneReady"
ROSA_CONTROL_PLANE_VALID_CONDITION = "ROSAControlPlaneValid"

# Condition reasons
REASON_RECONCILIATION_FAILED = "ReconciliationFailed"
REASON_CREATING = "Creating"
REASON_FAILED = "Failed"
REASON_DELETING = "Deleting"
REASON_DELETION_FAILED = "DeletionFailed"
REASON_INVALID_SPEC = "InvalidSpec"


class ConditionStatus(Enum):
    """Ternary status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionSeverity(Enum):
    """Severity of a condition that is not True."""

    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    NONE = ""


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


@dataclass
class Condition:
    """A single timestamped status condition."""

    type: str
    status: ConditionStatus
    severity: ConditionSeverity = ConditionSeverity.NONE
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "status": self.status.value,
            "lastTransitionTime": self.last_transition_time or now_rfc3339(),
        }
        if self.severity is not ConditionSeverity.NONE:
            data["severity"] = self.severity.value
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=ConditionStatus(data.get("status", "Unknown")),
            severity=ConditionSeverity(data.get("severity", "")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime"),
        )


class ObjectKey(NamedTuple):
    """Namespaced name identifying an object, also used as a reconcile request."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class ObjectReference:
    """Typed reference to another object (kind + namespace-qualified name)."""

    kind: str
    name: str
    namespace: str = ""
    api_version: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ObjectReference"]:
        if not data:
            return None
        return cls(
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            api_version=data.get("apiVersion", ""),
        )


class KubeObject:
    """Accessors shared by every Kubernetes object view."""

    kind = ""

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        # Conditions set during the current reconcile, keyed by type.
        self.conditions_set: Dict[str, Dict[str, Any]] = {}

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.raw.setdefault("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.namespace, self.name)

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def resource_version(self) -> str:
        return self.metadata.get("resourceVersion", "")

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def owner_references(self) -> List[Dict[str, Any]]:
        return self.metadata.get("ownerReferences") or []

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def spec(self) -> Dict[str, Any]:
        return self.raw.setdefault("spec", {})

    @property
    def status(self) -> Dict[str, Any]:
        return self.raw.setdefault("status", {})

    @status.setter
    def status(self, value: Dict[str, Any]) -> None:
        self.raw["status"] = value

    def deepcopy(self) -> Dict[str, Any]:
        return copy.deepcopy(self.raw)

    # Finalizers

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """
        Add a finalizer if not already present.

        Returns:
            True if the finalizer list was changed
        """
        finalizers = self.finalizers
        if finalizer in finalizers:
            return False
        finalizers.append(finalizer)
        self.metadata["finalizers"] = finalizers
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """
        Remove every occurrence of a finalizer.

        Returns:
            True if the finalizer list was changed
        """
        finalizers = self.finalizers
        remaining = [f for f in finalizers if f != finalizer]
        if len(remaining) == len(finalizers):
            return False
        self.metadata["finalizers"] = remaining
        return True

    # Conditions

    @property
    def conditions(self) -> List[Condition]:
        return [Condition.from_dict(c) for c in self.status.get("conditions") or []]

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def is_condition_true(self, condition_type: str) -> bool:
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status is ConditionStatus.TRUE

    def set_condition(self, condition: Condition) -> None:
        """
        Set a condition, replacing any existing condition of the same type.

        The last transition time only moves when the status changes.
        """
        existing = self.get_condition(condition.type)
        if existing is not None and existing.status == condition.status:
            condition.last_transition_time = existing.last_transition_time
        data = condition.to_dict()

        conditions = [
            c
            for c in self.status.get("conditions") or []
            if c.get("type") != condition.type
        ]
        conditions.append(data)
        conditions.sort(key=lambda c: (c["type"] != READY_CONDITION, c["type"]))
        self.status["conditions"] = conditions
        self.conditions_set[condition.type] = copy.deepcopy(data)

    def mark_true(self, condition_type: str) -> None:
        self.set_condition(Condition(type=condition_type, status=ConditionStatus.TRUE))

    def mark_false(
        self,
        condition_type: str,
        reason: str,
        severity: ConditionSeverity = ConditionSeverity.WARNING,
        message: str = "",
    ) -> None:
        self.set_condition(
            Condition(
                type=condition_type,
                status=ConditionStatus.FALSE,
                severity=severity,
                reason=reason,
                message=message,
            )
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.namespace}/{self.name}>"


@dataclass
class RolesRef:
    """Role ARNs for the operators running in the hosted control plane."""

    ingress_arn: str = ""
    image_registry_arn: str = ""
    storage_arn: str = ""
    network_arn: str = ""
    kube_cloud_controller_arn: str = ""
    node_pool_management_arn: str = ""
    control_plane_operator_arn: str = ""
    kms_provider_arn: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RolesRef":
        data = data or {}
        return cls(
            ingress_arn=data.get("ingressARN", ""),
            image_registry_arn=data.get("imageRegistryARN", ""),
            storage_arn=data.get("storageARN", ""),
            network_arn=data.get("networkARN", ""),
            kube_cloud_controller_arn=data.get("kubeCloudControllerARN", ""),
            node_pool_management_arn=data.get("nodePoolManagementARN", ""),
            control_plane_operator_arn=data.get("controlPlaneOperatorARN", ""),
            kms_provider_arn=data.get("kmsProviderARN", ""),
        )


class ROSAControlPlane(KubeObject):
    """The desired-state object for a ROSA hosted control plane."""

    kind = ROSA_CONTROL_PLANE_KIND

    @property
    def rosa_cluster_name(self) -> str:
        return self.spec.get("rosaClusterName", "")

    @property
    def region(self) -> str:
        return self.spec.get("region", "")

    @property
    def version(self) -> str:
        return self.spec.get("version", "")

    @property
    def machine_cidr(self) -> str:
        return self.spec.get("machineCIDR", "")

    @property
    def account_id(self) -> str:
        return self.spec.get("accountID", "")

    @property
    def creator_arn(self) -> str:
        return self.spec.get("creatorARN", "")

    @property
    def installer_role_arn(self) -> str:
        return self.spec.get("installerRoleARN", "")

    @property
    def support_role_arn(self) -> str:
        return self.spec.get("supportRoleARN", "")

    @property
    def worker_role_arn(self) -> str:
        return self.spec.get("workerRoleARN", "")

    @property
    def oidc_id(self) -> str:
        return self.spec.get("oidcID", "")

    @property
    def subnets(self) -> List[str]:
        return list(self.spec.get("subnets") or [])

    @property
    def availability_zones(self) -> List[str]:
        return list(self.spec.get("availabilityZones") or [])

    @property
    def roles_ref(self) -> RolesRef:
        return RolesRef.from_dict(self.spec.get("rolesRef"))

    @property
    def identity_ref(self) -> Optional[ObjectReference]:
        return ObjectReference.from_dict(self.spec.get("identityRef"))

    @property
    def external_id(self) -> str:
        return self.status.get("id", "")


class Cluster(KubeObject):
    """The owning Cluster API cluster."""

    kind = CLUSTER_KIND

    @property
    def paused(self) -> bool:
        return bool(self.spec.get("paused", False))

    @property
    def control_plane_ref(self) -> Optional[ObjectReference]:
        return ObjectReference.from_dict(self.spec.get("controlPlaneRef"))

    @property
    def infrastructure_ref(self) -> Optional[ObjectReference]:
        return ObjectReference.from_dict(self.spec.get("infrastructureRef"))

    @property
    def infrastructure_ready(self) -> bool:
        return bool(self.status.get("infrastructureReady", False))


class ROSACluster(KubeObject):
    """The infrastructure object of a ROSA cluster."""

    kind = ROSA_CLUSTER_KIND


def has_paused_annotation(obj: KubeObject) -> bool:
    return PAUSED_ANNOTATION in obj.annotations


def is_paused(cluster: Cluster, obj: KubeObject) -> bool:
    """Return True if the cluster is paused or the object carries the paused annotation."""
    return cluster.paused or has_paused_annotation(obj)


def _api_group(api_version: str) -> str:
    if "/" not in api_version:
        return ""
    return api_version.split("/", 1)[0]


async def get_owner_cluster(client: "KubeClient", obj: KubeObject) -> Optional[Cluster]:
    """
    Resolve the Cluster that owns an object.

    Args:
        client: Object-store client
        obj: The owned object

    Returns:
        The owning Cluster, or None if no Cluster owner reference is set yet

    Raises:
        kube.ApiError: If the owner reference is set but the Cluster cannot be read
    """
    for ref in obj.owner_references:
        if ref.get("kind") != CLUSTER_KIND:
            continue
        if _api_group(ref.get("apiVersion", "")) != CLUSTER_API_GROUP:
            continue
        raw = await client.get(CLUSTER_KIND, obj.namespace, ref["name"])
        return Cluster(raw)
    return None
