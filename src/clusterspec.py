"""
Cluster record construction - Translates a ROSAControlPlane into the
cluster description submitted to OpenShift Cluster Manager.

Construction is deterministic for a given control plane and clock and
produces an immutable value.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from controlplane import ROSAControlPlane

CLUSTER_NAME_PREFIX = "capa-"
MAX_CLUSTER_NAME_LENGTH = 54

PRODUCT_ID = "rosa"
CHANNEL_GROUP = "stable"
NETWORK_TYPE = "OVNKubernetes"
VERSION_PREFIX = "openshift-v"
CREATOR_ARN_PROPERTY = "rosa_creator_arn"

# Expiration hint attached to new clusters.
EXPIRATION_HORIZON = timedelta(hours=1)

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

# (operator name, target namespace) -> RolesRef attribute holding the role ARN
OPERATOR_ROLES: Tuple[Tuple[str, str, str], ...] = (
    ("cloud-credentials", "openshift-ingress-operator", "ingress_arn"),
    ("installer-cloud-credentials", "openshift-image-registry", "image_registry_arn"),
    ("ebs-cloud-credentials", "openshift-cluster-csi-drivers", "storage_arn"),
    (
        "cloud-credentials",
        "openshift-cloud-network-config-controller",
        "network_arn",
    ),
    ("kube-controller-manager", "kube-system", "kube_cloud_controller_arn"),
    ("kms-provider", "kube-system", "kms_provider_arn"),
    ("control-plane-operator", "kube-system", "control_plane_operator_arn"),
    ("capa-controller-manager", "kube-system", "node_pool_management_arn"),
)


def base36_truncated_hash(value: str, length: int) -> str:
    """Hash a string with BLAKE2b-256 and return the first `length` base36 digits."""
    number = int.from_bytes(hashlib.blake2b(value.encode(), digest_size=32).digest(), "big")
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    encoded = "".join(reversed(digits)) or "0"
    return encoded[:length]


def generate_cluster_name(resource_name: str, namespace: str, max_length: int) -> str:
    """
    Generate the default external cluster name for a control plane.

    Short names are '<namespace>-<name>' with dots replaced; names that
    would not fit are replaced by a prefixed hash of that string.
    """
    cluster_name = f"{namespace}-{resource_name.replace('.', '-')}"
    if len(cluster_name) < max_length:
        return cluster_name

    hash_length = 32 - len(CLUSTER_NAME_PREFIX)
    return f"{CLUSTER_NAME_PREFIX}{base36_truncated_hash(cluster_name, hash_length)}"


@dataclass(frozen=True)
class OperatorRole:
    name: str
    namespace: str
    role_arn: str


@dataclass(frozen=True)
class InstanceRoles:
    master_role_arn: str
    worker_role_arn: str


@dataclass(frozen=True)
class STSConfig:
    role_arn: str
    support_role_arn: str
    operator_roles: Tuple[OperatorRole, ...]
    instance_roles: InstanceRoles
    oidc_config_id: str
    auto_mode: bool = True


@dataclass(frozen=True)
class ClusterRecord:
    """Immutable description of a cluster to create in OCM."""

    name: str
    region: str
    version: str
    machine_cidr: str
    account_id: str
    subnet_ids: Tuple[str, ...]
    availability_zones: Tuple[str, ...]
    sts: STSConfig
    expiration_timestamp: datetime
    properties: Tuple[Tuple[str, str], ...] = ()
    multi_az: bool = True
    product: str = PRODUCT_ID
    channel_group: str = CHANNEL_GROUP
    network_type: str = NETWORK_TYPE
    fips: bool = False
    etcd_encryption: bool = False
    disable_user_workload_monitoring: bool = True
    hypershift: bool = True

    @property
    def version_id(self) -> str:
        if self.version.startswith(VERSION_PREFIX):
            return self.version
        return f"{VERSION_PREFIX}{self.version}"

    def to_dict(self) -> Dict[str, Any]:
        """Render the record as an OCM clusters_mgmt/v1 Cluster body."""
        sts = self.sts
        body: Dict[str, Any] = {
            "kind": "Cluster",
            "name": self.name,
            "multi_az": self.multi_az,
            "product": {"id": self.product},
            "region": {"id": self.region},
            "fips": self.fips,
            "etcd_encryption": self.etcd_encryption,
            "disable_user_workload_monitoring": self.disable_user_workload_monitoring,
            "version": {"id": self.version_id, "channel_group": self.channel_group},
            "expiration_timestamp": self.expiration_timestamp.strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            ),
            "hypershift": {"enabled": self.hypershift},
            "network": {"type": self.network_type, "machine_cidr": self.machine_cidr},
            "aws": {
                "account_id": self.account_id,
                "subnet_ids": list(self.subnet_ids),
                "sts": {
                    "role_arn": sts.role_arn,
                    "support_role_arn": sts.support_role_arn,
                    "operator_iam_roles": [
                        {
                            "name": role.name,
                            "namespace": role.namespace,
                            "role_arn": role.role_arn,
                        }
                        for role in sts.operator_roles
                    ],
                    "instance_iam_roles": {
                        "master_role_arn": sts.instance_roles.master_role_arn,
                        "worker_role_arn": sts.instance_roles.worker_role_arn,
                    },
                    "oidc_config": {"id": sts.oidc_config_id},
                    "auto_mode": sts.auto_mode,
                },
            },
            "properties": dict(self.properties),
        }
        if self.availability_zones:
            body["nodes"] = {"availability_zones": list(self.availability_zones)}
        return body


def build_operator_roles(control_plane: ROSAControlPlane) -> Tuple[OperatorRole, ...]:
    roles_ref = control_plane.roles_ref
    return tuple(
        OperatorRole(name=name, namespace=namespace, role_arn=getattr(roles_ref, attr))
        for name, namespace, attr in OPERATOR_ROLES
    )


def build_cluster_record(
    control_plane: ROSAControlPlane,
    cluster_name: str,
    now: Optional[datetime] = None,
) -> ClusterRecord:
    """
    Build the external cluster record for a control plane.

    Args:
        control_plane: The desired-state object
        cluster_name: Name of the cluster in OCM, derived from the object
        now: Reference time for the expiration hint (defaults to UTC now)

    Returns:
        A fully populated, immutable ClusterRecord
    """
    now = now or datetime.now(timezone.utc)
    node_pool_management_arn = control_plane.roles_ref.node_pool_management_arn

    sts = STSConfig(
        role_arn=control_plane.installer_role_arn,
        support_role_arn=control_plane.support_role_arn,
        operator_roles=build_operator_roles(control_plane),
        instance_roles=InstanceRoles(
            master_role_arn=node_pool_management_arn,
            worker_role_arn=node_pool_management_arn,
        ),
        oidc_config_id=control_plane.oidc_id,
    )

    return ClusterRecord(
        name=cluster_name,
        region=control_plane.region,
        version=control_plane.version,
        machine_cidr=control_plane.machine_cidr,
        account_id=control_plane.account_id,
        subnet_ids=tuple(control_plane.subnets),
        availability_zones=tuple(control_plane.availability_zones),
        sts=sts,
        expiration_timestamp=now + EXPIRATION_HORIZON,
        properties=((CREATOR_ARN_PROPERTY, control_plane.creator_arn),),
    )
