"""Pytest configuration and fixtures."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from clusterspec import ClusterRecord
from kube import ConflictError, NotFoundError
from ocm import ClusterService, ClusterState, ExternalCluster
from scheme import register_known_types, reset_scheme

OWNER_API_VERSION = "cluster.x-k8s.io/v1beta1"


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """Apply an RFC 7386 merge patch."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class FakeKubeClient:
    """
    In-memory API server.

    Writes bump metadata.resourceVersion; a patch carrying a stale
    resourceVersion is rejected with ConflictError. Objects that are
    deleting and have no finalizers left are removed.
    """

    def __init__(self):
        self.scheme = register_known_types()
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str, str]] = []
        self.patches: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self.status_patches: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self._version = 0
        self.get_errors: Dict[Tuple[str, str, str], Exception] = {}

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        key = (kind, metadata.get("namespace", ""), metadata["name"])
        self.objects[key] = obj
        return copy.deepcopy(obj)

    def stored(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def bump(self, kind: str, namespace: str, name: str, mutate) -> None:
        """Simulate a concurrent writer."""
        obj = self.objects[(kind, namespace, name)]
        mutate(obj)
        obj["metadata"]["resourceVersion"] = self._next_version()

    async def get(self, kind: str, namespace: str, name: str) -> Dict[str, Any]:
        self.calls.append(("get", kind, namespace, name))
        error = self.get_errors.get((kind, namespace, name))
        if error is not None:
            raise error
        obj = self.objects.get((kind, namespace, name))
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", 404)
        return copy.deepcopy(obj)

    async def list(
        self, kind: str, namespace: Optional[str] = None, label_selector=None
    ) -> Dict[str, Any]:
        items = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in self.objects.items()
            if k == kind and (namespace is None or ns == namespace)
        ]
        return {"items": items, "metadata": {"resourceVersion": str(self._version)}}

    async def watch(
        self, kind: str, namespace=None, resource_version=None, timeout_seconds=300
    ):
        while True:
            await asyncio.sleep(timeout_seconds)
            yield {
                "type": "BOOKMARK",
                "object": {"metadata": {"resourceVersion": str(self._version)}},
            }

    def _write(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any], status: bool
    ) -> Dict[str, Any]:
        key = (kind, namespace, name)
        obj = self.objects.get(key)
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found", 404)

        expected = (patch.get("metadata") or {}).get("resourceVersion")
        if expected and expected != obj["metadata"]["resourceVersion"]:
            raise ConflictError(f"{kind} {namespace}/{name} has been modified", 409)

        if status:
            updated = copy.deepcopy(obj)
            updated["status"] = apply_merge_patch(obj.get("status"), patch.get("status"))
        else:
            body = {k: v for k, v in patch.items() if k != "status"}
            updated = apply_merge_patch(obj, body)
        updated["metadata"]["resourceVersion"] = self._next_version()

        metadata = updated["metadata"]
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            del self.objects[key]
        else:
            self.objects[key] = updated
        return copy.deepcopy(updated)

    async def patch(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append(("patch", kind, namespace, name))
        self.patches.append((kind, namespace, name, copy.deepcopy(patch)))
        return self._write(kind, namespace, name, patch, status=False)

    async def patch_status(
        self, kind: str, namespace: str, name: str, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append(("patch_status", kind, namespace, name))
        self.status_patches.append((kind, namespace, name, copy.deepcopy(patch)))
        return self._write(kind, namespace, name, patch, status=True)

    async def close(self) -> None:
        pass


class FakeClusterService(ClusterService):
    """In-memory cluster-management service recording every call."""

    def __init__(self):
        self.clusters: Dict[str, ExternalCluster] = {}
        self.created: List[ClusterRecord] = []
        self.deleted: List[str] = []
        self.calls: List[str] = []
        self.create_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.find_error: Optional[Exception] = None
        self._next_id = 0

    def add_cluster(self, name: str, state: str = ClusterState.INSTALLING, **kwargs):
        self._next_id += 1
        cluster = ExternalCluster(
            id=kwargs.pop("id", f"cluster-{self._next_id}"), name=name, state=state, **kwargs
        )
        self.clusters[cluster.id] = cluster
        return cluster

    async def create_cluster(self, record: ClusterRecord) -> ExternalCluster:
        self.calls.append("create_cluster")
        if self.create_error is not None:
            raise self.create_error
        self.created.append(record)
        return self.add_cluster(record.name, ClusterState.PENDING)

    async def get_cluster(self, cluster_id: str) -> Optional[ExternalCluster]:
        self.calls.append("get_cluster")
        return self.clusters.get(cluster_id)

    async def find_cluster(self, name: str) -> Optional[ExternalCluster]:
        self.calls.append("find_cluster")
        if self.find_error is not None:
            raise self.find_error
        for cluster in self.clusters.values():
            if cluster.name == name:
                return cluster
        return None

    async def delete_cluster(self, cluster_id: str) -> None:
        self.calls.append("delete_cluster")
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(cluster_id)
        cluster = self.clusters.get(cluster_id)
        if cluster is not None:
            cluster.state = ClusterState.UNINSTALLING


def make_cluster(
    name: str = "c1",
    namespace: str = "ns1",
    paused: bool = False,
    infrastructure_ready: bool = True,
    control_plane_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": OWNER_API_VERSION,
        "kind": "Cluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "paused": paused,
            "controlPlaneRef": {
                "apiVersion": "controlplane.cluster.x-k8s.io/v1beta2",
                "kind": "ROSAControlPlane",
                "name": control_plane_name or name,
                "namespace": namespace,
            },
            "infrastructureRef": {
                "apiVersion": "infrastructure.cluster.x-k8s.io/v1beta2",
                "kind": "ROSACluster",
                "name": name,
                "namespace": namespace,
            },
        },
        "status": {"infrastructureReady": infrastructure_ready},
    }


def make_control_plane(
    name: str = "c1",
    namespace: str = "ns1",
    owner: Optional[str] = "c1",
    spec: Optional[Dict[str, Any]] = None,
    **metadata: Any,
) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"name": name, "namespace": namespace}
    if owner:
        meta["ownerReferences"] = [
            {"apiVersion": OWNER_API_VERSION, "kind": "Cluster", "name": owner}
        ]
    meta.update(metadata)
    return {
        "apiVersion": "controlplane.cluster.x-k8s.io/v1beta2",
        "kind": "ROSAControlPlane",
        "metadata": meta,
        "spec": spec if spec is not None else {"region": "us-east-1", "version": "4.14.0"},
    }


@pytest.fixture(autouse=True)
def fresh_scheme():
    """Give every test its own global scheme."""
    reset_scheme()
    yield
    reset_scheme()


@pytest.fixture
def kube_client():
    return FakeKubeClient()


@pytest.fixture
def cluster_service():
    return FakeClusterService()


@pytest.fixture
def full_spec():
    """A ROSAControlPlane spec with every field the cluster record uses."""
    account = "123456789012"
    return {
        "rosaClusterName": "",
        "region": "us-west-2",
        "version": "4.14.5",
        "machineCIDR": "10.0.0.0/16",
        "accountID": account,
        "creatorARN": f"arn:aws:iam::{account}:user/admin",
        "installerRoleARN": f"arn:aws:iam::{account}:role/installer",
        "supportRoleARN": f"arn:aws:iam::{account}:role/support",
        "workerRoleARN": f"arn:aws:iam::{account}:role/worker",
        "oidcID": "oidc-123",
        "subnets": ["subnet-a", "subnet-b"],
        "availabilityZones": ["us-west-2a"],
        "rolesRef": {
            "ingressARN": f"arn:aws:iam::{account}:role/ingress",
            "imageRegistryARN": f"arn:aws:iam::{account}:role/registry",
            "storageARN": f"arn:aws:iam::{account}:role/storage",
            "networkARN": f"arn:aws:iam::{account}:role/network",
            "kubeCloudControllerARN": f"arn:aws:iam::{account}:role/kcm",
            "nodePoolManagementARN": f"arn:aws:iam::{account}:role/nodepool",
            "controlPlaneOperatorARN": f"arn:aws:iam::{account}:role/cpo",
            "kmsProviderARN": f"arn:aws:iam::{account}:role/kms",
        },
    }
