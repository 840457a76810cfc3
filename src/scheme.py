"""
Scheme - Registry of the object kinds known to the operator.

Maps a kind to the API group, version and plural name the object-store
client addresses it by. The registry is process-wide and populated
exactly once.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CLUSTER_API_GROUP = "cluster.x-k8s.io"
CONTROLPLANE_API_GROUP = "controlplane.cluster.x-k8s.io"
INFRASTRUCTURE_API_GROUP = "infrastructure.cluster.x-k8s.io"


@dataclass(frozen=True)
class ResourceKind:
    """API coordinates of a registered kind."""

    kind: str
    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


class Scheme:
    """Kind registry consumed by the object-store client."""

    def __init__(self):
        self._kinds: Dict[str, ResourceKind] = {}

    def register(self, resource_kind: ResourceKind) -> None:
        existing = self._kinds.get(resource_kind.kind)
        if existing is not None and existing != resource_kind:
            raise ValueError(
                f"Kind '{resource_kind.kind}' is already registered as "
                f"{existing.api_version}"
            )
        self._kinds[resource_kind.kind] = resource_kind

    def lookup(self, kind: str) -> ResourceKind:
        """
        Get the registered coordinates for a kind.

        Raises:
            KeyError: If the kind is not registered
        """
        try:
            return self._kinds[kind]
        except KeyError:
            raise KeyError(f"Kind '{kind}' is not registered in the scheme") from None

    def is_registered(self, kind: str) -> bool:
        return kind in self._kinds

    def kinds(self) -> List[str]:
        return sorted(self._kinds)


KNOWN_TYPES = [
    ResourceKind("ROSAControlPlane", CONTROLPLANE_API_GROUP, "v1beta2", "rosacontrolplanes"),
    ResourceKind("Cluster", CLUSTER_API_GROUP, "v1beta1", "clusters"),
    ResourceKind("ROSACluster", INFRASTRUCTURE_API_GROUP, "v1beta2", "rosaclusters"),
    ResourceKind("Secret", "", "v1", "secrets"),
]

_scheme: Optional[Scheme] = None
_scheme_lock = threading.Lock()


def register_known_types() -> Scheme:
    """
    Populate the global scheme with the kinds the operator works with.

    Safe to call any number of times from any thread; registration only
    happens on the first call.
    """
    global _scheme
    with _scheme_lock:
        if _scheme is None:
            scheme = Scheme()
            for resource_kind in KNOWN_TYPES:
                scheme.register(resource_kind)
            _scheme = scheme
            logger.debug(f"Registered kinds: {', '.join(scheme.kinds())}")
        return _scheme


def get_scheme() -> Scheme:
    """Get the global scheme, registering the known types on first use."""
    if _scheme is None:
        return register_known_types()
    return _scheme


def reset_scheme() -> None:
    """Reset the global scheme (mainly for testing)."""
    global _scheme
    with _scheme_lock:
        _scheme = None
