"""
Event predicates - Filters applied to watch events before they are mapped
to reconcile requests.
"""

import logging

from controlplane import (
    WATCH_FILTER_LABEL,
    Cluster,
    KubeObject,
    has_paused_annotation,
)

logger = logging.getLogger(__name__)


def has_watch_filter_label(obj: KubeObject, watch_filter_value: str) -> bool:
    """An empty filter value matches every object."""
    if not watch_filter_value:
        return True
    return obj.labels.get(WATCH_FILTER_LABEL) == watch_filter_value


def resource_not_paused_and_has_filter_label(
    obj: KubeObject, watch_filter_value: str
) -> bool:
    """Accept objects that are not paused and carry the configured watch-filter label."""
    if has_paused_annotation(obj):
        logger.debug(f"{obj.kind} {obj.key} is paused, ignoring event")
        return False
    if not has_watch_filter_label(obj, watch_filter_value):
        logger.debug(f"{obj.kind} {obj.key} does not match watch filter, ignoring event")
        return False
    return True


def cluster_unpaused_and_infrastructure_ready(cluster: Cluster) -> bool:
    """Accept Clusters that are not paused and whose infrastructure is ready."""
    if cluster.paused:
        logger.debug(f"Cluster {cluster.key} is paused, ignoring event")
        return False
    if not cluster.infrastructure_ready:
        logger.debug(f"Cluster {cluster.key} infrastructure is not ready, ignoring event")
        return False
    return True
