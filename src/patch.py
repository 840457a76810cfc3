"""
Patch helper - Diff-and-conditional-write persistence for one object.

A PatchHelper snapshots an object when it is created. patch() compares the
live object against that snapshot and writes only what changed: metadata
and spec through the main resource, status through the status subresource.
Every write is conditioned on a resourceVersion so concurrent edits are
surfaced as ConflictError rather than overwritten.
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from controlplane import READY_CONDITION, KubeObject
from kube import ConflictError, KubeClient, NotFoundError

logger = logging.getLogger(__name__)

# Metadata fields owned by the API server.
IGNORED_METADATA_FIELDS = ("resourceVersion", "managedFields", "generation")


def merge_patch_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compute the JSON merge patch (RFC 7386) that turns before into after.

    Removed keys map to None. Lists are replaced wholesale.

    Args:
        before: The original document
        after: The modified document

    Returns:
        The merge patch; empty if the documents are equal
    """
    patch: Dict[str, Any] = {}
    for key in before:
        if key not in after:
            patch[key] = None
    for key, value in after.items():
        if key not in before:
            patch[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(before[key], dict):
            nested = merge_patch_diff(before[key], value)
            if nested:
                patch[key] = nested
        elif value != before[key]:
            patch[key] = copy.deepcopy(value)
    return patch


def _conditions_by_type(status: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    return {c["type"]: c for c in status.get("conditions") or [] if "type" in c}


def _sorted_conditions(conditions: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(conditions, key=lambda c: (c["type"] != READY_CONDITION, c["type"]))


def _without(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != key}


class PatchHelper:
    """Tracks one object between acquire and release and flushes its changes."""

    def __init__(self, obj: KubeObject, client: KubeClient):
        if obj is None:
            raise ValueError("failed to create patch helper from nil object")
        self.client = client
        self.kind = obj.kind
        self.before = obj.deepcopy()

    def _main_patch(self, after: Dict[str, Any]) -> Dict[str, Any]:
        patch = merge_patch_diff(_without(self.before, "status"), _without(after, "status"))
        metadata = patch.get("metadata")
        if metadata is not None:
            for field in IGNORED_METADATA_FIELDS:
                metadata.pop(field, None)
            if not metadata:
                del patch["metadata"]
        return patch

    def _effective_conditions(
        self, obj: KubeObject, owned: Set[str]
    ) -> Dict[str, Dict[str, Any]]:
        """Live conditions plus owned conditions set during the call but since dropped."""
        conditions = _conditions_by_type(obj.raw.get("status") or {})
        for condition_type in owned:
            if condition_type not in conditions and condition_type in obj.conditions_set:
                conditions[condition_type] = copy.deepcopy(
                    obj.conditions_set[condition_type]
                )
        return conditions

    async def _status_patch(
        self, obj: KubeObject, owned: Set[str]
    ) -> Optional[Dict[str, Any]]:
        before_status = self.before.get("status") or {}
        after_status = obj.raw.get("status") or {}

        before_conditions = _conditions_by_type(before_status)
        after_conditions = self._effective_conditions(obj, owned)

        changed_types = {
            t
            for t in set(before_conditions) | set(after_conditions)
            if before_conditions.get(t) != after_conditions.get(t)
        }
        forced_types = {t for t in owned if t in after_conditions}

        patch = merge_patch_diff(
            _without(before_status, "conditions"), _without(after_status, "conditions")
        )
        if not patch and not changed_types:
            return None

        resource_version = obj.resource_version
        if changed_types or forced_types:
            # Three-way merge of conditions against the latest server copy.
            current = await self.client.get(self.kind, obj.namespace, obj.name)
            current_status = current.get("status") or {}
            current_conditions = _conditions_by_type(current_status)

            for field in patch:
                if (
                    current_status.get(field) != before_status.get(field)
                    and current_status.get(field) != after_status.get(field)
                ):
                    raise ConflictError(
                        f"status.{field} of {self.kind} {obj.namespace}/{obj.name} "
                        "was modified concurrently"
                    )

            merged = dict(current_conditions)
            for condition_type in changed_types | forced_types:
                if condition_type not in owned:
                    remote = current_conditions.get(condition_type)
                    if remote != before_conditions.get(
                        condition_type
                    ) and remote != after_conditions.get(condition_type):
                        raise ConflictError(
                            f"condition {condition_type} of {self.kind} "
                            f"{obj.namespace}/{obj.name} was modified concurrently"
                        )
                if condition_type in after_conditions:
                    merged[condition_type] = after_conditions[condition_type]
                else:
                    merged.pop(condition_type, None)

            if merged != current_conditions or patch:
                patch["conditions"] = _sorted_conditions(merged.values())
            resource_version = current.get("metadata", {}).get("resourceVersion", "")

        if not patch:
            return None
        return {"metadata": {"resourceVersion": resource_version}, "status": patch}

    async def patch(
        self, obj: KubeObject, owned_conditions: Optional[List[str]] = None
    ) -> None:
        """
        Persist the changes made to obj since the helper was created.

        Args:
            obj: The live object, mutated during the reconcile
            owned_conditions: Condition types this controller always writes
                from its own copy, even if a concurrent writer changed them

        Raises:
            ConflictError: If the object or a non-owned condition changed
                concurrently
            ApiError: If a write fails
        """
        owned = set(owned_conditions or [])

        main_patch = self._main_patch(obj.raw)
        if main_patch:
            main_patch.setdefault("metadata", {})["resourceVersion"] = obj.resource_version
            logger.debug(f"Patching {self.kind} {obj.key}: {main_patch}")
            updated = await self.client.patch(
                self.kind, obj.namespace, obj.name, main_patch
            )
            obj.metadata["resourceVersion"] = updated.get("metadata", {}).get(
                "resourceVersion", obj.resource_version
            )

        status_patch = await self._status_patch_or_gone(obj, owned)
        if status_patch:
            logger.debug(f"Patching {self.kind} {obj.key} status: {status_patch}")
            try:
                updated = await self.client.patch_status(
                    self.kind, obj.namespace, obj.name, status_patch
                )
            except NotFoundError:
                if not self._released(obj):
                    raise
                logger.debug(f"{self.kind} {obj.key} is gone, skipping status patch")
            else:
                obj.metadata["resourceVersion"] = updated.get("metadata", {}).get(
                    "resourceVersion", obj.resource_version
                )

        self.before = obj.deepcopy()

    async def _status_patch_or_gone(
        self, obj: KubeObject, owned: Set[str]
    ) -> Optional[Dict[str, Any]]:
        try:
            return await self._status_patch(obj, owned)
        except NotFoundError:
            if not self._released(obj):
                raise
            logger.debug(f"{self.kind} {obj.key} is gone, skipping status patch")
            return None

    @staticmethod
    def _released(obj: KubeObject) -> bool:
        """A deleting object with no finalizers left may already be removed."""
        return obj.is_deleting and not obj.finalizers
