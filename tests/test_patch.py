"""Unit tests for patch.py - Diff-based conditional writes."""

import pytest

from conftest import make_control_plane
from controlplane import (
    READY_CONDITION,
    ROSA_CONTROL_PLANE_READY_CONDITION,
    ROSAControlPlane,
)
from kube import ConflictError
from patch import PatchHelper, merge_patch_diff

OWNED = [READY_CONDITION, ROSA_CONTROL_PLANE_READY_CONDITION]


class TestMergePatchDiff:
    """Tests for merge_patch_diff."""

    def test_equal_documents(self):
        assert merge_patch_diff({"a": 1, "b": {"c": 2}}, {"a": 1, "b": {"c": 2}}) == {}

    def test_changed_and_added_fields(self):
        before = {"a": 1, "b": {"c": 2, "d": 3}}
        after = {"a": 2, "b": {"c": 2, "d": 4}, "e": [1]}

        assert merge_patch_diff(before, after) == {"a": 2, "b": {"d": 4}, "e": [1]}

    def test_removed_field_is_nulled(self):
        assert merge_patch_diff({"a": 1, "b": 2}, {"a": 1}) == {"b": None}

    def test_lists_are_replaced(self):
        assert merge_patch_diff({"f": ["x", "y"]}, {"f": ["y"]}) == {"f": ["y"]}


@pytest.mark.asyncio
class TestPatchHelper:
    """Tests for PatchHelper against the in-memory API server."""

    async def load(self, kube_client, **metadata):
        kube_client.add("ROSAControlPlane", make_control_plane(**metadata))
        raw = await kube_client.get("ROSAControlPlane", "ns1", "c1")
        return ROSAControlPlane(raw)

    async def test_rejects_nil_object(self, kube_client):
        with pytest.raises(ValueError):
            PatchHelper(None, kube_client)

    async def test_no_changes_no_writes(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)

        await helper.patch(control_plane, OWNED)

        assert kube_client.patches == []
        assert kube_client.status_patches == []

    async def test_writes_only_the_difference(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)

        control_plane.add_finalizer("example.com/finalizer")
        control_plane.spec["version"] = "4.15.0"
        await helper.patch(control_plane, OWNED)

        _, _, _, patch = kube_client.patches[0]
        assert patch == {
            "metadata": {"finalizers": ["example.com/finalizer"], "resourceVersion": "1"},
            "spec": {"version": "4.15.0"},
        }
        assert kube_client.status_patches == []

    async def test_status_goes_to_status_subresource(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)

        control_plane.status["id"] = "abc"
        await helper.patch(control_plane, OWNED)

        assert kube_client.patches == []
        _, _, _, patch = kube_client.status_patches[0]
        assert patch["status"] == {"id": "abc"}
        assert kube_client.stored("ROSAControlPlane", "ns1", "c1")["status"]["id"] == "abc"

    async def test_resource_version_is_tracked_across_patches(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)

        control_plane.add_finalizer("example.com/finalizer")
        await helper.patch(control_plane, OWNED)
        control_plane.status["id"] = "abc"
        await helper.patch(control_plane, OWNED)

        stored = kube_client.stored("ROSAControlPlane", "ns1", "c1")
        assert stored["metadata"]["finalizers"] == ["example.com/finalizer"]
        assert stored["status"]["id"] == "abc"
        assert control_plane.resource_version == stored["metadata"]["resourceVersion"]

    async def test_concurrent_spec_change_conflicts(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)
        kube_client.bump(
            "ROSAControlPlane", "ns1", "c1", lambda o: o["spec"].update(region="eu-west-1")
        )

        control_plane.spec["version"] = "4.15.0"
        with pytest.raises(ConflictError):
            await helper.patch(control_plane, OWNED)

    async def test_owned_conditions_survive_status_replacement(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)

        control_plane.mark_true(READY_CONDITION)
        control_plane.status = {"id": "abc"}
        await helper.patch(control_plane, OWNED)

        stored = ROSAControlPlane(kube_client.stored("ROSAControlPlane", "ns1", "c1"))
        assert stored.status["id"] == "abc"
        assert stored.is_condition_true(READY_CONDITION)

    async def test_foreign_conditions_are_preserved(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)
        kube_client.bump(
            "ROSAControlPlane",
            "ns1",
            "c1",
            lambda o: o.setdefault("status", {}).update(
                conditions=[{"type": "Other", "status": "True"}]
            ),
        )

        control_plane.mark_true(READY_CONDITION)
        await helper.patch(control_plane, OWNED)

        stored = ROSAControlPlane(kube_client.stored("ROSAControlPlane", "ns1", "c1"))
        assert [c.type for c in stored.conditions] == [READY_CONDITION, "Other"]

    async def test_owned_condition_wins_over_concurrent_write(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)
        kube_client.bump(
            "ROSAControlPlane",
            "ns1",
            "c1",
            lambda o: o.setdefault("status", {}).update(
                conditions=[{"type": READY_CONDITION, "status": "Unknown"}]
            ),
        )

        control_plane.mark_true(READY_CONDITION)
        await helper.patch(control_plane, OWNED)

        stored = ROSAControlPlane(kube_client.stored("ROSAControlPlane", "ns1", "c1"))
        assert stored.is_condition_true(READY_CONDITION)

    async def test_unowned_condition_conflicts(self, kube_client):
        control_plane = await self.load(kube_client)
        helper = PatchHelper(control_plane, kube_client)
        kube_client.bump(
            "ROSAControlPlane",
            "ns1",
            "c1",
            lambda o: o.setdefault("status", {}).update(
                conditions=[{"type": "Other", "status": "False"}]
            ),
        )

        control_plane.mark_true("Other")
        with pytest.raises(ConflictError):
            await helper.patch(control_plane, OWNED)

    async def test_released_object_is_not_an_error(self, kube_client):
        control_plane = await self.load(
            kube_client,
            deletionTimestamp="2024-01-15T10:00:00Z",
            finalizers=["example.com/finalizer"],
        )
        helper = PatchHelper(control_plane, kube_client)

        control_plane.remove_finalizer("example.com/finalizer")
        control_plane.mark_true(READY_CONDITION)
        await helper.patch(control_plane, OWNED)

        assert kube_client.stored("ROSAControlPlane", "ns1", "c1") is None
