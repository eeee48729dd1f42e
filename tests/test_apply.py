"""
Tests for configsync.apply and configsync.drift modules
"""

import pytest

from conftest import FakeCluster, FakeValidator


def make_objects(*names):
    from configsync.state import ManagedObject

    return [
        ManagedObject.from_manifest(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": name},
                "data": {"key": name},
            },
            default_namespace="default",
        )
        for name in names
    ]


class TestApplyEngine:
    """Tests for validation and per-object apply."""

    @pytest.mark.asyncio
    async def test_validate_collects_all_diagnostics(self):
        """Test every object is validated and all rejections are reported."""
        from configsync.apply import ApplyEngine
        from configsync.errors import ValidationFailed

        validator = FakeValidator(invalid={"b", "c"})
        engine = ApplyEngine(FakeCluster(), validator)

        with pytest.raises(ValidationFailed) as exc_info:
            await engine.validate(make_objects("a", "b", "c"))

        assert validator.calls == ["a", "b", "c"]
        assert set(exc_info.value.diagnostics) == {"ConfigMap/default/b", "ConfigMap/default/c"}

    @pytest.mark.asyncio
    async def test_apply_attempts_every_object_once(self):
        """Test one failure does not stop the rest."""
        from configsync.apply import ApplyEngine
        from configsync.state import ApplyResult

        cluster = FakeCluster()
        cluster.fail[("ConfigMap", "default", "b")] = "admission webhook denied"
        engine = ApplyEngine(cluster, FakeValidator())
        objects = make_objects("a", "b", "c")

        report = await engine.apply(objects)

        assert len(cluster.apply_calls) == 3
        assert [r.result for r in report.results] == [
            ApplyResult.APPLIED,
            ApplyResult.FAILED,
            ApplyResult.APPLIED,
        ]
        assert report.succeeded is False
        assert report.failed[0].reason == "admission webhook denied"
        assert objects[0].last_applied_hash == objects[0].desired_hash
        assert objects[1].last_applied_hash == ""

    @pytest.mark.asyncio
    async def test_second_apply_unchanged(self):
        """Test re-applying identical content reports unchanged."""
        from configsync.apply import ApplyEngine
        from configsync.state import ApplyResult

        engine = ApplyEngine(FakeCluster(), FakeValidator())

        first = await engine.apply(make_objects("a"))
        second = await engine.apply(make_objects("a"))

        assert first.results[0].result == ApplyResult.APPLIED
        assert second.results[0].result == ApplyResult.UNCHANGED
        assert second.succeeded is True

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated(self):
        """Test errors outside the taxonomy are still recorded per object."""
        from unittest.mock import AsyncMock

        from configsync.apply import ApplyEngine
        from configsync.state import ApplyResult

        cluster = FakeCluster()
        cluster.apply_object = AsyncMock(side_effect=[RuntimeError("boom"), ApplyResult.APPLIED])
        report = await ApplyEngine(cluster, FakeValidator()).apply(make_objects("a", "b"))

        assert [r.result for r in report.results] == [ApplyResult.FAILED, ApplyResult.APPLIED]


class TestDriftDetector:
    """Tests for drift detection and remediation."""

    async def applied(self, cluster, *names):
        from configsync.apply import ApplyEngine

        objects = make_objects(*names)
        await ApplyEngine(cluster, FakeValidator()).apply(objects)
        return objects

    @pytest.mark.asyncio
    async def test_clean(self, target):
        """Test untouched objects report no drift."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a", "b")
        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))

        assert await detector.detect_drift(target, objects) == []

    @pytest.mark.asyncio
    async def test_server_fields_are_not_drift(self, target):
        """Test status and server metadata changes are ignored."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a")
        live = cluster.objects[("ConfigMap", "default", "a")]
        live["metadata"]["resourceVersion"] = "999"
        live["metadata"]["labels"] = {"added-by": "someone"}
        live["status"] = {"observed": True}

        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))
        assert await detector.detect_drift(target, objects) == []

    @pytest.mark.asyncio
    async def test_modified_and_missing(self, target):
        """Test modified and deleted objects are both reported."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a", "b", "c")
        cluster.objects[("ConfigMap", "default", "a")]["data"]["key"] = "edited"
        del cluster.objects[("ConfigMap", "default", "b")]

        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))
        drifts = await detector.detect_drift(target, objects)

        assert [(str(d.obj.key), d.missing) for d in drifts] == [
            ("ConfigMap/default/a", False),
            ("ConfigMap/default/b", True),
        ]
        assert drifts[0].observed_hash != objects[0].last_applied_hash

    @pytest.mark.asyncio
    async def test_disabled(self, make_target):
        """Test nothing is read when drift detection is off."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a")
        del cluster.objects[("ConfigMap", "default", "a")]

        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))
        assert await detector.detect_drift(make_target(drift_detection=False), objects) == []

    @pytest.mark.asyncio
    async def test_unreadable_objects_recorded(self, target):
        """Test read failures are kept apart from drift."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a", "b")
        cluster.unavailable.add(("ConfigMap", "default", "a"))

        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))
        drifts = await detector.detect_drift(target, objects)

        assert drifts == []
        assert list(detector.errors) == ["ConfigMap/default/a"]

    @pytest.mark.asyncio
    async def test_remediate_restores_each_object_once(self, target):
        """Test remediation re-applies the last desired manifest exactly once per object."""
        from configsync.apply import ApplyEngine
        from configsync.drift import DriftDetector

        cluster = FakeCluster()
        objects = await self.applied(cluster, "a", "b")
        cluster.objects[("ConfigMap", "default", "a")]["data"]["key"] = "edited"
        del cluster.objects[("ConfigMap", "default", "b")]
        cluster.apply_calls.clear()

        detector = DriftDetector(cluster, ApplyEngine(cluster, FakeValidator()))
        report = await detector.remediate(await detector.detect_drift(target, objects))

        assert report.succeeded is True
        assert cluster.apply_calls == [("ConfigMap", "default", "a"), ("ConfigMap", "default", "b")]
        assert cluster.objects[("ConfigMap", "default", "a")]["data"]["key"] == "a"
        assert ("ConfigMap", "default", "b") in cluster.objects
