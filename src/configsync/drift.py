"""Detection and remediation of out-of-band changes to live objects."""

import logging

from configsync import metrics
from configsync.adapters import ClusterAdapter
from configsync.apply import ApplyEngine, ApplyReport
from configsync.errors import ClusterUnavailable
from configsync.state import DriftItem, ManagedObject, Target, observed_hash

logger = logging.getLogger(__name__)


class DriftDetector:
    """Compares live objects with the content last applied to them."""

    def __init__(self, cluster: ClusterAdapter, engine: ApplyEngine):
        self.cluster = cluster
        self.engine = engine
        self.errors: dict[str, str] = {}

    async def detect_drift(
        self, target: Target, last_applied: list[ManagedObject]
    ) -> list[DriftItem]:
        """Return the objects whose live state no longer matches what was applied.

        Objects that cannot be read are skipped and recorded in ``errors``.
        """
        self.errors = {}
        if not target.drift_detection:
            return []

        drifts = []
        for obj in last_applied:
            if not obj.last_applied_hash:
                continue

            try:
                live = await self.cluster.get_object(obj.kind, obj.namespace, obj.name)
            except ClusterUnavailable as e:
                logger.warning(f"Could not read {obj.key}: {e}")
                self.errors[str(obj.key)] = str(e)
                continue

            if live is None:
                logger.info(f"{target.key}: {obj.key} is missing from the cluster")
                drifts.append(DriftItem(obj, None))
                metrics.drift_detected_total.labels(type="missing").inc()
                continue

            obj.observed_hash = observed_hash(live, obj.manifest)
            if obj.observed_hash != obj.last_applied_hash:
                logger.info(f"{target.key}: {obj.key} was modified out-of-band")
                drifts.append(DriftItem(obj, obj.observed_hash))
                metrics.drift_detected_total.labels(type="modified").inc()

        return drifts

    async def remediate(self, drifts: list[DriftItem]) -> ApplyReport:
        """Re-apply the last desired manifest of each drifted object once.

        Missing objects are re-created and modified ones are overwritten.
        """
        report = await self.engine.apply([d.obj for d in drifts])
        for result in report.results:
            metrics.remediations_total.labels(result=result.result.value).inc()
        return report
