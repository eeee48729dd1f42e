"""Validation and per-object application of declared objects."""

import logging
from dataclasses import dataclass, field
from typing import Any

from configsync import metrics
from configsync.adapters import ClusterAdapter, Validator
from configsync.errors import ValidationFailed
from configsync.state import ApplyResult, ManagedObject, ObjectResult

logger = logging.getLogger(__name__)


@dataclass
class ApplyReport:
    """Per-object results of one apply pass."""

    results: list[ObjectResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True only if every object was applied or unchanged."""
        return all(r.result != ApplyResult.FAILED for r in self.results)

    @property
    def failed(self) -> list[ObjectResult]:
        return [r for r in self.results if r.result == ApplyResult.FAILED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "succeeded": self.succeeded,
            "results": [r.to_dict() for r in self.results],
        }


class ApplyEngine:
    """Validates and applies ordered objects against the cluster."""

    def __init__(self, cluster: ClusterAdapter, validator: Validator):
        self.cluster = cluster
        self.validator = validator

    async def validate(self, objects: list[ManagedObject]) -> None:
        """Validate every object; raise ValidationFailed if any is rejected.

        All objects are checked so the diagnostics cover the whole set, but
        nothing is applied when one fails.
        """
        diagnostics: dict[str, list[str]] = {}

        for obj in objects:
            try:
                await self.validator.validate(obj.manifest)
            except ValidationFailed as e:
                messages = [m for msgs in e.diagnostics.values() for m in msgs]
                diagnostics[str(obj.key)] = messages or [e.message]

        if diagnostics:
            logger.warning(f"Validation rejected {len(diagnostics)} of {len(objects)} objects")
            raise ValidationFailed(diagnostics)

    async def apply(self, objects: list[ManagedObject]) -> ApplyReport:
        """Apply objects in order, attempting each exactly once.

        A failure is recorded against its object and does not stop the rest.
        """
        report = ApplyReport()

        for obj in objects:
            try:
                result = await self.cluster.apply_object(
                    obj.kind, obj.namespace, obj.name, obj.manifest
                )
            except Exception as e:
                logger.warning(f"Failed to apply {obj.key}: {e}")
                report.results.append(ObjectResult(obj.key, ApplyResult.FAILED, str(e)))
                metrics.object_applies_total.labels(result=ApplyResult.FAILED.value).inc()
                continue

            obj.last_applied_hash = obj.desired_hash
            obj.observed_hash = obj.desired_hash
            report.results.append(ObjectResult(obj.key, result))
            metrics.object_applies_total.labels(result=result.value).inc()

            if result == ApplyResult.APPLIED:
                logger.info(f"Applied {obj.key}")
            else:
                logger.debug(f"{obj.key} unchanged")

        return report
