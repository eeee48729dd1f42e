"""Per-target reconciliation state machine.

A sync cycle runs Idle -> Fetching -> Loading -> Validating -> Applying -> Idle,
short-circuiting back to Idle when the source has not moved or a step fails.
A drift scan runs Idle -> DriftScanning -> (Remediating) -> Idle. The machine
holds no task of its own; the scheduler drives it and it keeps only what is
needed to resume: the current target, the inventory of applied objects and
the last rejected revision.
"""

import asyncio
import logging
import time
from typing import Optional

from configsync import metrics
from configsync.adapters import ClusterAdapter, SourceAdapter, Validator
from configsync.apply import ApplyEngine, ApplyReport
from configsync.detector import ChangeDetector
from configsync.drift import DriftDetector
from configsync.errors import (
    ConfigSyncError,
    ManifestInvalid,
    PathNotFound,
    SourceUnreachable,
    ValidationFailed,
)
from configsync.loader import ManifestLoader
from configsync.reporter import StatusReporter
from configsync.state import (
    CycleOutcome,
    DriftOutcome,
    DriftReport,
    ManagedObject,
    ObjectKey,
    Phase,
    ReconciliationAttempt,
    Target,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CYCLE_TIMEOUT = 300.0

# Failures that stay failed until the source content changes
NON_RETRYABLE_OUTCOMES = {
    PathNotFound: CycleOutcome.PATH_NOT_FOUND,
    ManifestInvalid: CycleOutcome.MANIFEST_INVALID,
    ValidationFailed: CycleOutcome.VALIDATION_FAILED,
}


class ReconciliationStateMachine:
    """Drives one target through sync cycles and drift scans."""

    def __init__(
        self,
        target: Target,
        source: SourceAdapter,
        cluster: ClusterAdapter,
        validator: Validator,
        reporter: StatusReporter,
        cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT,
    ):
        self.target = target
        self.reporter = reporter
        self.cycle_timeout = cycle_timeout

        self.detector = ChangeDetector(source)
        self.loader = ManifestLoader(source)
        self.engine = ApplyEngine(cluster, validator)
        self.drift_detector = DriftDetector(cluster, self.engine)

        self.phase = Phase.IDLE
        self.inventory: dict[ObjectKey, ManagedObject] = {}
        self.rejected: Optional[ReconciliationAttempt] = None
        # Set when the declared content moved without the revision moving
        self.source_changed = False

    def update_target(self, target: Target, source: Optional[SourceAdapter] = None) -> None:
        """Take a new target definition for the next cycle.

        When the repository, reference or path changed, the next cycle loads
        and applies even if the resolved revision is the one already synced.
        """
        if target == self.target:
            return

        logger.info(f"Target {target.key} changed, next cycle uses the new definition")
        old = self.target
        self.target = target
        self.rejected = None

        if (target.repository, target.branch, target.path) != (old.repository, old.branch, old.path):
            self.source_changed = True
        if source is not None:
            self.detector = ChangeDetector(source)
            self.loader = ManifestLoader(source)

    def _set_phase(self, phase: Phase) -> None:
        if phase != self.phase:
            logger.debug(f"{self.target.key}: {self.phase.value} -> {phase.value}")
            self.phase = phase

    async def sync(self) -> ReconciliationAttempt:
        """Run one sync cycle and publish its outcome exactly once.

        A cycle that exceeds ``cycle_timeout`` counts as partially failed. If
        the cycle is cancelled, nothing is written.
        """
        target = self.target
        attempt = ReconciliationAttempt(target=target.key)
        started = time.monotonic()

        try:
            await asyncio.wait_for(self._sync(target, attempt), timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{target.key}: sync cycle timed out after {self.cycle_timeout}s")
            attempt.outcome = CycleOutcome.PARTIALLY_FAILED
            attempt.reason = "Timeout"
            attempt.message = f"Sync cycle exceeded {self.cycle_timeout}s"
        except Exception as e:
            logger.exception(f"{target.key}: sync cycle failed")
            attempt.outcome = CycleOutcome.ERROR
            attempt.reason = e.reason if isinstance(e, ConfigSyncError) else type(e).__name__
            attempt.message = str(e)
        finally:
            self._set_phase(Phase.IDLE)

        attempt.finished_at = utcnow()
        await self.reporter.record_cycle(target, attempt)

        metrics.sync_cycles_total.labels(outcome=attempt.outcome.value).inc()
        metrics.sync_cycle_duration.observe(time.monotonic() - started)
        logger.info(
            f"{target.key}: sync cycle {attempt.outcome.value}"
            + (f" at {attempt.revision}" if attempt.revision else "")
        )
        return attempt

    async def _sync(self, target: Target, attempt: ReconciliationAttempt) -> None:
        state = await self.reporter.load(target)

        self._set_phase(Phase.FETCHING)
        try:
            change = await self.detector.detect(target, state.last_synced_revision)
        except SourceUnreachable as e:
            self._fail(attempt, CycleOutcome.SOURCE_UNREACHABLE, e)
            return
        attempt.revision = change.revision

        if not change.changed and not self.source_changed:
            attempt.outcome = CycleOutcome.UNCHANGED
            if not self.inventory:
                await self._hydrate(target, change.revision)
            return

        if self.rejected is not None and self.rejected.revision == change.revision:
            # Same broken revision as last time; wait for the source to change
            attempt.outcome = self.rejected.outcome
            attempt.reason = self.rejected.reason
            attempt.message = self.rejected.message
            attempt.diagnostics = self.rejected.diagnostics
            return

        self._set_phase(Phase.LOADING)
        try:
            objects = await self.loader.load(target, change.revision)
        except SourceUnreachable as e:
            self._fail(attempt, CycleOutcome.SOURCE_UNREACHABLE, e)
            return
        except (PathNotFound, ManifestInvalid) as e:
            self._reject(attempt, e)
            return
        attempt.objects = objects

        self._set_phase(Phase.VALIDATING)
        try:
            await self.engine.validate(objects)
        except ValidationFailed as e:
            attempt.diagnostics = e.diagnostics
            self._reject(attempt, e)
            return

        self._set_phase(Phase.APPLYING)
        report = await self.engine.apply(objects)
        attempt.results = report.results
        self._update_inventory(objects, report)

        if report.succeeded:
            attempt.outcome = CycleOutcome.SUCCEEDED
            attempt.message = f"Applied revision {change.revision}"
            self.source_changed = False
        else:
            attempt.outcome = CycleOutcome.PARTIALLY_FAILED
            attempt.message = f"{len(report.failed)} of {len(objects)} objects failed to apply"

    def _fail(self, attempt: ReconciliationAttempt, outcome: CycleOutcome, error: ConfigSyncError) -> None:
        logger.warning(f"{attempt.target}: {error.reason}: {error.message}")
        attempt.outcome = outcome
        attempt.reason = error.reason
        attempt.message = error.message

    def _reject(self, attempt: ReconciliationAttempt, error: ConfigSyncError) -> None:
        self._fail(attempt, NON_RETRYABLE_OUTCOMES[type(error)], error)
        self.rejected = attempt

    def _update_inventory(self, objects: list[ManagedObject], report: ApplyReport) -> None:
        if report.succeeded:
            # Objects no longer declared drop out of the inventory; they are not pruned
            self.inventory = {obj.key: obj for obj in objects}
            return

        failed = {r.key for r in report.failed}
        for obj in objects:
            if obj.key not in failed:
                self.inventory[obj.key] = obj

    async def _hydrate(self, target: Target, revision: str) -> None:
        """Rebuild the inventory of an already-synced revision without applying it."""
        self._set_phase(Phase.LOADING)
        try:
            objects = await self.loader.load(target, revision)
        except ConfigSyncError as e:
            logger.warning(f"{target.key}: could not rebuild inventory at {revision}: {e}")
            return

        for obj in objects:
            obj.last_applied_hash = obj.desired_hash
        self.inventory = {obj.key: obj for obj in objects}
        logger.info(f"{target.key}: rebuilt inventory of {len(objects)} objects at {revision}")

    async def scan_drift(self) -> DriftReport:
        """Audit live objects against the inventory and apply the remediation policy."""
        target = self.target
        report = DriftReport(target=target.key)

        if not target.drift_detection:
            report.outcome = DriftOutcome.SKIPPED
            report.message = "Drift detection is disabled"
            return report

        try:
            await asyncio.wait_for(self._scan_drift(target, report), timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{target.key}: drift scan timed out after {self.cycle_timeout}s")
            report.outcome = DriftOutcome.SCAN_FAILED
            report.message = f"Drift scan exceeded {self.cycle_timeout}s"
        finally:
            self._set_phase(Phase.IDLE)

        await self.reporter.record_drift(target, report)
        logger.info(f"{target.key}: drift scan {report.outcome.value}")
        return report

    async def _scan_drift(self, target: Target, report: DriftReport) -> None:
        if not self.inventory:
            state = await self.reporter.load(target)
            if state.last_synced_revision:
                await self._hydrate(target, state.last_synced_revision)
        if not self.inventory:
            report.outcome = DriftOutcome.SKIPPED
            report.message = "No applied objects to scan"
            return

        self._set_phase(Phase.DRIFT_SCANNING)
        objects = list(self.inventory.values())
        drifts = await self.drift_detector.detect_drift(target, objects)
        report.drifts = drifts
        report.errors = dict(self.drift_detector.errors)
        report.scanned = len(objects) - len(report.errors)

        if not drifts:
            if report.errors:
                report.outcome = DriftOutcome.SCAN_FAILED
                report.message = f"Could not read {len(report.errors)} objects"
            else:
                report.outcome = DriftOutcome.CLEAN
            return

        names = ", ".join(
            f"{d.obj.key} ({'missing' if d.missing else 'modified'})" for d in drifts
        )

        if not target.auto_approve:
            report.outcome = DriftOutcome.AWAITING_APPROVAL
            report.message = f"Drift awaiting approval: {names}"
            return

        self._set_phase(Phase.REMEDIATING)
        result = await self.drift_detector.remediate(drifts)
        report.remediation = result.results

        if result.succeeded:
            report.outcome = DriftOutcome.REMEDIATED
            report.message = f"Restored {names}"
        else:
            failed = ", ".join(f"{r.key}: {r.reason}" for r in result.failed)
            report.outcome = DriftOutcome.REMEDIATION_FAILED
            report.message = f"Remediation failed for {failed}"
