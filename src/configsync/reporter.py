"""Status reporting: the only writer of a target's SyncState."""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from configsync.state import (
    ConditionStatus,
    ConditionType,
    CycleOutcome,
    DriftOutcome,
    DriftReport,
    ReconciliationAttempt,
    SyncState,
    Target,
    utcnow,
)

logger = logging.getLogger(__name__)

TRUE = ConditionStatus.TRUE
FALSE = ConditionStatus.FALSE
UNKNOWN = ConditionStatus.UNKNOWN


class StatusStore(Protocol):
    """Durable storage for per-target SyncState."""

    async def load(self, target: Target) -> SyncState:
        ...

    async def save(self, target: Target, state: SyncState) -> None:
        ...


class InMemoryStatusStore:
    """Keeps status in process memory."""

    def __init__(self):
        self._states: dict[str, SyncState] = {}
        self.writes = 0

    async def load(self, target: Target) -> SyncState:
        return self._states.get(target.key, SyncState()).copy()

    async def save(self, target: Target, state: SyncState) -> None:
        self._states[target.key] = state.copy()
        self.writes += 1


class FileStatusStore:
    """One JSON document per target under a state directory."""

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    def path_for(self, target: Target) -> Path:
        return self.state_dir / f"{target.namespace}__{target.name}.json"

    async def load(self, target: Target) -> SyncState:
        path = self.path_for(target)
        if not path.exists():
            return SyncState()
        with open(path) as f:
            return SyncState.from_dict(json.load(f))

    async def save(self, target: Target, state: SyncState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(target)

        # Write to a temp file and rename so a crash never leaves a partial document
        fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def _failure_summary(attempt: ReconciliationAttempt) -> str:
    failed = attempt.failed
    if not failed:
        return attempt.message
    details = ", ".join(f"{r.key}: {r.reason}" for r in failed)
    return f"{len(failed)} of {len(attempt.results)} objects failed to apply: {details}"


class StatusReporter:
    """Translates cycle and drift outcomes into persisted conditions.

    Only the owning target's task calls the reporter, so each target has a
    single writer.
    """

    def __init__(self, store: StatusStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def load(self, target: Target) -> SyncState:
        """Read the target's current SyncState."""
        return await self.store.load(target)

    async def record_cycle(self, target: Target, attempt: ReconciliationAttempt) -> SyncState:
        """Publish the outcome of a completed sync cycle.

        The revision only advances when every object succeeded.
        """
        state = await self.store.load(target)
        before = state.copy()
        now = self.clock()
        outcome = attempt.outcome
        reason = attempt.reason or (outcome.value if outcome else "Unknown")

        if outcome == CycleOutcome.SUCCEEDED:
            state.last_synced_revision = attempt.revision
            state.last_sync_time = now
            state.set_condition(
                ConditionType.SYNCED,
                TRUE,
                "Synced",
                f"Applied {len(attempt.results)} objects at revision {attempt.revision}",
                now,
            )
            state.set_condition(ConditionType.ERROR, FALSE, "Synced", "", now)
            if state.is_true(ConditionType.DRIFTED):
                state.set_condition(
                    ConditionType.DRIFTED,
                    FALSE,
                    "Resynced",
                    f"All declared objects re-applied at revision {attempt.revision}",
                    now,
                )
        elif outcome == CycleOutcome.UNCHANGED:
            state.set_condition(
                ConditionType.SYNCED,
                TRUE,
                "UpToDate",
                f"Revision {attempt.revision} is synced",
                now,
            )
            state.set_condition(ConditionType.ERROR, FALSE, "UpToDate", "", now)
        elif outcome == CycleOutcome.PARTIALLY_FAILED:
            message = _failure_summary(attempt)
            state.set_condition(ConditionType.SYNCED, FALSE, reason, message, now)
            state.set_condition(ConditionType.ERROR, TRUE, reason, message, now)
        elif outcome in (CycleOutcome.SOURCE_UNREACHABLE, CycleOutcome.ERROR):
            # Whether the cluster is still in sync is unknown; Synced is left alone
            state.set_condition(ConditionType.ERROR, TRUE, reason, attempt.message, now)
        else:
            state.set_condition(
                ConditionType.SYNCED,
                FALSE,
                reason,
                f"Revision {attempt.revision} was not applied",
                now,
            )
            state.set_condition(ConditionType.ERROR, TRUE, reason, attempt.message, now)

        self._refresh_ready(state, now)

        must_write = outcome in (CycleOutcome.SUCCEEDED, CycleOutcome.PARTIALLY_FAILED)
        if must_write or state != before:
            await self.store.save(target, state)
            logger.debug(f"Status for {target.key} written after {reason}")

        return state

    async def record_drift(self, target: Target, report: DriftReport) -> SyncState:
        """Publish the outcome of a drift scan."""
        state = await self.store.load(target)
        if report.outcome in (None, DriftOutcome.SKIPPED):
            return state

        before = state.copy()
        now = self.clock()
        outcome = report.outcome

        if outcome == DriftOutcome.CLEAN:
            state.set_condition(
                ConditionType.DRIFTED,
                FALSE,
                "NoDrift",
                f"{report.scanned} objects match their applied state",
                now,
            )
        elif outcome == DriftOutcome.REMEDIATED:
            state.set_condition(ConditionType.DRIFTED, FALSE, "Remediated", report.message, now)
        elif outcome == DriftOutcome.SCAN_FAILED:
            state.set_condition(ConditionType.DRIFTED, UNKNOWN, "ScanFailed", report.message, now)
        else:
            state.set_condition(ConditionType.DRIFTED, TRUE, outcome.value, report.message, now)

        self._refresh_ready(state, now)

        if state != before:
            await self.store.save(target, state)
        return state

    def _refresh_ready(self, state: SyncState, now: datetime) -> None:
        """Ready only when the last cycle succeeded and no drift is outstanding."""
        if state.is_true(ConditionType.ERROR):
            error = state.get_condition(ConditionType.ERROR)
            state.set_condition(ConditionType.READY, FALSE, error.reason, error.message, now)
        elif not state.is_true(ConditionType.SYNCED):
            state.set_condition(ConditionType.READY, FALSE, "NotSynced", "Target has not been synced", now)
        elif state.is_true(ConditionType.DRIFTED):
            drifted = state.get_condition(ConditionType.DRIFTED)
            state.set_condition(ConditionType.READY, FALSE, "Drifted", drifted.message, now)
        else:
            state.set_condition(
                ConditionType.READY,
                TRUE,
                "Ready",
                f"Synced at revision {state.last_synced_revision}",
                now,
            )
