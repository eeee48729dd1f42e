"""
ConfigSync Scheduler - one reconciliation task per target.

Each target gets its own asyncio task that re-enters the state machine when its
sync interval or drift interval elapses, whichever comes first. Work for one
target is serialized by a per-target lock; work across targets is bounded by a
shared semaphore so a burst of targets with the same interval cannot overload
the source or the cluster.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from configsync import metrics
from configsync.adapters import ClusterAdapter, SourceFactory, Validator
from configsync.config import OperatorConfig, get_config
from configsync.errors import ConfigSyncError
from configsync.logging_config import set_target
from configsync.machine import ReconciliationStateMachine
from configsync.reporter import StatusReporter
from configsync.state import (
    CycleOutcome,
    DriftReport,
    ReconciliationAttempt,
    Target,
    format_time,
    utcnow,
)

logger = logging.getLogger(__name__)

# Keep only the last N runs per target in the status view
HISTORY_LIMIT = 20


@dataclass
class RequeueResult:
    """What the operator should do after one reconciliation.

    ``requeue_after`` is None when the target no longer exists.
    """
    requeue_after: Optional[float]
    error: Optional[str] = None
    outcome: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requeue_after": self.requeue_after,
            "error": self.error,
            "outcome": self.outcome,
        }


class Backoff:
    """Exponential backoff capped at a maximum delay."""

    def __init__(self, initial: float, maximum: float):
        self.initial = initial
        self.maximum = maximum
        self.failures = 0

    def next_delay(self) -> float:
        self.failures += 1
        return min(self.initial * 2 ** (self.failures - 1), self.maximum)

    def reset(self):
        self.failures = 0


@dataclass
class TargetHandle:
    """Scheduler bookkeeping for one target."""
    machine: ReconciliationStateMachine
    backoff: Backoff
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    inflight: set = field(default_factory=set)
    next_sync_at: float = 0.0
    next_drift_at: float = 0.0
    dirty: bool = True
    removed: bool = False
    last_result: Optional[RequeueResult] = None
    last_run: Optional[datetime] = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def target(self) -> Target:
        return self.machine.target

    def record(self, kind: str, outcome: Optional[str], message: str = ""):
        self.last_run = utcnow()
        self.history.append({
            "kind": kind,
            "timestamp": format_time(self.last_run),
            "outcome": outcome,
            "message": message,
        })
        if len(self.history) > HISTORY_LIMIT:
            self.history = self.history[-HISTORY_LIMIT:]


class Scheduler:
    """Runs one state machine per target under a global concurrency bound."""

    def __init__(
        self,
        source_factory: SourceFactory,
        cluster: ClusterAdapter,
        validator: Validator,
        reporter: StatusReporter,
        config: Optional[OperatorConfig] = None,
    ):
        self.source_factory = source_factory
        self.cluster = cluster
        self.validator = validator
        self.reporter = reporter
        self.config = config or get_config()

        self.limiter = asyncio.Semaphore(self.config.max_concurrent_syncs)
        self.targets: dict[str, TargetHandle] = {}
        self.running = False
        self.active = 0
        self.peak_active = 0
        self._watch_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Target set
    # ------------------------------------------------------------------

    def upsert(self, target: Target) -> TargetHandle:
        """Add a target, or hand an edited definition to its machine."""
        handle = self.targets.get(target.key)

        if handle is None:
            machine = ReconciliationStateMachine(
                target,
                self.source_factory(target),
                self.cluster,
                self.validator,
                self.reporter,
                cycle_timeout=self.config.cycle_timeout,
            )
            handle = TargetHandle(
                machine=machine,
                backoff=Backoff(self.config.initial_backoff, self.config.max_backoff),
            )
            self.targets[target.key] = handle
            logger.info(f"Managing target {target.key} ({target.repository}@{target.branch}:{target.path})")
            if self.running:
                self._start_target(handle)
        elif target != handle.target:
            source = None
            if target.repository != handle.target.repository:
                source = self.source_factory(target)
            handle.machine.update_target(target, source)
            handle.dirty = True
            handle.wakeup.set()

        metrics.targets_managed.set(len(self.targets))
        return handle

    async def remove(self, key: str) -> bool:
        """Forget a target and cancel any work in flight for it.

        A cancelled cycle skips its status write.
        """
        handle = self.targets.pop(key, None)
        if handle is None:
            return False

        handle.removed = True
        current = asyncio.current_task()
        tasks = [t for t in [handle.task, *handle.inflight] if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        metrics.targets_managed.set(len(self.targets))
        logger.info(f"Stopped managing target {key}")
        return True

    async def sync_targets(self, targets: list[Target]):
        """Make the managed set match ``targets``."""
        declared = {t.key for t in targets}
        for target in targets:
            self.upsert(target)
        for key in list(self.targets):
            if key not in declared:
                await self.remove(key)

    def get(self, key: str) -> Optional[TargetHandle]:
        return self.targets.get(key)

    # ------------------------------------------------------------------
    # Operator entry points
    # ------------------------------------------------------------------

    async def handle_event(self, key: str, target: Optional[Target]) -> RequeueResult:
        """Single entry point for create, update, requeue and delete events.

        ``target`` is None when the target was deleted.
        """
        if target is None:
            await self.remove(key)
            return RequeueResult(requeue_after=None)
        self.upsert(target)
        return await self.reconcile(key)

    async def reconcile(self, key: str) -> RequeueResult:
        """Run one sync cycle for a target and decide when to come back."""
        handle = self.targets.get(key)
        if handle is None:
            return RequeueResult(requeue_after=None, error=f"Unknown target {key}")
        return await self._tracked(handle, self._reconcile(handle))

    async def scan(self, key: str) -> Optional[DriftReport]:
        """Run one drift scan for a target."""
        handle = self.targets.get(key)
        if handle is None:
            return None
        return await self._tracked(handle, self._scan(handle))

    async def _tracked(self, handle: TargetHandle, coro: Awaitable):
        # Work started outside the target's own task is cancelled with the target too
        task = asyncio.current_task()
        handle.inflight.add(task)
        try:
            return await coro
        finally:
            handle.inflight.discard(task)

    async def _reconcile(self, handle: TargetHandle) -> RequeueResult:
        loop = asyncio.get_running_loop()

        async with handle.lock:
            if handle.removed:
                return RequeueResult(requeue_after=None)
            handle.dirty = False

            try:
                async with self._limited():
                    attempt = await handle.machine.sync()
                result = self._decide(handle, attempt)
            except ConfigSyncError as e:
                logger.warning(f"{handle.target.key}: cycle aborted: {e.reason}: {e.message}")
                result = self._unexpected(handle, e)
            except Exception as e:
                logger.exception(f"Unexpected error reconciling {handle.target.key}")
                result = self._unexpected(handle, e)

            handle.next_sync_at = loop.time() + result.requeue_after
            handle.last_result = result
            handle.record("sync", result.outcome, result.error or "")
            return result

    async def _scan(self, handle: TargetHandle) -> Optional[DriftReport]:
        loop = asyncio.get_running_loop()

        async with handle.lock:
            if handle.removed:
                return None

            report = None
            try:
                async with self._limited():
                    report = await handle.machine.scan_drift()
                handle.record("drift", report.outcome.value if report.outcome else None, report.message)
            except Exception as e:
                logger.exception(f"Unexpected error scanning {handle.target.key} for drift")
                handle.record("drift", "Error", str(e))

            handle.next_drift_at = loop.time() + self.drift_interval(handle.target)
            return report

    def _limited(self):
        return _Limited(self)

    def _decide(self, handle: TargetHandle, attempt: ReconciliationAttempt) -> RequeueResult:
        target = handle.target
        outcome = attempt.outcome

        if outcome in (CycleOutcome.SUCCEEDED, CycleOutcome.UNCHANGED):
            handle.backoff.reset()
            return RequeueResult(target.sync_interval, outcome=outcome.value)

        if outcome in (
            CycleOutcome.SOURCE_UNREACHABLE,
            CycleOutcome.PARTIALLY_FAILED,
            CycleOutcome.ERROR,
        ):
            delay = handle.backoff.next_delay()
            logger.info(f"{target.key}: {outcome.value}, retrying in {delay:.0f}s")
            return RequeueResult(delay, error=attempt.message, outcome=outcome.value)

        # Retrying the same revision cannot help; check for a new one on the normal interval
        return RequeueResult(target.sync_interval, error=attempt.message, outcome=outcome.value)

    def _unexpected(self, handle: TargetHandle, error: Exception) -> RequeueResult:
        metrics.sync_cycles_total.labels(outcome=CycleOutcome.ERROR.value).inc()
        delay = handle.backoff.next_delay()
        return RequeueResult(delay, error=str(error), outcome=CycleOutcome.ERROR.value)

    def drift_interval(self, target: Target) -> float:
        return target.drift_interval or self.config.drift_interval or target.sync_interval

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def _run_target(self, handle: TargetHandle):
        key = handle.target.key
        set_target(key)
        loop = asyncio.get_running_loop()
        logger.info(f"Reconciliation loop for {key} starting")

        while not handle.removed:
            handle.wakeup.clear()
            now = loop.time()

            if handle.dirty or now >= handle.next_sync_at:
                await self._reconcile(handle)
                continue

            drift_enabled = handle.target.drift_detection
            if drift_enabled and now >= handle.next_drift_at:
                await self._scan(handle)
                continue

            due = handle.next_sync_at
            if drift_enabled:
                due = min(due, handle.next_drift_at)

            try:
                await asyncio.wait_for(handle.wakeup.wait(), timeout=max(0.0, due - now))
            except asyncio.TimeoutError:
                pass

    def _start_target(self, handle: TargetHandle):
        if handle.task and not handle.task.done():
            return
        loop = asyncio.get_running_loop()
        # First drift scan waits one interval so it follows the first sync
        handle.next_drift_at = loop.time() + self.drift_interval(handle.target)
        handle.task = asyncio.create_task(
            self._run_target(handle), name=f"configsync:{handle.target.key}"
        )

    async def watch_targets(self, provider: Callable[[], Awaitable[list[Target]]], interval: float):
        """Periodically refresh the managed set from ``provider``."""
        while self.running:
            try:
                await self.sync_targets(await provider())
            except ConfigSyncError as e:
                logger.warning(f"Could not refresh targets: {e}")
            await asyncio.sleep(interval)

    def start(self, provider: Optional[Callable[[], Awaitable[list[Target]]]] = None):
        """Start a background task for every managed target."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        logger.info(
            f"ConfigSync scheduler starting with {len(self.targets)} targets, "
            f"max {self.config.max_concurrent_syncs} concurrent"
        )
        for handle in self.targets.values():
            self._start_target(handle)

        if provider is not None:
            self._watch_task = asyncio.create_task(
                self.watch_targets(provider, self.config.targets_refresh_interval)
            )

    async def stop(self):
        """Cancel every target task and wait for them to finish."""
        self.running = False
        tasks = [h.task for h in self.targets.values() if h.task]
        for handle in self.targets.values():
            tasks.extend(handle.inflight)
        if self._watch_task:
            tasks.append(self._watch_task)
            self._watch_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for handle in self.targets.values():
            handle.task = None
        logger.info("ConfigSync scheduler stopped")

    def get_status(self) -> dict[str, Any]:
        """Get current scheduler status."""
        loop_time = _loop_time()

        targets_info = {}
        for key, handle in self.targets.items():
            target = handle.target
            targets_info[key] = {
                "phase": handle.machine.phase.value,
                "environment": target.environment.value,
                "sync_interval": target.sync_interval,
                "drift_interval": self.drift_interval(target) if target.drift_detection else None,
                "auto_approve": target.auto_approve,
                "inventory_size": len(handle.machine.inventory),
                "backoff_failures": handle.backoff.failures,
                "next_sync_in": _remaining(handle.next_sync_at, loop_time),
                "next_drift_in": _remaining(handle.next_drift_at, loop_time)
                if target.drift_detection else None,
                "last_run": format_time(handle.last_run),
                "last_result": handle.last_result.to_dict() if handle.last_result else None,
                "recent_runs": handle.history[-5:],
            }

        return {
            "running": self.running,
            "max_concurrent_syncs": self.config.max_concurrent_syncs,
            "active": self.active,
            "targets": targets_info,
        }


class _Limited:
    """Holds a slot of the scheduler's global limiter and counts active work."""

    def __init__(self, scheduler: Scheduler):
        self.scheduler = scheduler

    async def __aenter__(self):
        await self.scheduler.limiter.acquire()
        self.scheduler.active += 1
        self.scheduler.peak_active = max(self.scheduler.peak_active, self.scheduler.active)

    async def __aexit__(self, exc_type, exc, tb):
        self.scheduler.active -= 1
        self.scheduler.limiter.release()


def _loop_time() -> Optional[float]:
    try:
        return asyncio.get_running_loop().time()
    except RuntimeError:
        return None


def _remaining(due: float, now: Optional[float]) -> Optional[float]:
    if now is None:
        return None
    return round(max(0.0, due - now), 1)
