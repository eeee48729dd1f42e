"""State definitions for configuration sync."""

import copy
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from configsync.errors import ConfigError

DEFAULT_SYNC_INTERVAL = 300.0

# Kinds that never carry a namespace
CLUSTER_SCOPED_KINDS = {
    "Namespace",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "IngressClass",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
    "APIService",
    "Node",
}

# Fields the API server fills in; never part of desired or observed content
SERVER_METADATA_FIELDS = {
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
}
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    """Format a timestamp the way Kubernetes status fields do."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by ``format_time``."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_duration(value: Optional[Union[str, int, float]], default: float = DEFAULT_SYNC_INTERVAL) -> float:
    """Parse a Go-style duration ("5m", "1h30m", "500ms") into seconds.

    Plain numbers are taken as seconds. Empty or zero durations fall back to
    ``default``.
    """
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            seconds = float(text)
        else:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ConfigError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if seconds < 0:
        raise ConfigError(f"Duration must not be negative: {value!r}")
    return seconds or default


def normalize_manifest(manifest: dict[str, Any]) -> dict[str, Any]:
    """Strip server-populated fields so only declared content is compared."""
    result = {k: copy.deepcopy(v) for k, v in manifest.items() if k != "status"}

    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        metadata = {k: v for k, v in metadata.items() if k not in SERVER_METADATA_FIELDS}
        annotations = metadata.get("annotations")
        if isinstance(annotations, dict) and LAST_APPLIED_ANNOTATION in annotations:
            annotations = {k: v for k, v in annotations.items() if k != LAST_APPLIED_ANNOTATION}
            if annotations:
                metadata["annotations"] = annotations
            else:
                del metadata["annotations"]
        result["metadata"] = metadata

    return result


def content_hash(manifest: dict[str, Any]) -> str:
    """Stable hash of a manifest's declared content."""
    canonical = json.dumps(
        normalize_manifest(manifest),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


def project_onto(live: Any, desired: Any) -> Any:
    """Keep only the parts of ``live`` that ``desired`` declares."""
    if isinstance(desired, dict) and isinstance(live, dict):
        return {k: project_onto(live[k], v) for k, v in desired.items() if k in live}
    if isinstance(desired, list) and isinstance(live, list) and len(desired) == len(live):
        return [project_onto(lv, dv) for lv, dv in zip(live, desired)]
    return live


def observed_hash(live: dict[str, Any], desired: dict[str, Any]) -> str:
    """Hash of a live object as seen through the fields of its desired manifest."""
    return content_hash(project_onto(normalize_manifest(live), normalize_manifest(desired)))


class Environment(str, Enum):
    """Environment a target manages."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ConditionType(str, Enum):
    """Condition types published on a target's status."""

    READY = "Ready"
    SYNCED = "Synced"
    ERROR = "Error"
    DRIFTED = "Drifted"


class ConditionStatus(str, Enum):
    """Condition status values."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Phase(str, Enum):
    """Reconciliation state machine phases."""

    IDLE = "Idle"
    FETCHING = "Fetching"
    LOADING = "Loading"
    VALIDATING = "Validating"
    APPLYING = "Applying"
    DRIFT_SCANNING = "DriftScanning"
    REMEDIATING = "Remediating"


class ApplyResult(str, Enum):
    """Per-object apply outcome."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class CycleOutcome(str, Enum):
    """Outcome of one sync cycle."""

    UNCHANGED = "Unchanged"
    SUCCEEDED = "Succeeded"
    PARTIALLY_FAILED = "PartiallyFailed"
    VALIDATION_FAILED = "ValidationFailed"
    MANIFEST_INVALID = "ManifestInvalid"
    PATH_NOT_FOUND = "PathNotFound"
    SOURCE_UNREACHABLE = "SourceUnreachable"
    ERROR = "Error"


class DriftOutcome(str, Enum):
    """Outcome of one drift scan."""

    CLEAN = "Clean"
    REMEDIATED = "Remediated"
    AWAITING_APPROVAL = "AwaitingApproval"
    REMEDIATION_FAILED = "RemediationFailed"
    SCAN_FAILED = "ScanFailed"
    SKIPPED = "Skipped"


@dataclass(frozen=True)
class Target:
    """One synchronization unit: a source path applied to the cluster."""

    name: str
    repository: str
    path: str
    environment: Environment
    namespace: str = "default"
    branch: str = "main"
    sync_interval: float = DEFAULT_SYNC_INTERVAL
    auto_approve: bool = False
    drift_detection: bool = True
    drift_interval: Optional[float] = None

    @property
    def key(self) -> str:
        """Stable identity of the target."""
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        """Build a target from a ConfigSync spec (camelCase keys)."""
        name = data.get("name")
        if not name:
            raise ConfigError("Target is missing a name")

        repository = data.get("gitRepository") or data.get("repository")
        if not repository:
            raise ConfigError(f"Target {name} is missing gitRepository")

        path = data.get("path")
        if path is None:
            raise ConfigError(f"Target {name} is missing path")

        try:
            environment = Environment(data.get("environment", ""))
        except ValueError:
            allowed = ", ".join(e.value for e in Environment)
            raise ConfigError(
                f"Target {name} has invalid environment {data.get('environment')!r} (expected one of {allowed})"
            ) from None

        drift_interval = data.get("driftInterval")

        return cls(
            name=name,
            namespace=data.get("namespace") or "default",
            repository=repository,
            branch=data.get("branch") or "main",
            path=path,
            environment=environment,
            sync_interval=parse_duration(data.get("syncInterval")),
            auto_approve=bool(data.get("autoApprove", False)),
            drift_detection=bool(data.get("driftDetection", True)),
            drift_interval=parse_duration(drift_interval) if drift_interval else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "namespace": self.namespace,
            "gitRepository": self.repository,
            "branch": self.branch,
            "path": self.path,
            "environment": self.environment.value,
            "syncInterval": self.sync_interval,
            "autoApprove": self.auto_approve,
            "driftDetection": self.drift_detection,
            "driftInterval": self.drift_interval,
        }


@dataclass
class Condition:
    """Typed status entry."""

    type: ConditionType
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted layout."""
        return {
            "type": self.type.value,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Condition":
        """Read a condition from the persisted layout."""
        return cls(
            type=ConditionType(data["type"]),
            status=ConditionStatus(data.get("status", "Unknown")),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
        )


@dataclass
class SyncState:
    """Durable per-target record of sync progress."""

    last_synced_revision: str = ""
    last_sync_time: Optional[datetime] = None
    conditions: list[Condition] = field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Optional[Condition]:
        """Get a condition by type."""
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def is_true(self, condition_type: ConditionType) -> bool:
        """Check whether a condition is present and True."""
        condition = self.get_condition(condition_type)
        return condition is not None and condition.status == ConditionStatus.TRUE

    def set_condition(
        self,
        condition_type: ConditionType,
        status: ConditionStatus,
        reason: str,
        message: str,
        now: datetime,
    ) -> None:
        """Set a condition, replacing any existing one of the same type in place.

        The transition time only moves when the status changes.
        """
        existing = self.get_condition(condition_type)
        if existing is None:
            self.conditions.append(
                Condition(
                    type=condition_type,
                    status=status,
                    reason=reason,
                    message=message,
                    last_transition_time=now,
                )
            )
            return

        if existing.status != status:
            existing.status = status
            existing.last_transition_time = now
        existing.reason = reason
        existing.message = message

    def copy(self) -> "SyncState":
        """Deep copy."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted status layout."""
        return {
            "lastSyncedRevision": self.last_synced_revision,
            "lastSyncTime": format_time(self.last_sync_time),
            "conditions": [c.to_dict() for c in self.conditions],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "SyncState":
        """Read state from the persisted status layout."""
        if not data:
            return cls()
        return cls(
            last_synced_revision=data.get("lastSyncedRevision") or data.get("lastCommitID") or "",
            last_sync_time=parse_time(data.get("lastSyncTime")),
            conditions=[Condition.from_dict(c) for c in data.get("conditions") or []],
        )


@dataclass(frozen=True)
class ObjectKey:
    """Identity of a declared object."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass
class ManagedObject:
    """One declared object with its desired, applied and observed hashes."""

    kind: str
    namespace: str
    name: str
    manifest: dict[str, Any]
    desired_hash: str
    last_applied_hash: str = ""
    observed_hash: str = ""
    source_file: str = ""

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    @classmethod
    def from_manifest(
        cls,
        manifest: dict[str, Any],
        source_file: str = "",
        default_namespace: str = "",
    ) -> "ManagedObject":
        """Build a candidate from a parsed manifest document.

        Namespaced kinds without a namespace get ``default_namespace``, which is
        written into the manifest so the applied content is explicit.
        """
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name") if isinstance(metadata, dict) else None
        if not kind or not name:
            raise ValueError("manifest must declare kind and metadata.name")
        if not isinstance(kind, str) or not isinstance(name, str):
            raise ValueError("kind and metadata.name must be strings")
        if not isinstance(metadata.get("namespace") or "", str):
            raise ValueError("metadata.namespace must be a string")

        manifest = copy.deepcopy(manifest)
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = ""
        else:
            namespace = metadata.get("namespace") or default_namespace
            if namespace:
                manifest.setdefault("metadata", {})["namespace"] = namespace

        return cls(
            kind=kind,
            namespace=namespace,
            name=name,
            manifest=manifest,
            desired_hash=content_hash(manifest),
            source_file=source_file,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "desired_hash": self.desired_hash,
            "last_applied_hash": self.last_applied_hash,
            "observed_hash": self.observed_hash,
            "source_file": self.source_file,
        }


@dataclass
class ObjectResult:
    """Apply outcome for a single object."""

    key: ObjectKey
    result: ApplyResult
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"object": str(self.key), "result": self.result.value, "reason": self.reason}


@dataclass
class ReconciliationAttempt:
    """In-memory record of one sync cycle."""

    target: str
    revision: str = ""
    objects: list[ManagedObject] = field(default_factory=list)
    results: list[ObjectResult] = field(default_factory=list)
    outcome: Optional[CycleOutcome] = None
    reason: str = ""
    message: str = ""
    diagnostics: dict[str, list[str]] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def failed(self) -> list[ObjectResult]:
        return [r for r in self.results if r.result == ApplyResult.FAILED]

    @property
    def applied(self) -> list[ObjectResult]:
        return [r for r in self.results if r.result == ApplyResult.APPLIED]

    @property
    def unchanged(self) -> list[ObjectResult]:
        return [r for r in self.results if r.result == ApplyResult.UNCHANGED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "revision": self.revision,
            "outcome": self.outcome.value if self.outcome else None,
            "reason": self.reason,
            "message": self.message,
            "object_count": len(self.objects),
            "applied_count": len(self.applied),
            "unchanged_count": len(self.unchanged),
            "failed_count": len(self.failed),
            "results": [r.to_dict() for r in self.results],
            "diagnostics": self.diagnostics,
            "started_at": format_time(self.started_at),
            "finished_at": format_time(self.finished_at),
        }


@dataclass
class DriftItem:
    """A declared object whose live state diverged from what was applied."""

    obj: ManagedObject
    observed_hash: Optional[str] = None

    @property
    def missing(self) -> bool:
        """True when the object was deleted out-of-band."""
        return self.observed_hash is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "object": str(self.obj.key),
            "drift_type": "missing" if self.missing else "modified",
            "expected": self.obj.last_applied_hash,
            "actual": self.observed_hash,
        }


@dataclass
class DriftReport:
    """Result of one drift scan."""

    target: str
    drifts: list[DriftItem] = field(default_factory=list)
    remediation: list[ObjectResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    scanned: int = 0
    outcome: Optional[DriftOutcome] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "target": self.target,
            "outcome": self.outcome.value if self.outcome else None,
            "message": self.message,
            "scanned": self.scanned,
            "drift_count": len(self.drifts),
            "drifts": [d.to_dict() for d in self.drifts],
            "remediation": [r.to_dict() for r in self.remediation],
            "errors": self.errors,
        }
