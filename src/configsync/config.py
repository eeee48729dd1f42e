"""
ConfigSync Operator Configuration

Defaults for the scheduler, backends and logging.
Override with environment variables for flexibility.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from configsync.errors import ConfigError
from configsync.state import DEFAULT_SYNC_INTERVAL, Target, parse_duration

IN_CLUSTER_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
IN_CLUSTER_CA_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


@dataclass
class OperatorConfig:
    """Configuration for the sync operator."""

    # Scheduling
    max_concurrent_syncs: int = 4
    cycle_timeout: float = 300.0
    initial_backoff: float = 10.0
    max_backoff: float = 600.0
    default_sync_interval: float = DEFAULT_SYNC_INTERVAL
    drift_interval: Optional[float] = None
    targets_refresh_interval: float = 30.0

    # Storage
    state_dir: str = "/var/lib/configsync/state"
    work_dir: str = "/var/lib/configsync/repos"

    # Kubernetes API
    kube_api_url: str = "https://kubernetes.default.svc"
    kube_token_path: str = IN_CLUSTER_TOKEN_PATH
    kube_ca_path: str = IN_CLUSTER_CA_PATH
    field_manager: str = "configsync"

    # Validation backend: "schema" or "kubectl"
    validator: str = "schema"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Status API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    def __post_init__(self):
        # Load from environment variables
        self.max_concurrent_syncs = int(
            os.getenv("CONFIGSYNC_MAX_CONCURRENT", self.max_concurrent_syncs)
        )
        self.cycle_timeout = parse_duration(
            os.getenv("CONFIGSYNC_CYCLE_TIMEOUT", self.cycle_timeout), default=self.cycle_timeout
        )
        self.initial_backoff = parse_duration(
            os.getenv("CONFIGSYNC_INITIAL_BACKOFF", self.initial_backoff), default=self.initial_backoff
        )
        self.max_backoff = parse_duration(
            os.getenv("CONFIGSYNC_MAX_BACKOFF", self.max_backoff), default=self.max_backoff
        )
        self.default_sync_interval = parse_duration(
            os.getenv("CONFIGSYNC_SYNC_INTERVAL", self.default_sync_interval)
        )
        drift_interval = os.getenv("CONFIGSYNC_DRIFT_INTERVAL")
        if drift_interval:
            self.drift_interval = parse_duration(drift_interval)
        self.targets_refresh_interval = parse_duration(
            os.getenv("CONFIGSYNC_TARGETS_REFRESH", self.targets_refresh_interval),
            default=self.targets_refresh_interval,
        )

        self.state_dir = os.getenv("CONFIGSYNC_STATE_DIR", self.state_dir)
        self.work_dir = os.getenv("CONFIGSYNC_WORK_DIR", self.work_dir)

        self.kube_api_url = os.getenv("CONFIGSYNC_KUBE_API_URL", self.kube_api_url)
        self.kube_token_path = os.getenv("CONFIGSYNC_KUBE_TOKEN_PATH", self.kube_token_path)
        self.kube_ca_path = os.getenv("CONFIGSYNC_KUBE_CA_PATH", self.kube_ca_path)
        self.field_manager = os.getenv("CONFIGSYNC_FIELD_MANAGER", self.field_manager)

        self.validator = os.getenv("CONFIGSYNC_VALIDATOR", self.validator)
        self.log_level = os.getenv("CONFIGSYNC_LOG_LEVEL", self.log_level).upper()
        self.log_json = _env_bool("CONFIGSYNC_LOG_JSON", self.log_json)

        self.api_host = os.getenv("CONFIGSYNC_API_HOST", self.api_host)
        self.api_port = int(os.getenv("CONFIGSYNC_API_PORT", self.api_port))

        if self.max_concurrent_syncs < 1:
            raise ConfigError("CONFIGSYNC_MAX_CONCURRENT must be at least 1")
        if self.validator not in ("schema", "kubectl"):
            raise ConfigError(f"Unknown validator {self.validator!r} (expected schema or kubectl)")
        if self.max_backoff < self.initial_backoff:
            raise ConfigError("Maximum backoff must not be smaller than the initial backoff")


def parse_targets(data: Any, default_sync_interval: float = DEFAULT_SYNC_INTERVAL) -> list[Target]:
    """Build targets from a parsed target file.

    Accepts either ``{"targets": [...]}`` or a list of ConfigSync resources
    (``{"metadata": ..., "spec": ...}``) or plain spec mappings.
    """
    if data is None:
        return []
    if isinstance(data, dict):
        entries = data.get("targets") or data.get("items") or []
    elif isinstance(data, list):
        entries = data
    else:
        raise ConfigError("Target file must contain a list or a 'targets' mapping")

    targets = []
    seen = set()
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigError(f"Invalid target entry: {entry!r}")

        if "spec" in entry:
            metadata = entry.get("metadata") or {}
            spec = dict(entry["spec"] or {})
            spec.setdefault("name", metadata.get("name"))
            spec.setdefault("namespace", metadata.get("namespace"))
        else:
            spec = dict(entry)
        if not spec.get("syncInterval"):
            spec["syncInterval"] = default_sync_interval

        target = Target.from_dict(spec)
        if target.key in seen:
            raise ConfigError(f"Target {target.key} is declared more than once")
        seen.add(target.key)
        targets.append(target)

    return targets


def load_targets(path: str | Path, default_sync_interval: float = DEFAULT_SYNC_INTERVAL) -> list[Target]:
    """Load target declarations from a YAML file."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read target file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid target file {path}: {e}") from e

    return parse_targets(data, default_sync_interval)


# Global configuration instance
_config: Optional[OperatorConfig] = None


def get_config() -> OperatorConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = OperatorConfig()
    return _config
