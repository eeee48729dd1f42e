"""
Pytest configuration and fixtures for ConfigSync tests
"""

import asyncio
import copy
import os
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from configsync.errors import (  # noqa: E402
    ApplyError,
    ClusterUnavailable,
    PathNotFound,
    SourceUnreachable,
    ValidationFailed,
)
from configsync.state import ApplyResult, Target, content_hash, observed_hash  # noqa: E402


def configmap(name: str, data: Optional[dict] = None, namespace: Optional[str] = None) -> str:
    """YAML for a ConfigMap document."""
    lines = [
        "apiVersion: v1",
        "kind: ConfigMap",
        "metadata:",
        f"  name: {name}",
    ]
    if namespace:
        lines.append(f"  namespace: {namespace}")
    lines.append("data:")
    for key, value in (data or {"key": "value"}).items():
        lines.append(f"  {key}: \"{value}\"")
    return "\n".join(lines) + "\n"


class FakeSource:
    """In-memory source: revision -> {path: content}."""

    def __init__(self, revision: str = "r1"):
        self.revision = revision
        self.trees: dict[str, dict[str, bytes]] = {}
        self.unreachable = False
        self.resolve_calls = 0
        self.list_calls = 0
        self.delay = 0.0

    def commit(self, revision: str, files: dict[str, str]):
        """Publish a new revision and make it current."""
        self.trees[revision] = {path: content.encode() for path, content in files.items()}
        self.revision = revision

    async def resolve_revision(self, target: Target) -> str:
        self.resolve_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unreachable:
            raise SourceUnreachable("connection refused")
        return self.revision

    async def list_files(self, revision: str, path: str) -> list[str]:
        self.list_calls += 1
        files = self.trees.get(revision, {})
        prefix = path.strip("/")
        matched = sorted(
            f for f in files
            if not prefix or prefix == "." or f == prefix or f.startswith(prefix + "/")
        )
        if not matched:
            raise PathNotFound(f"Path {path!r} does not exist at revision {revision}")
        return matched

    async def read_file(self, revision: str, relative_path: str) -> bytes:
        return self.trees[revision][relative_path]


class FakeCluster:
    """In-memory cluster keyed by (kind, namespace, name)."""

    def __init__(self):
        self.objects: dict[tuple, dict] = {}
        self.apply_calls: list[tuple] = []
        self.fail: dict[tuple, str] = {}
        self.unavailable: set[tuple] = set()
        self.delay = 0.0
        self._version = 0

    async def get_object(self, kind, namespace, name):
        key = (kind, namespace, name)
        if key in self.unavailable:
            raise ClusterUnavailable(f"cannot read {kind}/{name}")
        obj = self.objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    async def apply_object(self, kind, namespace, name, manifest):
        key = (kind, namespace, name)
        self.apply_calls.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.fail:
            raise ApplyError(self.fail[key])

        existing = self.objects.get(key)
        if existing is not None and observed_hash(existing, manifest) == content_hash(manifest):
            return ApplyResult.UNCHANGED

        self._version += 1
        live = copy.deepcopy(manifest)
        live.setdefault("metadata", {}).update({
            "uid": f"uid-{name}",
            "resourceVersion": str(self._version),
            "creationTimestamp": "2025-01-01T00:00:00Z",
        })
        live["status"] = {}
        self.objects[key] = live
        return ApplyResult.APPLIED


class FakeValidator:
    """Rejects manifests whose metadata.name is listed in ``invalid``."""

    def __init__(self, invalid=None):
        self.invalid = set(invalid or ())
        self.calls: list[str] = []

    async def validate(self, manifest):
        name = manifest["metadata"]["name"]
        self.calls.append(name)
        if name in self.invalid:
            raise ValidationFailed([f"{name}: spec is invalid"])


@pytest.fixture
def mock_env():
    """Fixture to set up mock environment variables."""
    original_env = os.environ.copy()

    os.environ.update({
        "CONFIGSYNC_MAX_CONCURRENT": "2",
        "CONFIGSYNC_SYNC_INTERVAL": "1m",
        "CONFIGSYNC_LOG_LEVEL": "debug",
    })

    yield os.environ

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def make_target():
    """Factory for targets with test defaults."""
    def _make(**overrides) -> Target:
        values = {
            "name": "web",
            "namespace": "default",
            "repository": "https://git.example.com/config.git",
            "branch": "main",
            "path": "manifests",
            "environment": "staging",
        }
        values.update(overrides)
        environment = values.pop("environment")
        from configsync.state import Environment
        return Target(environment=Environment(environment), **values)
    return _make


@pytest.fixture
def target(make_target):
    """Default target."""
    return make_target()


@pytest.fixture
def source():
    """Source at revision r1 with two ConfigMaps."""
    fake = FakeSource()
    fake.commit("r1", {
        "manifests/a.yaml": configmap("a"),
        "manifests/b.yaml": configmap("b"),
    })
    return fake


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def validator():
    return FakeValidator()


@pytest.fixture
def store():
    from configsync.reporter import InMemoryStatusStore
    return InMemoryStatusStore()


@pytest.fixture
def reporter(store):
    from configsync.reporter import StatusReporter
    return StatusReporter(store)


@pytest.fixture
def machine(target, source, cluster, validator, reporter):
    """State machine wired to the in-memory fakes."""
    from configsync.machine import ReconciliationStateMachine
    return ReconciliationStateMachine(target, source, cluster, validator, reporter, cycle_timeout=5.0)


@pytest.fixture
def operator_config():
    """Operator config with short backoff for scheduler tests."""
    from configsync.config import OperatorConfig
    return OperatorConfig(
        max_concurrent_syncs=2,
        cycle_timeout=5.0,
        initial_backoff=1.0,
        max_backoff=8.0,
        state_dir="/tmp/configsync-test-state",
        work_dir="/tmp/configsync-test-repos",
    )


# Markers
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (deselect with '-m \"not integration\"')"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
