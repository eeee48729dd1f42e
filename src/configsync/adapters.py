"""Interfaces to the systems the engine drives.

The source, the cluster and the validator are collaborators: the engine only
relies on the methods below. Concrete implementations live in ``git``,
``kube`` and ``validator``.
"""

from typing import Any, Callable, Optional, Protocol

from configsync.errors import ValidationFailed
from configsync.state import CLUSTER_SCOPED_KINDS, ApplyResult, Target


class SourceAdapter(Protocol):
    """Read access to a versioned configuration source."""

    async def resolve_revision(self, target: Target) -> str:
        """Resolve the target's reference to a revision id.

        Raises SourceUnreachable.
        """
        ...

    async def list_files(self, revision: str, path: str) -> list[str]:
        """List files under ``path`` at ``revision``, in a stable order.

        Raises PathNotFound or SourceUnreachable.
        """
        ...

    async def read_file(self, revision: str, relative_path: str) -> bytes:
        """Read one file at ``revision``."""
        ...


class ClusterAdapter(Protocol):
    """Read and apply access to live cluster objects."""

    async def get_object(self, kind: str, namespace: str, name: str) -> Optional[dict[str, Any]]:
        """Fetch a live object, or None when it does not exist.

        Raises ClusterUnavailable.
        """
        ...

    async def apply_object(
        self, kind: str, namespace: str, name: str, manifest: dict[str, Any]
    ) -> ApplyResult:
        """Apply a manifest, reporting APPLIED or UNCHANGED.

        Raises ApplyError.
        """
        ...


class Validator(Protocol):
    """Checks a rendered manifest before it is applied."""

    async def validate(self, manifest: dict[str, Any]) -> None:
        """Raise ValidationFailed with diagnostics when the manifest is rejected."""
        ...


SourceFactory = Callable[[Target], SourceAdapter]


class SchemaValidator:
    """Structural checks that need no external tooling."""

    async def validate(self, manifest: dict[str, Any]) -> None:
        problems = []

        if not manifest.get("apiVersion"):
            problems.append("missing apiVersion")
        kind = manifest.get("kind")
        if not kind:
            problems.append("missing kind")

        metadata = manifest.get("metadata")
        if not isinstance(metadata, dict):
            problems.append("missing metadata")
        else:
            if not metadata.get("name"):
                problems.append("missing metadata.name")
            if kind in CLUSTER_SCOPED_KINDS and metadata.get("namespace"):
                problems.append(f"{kind} is cluster-scoped and must not set metadata.namespace")
            labels = metadata.get("labels")
            if labels is not None and not isinstance(labels, dict):
                problems.append("metadata.labels must be a mapping")

        if problems:
            raise ValidationFailed(problems)
