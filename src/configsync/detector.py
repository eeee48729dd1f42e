"""Upstream change detection."""

import logging
from dataclasses import dataclass

from configsync.adapters import SourceAdapter
from configsync.errors import SourceUnreachable
from configsync.state import Target

logger = logging.getLogger(__name__)


@dataclass
class ChangeResult:
    """Whether the source moved past the tracked revision."""

    changed: bool
    revision: str


class ChangeDetector:
    """Compares the source's current revision with the tracked one."""

    def __init__(self, source: SourceAdapter):
        self.source = source

    async def detect(self, target: Target, tracked_revision: str) -> ChangeResult:
        """Resolve the target's reference and compare it to ``tracked_revision``.

        An empty ``tracked_revision`` (first run) always reports a change.
        """
        try:
            revision = await self.source.resolve_revision(target)
        except OSError as e:
            raise SourceUnreachable(f"Failed to resolve {target.branch}: {e}") from e

        if not revision:
            raise SourceUnreachable(f"Reference {target.branch} resolved to an empty revision")

        if not tracked_revision:
            logger.info(f"No tracked revision for {target.key}, source at {revision}")
            return ChangeResult(changed=True, revision=revision)

        if revision != tracked_revision:
            logger.info(f"Source for {target.key} advanced {tracked_revision} -> {revision}")
            return ChangeResult(changed=True, revision=revision)

        return ChangeResult(changed=False, revision=revision)
