"""Error taxonomy for configuration sync.

Every failure the engine knows how to handle is a ``ConfigSyncError``. The
``reason`` becomes the condition reason in the target's status, and
``retryable`` decides whether the scheduler backs off and retries or waits for
the source to change.
"""

from typing import Any


class ConfigSyncError(Exception):
    """Base class for all configuration sync failures."""

    reason = "Error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "reason": self.reason,
            "message": self.message,
            "retryable": self.retryable,
        }


class ConfigError(ConfigSyncError):
    """Invalid operator configuration or target declaration."""

    reason = "InvalidConfig"


class SourceUnreachable(ConfigSyncError):
    """The versioned source could not be resolved or fetched."""

    reason = "SourceUnreachable"
    retryable = True


class PathNotFound(ConfigSyncError):
    """The configured path does not exist at the revision."""

    reason = "PathNotFound"


class ManifestInvalid(ConfigSyncError):
    """A manifest file could not be parsed or declares colliding objects."""

    reason = "ManifestInvalid"


class ValidationFailed(ConfigSyncError):
    """One or more manifests were rejected by the validator."""

    reason = "ValidationFailed"

    def __init__(self, diagnostics: dict[str, list[str]] | list[str]) -> None:
        if isinstance(diagnostics, list):
            diagnostics = {"": diagnostics}
        self.diagnostics = diagnostics

        parts = []
        for key, messages in diagnostics.items():
            joined = "; ".join(messages)
            parts.append(f"{key}: {joined}" if key else joined)
        super().__init__(", ".join(parts))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["diagnostics"] = self.diagnostics
        return data


class ApplyError(ConfigSyncError):
    """A single object could not be applied to the cluster."""

    reason = "ApplyError"
    retryable = True


class ClusterUnavailable(ConfigSyncError):
    """A live object could not be read from the cluster."""

    reason = "ClusterUnavailable"
    retryable = True
