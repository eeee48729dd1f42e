"""Manifest validation through kubectl."""

import asyncio
import json
import logging
import shutil
from typing import Any

from configsync.adapters import SchemaValidator
from configsync.errors import ConfigError, ValidationFailed

logger = logging.getLogger(__name__)


class KubectlValidator:
    """Runs ``kubectl apply --dry-run=client`` on each manifest."""

    def __init__(self, kubectl: str = "kubectl", timeout: float = 60.0):
        path = shutil.which(kubectl)
        if path is None:
            raise ConfigError(f"{kubectl} not found on PATH")
        self.kubectl = path
        self.timeout = timeout

    async def validate(self, manifest: dict[str, Any]) -> None:
        proc = await asyncio.create_subprocess_exec(
            self.kubectl,
            "apply",
            "--dry-run=client",
            "-o",
            "name",
            "-f",
            "-",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(
                proc.communicate(json.dumps(manifest).encode()), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ValidationFailed([f"kubectl timed out after {self.timeout}s"]) from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            await asyncio.shield(proc.wait())
            raise

        if proc.returncode != 0:
            lines = [line for line in output.decode(errors="replace").splitlines() if line.strip()]
            raise ValidationFailed(lines or [f"kubectl exited with status {proc.returncode}"])


def build_validator(name: str):
    """Create the validator named in the operator configuration."""
    if name == "kubectl":
        return KubectlValidator()
    if name == "schema":
        return SchemaValidator()
    raise ConfigError(f"Unknown validator {name!r}")
