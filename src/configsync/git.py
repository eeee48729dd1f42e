"""Source adapter backed by the git command line."""

import asyncio
import hashlib
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Optional

from configsync.errors import PathNotFound, SourceUnreachable
from configsync.state import Target

logger = logging.getLogger(__name__)

FULL_SHA = re.compile(r"[0-9a-f]{40}")
DEFAULT_GIT_TIMEOUT = 120.0


def parse_ls_remote(output: str, ref: str) -> Optional[str]:
    """Pick the revision for ``ref`` out of ``git ls-remote`` output.

    Branch heads win over tags; an annotated tag resolves to the commit it
    points at.
    """
    refs: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) == 2:
            refs[parts[1]] = parts[0]

    for name in (
        f"refs/heads/{ref}",
        f"refs/tags/{ref}^{{}}",
        f"refs/tags/{ref}",
        ref,
    ):
        if name in refs:
            return refs[name]
    return None


class GitSourceAdapter:
    """Reads one repository through a local bare mirror.

    Revision resolution always asks the remote, so a new commit is seen even
    before the mirror has fetched it.
    """

    def __init__(
        self,
        repository: str,
        work_dir: str | Path,
        git_binary: str = "git",
        timeout: float = DEFAULT_GIT_TIMEOUT,
    ):
        self.repository = repository
        self.git_binary = git_binary
        self.timeout = timeout

        digest = hashlib.sha256(repository.encode()).hexdigest()[:16]
        self.mirror = Path(work_dir) / f"{digest}.git"
        self._lock = asyncio.Lock()

    async def _git(self, *args: str, cwd: Optional[Path] = None) -> tuple[int, bytes, bytes]:
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SourceUnreachable(f"Cannot run {self.git_binary}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SourceUnreachable(f"git {args[0]} timed out after {self.timeout}s") from None
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            await asyncio.shield(proc.wait())
            raise

        return proc.returncode, stdout, stderr

    async def _checked(self, *args: str, cwd: Optional[Path] = None) -> bytes:
        returncode, stdout, stderr = await self._git(*args, cwd=cwd)
        if returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise SourceUnreachable(f"git {args[0]} failed for {self.repository}: {detail}")
        return stdout

    async def resolve_revision(self, target: Target) -> str:
        ref = target.branch
        if FULL_SHA.fullmatch(ref):
            return ref

        output = await self._checked("ls-remote", self.repository, ref)
        revision = parse_ls_remote(output.decode(), ref)
        if not revision:
            raise SourceUnreachable(f"Reference {ref} not found in {self.repository}")
        return revision

    async def _has_commit(self, revision: str) -> bool:
        returncode, _, _ = await self._git(
            "cat-file", "-e", f"{revision}^{{commit}}", cwd=self.mirror
        )
        return returncode == 0

    async def ensure_revision(self, revision: str):
        """Make sure the mirror contains ``revision``, cloning or fetching as needed."""
        async with self._lock:
            if not (self.mirror / "HEAD").exists():
                self.mirror.parent.mkdir(parents=True, exist_ok=True)
                logger.info(f"Cloning {self.repository} into {self.mirror}")
                await self._checked("clone", "--bare", "--quiet", self.repository, str(self.mirror))

            if await self._has_commit(revision):
                return

            logger.debug(f"Fetching {self.repository} for {revision}")
            await self._checked(
                "fetch",
                "--quiet",
                "--prune",
                self.repository,
                "+refs/heads/*:refs/heads/*",
                "+refs/tags/*:refs/tags/*",
                cwd=self.mirror,
            )
            if not await self._has_commit(revision):
                raise SourceUnreachable(f"Revision {revision} is not available from {self.repository}")

    async def list_files(self, revision: str, path: str) -> list[str]:
        await self.ensure_revision(revision)

        path = path.strip("/")
        args = ["ls-tree", "-r", "--name-only", "-z", revision]
        if path and path != ".":
            args += ["--", path]

        output = await self._checked(*args, cwd=self.mirror)
        files = sorted(f for f in output.decode().split("\0") if f)
        if not files:
            raise PathNotFound(f"Path {path or '/'!r} does not exist at revision {revision}")
        return files

    async def read_file(self, revision: str, relative_path: str) -> bytes:
        await self.ensure_revision(revision)
        return await self._checked("show", f"{revision}:{relative_path}", cwd=self.mirror)

    def cleanup(self):
        """Remove the local mirror."""
        shutil.rmtree(self.mirror, ignore_errors=True)


class GitSourceFactory:
    """Hands out one adapter per repository so targets share a mirror."""

    def __init__(self, work_dir: str | Path, timeout: float = DEFAULT_GIT_TIMEOUT):
        self.work_dir = Path(work_dir)
        self.timeout = timeout
        self._adapters: dict[str, GitSourceAdapter] = {}

    def __call__(self, target: Target) -> GitSourceAdapter:
        adapter = self._adapters.get(target.repository)
        if adapter is None:
            adapter = GitSourceAdapter(target.repository, self.work_dir, timeout=self.timeout)
            self._adapters[target.repository] = adapter
        return adapter
