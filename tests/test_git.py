"""
Tests for configsync.git module
"""

import shutil
import subprocess

import pytest

LS_REMOTE = (
    "1111111111111111111111111111111111111111\tHEAD\n"
    "1111111111111111111111111111111111111111\trefs/heads/main\n"
    "2222222222222222222222222222222222222222\trefs/heads/release\n"
    "3333333333333333333333333333333333333333\trefs/tags/v1.0\n"
    "4444444444444444444444444444444444444444\trefs/tags/v1.0^{}\n"
    "5555555555555555555555555555555555555555\trefs/tags/release\n"
)


class TestParseLsRemote:
    """Tests for picking a revision out of ls-remote output."""

    def test_branch(self):
        """Test a branch name resolves to its head."""
        from configsync.git import parse_ls_remote

        assert parse_ls_remote(LS_REMOTE, "main") == "1" * 40

    def test_branch_wins_over_tag(self):
        """Test a name that is both a branch and a tag picks the branch."""
        from configsync.git import parse_ls_remote

        assert parse_ls_remote(LS_REMOTE, "release") == "2" * 40

    def test_annotated_tag_peeled(self):
        """Test an annotated tag resolves to the commit it points at."""
        from configsync.git import parse_ls_remote

        assert parse_ls_remote(LS_REMOTE, "v1.0") == "4" * 40

    def test_missing(self):
        """Test an unknown ref gives None."""
        from configsync.git import parse_ls_remote

        assert parse_ls_remote(LS_REMOTE, "nope") is None


class TestGitSourceAdapter:
    """Tests for the git adapter without a repository."""

    @pytest.mark.asyncio
    async def test_full_sha_needs_no_remote(self, tmp_path, make_target):
        """Test a pinned commit is returned without calling git."""
        from unittest.mock import AsyncMock

        from configsync.git import GitSourceAdapter

        adapter = GitSourceAdapter("https://git.example.com/config.git", tmp_path)
        adapter._git = AsyncMock()
        sha = "a" * 40

        assert await adapter.resolve_revision(make_target(branch=sha)) == sha
        adapter._git.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_binary_is_unreachable(self, tmp_path, target):
        """Test a git binary that cannot run reports SourceUnreachable."""
        from configsync.errors import SourceUnreachable
        from configsync.git import GitSourceAdapter

        adapter = GitSourceAdapter(target.repository, tmp_path, git_binary=str(tmp_path / "no-git"))

        with pytest.raises(SourceUnreachable, match="Cannot run"):
            await adapter.resolve_revision(target)

    @pytest.mark.asyncio
    async def test_cancelled_git_process_is_reaped(self, tmp_path, target):
        """Test cancelling a git call kills the child and waits for it."""
        import asyncio
        from unittest.mock import AsyncMock, MagicMock, patch

        from configsync.git import GitSourceAdapter

        async def hang(*args):
            await asyncio.sleep(10)

        proc = MagicMock()
        proc.returncode = None
        proc.communicate = AsyncMock(side_effect=hang)
        proc.wait = AsyncMock(return_value=-9)
        adapter = GitSourceAdapter(target.repository, tmp_path)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            task = asyncio.create_task(adapter.resolve_revision(target))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        proc.kill.assert_called_once()
        proc.wait.assert_awaited_once()

    def test_factory_shares_adapter_per_repository(self, tmp_path, make_target):
        """Test targets on the same repository share one mirror."""
        from configsync.git import GitSourceFactory

        factory = GitSourceFactory(tmp_path)
        a = factory(make_target(name="a"))
        b = factory(make_target(name="b", path="other"))
        c = factory(make_target(name="c", repository="https://git.example.com/other.git"))

        assert a is b
        assert c is not a
        assert a.mirror.parent == tmp_path


def run_git(cwd, *args):
    subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def repo(tmp_path):
    """Local repository with manifests on main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    path = tmp_path / "origin"
    (path / "manifests").mkdir(parents=True)
    (path / "manifests" / "a.yaml").write_text("kind: ConfigMap\n")
    (path / "manifests" / "b.yaml").write_text("kind: Secret\n")
    (path / "README.md").write_text("config\n")

    run_git(tmp_path, "init", "--quiet", "--initial-branch=main", str(path))
    run_git(path, "add", ".")
    run_git(path, "commit", "--quiet", "-m", "initial")
    return path


@pytest.mark.integration
class TestGitIntegration:
    """Tests against a real repository on disk."""

    @pytest.mark.asyncio
    async def test_resolve_list_and_read(self, repo, tmp_path, make_target):
        """Test resolving main, listing the path and reading a file."""
        from configsync.git import GitSourceAdapter

        target = make_target(repository=repo.as_uri())
        adapter = GitSourceAdapter(target.repository, tmp_path / "mirrors")

        revision = await adapter.resolve_revision(target)
        assert len(revision) == 40

        files = await adapter.list_files(revision, "manifests")
        assert files == ["manifests/a.yaml", "manifests/b.yaml"]
        assert await adapter.read_file(revision, "manifests/a.yaml") == b"kind: ConfigMap\n"

        adapter.cleanup()
        assert not adapter.mirror.exists()

    @pytest.mark.asyncio
    async def test_new_commit_is_fetched(self, repo, tmp_path, make_target):
        """Test a later commit is resolved and fetched into the existing mirror."""
        from configsync.git import GitSourceAdapter

        target = make_target(repository=repo.as_uri())
        adapter = GitSourceAdapter(target.repository, tmp_path / "mirrors")
        first = await adapter.resolve_revision(target)
        await adapter.list_files(first, "manifests")

        (repo / "manifests" / "c.yaml").write_text("kind: Service\n")
        run_git(repo, "add", ".")
        run_git(repo, "commit", "--quiet", "-m", "add c")

        second = await adapter.resolve_revision(target)
        assert second != first
        assert "manifests/c.yaml" in await adapter.list_files(second, "manifests")

    @pytest.mark.asyncio
    async def test_missing_path(self, repo, tmp_path, make_target):
        """Test a path absent at the revision raises PathNotFound."""
        from configsync.errors import PathNotFound
        from configsync.git import GitSourceAdapter

        target = make_target(repository=repo.as_uri())
        adapter = GitSourceAdapter(target.repository, tmp_path / "mirrors")
        revision = await adapter.resolve_revision(target)

        with pytest.raises(PathNotFound):
            await adapter.list_files(revision, "nowhere")

    @pytest.mark.asyncio
    async def test_unknown_branch(self, repo, tmp_path, make_target):
        """Test a branch that does not exist is SourceUnreachable."""
        from configsync.errors import SourceUnreachable
        from configsync.git import GitSourceAdapter

        target = make_target(repository=repo.as_uri(), branch="missing")
        adapter = GitSourceAdapter(target.repository, tmp_path / "mirrors")

        with pytest.raises(SourceUnreachable, match="not found"):
            await adapter.resolve_revision(target)
