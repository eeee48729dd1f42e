"""
Tests for manifest validators
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "web", "namespace": "prod"},
    "spec": {},
}


def fake_process(returncode, output=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(output, None))
    return proc


class TestSchemaValidator:
    """Tests for the built-in structural checks."""

    @pytest.mark.asyncio
    async def test_valid(self):
        """Test a complete manifest passes."""
        from configsync.adapters import SchemaValidator

        await SchemaValidator().validate(DEPLOYMENT)

    @pytest.mark.asyncio
    async def test_missing_fields(self):
        """Test every structural problem is reported."""
        from configsync.adapters import SchemaValidator
        from configsync.errors import ValidationFailed

        with pytest.raises(ValidationFailed) as exc_info:
            await SchemaValidator().validate({"metadata": {}})

        messages = exc_info.value.diagnostics[""]
        assert "missing apiVersion" in messages
        assert "missing kind" in messages
        assert "missing metadata.name" in messages

    @pytest.mark.asyncio
    async def test_cluster_scoped_with_namespace(self):
        """Test a cluster-scoped kind may not set a namespace."""
        from configsync.adapters import SchemaValidator
        from configsync.errors import ValidationFailed

        with pytest.raises(ValidationFailed, match="cluster-scoped"):
            await SchemaValidator().validate({
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": "prod", "namespace": "default"},
            })


class TestKubectlValidator:
    """Tests for the kubectl dry-run validator."""

    def test_missing_kubectl(self):
        """Test construction fails when kubectl is not installed."""
        from configsync.errors import ConfigError
        from configsync.validator import KubectlValidator

        with patch("configsync.validator.shutil.which", return_value=None):
            with pytest.raises(ConfigError, match="not found"):
                KubectlValidator()

    @pytest.mark.asyncio
    async def test_accepted(self):
        """Test a zero exit passes and the manifest goes to stdin."""
        from configsync.validator import KubectlValidator

        proc = fake_process(0, b"deployment.apps/web created (dry run)\n")
        with patch("configsync.validator.shutil.which", return_value="/usr/bin/kubectl"), \
                patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn:
            await KubectlValidator().validate(DEPLOYMENT)

        args = spawn.call_args.args
        assert args[0] == "/usr/bin/kubectl"
        assert "--dry-run=client" in args
        assert b'"name": "web"' in proc.communicate.call_args.args[0]

    @pytest.mark.asyncio
    async def test_rejected(self):
        """Test a non-zero exit becomes ValidationFailed with kubectl's output."""
        from configsync.errors import ValidationFailed
        from configsync.validator import KubectlValidator

        proc = fake_process(1, b"error: error validating data: unknown field \"replicaz\"\n\n")
        with patch("configsync.validator.shutil.which", return_value="/usr/bin/kubectl"), \
                patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(ValidationFailed) as exc_info:
                await KubectlValidator().validate(DEPLOYMENT)

        assert exc_info.value.diagnostics == {
            "": ['error: error validating data: unknown field "replicaz"'],
        }

    @pytest.mark.asyncio
    async def test_cancelled_validation_reaps_kubectl(self):
        """Test cancelling a validation kills kubectl and waits for it."""
        import asyncio

        from configsync.validator import KubectlValidator

        async def hang(*args):
            await asyncio.sleep(10)

        proc = fake_process(None)
        proc.communicate = AsyncMock(side_effect=hang)
        proc.wait = AsyncMock(return_value=-9)

        with patch("configsync.validator.shutil.which", return_value="/usr/bin/kubectl"), \
                patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            task = asyncio.create_task(KubectlValidator().validate(DEPLOYMENT))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        proc.kill.assert_called_once()
        proc.wait.assert_awaited_once()


class TestBuildValidator:
    """Tests for validator selection."""

    def test_schema(self):
        """Test the schema backend needs nothing installed."""
        from configsync.adapters import SchemaValidator
        from configsync.validator import build_validator

        assert isinstance(build_validator("schema"), SchemaValidator)

    def test_kubectl(self):
        """Test the kubectl backend resolves the binary."""
        from configsync.validator import KubectlValidator, build_validator

        with patch("configsync.validator.shutil.which", return_value="/usr/bin/kubectl"):
            assert isinstance(build_validator("kubectl"), KubectlValidator)

    def test_unknown(self):
        """Test an unknown backend is a ConfigError."""
        from configsync.errors import ConfigError
        from configsync.validator import build_validator

        with pytest.raises(ConfigError):
            build_validator("openapi")
