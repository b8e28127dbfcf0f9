"""Unit tests for the local precondition checks."""

from unittest.mock import AsyncMock, patch

import pytest

from rhv_upload import nbdkit
from rhv_upload.config import AppConfig
from rhv_upload.exceptions import EnvironmentError
from rhv_upload.helpers import CommandResult
from rhv_upload.options import OutputAllocation
from rhv_upload.prechecks import (
    PreconditionChecker,
    error_current_limitation,
    host_selinux_enforcing,
)


GOOD_CONFIG = {"version": "1.24.0", "selinux": "yes"}


@pytest.fixture
def config(tmp_path):
    return AppConfig(scripts_dir=str(tmp_path))


@pytest.fixture
def probes():
    """Replace every external probe with a passing one."""
    with patch("rhv_upload.prechecks.run_command",
               AsyncMock(return_value=CommandResult(returncode=0))) as run, \
         patch.object(nbdkit, "is_installed", AsyncMock(return_value=True)) as installed, \
         patch.object(nbdkit, "dump_config",
                      AsyncMock(return_value=dict(GOOD_CONFIG))) as dump, \
         patch.object(nbdkit, "plugin_works", AsyncMock(return_value=True)) as plugin:
        yield {
            "run": run,
            "is_installed": installed,
            "dump_config": dump,
            "plugin_works": plugin,
        }


async def failing_check(config, probes, alloc=OutputAllocation.SPARSE, selinux=False):
    checker = PreconditionChecker(config, alloc, host_selinux=selinux)
    with pytest.raises(EnvironmentError) as exc_info:
        await checker.check()
    return exc_info.value


class TestHostSelinux:
    def test_enforcing(self, tmp_path):
        """Test SELinux detected as enforcing."""
        path = tmp_path / "enforce"
        path.write_text("1")
        assert host_selinux_enforcing(str(path)) is True

    def test_permissive(self, tmp_path):
        """Test SELinux detected as permissive."""
        path = tmp_path / "enforce"
        path.write_text("0")
        assert host_selinux_enforcing(str(path)) is False

    def test_disabled(self, tmp_path):
        """Test SELinux absent counts as not enforcing."""
        assert host_selinux_enforcing(str(tmp_path / "missing")) is False


class TestPreconditionChecker:
    @pytest.mark.asyncio
    async def test_all_checks_pass(self, config, probes):
        """Test all checks pass."""
        env = await PreconditionChecker(
            config, OutputAllocation.SPARSE, host_selinux=True
        ).check()
        assert env.nbdkit_version == (1, 24, 0)
        assert env.nbdkit_selinux is True
        assert env.host_selinux is True
        assert env.python == "python3"

        probes["plugin_works"].assert_awaited_once_with(
            "nbdkit", "python", config.script_path("rhv-upload-plugin.py")
        )
        argvs = [call.args[0] for call in probes["run"].await_args_list]
        assert argvs == [
            ["python3", "--version"],
            ["python3", "-c", "import ovirtsdk4"],
        ]

    @pytest.mark.asyncio
    async def test_missing_python(self, config, probes):
        """Test missing python."""
        probes["run"].side_effect = FileNotFoundError("python3")
        error = await failing_check(config, probes)
        assert error.component == "python"
        probes["is_installed"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_ovirtsdk4(self, config, probes):
        """Test missing ovirtsdk4."""
        probes["run"].side_effect = [
            CommandResult(returncode=0),
            CommandResult(returncode=1),
        ]
        error = await failing_check(config, probes)
        assert error.component == "ovirtsdk4"
        assert "ovirtsdk4" in str(error)
        probes["is_installed"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nbdkit_not_installed(self, config, probes):
        """Test nbdkit not installed."""
        probes["is_installed"].return_value = False
        error = await failing_check(config, probes)
        assert error.component == "nbdkit"
        assert "nbdkit is not installed" in str(error)

    @pytest.mark.asyncio
    async def test_nbdkit_too_old(self, config, probes):
        """Test nbdkit too old."""
        probes["dump_config"].return_value = {"version": "1.20.4", "selinux": "yes"}
        error = await failing_check(config, probes)
        assert error.component == "nbdkit"
        assert "nbdkit ≥ 1.22.0" in str(error)
        probes["plugin_works"].assert_not_awaited()

    @pytest.mark.asyncio
    async def test_python_plugin_broken(self, config, probes):
        """Test python plugin broken."""
        probes["plugin_works"].return_value = False
        error = await failing_check(config, probes)
        assert error.component == "nbdkit-python-plugin"

    @pytest.mark.asyncio
    async def test_nbdkit_without_selinux_on_enforcing_host(self, config, probes):
        """Test nbdkit without selinux on enforcing host."""
        probes["dump_config"].return_value = {"version": "1.24.0", "selinux": "no"}
        error = await failing_check(config, probes, selinux=True)
        assert error.component == "nbdkit-selinux"

    @pytest.mark.asyncio
    async def test_nbdkit_without_selinux_on_permissive_host(self, config, probes):
        """Test nbdkit without selinux on permissive host."""
        probes["dump_config"].return_value = {"version": "1.24.0"}
        env = await PreconditionChecker(
            config, OutputAllocation.SPARSE, host_selinux=False
        ).check()
        assert env.nbdkit_selinux is False

    @pytest.mark.asyncio
    async def test_preallocated_is_a_current_limitation(self, config, probes):
        """Test preallocated is a current limitation."""
        error = await failing_check(config, probes, alloc=OutputAllocation.PREALLOCATED)
        assert error.component == "output_alloc"
        assert "currently you must use ‘-oa sparse’" in str(error)

    @pytest.mark.asyncio
    async def test_first_failure_wins(self, config, probes):
        """Test first failure wins."""
        probes["is_installed"].return_value = False
        error = await failing_check(config, probes, alloc=OutputAllocation.PREALLOCATED)
        assert error.component == "nbdkit"


def test_error_current_limitation():
    """Test error current limitation."""
    error = error_current_limitation("-oa sparse")
    assert isinstance(error, EnvironmentError)
    assert str(error).startswith("rhv-upload: currently you must use ‘-oa sparse’.")
