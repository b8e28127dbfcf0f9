"""Unit tests for the nbdkit backend."""

import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

from rhv_upload import nbdkit
from rhv_upload.exceptions import BackendError
from rhv_upload.helpers import CommandResult
from rhv_upload.nbdkit import NbdkitCommand, NbdkitLauncher


FAKE_NBDKIT = """\
#!{python}
import os, sys, time
args = sys.argv[1:]
{body}
"""

SERVE = """\
pidfile = args[args.index("--pidfile") + 1]
with open(pidfile, "w") as f:
    f.write(str(os.getpid()))
time.sleep(60)
"""


def write_fake_nbdkit(directory, body):
    path = directory / "nbdkit"
    path.write_text(FAKE_NBDKIT.format(python=sys.executable, body=body))
    os.chmod(path, 0o755)
    return str(path)


class TestNbdkitCommand:
    def test_argv(self):
        """Test NbdkitCommand argv construction."""
        cmd = (
            NbdkitCommand()
            .with_plugin("python")
            .with_arg("script", "/usr/share/rhv-upload/rhv-upload-plugin.py")
            .with_threads(8)
        )
        assert cmd.argv("/w/nbdkit0.sock", "/w/nbdkit0.pid") == [
            "nbdkit",
            "--exit-with-parent",
            "--foreground",
            "--unix", "/w/nbdkit0.sock",
            "--pidfile", "/w/nbdkit0.pid",
            "--exportname", "/",
            "--threads", "8",
            "python",
            "script=/usr/share/rhv-upload/rhv-upload-plugin.py",
        ]

    def test_selinux_and_verbose(self):
        """Test NbdkitCommand with SELinux label and verbose flag."""
        cmd = (
            NbdkitCommand(nbdkit="/opt/nbdkit")
            .with_plugin("python")
            .with_selinux_label("system_u:object_r:svirt_socket_t:s0")
            .with_verbose(True)
        )
        argv = cmd.argv("/s", "/p")
        assert argv[0] == "/opt/nbdkit"
        assert argv[argv.index("--selinux-label") + 1] == (
            "system_u:object_r:svirt_socket_t:s0"
        )
        assert argv.index("--verbose") < argv.index("python")

    def test_with_arg_returns_copy(self):
        """Test with arg returns copy."""
        base = NbdkitCommand().with_plugin("python").with_arg("script", "s.py")
        disk = base.with_arg("params", "/w/params0.json")
        assert base.args == (("script", "s.py"),)
        assert disk.args == (("script", "s.py"), ("params", "/w/params0.json"))
        assert disk.argv("/s", "/p")[-2:] == ["script=s.py", "params=/w/params0.json"]

    def test_no_plugin(self):
        """Test NbdkitCommand requires a plugin."""
        with pytest.raises(BackendError, match="no plugin"):
            NbdkitCommand().argv("/s", "/p")


class TestVersion:
    def test_from_version_fields(self):
        """Test from version fields."""
        config = {"version_major": "1", "version_minor": "24", "version_micro": "3"}
        assert nbdkit.version(config) == (1, 24, 3)

    def test_micro_with_suffix(self):
        """Test micro with suffix."""
        config = {"version_major": "1", "version_minor": "22",
                  "version_micro": "0-rc1"}
        assert nbdkit.version(config) == (1, 22, 0)

    def test_from_version_string(self):
        """Test from version string."""
        assert nbdkit.version({"version": "1.30.2"}) == (1, 30, 2)
        assert nbdkit.version({"version": "1.22"}) == (1, 22, 0)

    def test_unknown(self):
        """Test missing version in dump-config output."""
        with pytest.raises(BackendError, match="could not determine"):
            nbdkit.version({})

    def test_comparison_with_minimum(self):
        """Test comparison with minimum."""
        assert nbdkit.version({"version": "1.21.9"}) < nbdkit.MIN_VERSION
        assert nbdkit.version({"version": "1.22.0"}) >= nbdkit.MIN_VERSION


class TestProbes:
    @pytest.mark.asyncio
    async def test_dump_config(self):
        """Test dump-config output parsing."""
        output = "bindir=/usr/bin\nversion=1.24.0\nselinux=yes\njunk\n"
        run = AsyncMock(return_value=CommandResult(returncode=0, stdout=output))
        with patch("rhv_upload.nbdkit.run_command", run):
            config = await nbdkit.dump_config("nbdkit")
        run.assert_awaited_once_with(["nbdkit", "--dump-config"])
        assert config == {"bindir": "/usr/bin", "version": "1.24.0", "selinux": "yes"}

    @pytest.mark.asyncio
    async def test_dump_config_failure(self):
        """Test dump config failure."""
        run = AsyncMock(return_value=CommandResult(returncode=1))
        with patch("rhv_upload.nbdkit.run_command", run):
            with pytest.raises(BackendError, match="--dump-config failed"):
                await nbdkit.dump_config()

    @pytest.mark.asyncio
    async def test_is_installed_missing_binary(self, tmp_path):
        """Test is installed missing binary."""
        assert await nbdkit.is_installed(str(tmp_path / "nbdkit")) is False

    @pytest.mark.asyncio
    async def test_is_installed(self, tmp_path):
        """Test nbdkit detected as installed."""
        fake = write_fake_nbdkit(tmp_path, "print('nbdkit 1.24.0')")
        assert await nbdkit.is_installed(fake) is True

    @pytest.mark.asyncio
    async def test_plugin_works(self):
        """Test plugin probe with --dump-plugin."""
        run = AsyncMock(return_value=CommandResult(returncode=0))
        with patch("rhv_upload.nbdkit.run_command", run):
            assert await nbdkit.plugin_works("nbdkit", "python", "/p.py")
        run.assert_awaited_once_with(["nbdkit", "python", "/p.py", "--dump-plugin"])


class TestNbdkitLauncher:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        """Test NbdkitLauncher starts and stops an instance."""
        fake = write_fake_nbdkit(tmp_path, SERVE)
        cmd = NbdkitCommand(nbdkit=fake).with_plugin("python")
        pidfile = str(tmp_path / "nbdkit0.pid")

        launcher = NbdkitLauncher(pidfile_timeout=10, poll_interval=0.01)
        instance = await launcher.start(cmd, str(tmp_path / "nbdkit0.sock"), pidfile)
        try:
            assert instance.running
            assert os.path.exists(pidfile)
            assert instance.socket_path == str(tmp_path / "nbdkit0.sock")
        finally:
            await instance.stop()
        assert not instance.running

    @pytest.mark.asyncio
    async def test_early_exit(self, tmp_path):
        """Test NbdkitLauncher when nbdkit exits before the pidfile."""
        fake = write_fake_nbdkit(tmp_path, "sys.exit(1)")
        cmd = NbdkitCommand(nbdkit=fake).with_plugin("python")

        launcher = NbdkitLauncher(pidfile_timeout=10, poll_interval=0.01)
        with pytest.raises(BackendError, match="exited with status 1"):
            await launcher.start(
                cmd, str(tmp_path / "s.sock"), str(tmp_path / "s.pid")
            )

    @pytest.mark.asyncio
    async def test_pidfile_timeout(self, tmp_path):
        """Test pidfile timeout."""
        fake = write_fake_nbdkit(tmp_path, "time.sleep(60)")
        cmd = NbdkitCommand(nbdkit=fake).with_plugin("python")

        launcher = NbdkitLauncher(pidfile_timeout=0.3, poll_interval=0.01)
        with pytest.raises(BackendError, match="did not appear"):
            await launcher.start(
                cmd, str(tmp_path / "s.sock"), str(tmp_path / "s.pid")
            )

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        """Test missing binary."""
        cmd = NbdkitCommand(nbdkit=str(tmp_path / "nbdkit")).with_plugin("python")
        with pytest.raises(BackendError, match="could not be started"):
            await NbdkitLauncher().start(
                cmd, str(tmp_path / "s.sock"), str(tmp_path / "s.pid")
            )
