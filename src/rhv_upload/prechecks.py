"""
Local precondition checks.

Verifies that this host can perform an upload before anything is sent to
the remote side.  Each check is a hard stop; the first failure raises.
"""

from pathlib import Path
from typing import Optional

from . import nbdkit
from .config import AppConfig, PLUGIN_SCRIPT
from .exceptions import BackendError, EnvironmentError
from .helpers import run_command
from .logging import logger
from .models import ValidatedEnvironment
from .options import OutputAllocation


SELINUX_ENFORCE_PATH = "/sys/fs/selinux/enforce"


def host_selinux_enforcing(path: str = SELINUX_ENFORCE_PATH) -> bool:
    """True if SELinux is enabled and enforcing on this host."""
    try:
        return Path(path).read_text().strip() == "1"
    except OSError:
        return False


def error_current_limitation(required_param: str) -> EnvironmentError:
    return EnvironmentError(
        f"rhv-upload: currently you must use ‘{required_param}’.  "
        "This restriction will be loosened in a future version.",
        component="output_alloc",
    )


class PreconditionChecker:
    """Runs the local checks in order and records what it found."""

    def __init__(
        self,
        config: AppConfig,
        output_alloc: OutputAllocation,
        host_selinux: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.output_alloc = output_alloc
        self.host_selinux = (
            host_selinux if host_selinux is not None else host_selinux_enforcing()
        )

    async def check(self) -> ValidatedEnvironment:
        """
        Run all checks.

        Returns:
            ValidatedEnvironment: nbdkit version and SELinux support, the
            host SELinux state and the interpreter that was found

        Raises:
            EnvironmentError: Naming the first missing or inadequate component
        """
        await self.check_python_interpreter()
        await self.check_ovirtsdk4()
        await self.check_nbdkit_installed()
        config = await self._nbdkit_config()
        nbdkit_version = self.check_nbdkit_version(config)
        await self.check_nbdkit_python_plugin()
        nbdkit_selinux = self.check_nbdkit_selinux(config)
        self.check_output_alloc()

        env = ValidatedEnvironment(
            nbdkit_version=nbdkit_version,
            nbdkit_selinux=nbdkit_selinux,
            host_selinux=self.host_selinux,
            python=self.config.python,
        )
        logger.info(
            "Local prechecks passed",
            nbdkit_version=".".join(str(v) for v in nbdkit_version),
            selinux=self.host_selinux,
        )
        return env

    async def check_python_interpreter(self) -> None:
        try:
            result = await run_command([self.config.python, "--version"])
        except OSError:
            result = None
        if result is None or not result.ok:
            raise EnvironmentError(
                f"could not find the Python interpreter ‘{self.config.python}’",
                component="python",
            )

    async def check_ovirtsdk4(self) -> None:
        result = await run_command([self.config.python, "-c", "import ovirtsdk4"])
        if not result.ok:
            raise EnvironmentError(
                "the Python module ‘ovirtsdk4’ could not be loaded, is it "
                "installed?  See previous messages for problems.",
                component="ovirtsdk4",
            )

    async def check_nbdkit_installed(self) -> None:
        if not await nbdkit.is_installed(self.config.nbdkit):
            raise EnvironmentError(
                "nbdkit is not installed or not working.  It is required to "
                "use ‘-o rhv-upload’.",
                component="nbdkit",
            )

    async def _nbdkit_config(self) -> dict:
        try:
            return await nbdkit.dump_config(self.config.nbdkit)
        except BackendError as e:
            raise EnvironmentError(str(e), component="nbdkit") from e

    def check_nbdkit_version(self, config: dict) -> tuple:
        try:
            found = nbdkit.version(config)
        except BackendError as e:
            raise EnvironmentError(str(e), component="nbdkit") from e
        if found < nbdkit.MIN_VERSION:
            raise EnvironmentError(
                "nbdkit is not new enough, you need to upgrade to "
                f"nbdkit ≥ {nbdkit.MIN_VERSION_STRING}",
                component="nbdkit",
            )
        return found

    async def check_nbdkit_python_plugin(self) -> None:
        plugin = self.config.nbdkit_python_plugin
        script = self.config.script_path(PLUGIN_SCRIPT)
        if not await nbdkit.plugin_works(self.config.nbdkit, plugin, script):
            raise EnvironmentError(
                f"nbdkit {plugin} plugin is not installed or not working.  "
                "It is required if you want to use ‘-o rhv-upload’.",
                component=f"nbdkit-{plugin}-plugin",
            )

    def check_nbdkit_selinux(self, config: dict) -> bool:
        supported = config.get("selinux", "no") != "no"
        if self.host_selinux and not supported:
            raise EnvironmentError(
                "nbdkit was compiled without SELinux support.  You will have "
                "to recompile nbdkit with libselinux-devel installed, or else "
                "set SELinux to Permissive mode while doing the conversion.",
                component="nbdkit-selinux",
            )
        return supported

    def check_output_alloc(self) -> None:
        if self.output_alloc is not OutputAllocation.SPARSE:
            raise error_current_limitation("-oa sparse")
