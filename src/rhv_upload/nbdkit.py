"""
nbdkit block-device server backend.

One nbdkit instance is started per disk.  It serves an NBD export on a Unix
socket inside the session directory; the upload plugin script forwards what
the copy tool writes there to the remote storage.
"""

import asyncio
import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from .exceptions import BackendError
from .helpers import run_command
from .logging import logger


MIN_VERSION = (1, 22, 0)
MIN_VERSION_STRING = "1.22.0"


@dataclass(frozen=True)
class NbdkitCommand:
    """
    Command line of an nbdkit instance.

    Instances are immutable; the ``with_*`` methods return modified copies so
    a common base command can be shared by all disks.
    """

    nbdkit: str = "nbdkit"
    plugin: Optional[str] = None
    exportname: str = "/"
    threads: Optional[int] = None
    selinux_label: Optional[str] = None
    verbose: bool = False
    args: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def with_plugin(self, plugin: str) -> "NbdkitCommand":
        return replace(self, plugin=plugin)

    def with_threads(self, threads: int) -> "NbdkitCommand":
        return replace(self, threads=threads)

    def with_selinux_label(self, label: Optional[str]) -> "NbdkitCommand":
        return replace(self, selinux_label=label)

    def with_verbose(self, verbose: bool) -> "NbdkitCommand":
        return replace(self, verbose=verbose)

    def with_arg(self, key: str, value: str) -> "NbdkitCommand":
        return replace(self, args=self.args + ((key, value),))

    def argv(self, socket_path: str, pidfile: str) -> List[str]:
        """Full argument vector serving on socket_path."""
        if self.plugin is None:
            raise BackendError("no plugin configured")

        argv = [
            self.nbdkit,
            "--exit-with-parent",
            "--foreground",
            "--unix",
            socket_path,
            "--pidfile",
            pidfile,
            "--exportname",
            self.exportname,
        ]
        if self.threads is not None:
            argv += ["--threads", str(self.threads)]
        if self.selinux_label is not None:
            argv += ["--selinux-label", self.selinux_label]
        if self.verbose:
            argv.append("--verbose")
        argv.append(self.plugin)
        argv += [f"{k}={v}" for k, v in self.args]
        return argv


async def is_installed(nbdkit: str = "nbdkit") -> bool:
    """True if nbdkit can be run."""
    try:
        result = await run_command([nbdkit, "--version"])
    except OSError:
        return False
    return result.ok


async def dump_config(nbdkit: str = "nbdkit") -> Dict[str, str]:
    """Parse ``nbdkit --dump-config`` into a dictionary."""
    try:
        result = await run_command([nbdkit, "--dump-config"])
    except OSError as e:
        raise BackendError(f"could not run --dump-config: {e}") from e
    if not result.ok:
        raise BackendError("--dump-config failed")

    config: Dict[str, str] = {}
    for line in result.stdout.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            config[key.strip()] = value.strip()
    return config


def version(config: Dict[str, str]) -> Tuple[int, int, int]:
    """Extract the nbdkit version from its dumped configuration."""
    if "version_major" in config and "version_minor" in config:
        micro = re.match(r"\d+", config.get("version_micro", "0"))
        return (
            int(config["version_major"]),
            int(config["version_minor"]),
            int(micro.group()) if micro else 0,
        )

    m = re.match(r"(\d+)\.(\d+)(?:\.(\d+))?", config.get("version", ""))
    if not m:
        raise BackendError("could not determine nbdkit version")
    return int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)


async def plugin_works(nbdkit: str, plugin: str, script: str) -> bool:
    """True if the plugin can load the given script."""
    try:
        result = await run_command([nbdkit, plugin, script, "--dump-plugin"])
    except OSError:
        return False
    return result.ok


class NbdkitProcess:
    """A running nbdkit instance."""

    def __init__(
        self, process: asyncio.subprocess.Process, socket_path: str, pidfile: str
    ) -> None:
        self.process = process
        self.socket_path = socket_path
        self.pidfile = pidfile

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    async def stop(self, timeout: float = 10.0) -> None:
        """Terminate the instance, killing it if it does not exit in time."""
        if not self.running:
            return
        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"nbdkit {self.process.pid} did not exit, killing it",
                pid=self.process.pid,
            )
            self.process.kill()
            await self.process.wait()


class NbdkitLauncher:
    """Starts nbdkit instances and waits until they serve their socket."""

    def __init__(self, pidfile_timeout: float = 30, poll_interval: float = 0.1):
        self.pidfile_timeout = pidfile_timeout
        self.poll_interval = poll_interval

    async def start(
        self, cmd: NbdkitCommand, socket_path: str, pidfile: str
    ) -> NbdkitProcess:
        """
        Start nbdkit serving on socket_path.

        nbdkit writes its pidfile once the socket is listening, so the
        pidfile appearing is the readiness signal.

        Raises:
            BackendError: If nbdkit exits early or the pidfile does not
                appear within the timeout
        """
        argv = cmd.argv(socket_path, pidfile)
        logger.debug("Starting: " + " ".join(argv), socket=socket_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise BackendError(f"could not be started: {e}") from e

        instance = NbdkitProcess(process, socket_path, pidfile)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.pidfile_timeout
        while not os.path.exists(pidfile):
            if not instance.running:
                raise BackendError(
                    f"exited with status {process.returncode} before becoming ready"
                )
            if loop.time() >= deadline:
                await instance.stop()
                raise BackendError(
                    f"pidfile {pidfile} did not appear after "
                    f"{self.pidfile_timeout} seconds"
                )
            await asyncio.sleep(self.poll_interval)

        logger.debug(
            f"nbdkit {process.pid} listening on {socket_path}",
            pid=process.pid,
            socket=socket_path,
        )
        return instance
