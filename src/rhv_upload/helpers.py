"""
Helper program protocol.

Helper scripts are run as ``python3 SCRIPT PARAMS.json [EXTRA...]``.  The
parameters file holds one JSON object; exit status 0 means success.  Scripts
that produce a result write it to stdout, which the caller redirects into a
file of its choosing.
"""

import asyncio
import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from .exceptions import HelperError
from .logging import logger


@dataclass
class CommandResult:
    """Exit status and captured output of a finished process."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def last_error(self) -> str:
        """Last non-blank line of stderr, or an empty string."""
        lines = [line.strip() for line in self.stderr.splitlines() if line.strip()]
        return lines[-1] if lines else ""


async def run_command(
    argv: Sequence[str],
    stdout_path: Optional[str] = None,
) -> CommandResult:
    """
    Run a command to completion.

    Args:
        argv: Program and arguments, never passed through a shell
        stdout_path: If given, stdout is written to this file (mode 0600)
            instead of being captured

    Returns:
        CommandResult: Exit status plus captured stdout/stderr

    Raises:
        OSError: If the program cannot be executed
    """
    logger.debug(
        "Running: " + " ".join(shlex.quote(str(a)) for a in argv),
        argv=[str(a) for a in argv],
    )

    stdout_fd: Optional[int] = None
    if stdout_path is not None:
        stdout_fd = os.open(stdout_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)

    try:
        proc = await asyncio.create_subprocess_exec(
            *[str(a) for a in argv],
            stdin=asyncio.subprocess.DEVNULL,
            stdout=stdout_fd if stdout_fd is not None else asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
    finally:
        if stdout_fd is not None:
            os.close(stdout_fd)

    stdout = out.decode(errors="replace") if out else ""
    stderr = err.decode(errors="replace") if err else ""
    # Diagnostics of a failed program are shown at the default level
    relay = logger.warning if proc.returncode else logger.debug
    for line in stderr.splitlines():
        if line.strip():
            relay(line.rstrip(), program=str(argv[0]))

    return CommandResult(returncode=proc.returncode or 0, stdout=stdout, stderr=stderr)


class HelperParams(BaseModel):
    """
    Parameter record handed to a helper script.

    The common fields are present in every invocation; the per-call fields
    are set with :meth:`with_fields` and left out of the JSON when unset.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Common to every helper
    verbose: bool = False
    output_conn: str
    output_password: str
    output_storage: str
    output_sparse: bool = True
    rhv_cafile: Optional[str] = None
    rhv_cluster: str = "Default"
    rhv_direct: bool = False
    insecure: bool = True

    # Precheck
    rhv_disk_uuids: Optional[List[str]] = None
    # Vmcheck and per-disk plugin parameters
    output_name: Optional[str] = None
    disk_name: Optional[str] = None
    disk_format: Optional[str] = None
    disk_size: Optional[int] = None
    diskid_file: Optional[str] = None
    rhv_disk_uuid: Optional[str] = None
    # Createvm
    rhv_cluster_uuid: Optional[str] = None
    # Deletedisks
    disk_uuids: Optional[List[str]] = None

    ALWAYS_PRESENT: ClassVar[Tuple[str, ...]] = ("rhv_cafile",)

    def with_fields(self, **fields) -> "HelperParams":
        """Return a copy with per-call fields set."""
        return self.model_validate({**self.model_dump(), **fields})

    def to_json(self) -> str:
        data = self.model_dump(exclude_none=True)
        for key in self.ALWAYS_PRESENT:
            data.setdefault(key, None)
        return json.dumps(data)

    def write(self, path: str) -> str:
        """Write the parameters file and return its path."""
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(self.to_json())
        return path


class HelperScript:
    """A helper program run through the configured Python interpreter."""

    def __init__(self, python: str, path: str) -> None:
        self.python = python
        self.path = path

    @property
    def name(self) -> str:
        return Path(self.path).name

    async def run(
        self,
        params: HelperParams,
        params_file: str,
        extra_args: Sequence[str] = (),
        stdout_path: Optional[str] = None,
    ) -> CommandResult:
        """
        Run the helper with the given parameters.

        Args:
            params: Parameter record, written to params_file first
            params_file: Where to write the parameters
            extra_args: Additional file arguments after the parameters file
            stdout_path: Optional file receiving the helper's stdout

        Raises:
            HelperError: If the script is missing or cannot be executed
        """
        if not Path(self.path).is_file():
            raise HelperError(f"script not found at {self.path}", self.name)

        params.write(params_file)
        argv = [self.python, self.path, params_file, *extra_args]
        try:
            result = await run_command(argv, stdout_path=stdout_path)
        except OSError as e:
            raise HelperError(str(e), self.name) from e

        logger.debug(
            f"Helper {self.name} exited with status {result.returncode}",
            helper=self.name,
            returncode=result.returncode,
        )
        return result
