"""
Transfer session scope.

A session owns everything an upload creates locally (a temporary working
directory, the per-disk sockets, marker files and nbdkit processes) and
the list of disks already created on the remote side.  Leaving the session
scope stops the backends, deletes the remote disks unless rollback was
disarmed, and removes the working directory.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from typing import Awaitable, Callable, List, Optional

from .logging import logger
from .models import DiskTransferTarget
from .nbdkit import NbdkitProcess


RollbackFunc = Callable[[List[str]], Awaitable[object]]


class TransferSession:
    """
    Resource and rollback scope of one upload.

    Usage:
        async with TransferSession(rollback_func=delete_disks) as session:
            session.arm_rollback()
            ...
            session.record_disk_uuid(disk_uuid)
            ...
            session.disarm_rollback()  # only after the VM was created

    Any exit from the block with rollback still armed, whether through an
    exception or not, deletes every disk recorded so far.
    """

    def __init__(
        self,
        rollback_func: Optional[RollbackFunc] = None,
        tmpdir: Optional[str] = None,
    ) -> None:
        self.session_id = str(uuid.uuid4())
        self.rollback_func = rollback_func
        self.tmpdir = tmpdir
        self.workdir: Optional[str] = None
        self.targets: List[DiskTransferTarget] = []
        self.backends: List[NbdkitProcess] = []
        self.disk_uuids: List[str] = []
        self.rollback_armed = False
        self.status = "pending"  # pending, committed, rolled_back, failed

    async def __aenter__(self) -> TransferSession:
        self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            self.status = "failed"
            logger.error(
                f"Upload session {self.session_id} failed: {exc_val}",
                session_id=self.session_id,
                error=str(exc_val),
            )
        await self.close()

    def open(self) -> str:
        """Create the working directory."""
        if self.workdir is None:
            self.workdir = tempfile.mkdtemp(prefix="rhvupload.", dir=self.tmpdir)
            logger.debug(
                f"Upload session {self.session_id} started",
                session_id=self.session_id,
                workdir=self.workdir,
            )
        return self.workdir

    def path(self, name: str) -> str:
        """Path of a file inside the working directory."""
        if self.workdir is None:
            raise RuntimeError("session is not open")
        return os.path.join(self.workdir, name)

    def arm_rollback(self) -> None:
        if not self.rollback_armed:
            logger.debug("Rollback armed", session_id=self.session_id)
        self.rollback_armed = True

    def disarm_rollback(self) -> None:
        self.rollback_armed = False
        self.status = "committed"
        logger.debug("Rollback disarmed", session_id=self.session_id)

    def add_target(self, target: DiskTransferTarget) -> None:
        self.targets.append(target)

    def add_backend(self, backend: NbdkitProcess) -> None:
        self.backends.append(backend)

    def record_disk_uuid(self, disk_uuid: str) -> None:
        self.disk_uuids.append(disk_uuid)

    async def close(self) -> None:
        """Stop backends, roll back if still armed, remove the working directory."""
        await self._stop_backends()

        if self.rollback_armed:
            await self.rollback()

        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)
            self.workdir = None

    async def rollback(self) -> None:
        """Delete every disk recorded so far.  Never raises."""
        uuids = list(self.disk_uuids)
        self.rollback_armed = False
        self.status = "rolled_back"

        if not uuids or self.rollback_func is None:
            return

        logger.info(
            f"Rolling back upload session {self.session_id}",
            session_id=self.session_id,
            disk_uuids=uuids,
            disk_names=[t.disk_name for t in self.targets if t.disk_uuid in uuids],
        )
        try:
            await self.rollback_func(uuids)
        except Exception as e:
            # A failed cleanup must not hide the original error
            logger.warning(
                f"Rollback of session {self.session_id} failed: {e}",
                session_id=self.session_id,
            )

    async def _stop_backends(self) -> None:
        for backend in reversed(self.backends):
            try:
                await backend.stop()
            except (OSError, ProcessLookupError) as e:
                logger.warning(f"Failed to stop nbdkit: {e}", socket=backend.socket_path)
        self.backends.clear()
