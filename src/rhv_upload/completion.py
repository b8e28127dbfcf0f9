"""Waiting for per-disk completion markers."""

import asyncio
import os

from .exceptions import TransferTimeoutError


async def wait_for_file(path: str, timeout: float, poll_interval: float = 2.0) -> bool:
    """
    Poll until path exists.

    Returns:
        bool: True if the file appeared within timeout seconds
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if os.path.exists(path):
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))


async def wait_for_disk_id(
    path: str,
    disk_index: int,
    nr_disks: int,
    timeout: float,
    poll_interval: float = 2.0,
) -> str:
    """
    Wait for a disk's marker file and return the disk UUID it contains.

    Args:
        disk_index: 0-based position of the disk in the transfer
        nr_disks: Total number of disks

    Raises:
        TransferTimeoutError: If the marker does not appear in time
    """
    if not await wait_for_file(path, timeout, poll_interval):
        raise TransferTimeoutError(disk_index + 1, nr_disks, timeout)
    with open(path) as f:
        return f.read().strip()
