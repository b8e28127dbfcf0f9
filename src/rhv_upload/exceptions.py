"""
Custom exceptions for disk upload operations.

Every failure in an upload is fatal for the whole operation; none of these
errors are retried.
"""

from typing import Optional


class RHVUploadError(Exception):
    """Base exception for rhv-upload operations."""

    def __init__(self, message: str, error_code: int = 1000) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ConfigurationError(RHVUploadError):
    """Bad output options, unsupported formats and count mismatches."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1001)


class EnvironmentError(RHVUploadError):
    """The local host cannot perform an upload."""

    def __init__(self, message: str, component: str) -> None:
        super().__init__(message, error_code=1002)
        self.component = component


class RemoteValidationError(RHVUploadError):
    """A precheck or vmcheck helper rejected the operation."""

    def __init__(self, message: str, helper: str) -> None:
        super().__init__(f"{helper}: {message}", error_code=1003)
        self.helper = helper


class TransferTimeoutError(RHVUploadError):
    """A disk's completion marker did not appear in time."""

    def __init__(self, disk_index: int, nr_disks: int, timeout: float) -> None:
        super().__init__(
            f"transfer of disk {disk_index}/{nr_disks} failed, "
            f"see earlier error messages (no completion after {timeout}s)",
            error_code=1004,
        )
        self.disk_index = disk_index
        self.nr_disks = nr_disks
        self.timeout = timeout


class FinalizationError(RHVUploadError):
    """Metadata creation or VM registration failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, error_code=1005)


class BackendError(RHVUploadError):
    """An nbdkit instance could not be started."""

    def __init__(self, message: str, disk_id: Optional[int] = None) -> None:
        prefix = f"nbdkit for disk {disk_id}" if disk_id is not None else "nbdkit"
        super().__init__(f"{prefix}: {message}", error_code=1006)
        self.reason = message
        self.disk_id = disk_id


class HelperError(RHVUploadError):
    """A helper script is missing or could not be executed."""

    def __init__(self, message: str, script: str) -> None:
        super().__init__(f"Helper {script}: {message}", error_code=1007)
        self.script = script


class CopyError(RHVUploadError):
    """The copy tool failed to inspect or write an image."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(f"qemu-img on {path}: {message}", error_code=1008)
        self.path = path
