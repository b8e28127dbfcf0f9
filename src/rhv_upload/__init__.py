"""rhv-upload - upload converted guest disks to oVirt/RHV and create the VM."""

__version__ = "0.1.0"
__description__ = "Multi-disk upload orchestrator for oVirt/RHV"

from .config import AppConfig, ConfigLoader
from .models import (
    DiskFormat,
    DiskTransferTarget,
    EndpointDescriptor,
    FinalizationResult,
    GuestDisk,
    GuestInfo,
    PrecheckResult,
    TargetFirmware,
    ValidatedEnvironment,
)
from .options import (
    OutputAllocation,
    OutputTarget,
    UploadOptions,
    parse_output_options,
)
from .exceptions import (
    RHVUploadError,
    ConfigurationError,
    EnvironmentError,
    RemoteValidationError,
    TransferTimeoutError,
    FinalizationError,
    BackendError,
    HelperError,
    CopyError,
)
from .output import (
    OutputModule,
    RHVUploadOutput,
    get_output_module,
    output_module_names,
    register_output_module,
)
from .session import TransferSession

__all__ = [
    "__version__",
    "__description__",
    "AppConfig",
    "ConfigLoader",
    "DiskFormat",
    "DiskTransferTarget",
    "EndpointDescriptor",
    "FinalizationResult",
    "GuestDisk",
    "GuestInfo",
    "PrecheckResult",
    "TargetFirmware",
    "ValidatedEnvironment",
    "OutputAllocation",
    "OutputTarget",
    "UploadOptions",
    "parse_output_options",
    "RHVUploadError",
    "ConfigurationError",
    "EnvironmentError",
    "RemoteValidationError",
    "TransferTimeoutError",
    "FinalizationError",
    "BackendError",
    "HelperError",
    "CopyError",
    "OutputModule",
    "RHVUploadOutput",
    "get_output_module",
    "output_module_names",
    "register_output_module",
    "TransferSession",
]
