"""
Data models for disk upload operations.

This module defines the records passed between the upload stages.
"""

import json
from dataclasses import dataclass, field
from typing import Optional, List, Tuple
from enum import Enum


class TargetFirmware(Enum):
    """Firmware the converted guest boots with."""

    BIOS = "bios"
    UEFI = "uefi"


class DiskFormat(Enum):
    """Formats the upload plugin can write."""

    RAW = "raw"
    QCOW2 = "qcow2"


@dataclass(frozen=True)
class ValidatedEnvironment:
    """Result of the local precondition checks."""

    nbdkit_version: Tuple[int, int, int]
    nbdkit_selinux: bool
    host_selinux: bool
    python: str


@dataclass(frozen=True)
class PrecheckResult:
    """What the precheck helper learned about the target cluster."""

    storage_domain_uuid: str
    cluster_uuid: str
    cluster_cpu_architecture: str


@dataclass(frozen=True)
class GuestInfo:
    """The converted guest, as far as the upload needs to know it."""

    name: str
    arch: str
    memory: int = 1024 * 1024 * 1024  # bytes
    vcpus: int = 1
    firmware: TargetFirmware = TargetFirmware.BIOS


@dataclass(frozen=True)
class GuestDisk:
    """One source disk of the guest."""

    disk_id: int
    virtual_size: int  # bytes
    target_format: str = "raw"


@dataclass(frozen=True)
class EndpointDescriptor:
    """Where the copy tool writes a disk: an NBD export on a Unix socket."""

    path: str
    export: str = "/"
    driver: str = "nbd"

    def to_dict(self) -> dict:
        return {
            "file.driver": self.driver,
            "file.path": self.path,
            "file.export": self.export,
        }

    def to_uri(self) -> str:
        """Render as a qemu ``json:`` pseudo-URI."""
        return "json:" + json.dumps(self.to_dict())


@dataclass
class DiskTransferTarget:
    """Per-disk transfer state."""

    disk_id: int
    disk_name: str
    format: DiskFormat
    virtual_size: int
    diskid_file: str
    socket_path: Optional[str] = None
    uuid_override: Optional[str] = None
    endpoint: Optional[EndpointDescriptor] = None
    disk_uuid: Optional[str] = None


@dataclass(frozen=True)
class FinalizationResult:
    """Outcome of a successful VM registration."""

    vm_uuid: str
    vol_uuids: List[str] = field(default_factory=list)
    ovf: str = ""
