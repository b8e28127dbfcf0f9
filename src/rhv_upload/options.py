"""
Output option parsing.

Turns the ``-oo key=value`` pairs given on the command line into an
immutable, validated :class:`UploadOptions` record.
"""

import re
from enum import Enum
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from .exceptions import ConfigurationError


NIL_UUID = "00000000-0000-0000-0000-000000000000"

UUID_PATTERN = re.compile(
    r"^[a-fA-F0-9]{8}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{4}-[a-fA-F0-9]{12}$"
)


def is_nonnil_uuid(value: str) -> bool:
    """True if value is an 8-4-4-4-12 hex UUID other than the nil UUID."""
    if value == NIL_UUID:
        return False
    return UUID_PATTERN.match(value) is not None


class OutputAllocation(Enum):
    """Allocation policy of the uploaded disks."""

    SPARSE = "sparse"
    PREALLOCATED = "preallocated"


class UploadOptions(BaseModel):
    """Validated ``-oo`` options for the rhv-upload output."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cafile: Optional[str] = None
    cluster: Optional[str] = None
    direct: bool = False
    verifypeer: bool = False
    disk_uuids: Optional[Tuple[str, ...]] = None

    @field_validator("disk_uuids")
    @classmethod
    def validate_disk_uuids(
        cls, v: Optional[Tuple[str, ...]]
    ) -> Optional[Tuple[str, ...]]:
        if v is not None:
            for uuid in v:
                if not is_nonnil_uuid(uuid):
                    raise ValueError(f"invalid disk UUID: {uuid}")
        return v


class OutputTarget(BaseModel):
    """Where the disks go: the ``-oc``, ``-op``, ``-os`` and ``-oa`` settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    output_conn: str
    output_password: str
    output_storage: str
    output_alloc: OutputAllocation = OutputAllocation.SPARSE

    @field_validator("output_conn", "output_password", "output_storage")
    @classmethod
    def validate_non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must be a non-empty string")
        return v


def _parse_bool(key: str, value: str) -> bool:
    if value in ("", "true"):
        return True
    if value == "false":
        return False
    raise ConfigurationError(
        f"-o rhv-upload: -oo {key}: invalid boolean value ‘{value}’ "
        "(expected ‘true’ or ‘false’)"
    )


def parse_output_options(options: Iterable[Tuple[str, str]]) -> UploadOptions:
    """
    Parse ``(key, value)`` output option pairs.

    Args:
        options: Pairs in command line order; an option given without
            ``=value`` has an empty string value.

    Returns:
        UploadOptions: The validated options. ``disk_uuids`` keeps the
        order in which the UUIDs were given.

    Raises:
        ConfigurationError: On duplicate single-valued keys, malformed
            booleans, invalid or nil disk UUIDs, or unknown keys.
    """
    cafile: Optional[str] = None
    cluster: Optional[str] = None
    direct = False
    verifypeer = False
    disk_uuids: Optional[list] = None

    for key, value in options:
        if key == "rhv-cafile":
            if cafile is not None:
                raise ConfigurationError(
                    "-o rhv-upload: -oo rhv-cafile set more than once"
                )
            cafile = value
        elif key == "rhv-cluster":
            if cluster is not None:
                raise ConfigurationError(
                    "-o rhv-upload: -oo rhv-cluster set more than once"
                )
            cluster = value
        elif key == "rhv-direct":
            direct = _parse_bool(key, value)
        elif key == "rhv-verifypeer":
            verifypeer = _parse_bool(key, value)
        elif key == "rhv-disk-uuid":
            if not is_nonnil_uuid(value):
                raise ConfigurationError(
                    "-o rhv-upload: invalid UUID for -oo rhv-disk-uuid"
                )
            if disk_uuids is None:
                disk_uuids = []
            disk_uuids.append(value)
        else:
            raise ConfigurationError(
                f"-o rhv-upload: unknown output option ‘-oo {key}’"
            )

    return UploadOptions(
        cafile=cafile,
        cluster=cluster,
        direct=direct,
        verifypeer=verifypeer,
        disk_uuids=tuple(disk_uuids) if disk_uuids is not None else None,
    )


def split_option(raw: str) -> Tuple[str, str]:
    """Split ``key=value`` (or a bare ``key``) into a pair."""
    key, _, value = raw.partition("=")
    return key, value


def output_options_help() -> str:
    """Help text for the options accepted by the rhv-upload output."""
    return """Output options (-oo) which can be used with -o rhv-upload:

  -oo rhv-cafile=CA.PEM           Set ‘ca.pem’ certificate bundle filename.
  -oo rhv-cluster=CLUSTERNAME     Set RHV cluster name.
  -oo rhv-direct[=true|false]     Use direct transfer mode (default: false).
  -oo rhv-verifypeer[=true|false] Verify server identity (default: false).

You can override the UUIDs of the disks, instead of using autogenerated UUIDs
after their uploads (if you do, you must supply one for each disk):

  -oo rhv-disk-uuid=UUID          Disk UUID
"""
