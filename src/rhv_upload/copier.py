"""
qemu-img driver used by the command line tool.

The upload core never moves bytes itself; the CLI uses ``qemu-img convert``
to write each local image into the NBD endpoint handed out for it.
"""

import json
from dataclasses import dataclass
from typing import Optional

from .exceptions import CopyError
from .helpers import run_command
from .logging import logger
from .models import EndpointDescriptor


@dataclass(frozen=True)
class ImageInfo:
    path: str
    format: str
    virtual_size: int


class QemuImgCopier:
    """Inspects local images and copies them into NBD endpoints."""

    def __init__(self, qemu_img: str = "qemu-img") -> None:
        self.qemu_img = qemu_img

    async def info(self, path: str) -> ImageInfo:
        """Return the format and virtual size of a local image."""
        try:
            result = await run_command([self.qemu_img, "info", "--output=json", path])
        except OSError as e:
            raise CopyError(str(e), path) from e
        if not result.ok:
            raise CopyError(f"info failed: {result.stderr.strip()}", path)

        try:
            data = json.loads(result.stdout)
            return ImageInfo(
                path=path,
                format=data["format"],
                virtual_size=int(data["virtual-size"]),
            )
        except (ValueError, KeyError) as e:
            raise CopyError(f"unexpected info output: {e}", path) from e

    async def convert(
        self,
        path: str,
        endpoint: EndpointDescriptor,
        output_format: str,
        source_format: Optional[str] = None,
    ) -> None:
        """Write the image at path into the endpoint."""
        argv = [self.qemu_img, "convert", "-n"]
        if source_format:
            argv += ["-f", source_format]
        argv += ["-O", output_format, path, endpoint.to_uri()]

        logger.info(f"Copying {path}", path=path, socket=endpoint.path)
        try:
            result = await run_command(argv)
        except OSError as e:
            raise CopyError(str(e), path) from e
        if not result.ok:
            raise CopyError(
                f"convert failed with status {result.returncode}: "
                f"{result.stderr.strip()}",
                path,
            )
