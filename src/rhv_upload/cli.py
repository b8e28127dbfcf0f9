#!/usr/bin/env python3
"""
Command-line interface for disk uploads.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import click
import yaml
from pydantic import ValidationError

from rhv_upload.config import AppConfig, DEFAULT_CONFIG_PATHS, config_loader
from rhv_upload.copier import QemuImgCopier
from rhv_upload.exceptions import ConfigurationError, RHVUploadError
from rhv_upload.logging import logger
from rhv_upload.models import GuestDisk, GuestInfo, TargetFirmware
from rhv_upload.options import (
    OutputAllocation,
    OutputTarget,
    output_options_help,
    parse_output_options,
    split_option,
)
from rhv_upload.output import get_output_module


def setup_logging(verbose: bool, quiet: bool, log_level: str) -> None:
    if quiet:
        logger.set_level("ERROR")
    elif verbose:
        logger.set_level("DEBUG")
    else:
        logger.set_level(log_level)


def output_target_options(func: Callable) -> Callable:
    """Options shared by every command that talks to the engine."""
    decorators = [
        click.option("--conn", "-oc", "output_conn", required=True,
                     help="oVirt engine API URL, e.g. https://engine/ovirt-engine/api"),
        click.option("--password-file", "-op", "output_password", required=True,
                     type=click.Path(exists=True, dir_okay=False),
                     help="File containing the engine password"),
        click.option("--storage", "-os", "output_storage", required=True,
                     help="Target storage domain name"),
        click.option("--alloc", "-oa", "output_alloc",
                     type=click.Choice([a.value for a in OutputAllocation]),
                     default=OutputAllocation.SPARSE.value, show_default=True,
                     help="Disk allocation policy"),
        click.option("--option", "-oo", "output_options", multiple=True,
                     metavar="KEY[=VALUE]",
                     help="Output option, may be repeated (see `rhv-upload options`)"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


def build_output(
    ctx: Any,
    output_conn: str,
    output_password: str,
    output_storage: str,
    output_alloc: str,
    output_options: Tuple[str, ...],
) -> Any:
    try:
        target = OutputTarget(
            output_conn=output_conn,
            output_password=output_password,
            output_storage=output_storage,
            output_alloc=OutputAllocation(output_alloc),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid output settings: {e}") from e

    options = parse_output_options(split_option(o) for o in output_options)
    factory = get_output_module("rhv-upload")
    return factory(ctx.obj["config"], target, options)


def fail(e: Exception) -> None:
    if isinstance(e, RHVUploadError):
        click.echo(f"✗ Error: {e}", err=True)
    else:
        click.echo(f"✗ Unexpected error: {e}", err=True)
    sys.exit(1)


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="Log level (overrides the configuration file)",
)
@click.version_option(package_name="rhv-upload")
@click.pass_context
def cli(
    ctx: Any,
    config: Optional[str],
    verbose: bool,
    quiet: bool,
    log_level: Optional[str],
) -> None:
    """Upload converted guest disks to oVirt/RHV."""
    try:
        app_config = config_loader.load_config(config)
    except ConfigurationError as e:
        fail(e)
    if verbose:
        app_config = app_config.model_copy(update={"verbose": True})

    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["quiet"] = quiet


@cli.command("options")
def show_options() -> None:
    """Describe the output options accepted with --option."""
    click.echo(output_options_help())


@cli.command()
@output_target_options
@click.option(
    "--output",
    "-o",
    "output_format",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Result format",
)
@click.pass_context
def precheck(ctx: Any, output_format: str, **target_args: Any) -> None:
    """Check the local host and the target cluster without uploading."""

    async def run_precheck() -> None:
        async with build_output(ctx, **target_args) as output:
            await output.precheck()
            env = output.environment
            result = output.precheck_result
            data = {
                "nbdkit_version": ".".join(str(v) for v in env.nbdkit_version),
                "nbdkit_selinux": env.nbdkit_selinux,
                "host_selinux": env.host_selinux,
                "storage_domain_uuid": result.storage_domain_uuid,
                "cluster_uuid": result.cluster_uuid,
                "cluster_cpu_architecture": result.cluster_cpu_architecture,
            }

        if output_format == "json":
            click.echo(json.dumps(data, indent=2))
        elif output_format == "yaml":
            click.echo(yaml.dump(data, default_flow_style=False))
        else:
            click.echo("✓ Prechecks passed")
            for key, value in data.items():
                click.echo(f"  {key}: {value}")

    try:
        asyncio.run(run_precheck())
    except Exception as e:
        fail(e)


@cli.command()
@click.argument("vm_name")
@click.argument("disks", nargs=-1, required=True, type=click.Path(exists=True))
@output_target_options
@click.option("--arch", default="x86_64", show_default=True, help="Guest architecture")
@click.option("--memory", type=int, default=1024, show_default=True, help="Guest memory in MiB")
@click.option("--vcpus", type=int, default=1, show_default=True, help="Number of vCPUs")
@click.option(
    "--firmware",
    type=click.Choice([f.value for f in TargetFirmware]),
    default=TargetFirmware.BIOS.value,
    show_default=True,
)
@click.option(
    "--output-format",
    "-of",
    default=None,
    help="Format of the uploaded disks (raw or qcow2, default: same as input)",
)
@click.option("--qemu-img", default="qemu-img", show_default=True, help="qemu-img binary")
@click.pass_context
def upload(
    ctx: Any,
    vm_name: str,
    disks: Tuple[str, ...],
    arch: str,
    memory: int,
    vcpus: int,
    firmware: str,
    output_format: Optional[str],
    qemu_img: str,
    **target_args: Any,
) -> None:
    """Upload DISKS and create the virtual machine VM_NAME."""
    quiet = ctx.obj["quiet"]
    guest = GuestInfo(
        name=vm_name,
        arch=arch,
        memory=memory * 1024 * 1024,
        vcpus=vcpus,
        firmware=TargetFirmware(firmware),
    )
    copier = QemuImgCopier(qemu_img)

    async def run_upload() -> None:
        infos = [await copier.info(path) for path in disks]
        guest_disks: List[GuestDisk] = [
            GuestDisk(
                disk_id=i,
                virtual_size=info.virtual_size,
                target_format=output_format or info.format,
            )
            for i, info in enumerate(infos)
        ]

        async with build_output(ctx, **target_args) as output:
            if guest.firmware not in output.supported_firmware:
                raise ConfigurationError(
                    f"firmware {guest.firmware.value} is not supported by this output"
                )
            await output.precheck()
            targets = await output.prepare_targets(guest, guest_disks)

            for i, (target, info) in enumerate(zip(targets, infos)):
                if not quiet:
                    click.echo(f"Copying disk {i + 1}/{len(targets)}: {info.path}")
                await copier.convert(
                    info.path,
                    target.endpoint,
                    target.format.value,
                    source_format=info.format,
                )
                await output.disk_copied(target, i, len(targets))

            result = await output.create_metadata(guest, targets)

        click.echo(f"✓ Created virtual machine '{vm_name}' ({result.vm_uuid})")
        for target in targets:
            click.echo(f"  {target.disk_name}: {target.disk_uuid}")

    try:
        asyncio.run(run_upload())
    except Exception as e:
        fail(e)


@cli.group()
def config() -> None:
    """Manage configuration settings."""


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display the effective configuration."""
    click.echo(yaml.dump(ctx.obj["config"].model_dump(), default_flow_style=False))


@config.command("init")
@click.option("--config-dir", default="~/.config/rhv-upload", help="Configuration directory")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_dir: str, force: bool) -> None:
    """Write a configuration file with the default settings."""
    config_file = Path(config_dir).expanduser() / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"{config_file} already exists (use --force to overwrite)", err=True)
        sys.exit(1)

    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        yaml.dump(AppConfig().model_dump(), f, default_flow_style=False)

    click.echo(f"Configuration initialized at {config_file}")


@config.command("path")
def config_path() -> None:
    """Show the configuration file search path."""
    click.echo("Configuration search paths (in order):")
    for i, path in enumerate(DEFAULT_CONFIG_PATHS, 1):
        exists = "✓" if os.path.exists(path) else "✗"
        click.echo(f"  {i}. {exists} {path}")

    for path in DEFAULT_CONFIG_PATHS:
        if os.path.exists(path):
            click.echo(f"\nCurrently using: {path}")
            return

    click.echo("\nNo configuration file found. Run 'rhv-upload config init' to create one.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
