"""
Output modules.

An output module is anything that offers the :class:`OutputModule`
capabilities; modules are looked up by name in a registry.  This package
provides one, ``rhv-upload``, which streams disks into oVirt/RHV storage
through one nbdkit instance per disk and then registers the VM.

Typical use:

    factory = get_output_module("rhv-upload")
    async with factory(config, target, options) as output:
        await output.precheck()
        targets = await output.prepare_targets(guest, disks)
        for i, t in enumerate(targets):
            ...  # copy the disk into t.endpoint
            await output.disk_copied(t, i, len(targets))
        result = await output.create_metadata(guest, targets)
"""

from __future__ import annotations

import uuid
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .completion import wait_for_disk_id
from .config import AppConfig, PLUGIN_SCRIPT
from .exceptions import BackendError, ConfigurationError, FinalizationError
from .helpers import HelperParams, run_command
from .logging import logger
from .metadata import MetadataBuilder, OvfBuilder
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
from .nbdkit import NbdkitCommand, NbdkitLauncher
from .options import OutputAllocation, OutputTarget, UploadOptions
from .prechecks import PreconditionChecker, host_selinux_enforcing
from .remote import RemoteDelegate
from .session import TransferSession


class OutputModule(Protocol):
    """Capabilities every output module provides."""

    async def precheck(self) -> None: ...

    def as_options(self) -> str: ...

    @property
    def supported_firmware(self) -> List[TargetFirmware]: ...

    def transfer_format(self, disk: GuestDisk) -> str: ...

    async def prepare_targets(
        self, guest: GuestInfo, disks: Sequence[GuestDisk]
    ) -> List[DiskTransferTarget]: ...

    async def disk_copied(
        self, target: DiskTransferTarget, index: int, nr_disks: int
    ) -> None: ...

    async def create_metadata(
        self, guest: GuestInfo, targets: Sequence[DiskTransferTarget]
    ) -> FinalizationResult: ...


OutputFactory = Callable[..., OutputModule]

_output_modules: Dict[str, OutputFactory] = {}


def register_output_module(name: str, factory: OutputFactory) -> None:
    _output_modules[name] = factory


def get_output_module(name: str) -> OutputFactory:
    try:
        return _output_modules[name]
    except KeyError:
        raise ConfigurationError(
            f"unknown output module ‘{name}’ "
            f"(available: {', '.join(sorted(_output_modules))})"
        ) from None


def output_module_names() -> List[str]:
    return sorted(_output_modules)


class RHVUploadOutput:
    """Upload disks to oVirt/RHV and register the VM."""

    # rhev-apt.exe is installed in Windows guests when available
    install_rhev_apt = True
    write_out_of_order = True

    def __init__(
        self,
        config: AppConfig,
        target: OutputTarget,
        options: UploadOptions,
        launcher: Optional[NbdkitLauncher] = None,
        metadata_builder: Optional[MetadataBuilder] = None,
        host_selinux: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.target = target
        self.options = options
        self.launcher = launcher or NbdkitLauncher(config.pidfile_timeout)
        self.metadata_builder = metadata_builder or OvfBuilder()
        self.host_selinux = (
            host_selinux if host_selinux is not None else host_selinux_enforcing()
        )

        self.session = TransferSession(
            rollback_func=self._delete_disks, tmpdir=config.tmpdir
        )
        self.delegate: Optional[RemoteDelegate] = None
        self.environment: Optional[ValidatedEnvironment] = None
        self.precheck_result: Optional[PrecheckResult] = None

        self.params = HelperParams(
            verbose=config.verbose or logger.is_debug(),
            output_conn=target.output_conn,
            output_password=target.output_password,
            output_storage=target.output_storage,
            output_sparse=target.output_alloc is OutputAllocation.SPARSE,
            rhv_cafile=options.cafile,
            rhv_cluster=options.cluster or "Default",
            rhv_direct=options.direct,
            insecure=not options.verifypeer,
        )

        cmd = (
            NbdkitCommand(nbdkit=config.nbdkit)
            .with_plugin(config.nbdkit_python_plugin)
            .with_verbose(self.params.verbose)
            .with_arg("script", config.script_path(PLUGIN_SCRIPT))
            .with_threads(config.nbdkit_threads)
        )
        if self.host_selinux:
            # Label the socket so qemu can open it
            cmd = cmd.with_selinux_label(config.selinux_socket_label)
        self.nbdkit_cmd = cmd

    async def __aenter__(self) -> RHVUploadOutput:
        workdir = self.session.open()
        self.delegate = RemoteDelegate(self.config, workdir)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.session.__aexit__(exc_type, exc_val, exc_tb)

    def _require_delegate(self) -> RemoteDelegate:
        if self.delegate is None:
            raise RuntimeError("output module used outside of its context")
        return self.delegate

    async def _delete_disks(self, uuids: List[str]) -> None:
        await self._require_delegate().delete_disks(self.params, uuids)

    async def precheck(self) -> None:
        """Check the local host, then the target cluster and storage domain."""
        checker = PreconditionChecker(
            self.config, self.target.output_alloc, host_selinux=self.host_selinux
        )
        self.environment = await checker.check()
        self.precheck_result = await self._require_delegate().precheck(
            self.params, self.options.disk_uuids
        )
        logger.info(
            f"Server prechecks passed for cluster {self.params.rhv_cluster}",
            cluster=self.params.rhv_cluster,
            cluster_uuid=self.precheck_result.cluster_uuid,
            storage_domain_uuid=self.precheck_result.storage_domain_uuid,
        )

    def as_options(self) -> str:
        alloc = (
            " -oa preallocated"
            if self.target.output_alloc is OutputAllocation.PREALLOCATED
            else ""
        )
        return (
            f"-o rhv-upload{alloc} -oc {self.target.output_conn} "
            f"-op {self.target.output_password} -os {self.target.output_storage}"
        )

    @property
    def supported_firmware(self) -> List[TargetFirmware]:
        return [TargetFirmware.BIOS, TargetFirmware.UEFI]

    def transfer_format(self, disk: GuestDisk) -> str:
        return "raw"

    async def prepare_targets(
        self, guest: GuestInfo, disks: Sequence[GuestDisk]
    ) -> List[DiskTransferTarget]:
        """
        Start one nbdkit per disk and return where each disk must be written.

        Raises:
            ConfigurationError: On an architecture mismatch with the cluster,
                a wrong number of disk UUID overrides, or an unsupported
                output format
            RemoteValidationError: If a VM with the guest's name exists
            BackendError: If an nbdkit instance fails to start
        """
        if self.precheck_result is None:
            raise RuntimeError("precheck() must run before prepare_targets()")
        delegate = self._require_delegate()

        arch = self.precheck_result.cluster_cpu_architecture
        if arch != guest.arch:
            raise ConfigurationError(
                f"the cluster ‘{self.params.rhv_cluster}’ does not support the "
                f"architecture {guest.arch} but {arch}"
            )

        overrides = self.options.disk_uuids
        if overrides is not None and len(overrides) != len(disks):
            raise ConfigurationError(
                "the number of ‘-oo rhv-disk-uuid’ parameters passed on the "
                "command line has to match the number of guest disk images "
                f"(for this guest: {len(disks)})"
            )

        # Needs the guest name, so it cannot run during precheck()
        await delegate.check_vm_name(self.params, guest.name)

        self.session.arm_rollback()

        targets = []
        for i, disk in enumerate(disks):
            uuid_override = overrides[i] if overrides is not None else None
            targets.append(await self._prepare_disk(guest.name, disk, uuid_override))
        return targets

    async def _prepare_disk(
        self, output_name: str, disk: GuestDisk, uuid_override: Optional[str]
    ) -> DiskTransferTarget:
        try:
            disk_format = DiskFormat(disk.target_format)
        except ValueError:
            raise ConfigurationError(
                f"rhv-upload: -of {disk.target_format}: Only output format "
                "‘raw’ or ‘qcow2’ is supported.  If the input is in a different "
                "format then force one of these output formats by adding "
                "either ‘-of raw’ or ‘-of qcow2’ on the command line."
            ) from None

        disk_id = disk.disk_id
        target = DiskTransferTarget(
            disk_id=disk_id,
            disk_name=f"{output_name}-{disk_id:03d}",
            format=disk_format,
            virtual_size=disk.virtual_size,
            # Written by the plugin when the transfer is finalized
            diskid_file=self.session.path(f"diskid.{disk_id}"),
            uuid_override=uuid_override,
        )

        params = self.params.with_fields(
            output_name=output_name,
            disk_name=target.disk_name,
            disk_format=disk_format.value,
            disk_size=disk.virtual_size,
            diskid_file=target.diskid_file,
            rhv_disk_uuid=uuid_override,
        )
        params_file = params.write(self.session.path(f"params{disk_id}.json"))

        socket_path = self.session.path(f"nbdkit{disk_id}.sock")
        try:
            backend = await self.launcher.start(
                self.nbdkit_cmd.with_arg("params", params_file),
                socket_path,
                self.session.path(f"nbdkit{disk_id}.pid"),
            )
        except BackendError as e:
            raise BackendError(e.reason, disk_id=disk_id) from e
        self.session.add_backend(backend)

        if self.host_selinux:
            # Unix domain sockets have a file label as well as the
            # socket label set by --selinux-label
            await self._relabel_socket(socket_path)

        target.socket_path = socket_path
        target.endpoint = EndpointDescriptor(path=socket_path, export="/")
        self.session.add_target(target)

        logger.info(
            f"Disk {target.disk_name} ready for transfer",
            disk_id=disk_id,
            disk_name=target.disk_name,
            disk_format=disk_format.value,
            disk_size=disk.virtual_size,
            socket=socket_path,
        )
        return target

    async def _relabel_socket(self, socket_path: str) -> None:
        try:
            result = await run_command(
                ["chcon", self.config.selinux_file_label, socket_path]
            )
        except OSError as e:
            logger.warning(f"chcon could not be run: {e}", socket=socket_path)
            return
        if not result.ok:
            logger.warning(
                f"chcon failed with status {result.returncode}", socket=socket_path
            )

    async def disk_copied(
        self, target: DiskTransferTarget, index: int, nr_disks: int
    ) -> None:
        """
        Wait for the plugin to finalize a disk and record its UUID.

        Raises:
            TransferTimeoutError: If the disk does not finish in time
        """
        if target.disk_uuid is not None:
            raise RuntimeError(
                f"disk {target.disk_name} was already recorded as {target.disk_uuid}"
            )
        disk_uuid = await wait_for_disk_id(
            target.diskid_file,
            index,
            nr_disks,
            timeout=self.config.finalization_timeout,
            poll_interval=self.config.poll_interval,
        )
        target.disk_uuid = disk_uuid
        self.session.record_disk_uuid(disk_uuid)
        logger.info(
            f"Disk {index + 1}/{nr_disks} uploaded",
            disk_name=target.disk_name,
            disk_uuid=disk_uuid,
        )

    def _image_uuids(self, targets: Sequence[DiskTransferTarget]) -> List[str]:
        overrides = self.options.disk_uuids
        uploaded = self.session.disk_uuids

        if overrides is not None:
            if uploaded and list(overrides) != uploaded:
                raise FinalizationError(
                    "uploaded disk UUIDs do not match the ‘-oo rhv-disk-uuid’ "
                    f"parameters: {uploaded} != {list(overrides)}"
                )
            return list(overrides)
        if uploaded:
            return list(uploaded)
        if targets:
            raise ConfigurationError(
                "there must be ‘-oo rhv-disk-uuid’ parameters passed on the "
                "command line to specify the UUIDs of guest disk images "
                f"(for this guest: {len(targets)})"
            )
        return []

    async def create_metadata(
        self, guest: GuestInfo, targets: Sequence[DiskTransferTarget]
    ) -> FinalizationResult:
        """
        Build the OVF, create the VM and disarm rollback.

        Raises:
            FinalizationError: If the disk UUIDs do not line up with the
                targets or the createvm helper fails
        """
        if self.precheck_result is None:
            raise RuntimeError("precheck() must run before create_metadata()")

        image_uuids = self._image_uuids(targets)
        if len(image_uuids) != len(targets):
            raise FinalizationError(
                f"expected {len(targets)} disk UUIDs, got {len(image_uuids)}"
            )

        # The volume and VM UUIDs are made up
        vol_uuids = [str(uuid.uuid4()) for _ in targets]
        vm_uuid = str(uuid.uuid4())

        ovf = self.metadata_builder.build(
            guest,
            targets,
            self.precheck_result.storage_domain_uuid,
            image_uuids,
            vol_uuids,
            vm_uuid,
            sparse=self.target.output_alloc is OutputAllocation.SPARSE,
        )
        ovf_file = self.session.path("vm.ovf")
        with open(ovf_file, "w") as f:
            f.write(ovf)

        await self._require_delegate().create_vm(
            self.params, self.precheck_result.cluster_uuid, ovf_file
        )

        self.session.disarm_rollback()
        logger.info(
            f"Virtual machine {guest.name} created",
            vm_name=guest.name,
            vm_uuid=vm_uuid,
            disk_uuids=image_uuids,
        )
        return FinalizationResult(vm_uuid=vm_uuid, vol_uuids=vol_uuids, ovf=ovf)


register_output_module("rhv-upload", RHVUploadOutput)
