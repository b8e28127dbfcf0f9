"""
Calls into the remote management system through helper scripts.

The helpers do the actual SDK work; this module decides what parameters they
get, where their output goes and what their exit status means.  A non-zero
exit is always fatal, except for disk deletion which only ever runs while
cleaning up after another failure.
"""

import json
import os
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import (
    AppConfig,
    CREATEVM_SCRIPT,
    DELETEDISKS_SCRIPT,
    PRECHECK_SCRIPT,
    VMCHECK_SCRIPT,
)
from .exceptions import FinalizationError, RemoteValidationError, RHVUploadError
from .helpers import CommandResult, HelperParams, HelperScript
from .logging import logger
from .models import PrecheckResult


def _failure(message: str, result: CommandResult) -> str:
    """Append the helper's own last error line, if it printed one."""
    if result.last_error:
        return f"{message}: {result.last_error}"
    return message


class PrecheckOutput(BaseModel):
    """JSON document printed by the precheck helper."""

    model_config = ConfigDict(extra="ignore")

    rhv_storagedomain_uuid: str
    rhv_cluster_uuid: str
    rhv_cluster_cpu_architecture: str


class RemoteDelegate:
    """Runs the precheck, vmcheck, createvm and deletedisks helpers."""

    def __init__(self, config: AppConfig, workdir: str) -> None:
        self.workdir = workdir
        self.precheck_script = HelperScript(
            config.python, config.script_path(PRECHECK_SCRIPT)
        )
        self.vmcheck_script = HelperScript(
            config.python, config.script_path(VMCHECK_SCRIPT)
        )
        self.createvm_script = HelperScript(
            config.python, config.script_path(CREATEVM_SCRIPT)
        )
        self.deletedisks_script = HelperScript(
            config.python, config.script_path(DELETEDISKS_SCRIPT)
        )

    def _path(self, name: str) -> str:
        return os.path.join(self.workdir, name)

    async def precheck(
        self, params: HelperParams, disk_uuids: Optional[Sequence[str]] = None
    ) -> PrecheckResult:
        """
        Check that the cluster and storage domain exist and are usable.

        Disk UUID overrides are passed along so the helper can verify that
        they are not already in use.

        Raises:
            RemoteValidationError: If the helper fails or its output cannot
                be parsed
        """
        if disk_uuids is not None:
            params = params.with_fields(rhv_disk_uuids=list(disk_uuids))

        output_file = self._path("v2vprecheck.json")
        result = await self.precheck_script.run(
            params, self._path("precheck-params.json"), stdout_path=output_file
        )
        if not result.ok:
            raise RemoteValidationError(
                _failure("failed server prechecks, see earlier errors", result),
                helper=self.precheck_script.name,
            )

        try:
            with open(output_file) as f:
                output = PrecheckOutput.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise RemoteValidationError(
                f"could not parse precheck output: {e}",
                helper=self.precheck_script.name,
            ) from e

        logger.debug(
            "Precheck output parsed",
            storage_domain_uuid=output.rhv_storagedomain_uuid,
            cluster_uuid=output.rhv_cluster_uuid,
            cluster_cpu_architecture=output.rhv_cluster_cpu_architecture,
        )
        return PrecheckResult(
            storage_domain_uuid=output.rhv_storagedomain_uuid,
            cluster_uuid=output.rhv_cluster_uuid,
            cluster_cpu_architecture=output.rhv_cluster_cpu_architecture,
        )

    async def check_vm_name(self, params: HelperParams, output_name: str) -> None:
        """
        Check that no VM called output_name exists yet.

        Raises:
            RemoteValidationError: If the helper fails
        """
        params = params.with_fields(output_name=output_name)
        result = await self.vmcheck_script.run(
            params, self._path("vmcheck-params.json")
        )
        if not result.ok:
            raise RemoteValidationError(
                _failure("failed vmchecks, see earlier errors", result),
                helper=self.vmcheck_script.name,
            )

    async def create_vm(
        self, params: HelperParams, cluster_uuid: str, ovf_file: str
    ) -> None:
        """
        Register the VM described by ovf_file in the cluster.

        Raises:
            FinalizationError: If the helper fails
        """
        params = params.with_fields(rhv_cluster_uuid=cluster_uuid)
        try:
            result = await self.createvm_script.run(
                params, self._path("createvm-params.json"), extra_args=[ovf_file]
            )
        except RHVUploadError as e:
            raise FinalizationError(f"failed to create virtual machine: {e}") from e
        if not result.ok:
            raise FinalizationError(
                _failure("failed to create virtual machine, see earlier errors", result)
            )

    async def delete_disks(self, params: HelperParams, uuids: List[str]) -> bool:
        """
        Delete the given disks.

        Only used on the failure path, so failures are logged and reported
        through the return value rather than raised.
        """
        params = params.with_fields(disk_uuids=list(uuids))
        try:
            result = await self.deletedisks_script.run(
                params, self._path("deletedisks-params.json")
            )
        except (RHVUploadError, OSError) as e:
            logger.warning(f"Could not delete disks: {e}", disk_uuids=uuids)
            return False

        if not result.ok:
            logger.warning(
                f"Deleting disks failed with status {result.returncode}",
                disk_uuids=uuids,
            )
            return False
        logger.info(f"Deleted {len(uuids)} orphaned disk(s)", disk_uuids=uuids)
        return True
