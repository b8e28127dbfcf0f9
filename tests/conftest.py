"""Test configuration and fixtures for rhv-upload."""

import json
import os
import sys
import textwrap
from io import StringIO
from pathlib import Path
from typing import List

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rhv_upload.config import (  # noqa: E402
    AppConfig,
    CREATEVM_SCRIPT,
    DELETEDISKS_SCRIPT,
    PLUGIN_SCRIPT,
    PRECHECK_SCRIPT,
    VMCHECK_SCRIPT,
)
from rhv_upload.logging import logger  # noqa: E402
from rhv_upload.models import ValidatedEnvironment  # noqa: E402
from rhv_upload.options import OutputTarget  # noqa: E402


CLUSTER_UUID = "5e1c3d7a-8f3b-4c3e-9a1d-2b7f6e4c8d90"
STORAGE_DOMAIN_UUID = "0d6a4b1e-3c2f-4e5a-8b7c-9d0e1f2a3b4c"

FAKE_ENVIRONMENT = ValidatedEnvironment(
    nbdkit_version=(1, 24, 0),
    nbdkit_selinux=True,
    host_selinux=False,
    python=sys.executable,
)

HELPER_TEMPLATE = """\
import json, os, sys
script = os.path.basename(sys.argv[0])
with open(sys.argv[1]) as f:
    params = json.load(f)
with open(os.path.join(os.path.dirname(sys.argv[0]), "calls.jsonl"), "a") as f:
    f.write(json.dumps({{"script": script, "params": params, "args": sys.argv[2:]}}) + "\\n")
{body}
sys.exit({exit_code})
"""


class HelperScripts:
    """Writes stand-in helper scripts and reads back how they were called."""

    CLUSTER_UUID = CLUSTER_UUID
    STORAGE_DOMAIN_UUID = STORAGE_DOMAIN_UUID

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def write(self, name: str, exit_code: int = 0, body: str = "") -> Path:
        path = self.directory / name
        path.write_text(
            HELPER_TEMPLATE.format(body=textwrap.dedent(body), exit_code=exit_code)
        )
        return path

    def write_precheck(
        self, arch: str = "x86_64", exit_code: int = 0, output: dict = None
    ) -> Path:
        if output is None:
            output = {
                "rhv_storagedomain_uuid": STORAGE_DOMAIN_UUID,
                "rhv_cluster_uuid": CLUSTER_UUID,
                "rhv_cluster_cpu_architecture": arch,
            }
        return self.write(
            PRECHECK_SCRIPT,
            exit_code=exit_code,
            body=f"print(json.dumps({output!r}))",
        )

    def write_defaults(self, arch: str = "x86_64") -> None:
        self.write_precheck(arch=arch)
        self.write(VMCHECK_SCRIPT)
        self.write(PLUGIN_SCRIPT)
        self.write(CREATEVM_SCRIPT)
        self.write(DELETEDISKS_SCRIPT)

    def calls(self, script: str = None) -> List[dict]:
        log = self.directory / "calls.jsonl"
        if not log.exists():
            return []
        entries = [json.loads(line) for line in log.read_text().splitlines()]
        if script is not None:
            entries = [e for e in entries if e["script"] == script]
        return entries


class FakeBackend:
    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path
        self.stopped = False

    async def stop(self, timeout: float = 10.0) -> None:
        self.stopped = True


class FakeLauncher:
    """Stands in for NbdkitLauncher; creates the socket path as a plain file."""

    def __init__(self) -> None:
        self.started = []

    async def start(self, cmd, socket_path: str, pidfile: str) -> FakeBackend:
        Path(socket_path).touch()
        backend = FakeBackend(socket_path)
        self.started.append((cmd, backend))
        return backend


@pytest.fixture
def helper_scripts(tmp_path):
    return HelperScripts(tmp_path / "scripts")


@pytest.fixture
def app_config(tmp_path, helper_scripts):
    workroot = tmp_path / "work"
    workroot.mkdir()
    return AppConfig(
        python=sys.executable,
        scripts_dir=str(helper_scripts.directory),
        finalization_timeout=0.2,
        poll_interval=0.01,
        tmpdir=str(workroot),
    )


@pytest.fixture
def output_target(tmp_path):
    password_file = tmp_path / "password"
    password_file.write_text("secret\n")
    os.chmod(password_file, 0o600)
    return OutputTarget(
        output_conn="https://engine.example.com/ovirt-engine/api",
        output_password=str(password_file),
        output_storage="data",
    )


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def fake_environment():
    return FAKE_ENVIRONMENT


@pytest.fixture
def log_stream(monkeypatch):
    """Capture the package logger's JSON records at the default INFO level."""
    stream = StringIO()
    handler = logger.logger.handlers[0]
    monkeypatch.setattr(handler, "stream", stream)
    level = logger.logger.level
    logger.set_level("INFO")
    yield stream
    logger.logger.setLevel(level)