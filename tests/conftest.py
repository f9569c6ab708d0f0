"""Shared test doubles for the kernel build system and the remote host."""

import shutil
import subprocess
from pathlib import Path

import pytest

from kernel_deploy.errors import ExternalToolFailure
from kernel_deploy.kbuild.kconfig import read_local_versions
from kernel_deploy.types import CommandResult

DEFAULT_CONFIG_TEXT = 'CONFIG_ARM64=y\nCONFIG_LOCALVERSION="-v8"\n# CONFIG_LOCALVERSION_AUTO is not set\n'
BASE_VERSION = "6.6.31"


class FakeKbuild:
    """Kernel build system double that writes realistic outputs."""

    def __init__(
        self,
        source_dir: Path,
        arch: str = "arm64",
        defconfig: str = "bcm2711_defconfig",
        failing_modules: tuple[str, ...] = (),
    ) -> None:
        self.source_dir = source_dir
        self.arch = arch
        self.defconfig = defconfig
        self.failing_modules = failing_modules
        self.calls: list[str] = []
        source_dir.mkdir(parents=True, exist_ok=True)

    @property
    def config_path(self) -> Path:
        return self.source_dir / ".config"

    @property
    def boot_dir(self) -> Path:
        return self.source_dir / "arch" / self.arch / "boot"

    def clean(self) -> None:
        self.calls.append("clean")
        self.config_path.unlink(missing_ok=True)

    def seed_default_config(self) -> None:
        self.calls.append("seed-default-config")
        self.config_path.write_text(DEFAULT_CONFIG_TEXT)

    def reconcile_config(self) -> None:
        self.calls.append("reconcile-config")

    def build_artifacts(self) -> None:
        self.calls.append("build-artifacts")
        dts = self.boot_dir / "dts"
        (dts / "broadcom").mkdir(parents=True, exist_ok=True)
        (dts / "overlays").mkdir(parents=True, exist_ok=True)
        (self.boot_dir / "Image").write_bytes(b"\x00IMAGE" * 64)
        (dts / "broadcom" / "bcm2711-rpi-4-b.dtb").write_bytes(b"dtb-4b")
        (dts / "broadcom" / "bcm2711-rpi-400.dtb").write_bytes(b"dtb-400")
        (dts / "overlays" / "vc4-kms-v3d.dtbo").write_bytes(b"dtbo")
        (dts / "overlays" / "README").write_text("overlays readme\n")
        (dts / "overlays" / "vc4-kms-v3d-overlay.dts").write_text("/dts-v1/;\n")

    def kernel_release(self) -> str:
        self.calls.append("query-kernel-release")
        return self._release()

    def _release(self) -> str:
        versions = read_local_versions(self.config_path.read_text())
        suffix = versions[-1] if versions else ""
        return f"{BASE_VERSION}{suffix}+"

    def install_modules(self, prefix: Path) -> None:
        self.calls.append("install-modules-to-prefix")
        release_dir = prefix / "lib" / "modules" / self._release()
        drivers = release_dir / "kernel" / "drivers"
        drivers.mkdir(parents=True, exist_ok=True)
        (drivers / "i2c-dev.ko").write_bytes(b"in-tree module")
        (release_dir / "modules.order").write_text("kernel/drivers/i2c-dev.ko\n")

    def build_external_module(self, module_dir: Path) -> None:
        self.calls.append(f"build-external-module:{module_dir.name}")
        if module_dir.name in self.failing_modules:
            raise ExternalToolFailure(
                f"build-external-module failed for {module_dir.name}",
                exit_code=2,
                code="kbuild_failed",
            )
        (module_dir / f"{module_dir.name}.ko").write_bytes(
            f"module {module_dir.name}".encode()
        )


class LocalSession:
    """Remote session double running commands on the local filesystem.

    Remote paths are real paths under a temporary directory. depmod is
    recorded instead of executed. ``fail_on`` names a run of command words
    (such as ``"tar xzf"``) whose commands return exit status 1; it never
    matches inside a path.
    """

    def __init__(self, fail_on: str | None = None, upload_error: bool = False) -> None:
        self.fail_on = fail_on
        self.upload_error = upload_error
        self.commands: list[tuple[str, bool]] = []
        self.uploads: list[tuple[Path, str]] = []
        self.depmod_calls: list[str] = []
        self.closed = False

    def upload(self, local_path: Path, remote_path: str) -> None:
        if self.upload_error:
            raise ExternalToolFailure("scp failed", code="transfer_failed")
        self.uploads.append((local_path, remote_path))
        Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, remote_path)

    def run(self, command: str, as_root: bool = False) -> CommandResult:
        self.commands.append((command, as_root))
        if self.fail_on and self._matches(command):
            return CommandResult(exit_code=1, output="simulated failure\n")
        if command.startswith("depmod"):
            self.depmod_calls.append(command.split()[-1])
            return CommandResult(exit_code=0)
        result = subprocess.run(
            ["sh", "-c", command],
            capture_output=True,
            text=True,
            check=False,
        )
        return CommandResult(
            exit_code=result.returncode, output=result.stdout + result.stderr
        )

    def _matches(self, command: str) -> bool:
        words = command.split()
        wanted = self.fail_on.split()
        return any(
            words[i : i + len(wanted)] == wanted
            for i in range(len(words) - len(wanted) + 1)
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_kbuild(tmp_path: Path) -> FakeKbuild:
    """Kernel build double rooted in a temporary source tree."""
    return FakeKbuild(tmp_path / "linux")


@pytest.fixture
def local_session() -> LocalSession:
    """Remote session double."""
    return LocalSession()


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    """Directory standing in for the remote host's filesystem."""
    root = tmp_path / "remote"
    (root / "tmp").mkdir(parents=True)
    (root / "boot" / "firmware").mkdir(parents=True)
    (root / "lib" / "modules").mkdir(parents=True)
    return root
