"""Kernel build system runner.

This module handles:
- Composing kernel `make` commands for each build operation
- Executing make with subprocess
- Capturing stdout/stderr to per-operation log files
- Querying the computed kernel release string

The kernel build system itself is an external collaborator; this module
only fixes the argument contract used to drive it.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from kernel_deploy.errors import ExternalToolFailure

logger = logging.getLogger(__name__)


class KbuildOperation(str, Enum):
    """Operations offered by the kernel build system."""

    CLEAN = "clean"
    SEED_DEFAULT_CONFIG = "seed-default-config"
    RECONCILE_CONFIG = "reconcile-config"
    BUILD_ARTIFACTS = "build-artifacts"
    INSTALL_MODULES = "install-modules-to-prefix"
    QUERY_KERNEL_RELEASE = "query-kernel-release"
    BUILD_EXTERNAL_MODULE = "build-external-module"


# Make targets for operations with a fixed target list
OPERATION_TARGETS: dict[KbuildOperation, list[str]] = {
    KbuildOperation.CLEAN: ["mrproper"],
    KbuildOperation.RECONCILE_CONFIG: ["olddefconfig"],
    KbuildOperation.BUILD_ARTIFACTS: ["Image", "modules", "dtbs"],
    KbuildOperation.INSTALL_MODULES: ["modules_install"],
    KbuildOperation.QUERY_KERNEL_RELEASE: ["-s", "kernelrelease"],
    KbuildOperation.BUILD_EXTERNAL_MODULE: ["modules"],
}


def default_jobs() -> int:
    """Return the default parallel job count (leave one CPU free)."""
    return max((os.cpu_count() or 2) - 1, 1)


def compose_make_command(
    operation: KbuildOperation,
    arch: str,
    cross_compile: str,
    defconfig: str | None = None,
    jobs: int | None = None,
    install_mod_path: Path | None = None,
    module_dir: Path | None = None,
) -> list[str]:
    """Compose the `make` command for a build operation.

    Args:
        operation: Build operation to run.
        arch: Kernel ARCH value.
        cross_compile: Toolchain prefix (CROSS_COMPILE).
        defconfig: Default profile, required for SEED_DEFAULT_CONFIG.
        jobs: Parallel jobs for BUILD_ARTIFACTS.
        install_mod_path: Prefix for INSTALL_MODULES.
        module_dir: Module source for BUILD_EXTERNAL_MODULE.

    Returns:
        Command as list of strings suitable for subprocess.

    Raises:
        ValueError: If a parameter required by the operation is missing.
    """
    cmd = ["make"]

    if operation is KbuildOperation.BUILD_EXTERNAL_MODULE:
        if module_dir is None:
            raise ValueError("module_dir is required to build an external module")
        # Build against the kernel tree in the working directory
        cmd.extend(["-C", ".", f"M={module_dir}"])

    cmd.append(f"ARCH={arch}")
    cmd.append(f"CROSS_COMPILE={cross_compile}")

    if operation is KbuildOperation.SEED_DEFAULT_CONFIG:
        if not defconfig:
            raise ValueError("defconfig is required to seed the default config")
        cmd.append(defconfig)
        return cmd

    if operation is KbuildOperation.INSTALL_MODULES:
        if install_mod_path is None:
            raise ValueError("install_mod_path is required to install modules")
        cmd.append(f"INSTALL_MOD_PATH={install_mod_path}")

    cmd.extend(OPERATION_TARGETS[operation])

    if operation is KbuildOperation.BUILD_ARTIFACTS:
        cmd.extend(["-j", str(jobs or default_jobs())])

    return cmd


class Kbuild:
    """Drives the kernel build system in a source tree.

    Every operation blocks until make exits. Output is written to
    ``<log_dir>/<operation>.log``; a non-zero exit raises
    ExternalToolFailure naming that log.
    """

    def __init__(
        self,
        source_dir: Path,
        arch: str,
        cross_compile: str,
        defconfig: str,
        log_dir: Path,
        jobs: int | None = None,
        timeout: int | None = None,
    ) -> None:
        self.source_dir = source_dir
        self.arch = arch
        self.cross_compile = cross_compile
        self.defconfig = defconfig
        self.log_dir = log_dir
        self.jobs = jobs
        self.timeout = timeout

    @property
    def config_path(self) -> Path:
        """Active kernel configuration file."""
        return self.source_dir / ".config"

    def _command(
        self,
        operation: KbuildOperation,
        defconfig: str | None = None,
        jobs: int | None = None,
        install_mod_path: Path | None = None,
        module_dir: Path | None = None,
    ) -> list[str]:
        return compose_make_command(
            operation,
            arch=self.arch,
            cross_compile=self.cross_compile,
            defconfig=defconfig,
            jobs=jobs,
            install_mod_path=install_mod_path,
            module_dir=module_dir,
        )

    def _run(
        self,
        operation: KbuildOperation,
        cmd: list[str],
        log_name: str | None = None,
    ) -> Path:
        """Run a make command with output captured to a log file.

        Returns:
            Path to the log file.

        Raises:
            ExternalToolFailure: If make fails, times out or cannot start.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{log_name or operation.value}.log"
        cmd_str = shlex.join(cmd)
        logger.info("Executing: %s", cmd_str)
        logger.debug("Working directory: %s", self.source_dir)

        started_at = datetime.now(timezone.utc)
        try:
            with log_path.open("w") as log_file:
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {started_at.isoformat()}\n")
                log_file.write(f"# CWD: {self.source_dir}\n")
                log_file.write("# " + "=" * 70 + "\n\n")
                log_file.flush()

                result = subprocess.run(
                    cmd,
                    cwd=self.source_dir,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    timeout=self.timeout,
                    check=False,
                )
        except subprocess.TimeoutExpired as e:
            with log_path.open("a") as log_file:
                log_file.write(f"\n# TIMEOUT after {self.timeout} seconds\n")
            raise ExternalToolFailure(
                f"{operation.value} timed out after {self.timeout} seconds. "
                f"See log: {log_path}",
                exit_code=-1,
                command=cmd_str,
                log_path=log_path,
                code="kbuild_timeout",
            ) from e
        except OSError as e:
            raise ExternalToolFailure(
                f"Failed to execute {cmd_str}: {e}",
                command=cmd_str,
                log_path=log_path,
                code="execution_error",
            ) from e

        finished_at = datetime.now(timezone.utc)
        with log_path.open("a") as log_file:
            log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
            log_file.write(f"# Exit code: {result.returncode}\n")
            duration = (finished_at - started_at).total_seconds()
            log_file.write(f"# Duration: {duration:.1f}s\n")

        if result.returncode != 0:
            message = (
                f"{operation.value} failed with exit code {result.returncode}. "
                f"See log: {log_path}"
            )
            logger.error(message)
            raise ExternalToolFailure(
                message,
                exit_code=result.returncode,
                command=cmd_str,
                log_path=log_path,
                code="kbuild_failed",
            )
        return log_path

    def clean(self) -> None:
        """Reset the source tree to pristine state."""
        self._run(KbuildOperation.CLEAN, self._command(KbuildOperation.CLEAN))

    def seed_default_config(self) -> None:
        """Write the default profile to the active configuration."""
        op = KbuildOperation.SEED_DEFAULT_CONFIG
        self._run(op, self._command(op, defconfig=self.defconfig))

    def reconcile_config(self) -> None:
        """Fill options missing from the active configuration with defaults."""
        op = KbuildOperation.RECONCILE_CONFIG
        self._run(op, self._command(op))

    def build_artifacts(self) -> None:
        """Build the kernel image, in-tree modules and device-tree blobs."""
        op = KbuildOperation.BUILD_ARTIFACTS
        self._run(op, self._command(op, jobs=self.jobs))

    def install_modules(self, prefix: Path) -> None:
        """Install in-tree modules under ``<prefix>/lib/modules/<release>``."""
        op = KbuildOperation.INSTALL_MODULES
        self._run(op, self._command(op, install_mod_path=prefix.resolve()))

    def build_external_module(self, module_dir: Path) -> None:
        """Build an out-of-tree module against the already-built tree."""
        op = KbuildOperation.BUILD_EXTERNAL_MODULE
        self._run(
            op,
            self._command(op, module_dir=module_dir.resolve()),
            log_name=f"{op.value}-{module_dir.name}",
        )

    def kernel_release(self) -> str:
        """Query the kernel release string computed by the build system.

        Returns:
            Release string such as ``6.6.31-v8-custom+``.

        Raises:
            ExternalToolFailure: If the query fails or prints nothing.
        """
        op = KbuildOperation.QUERY_KERNEL_RELEASE
        cmd = self._command(op)
        cmd_str = shlex.join(cmd)
        logger.debug("Executing: %s", cmd_str)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.source_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolFailure(
                f"kernelrelease timed out after {self.timeout}s",
                exit_code=-1,
                command=cmd_str,
                code="kbuild_timeout",
            ) from e
        except subprocess.CalledProcessError as e:
            raise ExternalToolFailure(
                f"kernelrelease failed: {e.stderr}",
                exit_code=e.returncode,
                command=cmd_str,
                code="kbuild_failed",
            ) from e
        except OSError as e:
            raise ExternalToolFailure(
                f"Failed to run {cmd_str}: {e}",
                command=cmd_str,
                code="execution_error",
            ) from e

        release = result.stdout.strip()
        if not release:
            raise ExternalToolFailure(
                "kernelrelease printed an empty release string",
                exit_code=0,
                command=cmd_str,
                code="empty_kernel_release",
            )
        return release


__all__ = [
    "OPERATION_TARGETS",
    "Kbuild",
    "KbuildOperation",
    "compose_make_command",
    "default_jobs",
]
