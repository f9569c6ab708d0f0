"""Remote installation of a staging tree.

This module handles:
- Planning the ordered remote operations of a deployment
- Packaging, transferring and extracting the staging tree
- Installing boot files and per-release module directories
- Rebuilding module dependencies for each installed release
- Cleaning up scratch state on both ends

A deployment moves through the states

    IDLE -> PACKAGED -> TRANSFERRED -> REMOTE_STAGED -> INSTALLED -> CLEANED_UP

and ends in ABORTED on the first failure. Nothing is retried or rolled
back: remote changes applied before a failure stay in place, and a
re-run starts again from IDLE. The remote staging directory is always
removed before extraction so a stale tree is replaced, never merged.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from kernel_deploy.deploy.archive import create_archive, remove_archive
from kernel_deploy.deploy.remote import RemoteSession
from kernel_deploy.errors import ExternalToolFailure
from kernel_deploy.models import DeployTarget
from kernel_deploy.types import DeployState, ModuleVersionDir

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteLayout:
    """Paths used on the remote host.

    Attributes:
        scratch_dir: Directory receiving the archive and extracted tree.
        staging_name: Top-level directory name inside the archive.
        archive_name: Archive file name.
        boot_path: Boot partition mount point.
        modules_root: System module directory.
    """

    scratch_dir: str = "/tmp"
    staging_name: str = "kernel_staging"
    archive_name: str = "kernel_staging.tar.gz"
    boot_path: str = "/boot/firmware"
    modules_root: str = "/lib/modules"

    @property
    def staging_dir(self) -> str:
        return posixpath.join(self.scratch_dir, self.staging_name)

    @property
    def archive_path(self) -> str:
        return posixpath.join(self.scratch_dir, self.archive_name)

    @property
    def staging_boot_dir(self) -> str:
        return posixpath.join(self.staging_dir, "boot")

    @property
    def staging_modules_dir(self) -> str:
        return posixpath.join(self.staging_dir, "lib", "modules")


@dataclass(frozen=True)
class RemoteOperation:
    """A single remote shell step.

    Attributes:
        name: Step name used in logs and errors.
        command: Shell command to run.
        as_root: Run through sudo.
        check: Treat a non-zero exit as fatal (otherwise log a warning).
    """

    name: str
    command: str
    as_root: bool = False
    check: bool = True


def plan_remote_staging(layout: RemoteLayout) -> list[RemoteOperation]:
    """Operations replacing the remote staging tree with the archive contents."""
    q = shlex.quote
    return [
        RemoteOperation("remove-stale-staging", f"rm -rf {q(layout.staging_dir)}"),
        RemoteOperation(
            "extract-archive",
            f"mkdir -p {q(layout.scratch_dir)} && "
            f"tar xzf {q(layout.archive_path)} -C {q(layout.scratch_dir)}",
        ),
    ]


def plan_boot_install(
    layout: RemoteLayout,
    widen_permissions: bool = False,
) -> list[RemoteOperation]:
    """Operations copying boot/ into the boot path.

    By default only read access (and traversal of directories) is granted
    on the boot path; ``widen_permissions`` applies ``+x`` to everything.
    """
    q = shlex.quote
    mode = "+x" if widen_permissions else "a+rX"
    return [
        RemoteOperation(
            "install-boot",
            f"mkdir -p {q(layout.boot_path)} && "
            f"cp -R {q(layout.staging_boot_dir)}/. {q(layout.boot_path)}/",
            as_root=True,
        ),
        # Boot partitions are often vfat, where chmod may be rejected
        RemoteOperation(
            "boot-permissions",
            f"chmod -R {mode} {q(layout.boot_path)}",
            as_root=True,
            check=False,
        ),
    ]


def list_module_versions_command(layout: RemoteLayout) -> str:
    """Command printing each release directory under the staged lib/modules."""
    modules = shlex.quote(layout.staging_modules_dir)
    return (
        f"if [ -d {modules} ]; then "
        f"find {modules} -mindepth 1 -maxdepth 1 -type d; fi"
    )


def parse_module_versions(output: str) -> list[ModuleVersionDir]:
    """Parse the output of the list-module-versions command."""
    versions: list[ModuleVersionDir] = []
    for line in output.splitlines():
        path = line.strip().rstrip("/")
        if not path:
            continue
        versions.append(ModuleVersionDir(version=posixpath.basename(path), path=path))
    return sorted(versions, key=lambda v: v.version)


def plan_module_install(
    layout: RemoteLayout,
    version_dir: ModuleVersionDir,
) -> list[RemoteOperation]:
    """Operations installing one release's modules and rebuilding dependencies."""
    q = shlex.quote
    dest = posixpath.join(layout.modules_root, version_dir.version)
    return [
        RemoteOperation(
            f"install-modules:{version_dir.version}",
            f"mkdir -p {q(dest)} && cp -r {q(version_dir.path)}/. {q(dest)}/",
            as_root=True,
        ),
        RemoteOperation(
            f"depmod:{version_dir.version}",
            f"depmod -a {q(version_dir.version)}",
            as_root=True,
        ),
    ]


def plan_cleanup(layout: RemoteLayout) -> list[RemoteOperation]:
    """Operations removing the remote archive and staging tree."""
    q = shlex.quote
    return [
        RemoteOperation("remove-remote-archive", f"rm -f {q(layout.archive_path)}"),
        RemoteOperation("remove-remote-staging", f"rm -rf {q(layout.staging_dir)}"),
    ]


@dataclass
class DeployReport:
    """Outcome of a deployment.

    Attributes:
        state: Final state.
        history: States visited, in order.
        installed_versions: Release strings whose modules were installed.
        operations: Names of remote operations that ran.
    """

    state: DeployState = DeployState.IDLE
    history: list[DeployState] = field(default_factory=lambda: [DeployState.IDLE])
    installed_versions: list[str] = field(default_factory=list)
    operations: list[str] = field(default_factory=list)


class RemoteInstaller:
    """Packages a staging tree and installs it on a remote host.

    Args:
        target: Remote host and local archive path.
        layout: Remote paths.
        session_factory: Returns a connected RemoteSession; called only
            after packaging succeeded.
        widen_boot_permissions: Apply ``chmod -R +x`` to the boot path.
    """

    def __init__(
        self,
        target: DeployTarget,
        layout: RemoteLayout,
        session_factory: Callable[[], RemoteSession],
        widen_boot_permissions: bool = False,
    ) -> None:
        self.target = target
        self.layout = layout
        self.session_factory = session_factory
        self.widen_boot_permissions = widen_boot_permissions
        self.report = DeployReport()

    @property
    def state(self) -> DeployState:
        return self.report.state

    def _transition(self, state: DeployState) -> None:
        logger.debug("Deploy state: %s -> %s", self.report.state.value, state.value)
        self.report.state = state
        self.report.history.append(state)

    def _execute(self, session: RemoteSession, op: RemoteOperation) -> str:
        result = session.run(op.command, as_root=op.as_root)
        self.report.operations.append(op.name)
        if result.output:
            logger.debug("[%s] %s", op.name, result.output.rstrip())
        if not result.ok:
            if not op.check:
                logger.warning(
                    "Remote step '%s' exited with %d (ignored): %s",
                    op.name,
                    result.exit_code,
                    result.output.strip(),
                )
                return result.output
            raise ExternalToolFailure(
                f"Remote step '{op.name}' failed with exit code "
                f"{result.exit_code}: {result.output.strip()}",
                exit_code=result.exit_code,
                command=op.command,
                code="remote_step_failed",
            )
        return result.output

    def list_module_versions(self, session: RemoteSession) -> list[ModuleVersionDir]:
        """List release directories in the remote staging tree."""
        op = RemoteOperation("list-module-versions", list_module_versions_command(self.layout))
        return parse_module_versions(self._execute(session, op))

    def _cleanup_remote(self, session: RemoteSession) -> None:
        """Remove remote scratch state, logging rather than raising failures."""
        for op in plan_cleanup(self.layout):
            try:
                self._execute(session, op)
            except ExternalToolFailure as e:
                logger.warning("Cleanup step '%s' failed: %s", op.name, e.message)

    def _install(self, session: RemoteSession) -> None:
        session.upload(self.target.archive_path, self.layout.archive_path)
        self._transition(DeployState.TRANSFERRED)

        for op in plan_remote_staging(self.layout):
            self._execute(session, op)
        self._transition(DeployState.REMOTE_STAGED)

        for op in plan_boot_install(self.layout, self.widen_boot_permissions):
            self._execute(session, op)
        logger.info("Installed boot files into %s", self.layout.boot_path)

        versions = self.list_module_versions(session)
        if not versions:
            logger.info("No kernel modules found in staging area")
        for version_dir in versions:
            logger.info("Found kernel module directory for version: %s", version_dir.version)
            for op in plan_module_install(self.layout, version_dir):
                self._execute(session, op)
            self.report.installed_versions.append(version_dir.version)
            logger.info(
                "Installed modules to %s",
                posixpath.join(self.layout.modules_root, version_dir.version),
            )
        self._transition(DeployState.INSTALLED)

    def deploy(self, staging_root: Path) -> DeployReport:
        """Run the full deployment.

        Args:
            staging_root: Local staging tree.

        Returns:
            DeployReport in state CLEANED_UP.

        Raises:
            PreconditionFailure: If the staging tree is missing (no network
                operation happens in that case).
            ExternalToolFailure: If packaging, transfer or a remote step fails.
        """
        logger.info("Starting kernel deployment to %s", self.target.display)
        session: RemoteSession | None = None
        try:
            create_archive(
                staging_root,
                self.target.archive_path,
                arcname=self.layout.staging_name,
            )
            self._transition(DeployState.PACKAGED)

            logger.warning(
                "The remote user '%s' needs write permissions for '%s' "
                "(sudo is used for installation)",
                self.target.user,
                self.layout.boot_path,
            )
            session = self.session_factory()
            self._install(session)
        except Exception:
            self._transition(DeployState.ABORTED)
            if self.target.archive_path.exists():
                logger.error(
                    "Deployment aborted; local archive kept at %s",
                    self.target.archive_path,
                )
            else:
                logger.error("Deployment aborted")
            raise
        finally:
            if session is not None:
                try:
                    self._cleanup_remote(session)
                finally:
                    session.close()

        remove_archive(self.target.archive_path)
        self._transition(DeployState.CLEANED_UP)
        logger.info("Kernel deployment to %s completed", self.target.display)
        return self.report


__all__ = [
    "DeployReport",
    "RemoteInstaller",
    "RemoteLayout",
    "RemoteOperation",
    "list_module_versions_command",
    "parse_module_versions",
    "plan_boot_install",
    "plan_cleanup",
    "plan_module_install",
    "plan_remote_staging",
]
