"""Build-and-deploy pipeline.

This module wires the components together through an explicit
PipelineContext:

    config resolution -> kernel build -> staging assembly
        -> (optional) custom modules -> (optional) remote install

Steps run strictly in sequence; the first failure aborts the pipeline.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from kernel_deploy.config import Settings
from kernel_deploy.deploy.installer import DeployReport, RemoteInstaller, RemoteLayout
from kernel_deploy.deploy.remote import RemoteSession, SSHSession
from kernel_deploy.kbuild.kconfig import resolve_config
from kernel_deploy.kbuild.runner import Kbuild
from kernel_deploy.kbuild.source import ensure_kernel_source
from kernel_deploy.models import BuildConfig, DeployTarget
from kernel_deploy.staging.assembler import (
    StagingTree,
    discover_kernel_artifacts,
    staging_lock,
)
from kernel_deploy.staging.manifest import generate_manifest, write_manifest
from kernel_deploy.staging.modules import install_custom_modules

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything a pipeline run needs, passed explicitly between steps.

    Attributes:
        settings: Effective settings.
        build_config: Build options.
        kbuild: Kernel build runner.
        staging: Staging tree.
        deploy_target: Remote target, or None to skip deployment.
        session_factory: Opens a connected session to the deploy target.
        skip_build: Deploy the existing staging tree without building.
    """

    settings: Settings
    build_config: BuildConfig
    kbuild: Kbuild
    staging: StagingTree
    deploy_target: DeployTarget | None = None
    session_factory: Callable[[], RemoteSession] | None = None
    skip_build: bool = False

    @property
    def remote_layout(self) -> RemoteLayout:
        return RemoteLayout(
            scratch_dir=self.settings.remote_scratch_dir,
            staging_name=self.staging.root.name,
            archive_name=self.settings.archive_name,
            boot_path=self.settings.remote_boot_path,
            modules_root=self.settings.remote_modules_root,
        )


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""

    staging_root: Path
    kernel_releases: list[str] = field(default_factory=list)
    custom_modules: list[Path] = field(default_factory=list)
    manifest_path: Path | None = None
    deploy_report: DeployReport | None = None


def ssh_session_factory(
    target: DeployTarget,
    settings: Settings,
) -> Callable[[], RemoteSession]:
    """Return a factory opening an SSH session to the target."""

    def factory() -> RemoteSession:
        session = SSHSession(
            target,
            port=settings.ssh_port,
            timeout=settings.ssh_timeout,
            strict_host_key_check=settings.strict_host_key_check,
        )
        session.connect()
        return session

    return factory


def create_context(
    settings: Settings,
    build_config: BuildConfig,
    deploy_spec: str | None = None,
    skip_build: bool = False,
) -> PipelineContext:
    """Build a PipelineContext from settings and operator options.

    Raises:
        ValueError: If the deploy target string is malformed.
    """
    kbuild = Kbuild(
        source_dir=settings.source_dir.resolve(),
        arch=build_config.arch,
        cross_compile=build_config.toolchain_triple,
        defconfig=settings.defconfig,
        log_dir=settings.log_dir.resolve(),
        jobs=settings.jobs,
        timeout=settings.build_timeout,
    )
    staging = StagingTree(
        settings.staging_dir.resolve(),
        kernel_image_name=settings.kernel_image_name,
    )

    deploy_target: DeployTarget | None = None
    session_factory: Callable[[], RemoteSession] | None = None
    if deploy_spec:
        deploy_target = DeployTarget.parse(
            deploy_spec, archive_path=settings.archive_path.resolve()
        )
        session_factory = ssh_session_factory(deploy_target, settings)

    return PipelineContext(
        settings=settings,
        build_config=build_config,
        kbuild=kbuild,
        staging=staging,
        deploy_target=deploy_target,
        session_factory=session_factory,
        skip_build=skip_build,
    )


def build_staging_tree(ctx: PipelineContext) -> PipelineResult:
    """Configure and build the kernel, then assemble the staging tree."""
    settings = ctx.settings
    result = PipelineResult(staging_root=ctx.staging.root)

    ensure_kernel_source(
        ctx.kbuild.source_dir,
        settings.source_repo,
        branch=settings.source_branch,
        auto_clone=settings.auto_clone,
    )
    resolve_config(ctx.kbuild, ctx.build_config)

    logger.info("Building kernel...")
    ctx.kbuild.build_artifacts()

    # Each build starts from an empty staging tree
    ctx.staging.reset()
    settings.manifest_path.resolve().unlink(missing_ok=True)
    ctx.staging.init_staging()
    artifacts = discover_kernel_artifacts(
        ctx.kbuild.source_dir,
        ctx.build_config.arch,
        settings.dtb_vendor,
    )
    ctx.staging.install_kernel_outputs(artifacts, ctx.kbuild)

    if ctx.build_config.build_modules:
        custom_dir = settings.custom_dir.resolve()
        logger.info("Building custom modules from %s", custom_dir)
        result.custom_modules = install_custom_modules(
            ctx.kbuild,
            ctx.staging,
            custom_dir,
            settings.module_descriptors,
        )

    result.kernel_releases = [p.name for p in ctx.staging.release_dirs()]
    manifest = generate_manifest(
        ctx.staging.root,
        kernel_releases=result.kernel_releases,
        extra_metadata={
            "arch": ctx.build_config.arch,
            "cross_compile": ctx.build_config.toolchain_triple,
            "local_version": ctx.build_config.version_suffix,
        },
    )
    result.manifest_path = write_manifest(manifest, settings.manifest_path.resolve())
    return result


def run_pipeline(ctx: PipelineContext) -> PipelineResult:
    """Run the whole pipeline under the staging lock.

    Returns:
        PipelineResult describing what was built and deployed.

    Raises:
        KernelDeployError: On the first failing step.
    """
    with staging_lock(ctx.staging.root):
        if ctx.skip_build:
            logger.info("Skipping build, using existing staging tree")
            result = PipelineResult(
                staging_root=ctx.staging.root,
                kernel_releases=[p.name for p in ctx.staging.release_dirs()],
            )
        else:
            result = build_staging_tree(ctx)

        if ctx.deploy_target is not None:
            if ctx.session_factory is None:
                raise ValueError("session_factory is required for deployment")
            installer = RemoteInstaller(
                ctx.deploy_target,
                ctx.remote_layout,
                ctx.session_factory,
                widen_boot_permissions=ctx.settings.widen_boot_permissions,
            )
            result.deploy_report = installer.deploy(ctx.staging.root)

    return result


__all__ = [
    "PipelineContext",
    "PipelineResult",
    "build_staging_tree",
    "create_context",
    "run_pipeline",
    "ssh_session_factory",
]
