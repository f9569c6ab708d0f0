"""Out-of-tree module builds.

This module handles:
- Discovering module sources under the custom sources root
- Building each module against the already-built kernel tree
- Copying produced .ko files into lib/modules/<release>/extra/

Builds are fail-fast: the first failing module aborts the run and no
later module is built.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_deploy.errors import KernelDeployError
from kernel_deploy.types import ModuleSource

if TYPE_CHECKING:
    from kernel_deploy.kbuild.runner import Kbuild
    from kernel_deploy.staging.assembler import StagingTree

logger = logging.getLogger(__name__)

DEFAULT_MODULE_DESCRIPTORS = ("Makefile", "Kbuild")
MODULE_SUFFIX = ".ko"


def iter_module_sources(
    custom_dir: Path,
    descriptors: Sequence[str] = DEFAULT_MODULE_DESCRIPTORS,
) -> Iterator[ModuleSource]:
    """Yield module sources found directly under the custom sources root.

    Subdirectories without a build descriptor are skipped. Sources are
    yielded in name order.

    Args:
        custom_dir: Custom sources root.
        descriptors: File names recognized as build descriptors.

    Yields:
        ModuleSource for each valid subdirectory.
    """
    if not custom_dir.is_dir():
        logger.warning("Custom sources directory does not exist: %s", custom_dir)
        return

    for path in sorted(custom_dir.iterdir()):
        if not path.is_dir():
            continue
        descriptor = next(
            (path / name for name in descriptors if (path / name).is_file()),
            None,
        )
        if descriptor is None:
            logger.debug("Skipping %s: no build descriptor", path)
            continue
        yield ModuleSource(name=path.name, path=path, descriptor=descriptor)


def collect_module_binaries(module_dir: Path) -> list[Path]:
    """Find loadable module files produced in a module source tree."""
    return sorted(p for p in module_dir.rglob(f"*{MODULE_SUFFIX}") if p.is_file())


def install_module_binaries(
    source: ModuleSource,
    extra_dir: Path,
    owners: dict[str, str] | None = None,
) -> list[Path]:
    """Copy a module's .ko files into the extra/ directory.

    Args:
        source: Built module source.
        extra_dir: Destination directory.
        owners: File names already installed in this run, mapped to the
            module source that produced them. Updated in place.

    Returns:
        Installed file paths.

    Raises:
        KernelDeployError: If a file cannot be copied, or another module
            source already installed a file with the same name.
    """
    if owners is None:
        owners = {}
    installed: list[Path] = []
    for ko in collect_module_binaries(source.path):
        dest = extra_dir / ko.name
        if ko.name in owners:
            raise KernelDeployError(
                f"{ko.name} from module {source.name} would overwrite the one "
                f"built from {owners[ko.name]}",
                code="module_name_conflict",
            )
        try:
            shutil.copy2(ko, dest)
        except OSError as e:
            raise KernelDeployError(
                f"Failed to install {ko} -> {dest}: {e}",
                code="module_copy_error",
            ) from e
        logger.info("Installed %s", dest)
        owners[ko.name] = source.name
        installed.append(dest)

    if not installed:
        logger.warning("Module %s produced no %s files", source.name, MODULE_SUFFIX)
    return installed


def install_custom_modules(
    kbuild: Kbuild,
    staging: StagingTree,
    custom_dir: Path,
    descriptors: Sequence[str] = DEFAULT_MODULE_DESCRIPTORS,
) -> list[Path]:
    """Build custom modules and place them in the staging tree.

    Args:
        kbuild: Build runner bound to the already-built kernel tree.
        staging: Staging tree with kernel outputs installed.
        custom_dir: Custom sources root.
        descriptors: File names recognized as build descriptors.

    Returns:
        Paths of all installed module files.

    Raises:
        PreconditionFailure: If in-tree modules are missing for the release.
        ExternalToolFailure: On the first failing module build.
        KernelDeployError: If two module sources produce the same file name.
    """
    kernel_release = kbuild.kernel_release()
    logger.info("Kernel release: %s", kernel_release)

    staging.require_release_dir(kernel_release)
    extra_dir = staging.extra_dir(kernel_release)
    extra_dir.mkdir(parents=True, exist_ok=True)

    installed: list[Path] = []
    owners: dict[str, str] = {}
    built = 0
    for source in iter_module_sources(custom_dir, descriptors):
        logger.info("Building module %s in %s", source.name, source.path)
        kbuild.build_external_module(source.path)
        installed.extend(install_module_binaries(source, extra_dir, owners))
        built += 1

    if built:
        logger.info("Built %d custom module source(s) into %s", built, extra_dir)
    else:
        logger.info("No custom modules found in %s", custom_dir)
    return installed


__all__ = [
    "DEFAULT_MODULE_DESCRIPTORS",
    "MODULE_SUFFIX",
    "collect_module_binaries",
    "install_custom_modules",
    "install_module_binaries",
    "iter_module_sources",
]
