"""Staging tree assembly.

This module handles:
- Creating the staging tree layout (boot/, boot/overlays/, lib/modules/)
- Clearing a previous build before a new one is assembled
- Discovering kernel build outputs in the source tree
- Copying the image, device-tree blobs and overlays into boot/
- Installing in-tree modules under lib/modules/<release>/
- Guarding the staging tree against concurrent invocations

The staging tree is the hand-off between the build and deploy phases and
mirrors the layout installed on the target:

    boot/kernel8.img
    boot/*.dtb
    boot/overlays/*.dtbo
    lib/modules/<release>/...
    lib/modules/<release>/extra/*.ko
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_deploy.errors import KernelDeployError, PreconditionFailure
from kernel_deploy.types import KernelArtifacts

if TYPE_CHECKING:
    from kernel_deploy.kbuild.runner import Kbuild

logger = logging.getLogger(__name__)

DEFAULT_KERNEL_IMAGE_NAME = "kernel8.img"
OVERLAY_EXTRA_FILES = ("README",)


@contextmanager
def staging_lock(staging_root: Path) -> Iterator[None]:
    """Hold an exclusive lock on a staging tree for one invocation.

    The lock file sits next to the staging tree so it never ends up in
    the deployment archive.

    Raises:
        PreconditionFailure: If another invocation holds the lock.
    """
    staging_root.parent.mkdir(parents=True, exist_ok=True)
    lock_file = staging_root.parent / f"{staging_root.name}.lock"

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            lock_acquired = True
        except BlockingIOError:
            raise PreconditionFailure(
                f"Staging tree {staging_root} is in use by another invocation",
                code="staging_locked",
            ) from None
        logger.debug("Staging lock acquired: %s", lock_file)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Staging lock released: %s", lock_file)
        os.close(fd)


def discover_kernel_artifacts(
    source_dir: Path,
    arch: str,
    dtb_vendor: str,
) -> KernelArtifacts:
    """Locate build outputs in a built kernel tree.

    Args:
        source_dir: Kernel source tree.
        arch: Kernel architecture.
        dtb_vendor: Vendor directory holding board DTBs.

    Returns:
        KernelArtifacts with image, DTBs and overlays.

    Raises:
        PreconditionFailure: If the kernel image was not built.
    """
    boot_dir = source_dir / "arch" / arch / "boot"
    image = boot_dir / "Image"
    if not image.is_file():
        raise PreconditionFailure(
            f"Kernel image not found: {image}. Make sure the build was successful.",
            code="kernel_image_missing",
        )

    dtbs = sorted((boot_dir / "dts" / dtb_vendor).glob("*.dtb"))
    overlays_dir = boot_dir / "dts" / "overlays"
    overlays = sorted(overlays_dir.glob("*.dtbo"))
    overlays.extend(
        overlays_dir / name
        for name in OVERLAY_EXTRA_FILES
        if (overlays_dir / name).is_file()
    )

    logger.info(
        "Discovered kernel outputs: %d DTBs, %d overlay files",
        len(dtbs),
        len(overlays),
    )
    return KernelArtifacts(image=image, dtbs=dtbs, overlays=overlays)


class StagingTree:
    """Owner of the staging directory layout.

    Attributes:
        root: Staging tree root.
        kernel_image_name: File name of the image under boot/.
    """

    def __init__(
        self,
        root: Path,
        kernel_image_name: str = DEFAULT_KERNEL_IMAGE_NAME,
    ) -> None:
        self.root = root
        self.kernel_image_name = kernel_image_name

    @property
    def boot_dir(self) -> Path:
        return self.root / "boot"

    @property
    def overlays_dir(self) -> Path:
        return self.boot_dir / "overlays"

    @property
    def modules_dir(self) -> Path:
        return self.root / "lib" / "modules"

    def release_dir(self, kernel_release: str) -> Path:
        """Module directory for a kernel release."""
        return self.modules_dir / kernel_release

    def extra_dir(self, kernel_release: str) -> Path:
        """Out-of-tree module directory for a kernel release."""
        return self.release_dir(kernel_release) / "extra"

    def exists(self) -> bool:
        return self.root.is_dir()

    def reset(self) -> None:
        """Remove everything a previous build left in the staging tree.

        Raises:
            KernelDeployError: If the tree cannot be removed.
        """
        if not self.root.exists():
            return
        logger.info("Removing previous staging tree %s", self.root)
        try:
            shutil.rmtree(self.root)
        except OSError as e:
            raise KernelDeployError(
                f"Failed to remove previous staging tree {self.root}: {e}",
                code="staging_reset_error",
            ) from e

    def init_staging(self) -> None:
        """Create the staging root and boot/overlays/ (idempotent)."""
        self.overlays_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("Staging tree ready at %s", self.root)

    def require_release_dir(self, kernel_release: str) -> Path:
        """Return the module directory of a release that must already exist.

        Raises:
            PreconditionFailure: If in-tree modules were not installed for it.
        """
        release_dir = self.release_dir(kernel_release)
        if not release_dir.is_dir():
            raise PreconditionFailure(
                f"Kernel module directory not found: {release_dir}. "
                "Kernel outputs must be installed before custom modules.",
                code="kernel_release_dir_missing",
            )
        return release_dir

    def install_kernel_outputs(self, artifacts: KernelArtifacts, kbuild: Kbuild) -> None:
        """Copy kernel outputs into boot/ and install in-tree modules.

        Args:
            artifacts: Discovered kernel build outputs.
            kbuild: Build runner used to install modules under the root.

        Raises:
            KernelDeployError: If a file cannot be copied.
            ExternalToolFailure: If module installation fails.
        """
        self.init_staging()
        image_dest = self.boot_dir / self.kernel_image_name

        try:
            shutil.copy2(artifacts.image, image_dest)
            for dtb in artifacts.dtbs:
                shutil.copy2(dtb, self.boot_dir / dtb.name)
            for overlay in artifacts.overlays:
                shutil.copy2(overlay, self.overlays_dir / overlay.name)
        except OSError as e:
            raise KernelDeployError(
                f"Failed to copy kernel outputs into {self.boot_dir}: {e}",
                code="staging_copy_error",
            ) from e

        logger.info("Installed %s into %s", self.kernel_image_name, self.boot_dir)
        kbuild.install_modules(self.root)

    def release_dirs(self) -> list[Path]:
        """Module directories currently present in the staging tree."""
        if not self.modules_dir.is_dir():
            return []
        return sorted(p for p in self.modules_dir.iterdir() if p.is_dir())


__all__ = [
    "DEFAULT_KERNEL_IMAGE_NAME",
    "OVERLAY_EXTRA_FILES",
    "StagingTree",
    "discover_kernel_artifacts",
    "staging_lock",
]
