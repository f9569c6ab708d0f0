"""Staging tree packaging.

The whole staging tree is stored in a gzip-compressed tar archive under a
single top-level directory, so extracting it into the remote scratch
directory recreates ``<scratch>/<top-level>/boot`` and ``.../lib``.
"""

from __future__ import annotations

import logging
import tarfile
from pathlib import Path

from kernel_deploy.errors import ExternalToolFailure, PreconditionFailure

logger = logging.getLogger(__name__)


def create_archive(
    staging_root: Path,
    archive_path: Path,
    arcname: str | None = None,
) -> Path:
    """Archive the staging tree.

    Args:
        staging_root: Staging tree root.
        archive_path: Output archive path (overwritten if present).
        arcname: Top-level directory name inside the archive
                 (defaults to the staging root's name).

    Returns:
        Path to the archive.

    Raises:
        PreconditionFailure: If the staging tree does not exist.
        ExternalToolFailure: If the archive cannot be written.
    """
    if not staging_root.is_dir():
        raise PreconditionFailure(
            f"Local kernel staging directory not found: '{staging_root}'. "
            "Make sure the build was successful.",
            code="staging_missing",
        )

    top_level = arcname or staging_root.name
    logger.info("Creating archive %s from %s", archive_path, staging_root)
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "w:gz") as tar:
            tar.add(staging_root, arcname=top_level)
    except (tarfile.TarError, OSError) as e:
        raise ExternalToolFailure(
            f"Failed to create archive {archive_path}: {e}",
            code="archive_failed",
        ) from e

    logger.info(
        "Created archive %s (%d bytes)", archive_path, archive_path.stat().st_size
    )
    return archive_path


def remove_archive(archive_path: Path) -> None:
    """Remove the local archive if it exists."""
    archive_path.unlink(missing_ok=True)
    logger.info("Removed local archive %s", archive_path)


__all__ = ["create_archive", "remove_archive"]
