"""Staging tree manifest generation.

The manifest records every file in the staging tree with its size and
SHA-256, so the deployed content can be compared against what was built.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


@dataclass
class StagedFile:
    """A file in the staging tree."""

    relative_path: str
    size_bytes: int
    sha256: str


def compute_file_hash(file_path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute SHA-256 hash of a file."""
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def scan_tree(root: Path) -> list[StagedFile]:
    """List all regular files under a tree, sorted by relative path.

    Args:
        root: Tree root.

    Returns:
        StagedFile entries with POSIX relative paths.
    """
    files: list[StagedFile] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        files.append(
            StagedFile(
                relative_path=path.relative_to(root).as_posix(),
                size_bytes=path.stat().st_size,
                sha256=compute_file_hash(path),
            )
        )
    return files


def tree_digest(root: Path) -> dict[str, str]:
    """Map each relative path under a tree to its SHA-256."""
    return {f.relative_path: f.sha256 for f in scan_tree(root)}


def generate_manifest(
    staging_root: Path,
    kernel_releases: list[str] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a manifest of the staging tree.

    Args:
        staging_root: Staging tree root.
        kernel_releases: Release directories present under lib/modules.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    files = scan_tree(staging_root)
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "staging_root": str(staging_root),
        "kernel_releases": kernel_releases or [],
        "files": [asdict(f) for f in files],
        "summary": {
            "total_files": len(files),
            "total_size_bytes": sum(f.size_bytes for f in files),
        },
    }
    if extra_metadata:
        manifest["metadata"] = extra_metadata
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote staging manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "StagedFile",
    "compute_file_hash",
    "generate_manifest",
    "scan_tree",
    "tree_digest",
    "write_manifest",
]
