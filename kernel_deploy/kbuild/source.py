"""Kernel source checkout."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path

from kernel_deploy.errors import ExternalToolFailure, PreconditionFailure

logger = logging.getLogger(__name__)


def compose_clone_command(
    repo_url: str,
    dest: Path,
    branch: str | None = None,
) -> list[str]:
    """Compose a shallow `git clone` command."""
    cmd = ["git", "clone", "--depth=1"]
    if branch:
        cmd.extend(["--branch", branch])
    cmd.extend([repo_url, str(dest)])
    return cmd


def ensure_kernel_source(
    source_dir: Path,
    repo_url: str,
    branch: str | None = None,
    auto_clone: bool = True,
) -> Path:
    """Make sure a kernel source tree exists, cloning it when missing.

    Args:
        source_dir: Expected location of the kernel tree.
        repo_url: Repository to clone from.
        branch: Optional branch to clone.
        auto_clone: Clone when missing; otherwise a missing tree is an error.

    Returns:
        The source directory.

    Raises:
        PreconditionFailure: If the tree is missing and cloning is disabled.
        ExternalToolFailure: If git fails.
    """
    if source_dir.is_dir():
        logger.info("Kernel source found at %s, skipping clone", source_dir)
        return source_dir

    if not auto_clone:
        raise PreconditionFailure(
            f"Kernel source directory not found: {source_dir}",
            code="kernel_source_missing",
        )

    cmd = compose_clone_command(repo_url, source_dir, branch)
    cmd_str = shlex.join(cmd)
    logger.info("Kernel source not found, cloning: %s", cmd_str)
    try:
        subprocess.run(cmd, check=True)
    except subprocess.CalledProcessError as e:
        raise ExternalToolFailure(
            f"git clone of {repo_url} failed with exit code {e.returncode}",
            exit_code=e.returncode,
            command=cmd_str,
            code="clone_failed",
        ) from e
    except OSError as e:
        raise ExternalToolFailure(
            f"Failed to run git: {e}",
            command=cmd_str,
            code="execution_error",
        ) from e
    return source_dir


__all__ = ["compose_clone_command", "ensure_kernel_source"]
