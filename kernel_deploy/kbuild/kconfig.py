"""Kernel configuration resolution.

This module handles:
- Resetting the build tree when a clean build is requested
- Seeding the active configuration from a custom file or the default profile
- Injecting CONFIG_LOCALVERSION exactly once
- Reconciling the configuration against the source tree's known options

The configuration is read once by the build step, so resolution must
complete before the build is invoked.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_deploy.errors import PreconditionFailure

if TYPE_CHECKING:
    from kernel_deploy.kbuild.runner import Kbuild
    from kernel_deploy.models import BuildConfig

logger = logging.getLogger(__name__)

LOCAL_VERSION_KEY = "CONFIG_LOCALVERSION"

# Matches both the set form and the Kconfig "is not set" comment
_LOCAL_VERSION_LINE = re.compile(
    rf"^(?:{LOCAL_VERSION_KEY}=|# {LOCAL_VERSION_KEY} is not set\s*$)"
)


def format_local_version(suffix: str) -> str:
    """Format the CONFIG_LOCALVERSION directive for a suffix."""
    return f'{LOCAL_VERSION_KEY}="{suffix}"'


def apply_local_version(config_text: str, suffix: str) -> str:
    """Replace every CONFIG_LOCALVERSION directive with a single new one.

    Args:
        config_text: Contents of a kernel .config file.
        suffix: New local version suffix.

    Returns:
        Updated configuration text ending with exactly one directive.
    """
    kept = [
        line
        for line in config_text.splitlines()
        if not _LOCAL_VERSION_LINE.match(line)
    ]
    kept.append(format_local_version(suffix))
    return "\n".join(kept) + "\n"


def read_local_versions(config_text: str) -> list[str]:
    """Return the values of all CONFIG_LOCALVERSION directives in order."""
    values: list[str] = []
    prefix = f"{LOCAL_VERSION_KEY}="
    for line in config_text.splitlines():
        if line.startswith(prefix):
            values.append(line[len(prefix) :].strip().strip('"'))
    return values


def set_local_version(config_path: Path, suffix: str) -> None:
    """Rewrite a .config file so it carries exactly one local version.

    Raises:
        PreconditionFailure: If the configuration cannot be read or written.
    """
    try:
        text = config_path.read_text(encoding="utf-8")
        config_path.write_text(apply_local_version(text, suffix), encoding="utf-8")
    except OSError as e:
        raise PreconditionFailure(
            f"Failed to update {LOCAL_VERSION_KEY} in {config_path}: {e}",
            code="config_write_error",
        ) from e


def resolve_config(kbuild: Kbuild, build_config: BuildConfig) -> Path:
    """Produce the active kernel configuration for a build.

    Args:
        kbuild: Kernel build runner bound to the source tree.
        build_config: Build options.

    Returns:
        Path to the active configuration file.

    Raises:
        PreconditionFailure: If the custom configuration cannot be copied.
        ExternalToolFailure: If a build system operation fails.
    """
    if build_config.clean_requested:
        logger.info("Clean build requested, resetting source tree")
        kbuild.clean()

    config_path = kbuild.config_path
    custom = build_config.custom_config_path
    if custom is not None:
        if not custom.is_file():
            raise PreconditionFailure(
                f"Custom config not found: {custom}",
                code="custom_config_missing",
            )
        logger.info("Using custom config %s", custom)
        try:
            shutil.copyfile(custom, config_path)
        except OSError as e:
            raise PreconditionFailure(
                f"Failed to copy custom config {custom} -> {config_path}: {e}",
                code="config_copy_error",
            ) from e
    else:
        logger.info("No custom config, seeding from %s", kbuild.defconfig)
        kbuild.seed_default_config()
    kbuild.reconcile_config()

    if build_config.version_suffix:
        logger.info(
            "Setting %s",
            format_local_version(build_config.version_suffix),
        )
        set_local_version(config_path, build_config.version_suffix)
        kbuild.reconcile_config()

    return config_path


__all__ = [
    "LOCAL_VERSION_KEY",
    "apply_local_version",
    "format_local_version",
    "read_local_versions",
    "resolve_config",
    "set_local_version",
]
