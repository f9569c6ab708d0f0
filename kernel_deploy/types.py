"""Shared type definitions for kernel_deploy.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DeployState(str, Enum):
    """State of a remote deployment."""

    IDLE = "idle"
    PACKAGED = "packaged"
    TRANSFERRED = "transferred"
    REMOTE_STAGED = "remote_staged"
    INSTALLED = "installed"
    CLEANED_UP = "cleaned_up"
    ABORTED = "aborted"


@dataclass
class KernelArtifacts:
    """Build outputs to place under the staging boot/ directory."""

    image: Path
    dtbs: list[Path] = field(default_factory=list)
    overlays: list[Path] = field(default_factory=list)


@dataclass(frozen=True)
class ModuleSource:
    """An out-of-tree module source directory."""

    name: str
    path: Path
    descriptor: Path


@dataclass(frozen=True)
class ModuleVersionDir:
    """A module directory named after a kernel release string."""

    version: str
    path: str


@dataclass
class CommandResult:
    """Result of a command run over the remote session."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


__all__ = [
    "CommandResult",
    "DeployState",
    "KernelArtifacts",
    "ModuleSource",
    "ModuleVersionDir",
]
