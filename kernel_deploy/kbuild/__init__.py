"""Kernel build system integration.

This module handles:
- Kernel source checkout
- Configuration resolution (default profile, custom config, local version)
- Running kernel build operations and querying the kernel release
"""

from kernel_deploy.kbuild.runner import Kbuild, KbuildOperation

__all__ = ["Kbuild", "KbuildOperation"]
