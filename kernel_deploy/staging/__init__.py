"""Staging tree module.

This module handles:
- Staging tree layout and kernel output installation
- Out-of-tree module builds into lib/modules/<release>/extra
- Staging manifest generation
"""

from kernel_deploy.staging.assembler import StagingTree, staging_lock

__all__ = ["StagingTree", "staging_lock"]
