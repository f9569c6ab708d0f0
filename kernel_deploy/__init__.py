"""Kernel Deploy - cross-build and remote install of ARM64 kernels.

This package orchestrates the kernel build system to produce a staging
tree (image, device-tree blobs, modules), optionally adds out-of-tree
modules, and installs the result on a remote board over SSH.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
