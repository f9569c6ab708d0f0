"""Deployment module.

This module handles:
- Packaging the staging tree into an archive
- SSH/SCP sessions to the target board
- The remote install sequence and its state machine
"""

from kernel_deploy.deploy.installer import RemoteInstaller, RemoteLayout
from kernel_deploy.deploy.remote import RemoteSession, SSHSession

__all__ = ["RemoteInstaller", "RemoteLayout", "RemoteSession", "SSHSession"]
