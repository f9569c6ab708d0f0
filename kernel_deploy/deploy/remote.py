"""Remote execution channel.

This module handles:
- Opening one authenticated SSH session per deployment
- Uploading files over SCP
- Running shell commands, optionally through sudo

Commands block until the remote side exits. Output is merged
(stderr into stdout) since sessions run without a TTY.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from types import TracebackType
from typing import Protocol

import paramiko
from paramiko.client import AutoAddPolicy, RejectPolicy, SSHClient
from scp import SCPClient, SCPException

from kernel_deploy.errors import ExternalToolFailure
from kernel_deploy.models import DeployTarget
from kernel_deploy.types import CommandResult

logger = logging.getLogger(__name__)

SUDO_COMMAND = "sudo -- sh -c {}"
SUDO_PASSWORD_COMMAND = "sudo -k -p ' ' -S -- sh -c {}"


class RemoteSession(Protocol):
    """Operations the installer needs from a remote host."""

    def upload(self, local_path: Path, remote_path: str) -> None: ...

    def run(self, command: str, as_root: bool = False) -> CommandResult: ...

    def close(self) -> None: ...


def wrap_command(command: str, as_root: bool, with_password: bool) -> str:
    """Merge stderr into stdout and optionally run through sudo."""
    if as_root:
        template = SUDO_PASSWORD_COMMAND if with_password else SUDO_COMMAND
        command = template.format(shlex.quote(command))
    return f"({command}) 2>&1"


class SSHSession:
    """SSH session to a deploy target.

    Attributes:
        target: Remote user and host.
        port: SSH port.
        timeout: Connect and command timeout in seconds (None blocks).
        strict_host_key_check: Reject hosts missing from known_hosts.
    """

    def __init__(
        self,
        target: DeployTarget,
        port: int = 22,
        timeout: float | None = None,
        strict_host_key_check: bool = False,
    ) -> None:
        self.target = target
        self.port = port
        self.timeout = timeout
        self.strict_host_key_check = strict_host_key_check
        self._client: SSHClient | None = None

    def __enter__(self) -> SSHSession:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def connect(self) -> None:
        """Open the SSH connection.

        Raises:
            ExternalToolFailure: If the connection or authentication fails.
        """
        policy = RejectPolicy if self.strict_host_key_check else AutoAddPolicy
        # Only try SSH keys and the agent when no password was given
        use_keys = self.target.password is None

        client = SSHClient()
        try:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(policy())
            client.connect(
                hostname=self.target.host,
                port=self.port,
                username=self.target.user,
                password=self.target.password,
                timeout=self.timeout,
                look_for_keys=use_keys,
                allow_agent=use_keys,
            )
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ExternalToolFailure(
                f"SSH connection to {self.target.display} failed: {e}",
                command=f"ssh {self.target.display}",
                code="ssh_connect_failed",
            ) from e

        logger.info("Connected to %s:%d", self.target.display, self.port)
        self._client = client

    @property
    def client(self) -> SSHClient:
        if self._client is None:
            raise RuntimeError("SSH session is not connected")
        return self._client

    def upload(self, local_path: Path, remote_path: str) -> None:
        """Copy a local file to the remote host.

        Raises:
            ExternalToolFailure: If the transfer fails.
        """
        logger.info("Uploading %s to %s:%s", local_path, self.target.display, remote_path)
        try:
            with SCPClient(
                self.client.get_transport(), socket_timeout=self.timeout
            ) as scp:
                scp.put(str(local_path), remote_path)
        except (SCPException, paramiko.SSHException, OSError) as e:
            raise ExternalToolFailure(
                f"SCP transfer of {local_path} to {self.target.display} failed: {e}",
                command=f"scp {local_path} {self.target.display}:{remote_path}",
                code="transfer_failed",
            ) from e

    def run(self, command: str, as_root: bool = False) -> CommandResult:
        """Run a shell command on the remote host.

        Returns:
            CommandResult with exit status and merged output.

        Raises:
            ExternalToolFailure: If the SSH channel fails (not on a
                non-zero exit status, which is returned to the caller).
        """
        with_password = as_root and self.target.password is not None
        full_command = wrap_command(command, as_root, with_password)
        logger.debug("Remote: %s", full_command)
        try:
            stdin, stdout, _ = self.client.exec_command(full_command, timeout=self.timeout)
            if with_password:
                stdin.write(f"{self.target.password}\n")
                stdin.flush()
            stdin.close()
            output = stdout.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ExternalToolFailure(
                f"Remote command failed on {self.target.display}: {e}",
                command=command,
                code="ssh_command_failed",
            ) from e
        return CommandResult(exit_code=exit_code, output=output)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug("Closed SSH session to %s", self.target.display)


__all__ = [
    "SUDO_COMMAND",
    "SUDO_PASSWORD_COMMAND",
    "RemoteSession",
    "SSHSession",
    "wrap_command",
]
