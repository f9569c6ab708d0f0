"""Error taxonomy for kernel_deploy.

Every failure is fatal to the pipeline. Errors carry a machine-readable
``code`` alongside the operator-readable message.
"""

from pathlib import Path


class KernelDeployError(Exception):
    """Base error for all kernel_deploy failures."""

    def __init__(self, message: str, code: str = "kernel_deploy_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class PreconditionFailure(KernelDeployError):
    """A required input or intermediate state is missing."""

    def __init__(self, message: str, code: str = "precondition_failed") -> None:
        super().__init__(message, code=code)


class ExternalToolFailure(KernelDeployError):
    """An external process (make, git, tar, scp, ssh) failed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        command: str | None = None,
        log_path: Path | None = None,
        code: str = "external_tool_failed",
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.command = command
        self.log_path = log_path


class UsageError(KernelDeployError):
    """Malformed command-line input."""

    def __init__(self, message: str, code: str = "usage_error") -> None:
        super().__init__(message, code=code)


__all__ = [
    "ExternalToolFailure",
    "KernelDeployError",
    "PreconditionFailure",
    "UsageError",
]
