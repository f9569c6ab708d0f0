"""Pydantic models for build and deploy inputs.

These models validate operator input before any build or network
operation starts.
"""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Characters allowed in CONFIG_LOCALVERSION (ends up in `uname -r`)
LOCAL_VERSION_PATTERN = re.compile(r"^[A-Za-z0-9_.+\-]*$")


class BuildConfig(BaseModel):
    """Options controlling configuration and build of the kernel.

    Attributes:
        clean_requested: Reset the source tree to pristine before configuring.
        custom_config_path: Configuration copied in place of the default profile.
        version_suffix: Value written to CONFIG_LOCALVERSION.
        toolchain_triple: Cross toolchain prefix (CROSS_COMPILE).
        arch: Kernel architecture (ARCH).
        build_modules: Build out-of-tree modules from the custom sources root.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    clean_requested: bool = False
    custom_config_path: Path | None = None
    version_suffix: str | None = None
    toolchain_triple: str = "aarch64-linux-gnu-"
    arch: str = "arm64"
    build_modules: bool = False

    @field_validator("version_suffix")
    @classmethod
    def validate_version_suffix(cls, v: str | None) -> str | None:
        """Reject suffixes that would corrupt the config directive."""
        if v is None:
            return v
        if not v:
            raise ValueError("version suffix must not be empty")
        if not LOCAL_VERSION_PATTERN.match(v):
            raise ValueError(
                "version suffix may only contain letters, digits and '_.+-', "
                f"got '{v}'"
            )
        return v


class DeployTarget(BaseModel):
    """Remote host receiving the staging tree.

    Attributes:
        user: Login user.
        host: Host name or address.
        password: Optional password for login and sudo.
        archive_path: Local archive to transfer.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    user: str = Field(min_length=1)
    host: str = Field(min_length=1)
    password: str | None = Field(default=None, repr=False)
    archive_path: Path

    @classmethod
    def parse(cls, spec: str, archive_path: Path) -> "DeployTarget":
        """Parse a ``user[:password]@host`` target string.

        Args:
            spec: Target string from the command line.
            archive_path: Local archive to transfer.

        Returns:
            DeployTarget instance.

        Raises:
            ValueError: If the target string is malformed.
        """
        credentials, sep, host = spec.rpartition("@")
        if not sep or not credentials or not host:
            raise ValueError(
                f"deploy target must look like user[:password]@host, got '{spec}'"
            )
        user, _, password = credentials.partition(":")
        return cls(
            user=user,
            host=host,
            password=password or None,
            archive_path=archive_path,
        )

    @property
    def display(self) -> str:
        """Target rendered without the password."""
        return f"{self.user}@{self.host}"


__all__ = ["LOCAL_VERSION_PATTERN", "BuildConfig", "DeployTarget"]
