"""Configuration settings for kernel_deploy.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KDEPLOY_ prefix.
    Relative paths are resolved against the current working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="KDEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Local paths
    source_dir: Path = Field(
        default=Path("linux"),
        description="Kernel source tree",
    )
    staging_dir: Path = Field(
        default=Path("kernel_staging"),
        description="Staging tree shared by build and deploy phases",
    )
    custom_dir: Path = Field(
        default=Path("custom"),
        description="Custom sources root (config override and module sources)",
    )
    archive_name: str = Field(
        default="kernel_staging.tar.gz",
        description="File name of the deployment archive",
    )
    log_dir: Path = Field(
        default=Path("build_logs"),
        description="Directory for per-operation build logs",
    )

    # Kernel source checkout
    source_repo: str = Field(
        default="https://github.com/raspberrypi/linux.git",
        description="Repository cloned when the source tree is absent",
    )
    source_branch: str | None = Field(
        default=None,
        description="Branch to clone (repository default if not set)",
    )
    auto_clone: bool = Field(
        default=True,
        description="Clone the kernel source when it is missing",
    )

    # Toolchain
    arch: str = Field(default="arm64", description="Kernel ARCH")
    cross_compile: str = Field(
        default="aarch64-linux-gnu-",
        description="Toolchain triple prefix (CROSS_COMPILE)",
    )
    defconfig: str = Field(
        default="bcm2711_defconfig",
        description="Default configuration profile",
    )
    jobs: int | None = Field(
        default=None,
        ge=1,
        description="Parallel make jobs (CPU count - 1 if not set)",
    )

    # Artifact layout
    kernel_image_name: str = Field(
        default="kernel8.img",
        description="Name of the kernel image in boot/",
    )
    dtb_vendor: str = Field(
        default="broadcom",
        description="Vendor directory under arch/<arch>/boot/dts",
    )
    module_descriptors: tuple[str, ...] = Field(
        default=("Makefile", "Kbuild"),
        description="Files marking a directory as a module source",
    )

    # Remote layout
    remote_scratch_dir: str = Field(
        default="/tmp",
        description="Remote directory receiving the archive and staging tree",
    )
    remote_boot_path: str = Field(
        default="/boot/firmware",
        description="Remote boot partition mount point",
    )
    remote_modules_root: str = Field(
        default="/lib/modules",
        description="Remote system module directory",
    )
    ssh_port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    strict_host_key_check: bool = Field(
        default=False,
        description="Reject hosts missing from known_hosts",
    )
    widen_boot_permissions: bool = Field(
        default=False,
        description="Apply chmod -R +x to the boot path instead of a+rX",
    )

    # Timeouts (in seconds, None blocks until completion)
    build_timeout: int | None = Field(
        default=None,
        ge=60,
        description="Timeout for each kernel build operation",
    )
    ssh_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Timeout for SSH connect and remote commands",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def archive_path(self) -> Path:
        """Local archive path, placed next to the staging tree."""
        return self.staging_dir.parent / self.archive_name

    @property
    def manifest_path(self) -> Path:
        """Local staging manifest path."""
        return self.staging_dir.parent / f"{self.staging_dir.name}.manifest.json"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
