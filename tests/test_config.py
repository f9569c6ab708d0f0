"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from kernel_deploy.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should default to the Raspberry Pi 4 layout."""
        settings = Settings()

        assert settings.source_dir == Path("linux")
        assert settings.staging_dir == Path("kernel_staging")
        assert settings.custom_dir == Path("custom")
        assert settings.archive_name == "kernel_staging.tar.gz"
        assert settings.arch == "arm64"
        assert settings.cross_compile == "aarch64-linux-gnu-"
        assert settings.defconfig == "bcm2711_defconfig"
        assert settings.kernel_image_name == "kernel8.img"
        assert settings.remote_scratch_dir == "/tmp"
        assert settings.remote_boot_path == "/boot/firmware"
        assert settings.remote_modules_root == "/lib/modules"
        assert settings.widen_boot_permissions is False
        assert settings.build_timeout is None
        assert settings.ssh_timeout is None
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "KDEPLOY_LOG_LEVEL": "DEBUG",
                "KDEPLOY_JOBS": "4",
                "KDEPLOY_REMOTE_BOOT_PATH": "/boot",
                "KDEPLOY_WIDEN_BOOT_PERMISSIONS": "true",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.jobs == 4
            assert settings.remote_boot_path == "/boot"
            assert settings.widen_boot_permissions is True

    def test_staging_dir_from_env(self) -> None:
        """Staging dir should be configurable via env."""
        with patch.dict(os.environ, {"KDEPLOY_STAGING_DIR": "/tmp/test-staging"}):
            settings = Settings()
            assert settings.staging_dir == Path("/tmp/test-staging")

    def test_archive_and_manifest_next_to_staging(self) -> None:
        """Archive and manifest should live beside the staging tree."""
        settings = Settings(staging_dir=Path("/work/kernel_staging"))
        assert settings.archive_path == Path("/work/kernel_staging.tar.gz")
        assert settings.manifest_path == Path("/work/kernel_staging.manifest.json")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "source_dir" in parsed
        assert "staging_dir" in parsed
        assert "remote_boot_path" in parsed
        assert parsed["defconfig"] == "bcm2711_defconfig"

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "cross_compile" in parsed
