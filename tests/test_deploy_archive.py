"""Tests for deploy/archive.py - staging tree packaging."""

import tarfile

import pytest

from kernel_deploy.deploy.archive import create_archive, remove_archive
from kernel_deploy.errors import PreconditionFailure


@pytest.fixture
def staging_root(tmp_path):
    """A small staging tree."""
    root = tmp_path / "kernel_staging"
    (root / "boot" / "overlays").mkdir(parents=True)
    (root / "boot" / "kernel8.img").write_bytes(b"image")
    (root / "lib" / "modules" / "6.6.31-v8+" / "extra").mkdir(parents=True)
    return root


class TestCreateArchive:
    """Tests for create_archive."""

    def test_single_top_level_dir(self, staging_root, tmp_path):
        """All members should live under the staging directory name."""
        archive = create_archive(staging_root, tmp_path / "kernel_staging.tar.gz")

        with tarfile.open(archive, "r:gz") as tar:
            names = tar.getnames()
        assert "kernel_staging/boot/kernel8.img" in names
        assert "kernel_staging/boot/overlays" in names
        assert "kernel_staging/lib/modules/6.6.31-v8+/extra" in names
        assert all(n.split("/")[0] == "kernel_staging" for n in names)

    def test_custom_arcname(self, staging_root, tmp_path):
        """The top-level name should be overridable."""
        archive = create_archive(staging_root, tmp_path / "out.tar.gz", arcname="stage")
        with tarfile.open(archive, "r:gz") as tar:
            assert "stage/boot/kernel8.img" in tar.getnames()

    def test_missing_staging(self, tmp_path):
        """A missing staging tree is a precondition failure and writes nothing."""
        archive = tmp_path / "kernel_staging.tar.gz"
        with pytest.raises(PreconditionFailure) as exc_info:
            create_archive(tmp_path / "kernel_staging", archive)
        assert exc_info.value.code == "staging_missing"
        assert not archive.exists()

    def test_overwrites_previous_archive(self, staging_root, tmp_path):
        """A leftover archive from a failed run should be replaced."""
        archive = tmp_path / "kernel_staging.tar.gz"
        archive.write_bytes(b"garbage")
        create_archive(staging_root, archive)
        assert tarfile.is_tarfile(archive)


class TestRemoveArchive:
    """Tests for remove_archive."""

    def test_removes(self, tmp_path):
        """Should delete the archive."""
        archive = tmp_path / "a.tar.gz"
        archive.write_bytes(b"x")
        remove_archive(archive)
        assert not archive.exists()

    def test_missing_ok(self, tmp_path):
        """Removing a missing archive should not fail."""
        remove_archive(tmp_path / "missing.tar.gz")
