"""Tests for staging/assembler.py - staging tree layout and kernel outputs."""

import pytest

from kernel_deploy.errors import PreconditionFailure
from kernel_deploy.staging.assembler import (
    StagingTree,
    discover_kernel_artifacts,
    staging_lock,
)


@pytest.fixture
def staging(tmp_path) -> StagingTree:
    """Create a staging tree under a temporary directory."""
    return StagingTree(tmp_path / "kernel_staging")


@pytest.fixture
def built_kbuild(fake_kbuild):
    """Fake build system with a seeded config and built outputs."""
    fake_kbuild.seed_default_config()
    fake_kbuild.build_artifacts()
    fake_kbuild.calls.clear()
    return fake_kbuild


class TestStagingLayout:
    """Tests for StagingTree paths and init_staging."""

    def test_paths(self, staging):
        """Layout paths should follow boot/ and lib/modules/<release>/."""
        assert staging.boot_dir == staging.root / "boot"
        assert staging.overlays_dir == staging.root / "boot" / "overlays"
        assert staging.release_dir("6.6.31-v8+") == (
            staging.root / "lib" / "modules" / "6.6.31-v8+"
        )
        assert staging.extra_dir("6.6.31-v8+") == (
            staging.root / "lib" / "modules" / "6.6.31-v8+" / "extra"
        )

    def test_init_staging_idempotent(self, staging):
        """init_staging should be safe to call repeatedly."""
        assert not staging.exists()
        staging.init_staging()
        (staging.boot_dir / "keep.txt").write_text("x")
        staging.init_staging()

        assert staging.overlays_dir.is_dir()
        assert (staging.boot_dir / "keep.txt").exists()

    def test_reset_removes_previous_build(self, staging):
        """reset should drop every file and release of an earlier build."""
        staging.init_staging()
        (staging.boot_dir / "old.dtb").write_bytes(b"old")
        staging.extra_dir("6.6.31-old+").mkdir(parents=True)

        staging.reset()

        assert not staging.exists()
        staging.init_staging()
        assert staging.release_dirs() == []
        assert not (staging.boot_dir / "old.dtb").exists()

    def test_reset_missing_tree(self, staging):
        """reset on a tree that was never created is a no-op."""
        staging.reset()
        assert not staging.exists()

    def test_init_staging_does_not_create_modules(self, staging):
        """init_staging must not guess a kernel release directory."""
        staging.init_staging()
        assert staging.release_dirs() == []


class TestDiscoverKernelArtifacts:
    """Tests for discover_kernel_artifacts."""

    def test_discovers_outputs(self, built_kbuild):
        """Should find the image, vendor DTBs, overlay blobs and README."""
        artifacts = discover_kernel_artifacts(built_kbuild.source_dir, "arm64", "broadcom")

        assert artifacts.image.name == "Image"
        assert [p.name for p in artifacts.dtbs] == [
            "bcm2711-rpi-4-b.dtb",
            "bcm2711-rpi-400.dtb",
        ]
        overlay_names = {p.name for p in artifacts.overlays}
        assert overlay_names == {"vc4-kms-v3d.dtbo", "README"}

    def test_missing_image(self, fake_kbuild):
        """A tree without a built image is a precondition failure."""
        with pytest.raises(PreconditionFailure) as exc_info:
            discover_kernel_artifacts(fake_kbuild.source_dir, "arm64", "broadcom")
        assert exc_info.value.code == "kernel_image_missing"


class TestInstallKernelOutputs:
    """Tests for StagingTree.install_kernel_outputs."""

    def test_installs_layout(self, staging, built_kbuild):
        """Image, DTBs, overlays and in-tree modules should land in place."""
        artifacts = discover_kernel_artifacts(built_kbuild.source_dir, "arm64", "broadcom")
        staging.install_kernel_outputs(artifacts, built_kbuild)

        boot = staging.boot_dir
        assert (boot / "kernel8.img").read_bytes() == artifacts.image.read_bytes()
        assert (boot / "bcm2711-rpi-4-b.dtb").exists()
        assert (boot / "bcm2711-rpi-400.dtb").exists()
        assert (boot / "overlays" / "vc4-kms-v3d.dtbo").exists()
        assert (boot / "overlays" / "README").exists()
        assert not (boot / "Image").exists()
        assert built_kbuild.calls == ["install-modules-to-prefix"]
        assert [p.name for p in staging.release_dirs()] == ["6.6.31-v8+"]

    def test_custom_image_name(self, tmp_path, built_kbuild):
        """The image name should come from the staging tree, not upstream."""
        staging = StagingTree(tmp_path / "stage", kernel_image_name="kernel_2712.img")
        artifacts = discover_kernel_artifacts(built_kbuild.source_dir, "arm64", "broadcom")
        staging.install_kernel_outputs(artifacts, built_kbuild)
        assert (staging.boot_dir / "kernel_2712.img").exists()


class TestRequireReleaseDir:
    """Tests for StagingTree.require_release_dir."""

    def test_missing_release_dir(self, staging):
        """A missing release directory must not be created on demand."""
        staging.init_staging()
        with pytest.raises(PreconditionFailure) as exc_info:
            staging.require_release_dir("6.6.31-v8+")
        assert exc_info.value.code == "kernel_release_dir_missing"
        assert not staging.release_dir("6.6.31-v8+").exists()

    def test_existing_release_dir(self, staging):
        """An existing release directory should be returned."""
        staging.release_dir("6.6.31-v8+").mkdir(parents=True)
        assert staging.require_release_dir("6.6.31-v8+") == staging.release_dir(
            "6.6.31-v8+"
        )


class TestStagingLock:
    """Tests for staging_lock.

    Without the lock, two invocations on the same staging path would race
    on the same files.
    """

    def test_second_holder_rejected(self, staging):
        """A concurrent holder of the same staging path should be refused."""
        with staging_lock(staging.root):
            with pytest.raises(PreconditionFailure) as exc_info:
                with staging_lock(staging.root):
                    pass
        assert exc_info.value.code == "staging_locked"

    def test_released_after_exit(self, staging):
        """The lock should be reusable after release."""
        with staging_lock(staging.root):
            pass
        with staging_lock(staging.root):
            pass

    def test_lock_file_outside_staging_tree(self, staging):
        """The lock file must not end up inside the archived tree."""
        with staging_lock(staging.root):
            assert (staging.root.parent / "kernel_staging.lock").exists()
        assert not staging.root.exists()

    def test_different_paths_independent(self, tmp_path):
        """Different staging paths should not contend."""
        with staging_lock(tmp_path / "a"):
            with staging_lock(tmp_path / "b"):
                pass
