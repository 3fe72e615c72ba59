"""Tests for disk image creation."""

import subprocess
from unittest.mock import patch

import pytest

from vmtest_imagegen.errors import ImageBuildError
from vmtest_imagegen.image.builder import (
    clone_from,
    create_empty,
    remove_image,
    set_nocow,
)
from vmtest_imagegen.types import ImageProfile


class TestSetNocow:
    """Tests for set_nocow."""

    def test_creates_file_and_runs_chattr(self, tmp_path):
        """Should touch the file and try chattr +C."""
        path = tmp_path / "root.img"
        with patch("vmtest_imagegen.image.builder.subprocess.run") as mock_run:
            set_nocow(path)

        assert path.exists()
        assert mock_run.call_args.args[0] == ["chattr", "+C", str(path)]

    def test_missing_chattr_ignored(self, tmp_path):
        """A missing chattr should not be an error."""
        path = tmp_path / "root.img"
        with patch(
            "vmtest_imagegen.image.builder.subprocess.run",
            side_effect=FileNotFoundError("chattr"),
        ):
            set_nocow(path)

        assert path.exists()


class TestCreateEmpty:
    """Tests for create_empty."""

    def test_sizes_and_formats(self, tmp_path):
        """Should create a sparse file of the profile size and run mkfs."""
        path = tmp_path / "root.img"
        with patch("vmtest_imagegen.image.builder.subprocess.run") as mock_run:
            image = create_empty(path, ImageProfile.REDUCED)

        assert image.path == path
        assert image.provenance == "created"
        assert path.stat().st_size == ImageProfile.REDUCED.size_bytes
        commands = [c.args[0] for c in mock_run.call_args_list]
        assert ["mkfs.ext4", "-q", "-F", str(path)] in commands

    def test_mkfs_failure(self, tmp_path):
        """A failing mkfs should raise ImageBuildError."""
        path = tmp_path / "root.img"

        def run(cmd, **kwargs):
            if cmd[0] == "mkfs.ext4":
                raise subprocess.CalledProcessError(1, cmd, stderr="bad superblock")
            return subprocess.CompletedProcess(cmd, 0)

        with patch("vmtest_imagegen.image.builder.subprocess.run", side_effect=run):
            with pytest.raises(ImageBuildError) as exc_info:
                create_empty(path)

        assert exc_info.value.code == "mkfs_error"
        assert "bad superblock" in exc_info.value.message


class TestCloneFrom:
    """Tests for clone_from."""

    def test_reflink_copy(self, tmp_path):
        """Should copy with cp --reflink=auto."""
        master = tmp_path / "master.img"
        dest = tmp_path / "root.img"
        with patch("vmtest_imagegen.image.builder.subprocess.run") as mock_run:
            image = clone_from(master, dest)

        assert image.provenance == "cloned"
        assert mock_run.call_args.args[0] == [
            "cp",
            "--reflink=auto",
            str(master),
            str(dest),
        ]

    def test_copy_failure(self, tmp_path):
        """A failing copy should raise ImageBuildError."""
        with patch(
            "vmtest_imagegen.image.builder.subprocess.run",
            side_effect=OSError("No space left on device"),
        ):
            with pytest.raises(ImageBuildError) as exc_info:
                clone_from(tmp_path / "master.img", tmp_path / "root.img")

        assert exc_info.value.code == "copy_error"


class TestRemoveImage:
    """Tests for remove_image."""

    def test_removes_and_tolerates_missing(self, tmp_path):
        """Should remove the file and ignore a missing one."""
        path = tmp_path / "root.img"
        path.write_bytes(b"x")

        remove_image(path)
        remove_image(path)

        assert not path.exists()
