"""Tests for the on-disk artifact cache."""

import httpx
import pytest
import respx

from vmtest_imagegen.artifacts import cache as cache_module
from vmtest_imagegen.artifacts import fetch
from vmtest_imagegen.artifacts.cache import ArtifactCache
from vmtest_imagegen.artifacts.index import ArtifactIndex, LazyIndex
from vmtest_imagegen.errors import ArtifactNotFoundError, DownloadError, UsageError
from vmtest_imagegen.image.builder import DiskImage
from vmtest_imagegen.types import ArtifactKind, ImageProfile

BASE = "https://example.com"

URLS = {
    "x86_64/vmlinuz-5.10": f"{BASE}/vmlinuz-5.10",
    "x86_64/vmlinux-5.10.zst": f"{BASE}/vmlinux-5.10.zst",
    "x86_64/libbpf-vmtest-rootfs-2021.03.24.tar.zst": f"{BASE}/rootfs.tar.zst",
}


@pytest.fixture(autouse=True)
def plain_decompressor(monkeypatch):
    """Treat artifacts as already decompressed."""
    monkeypatch.setattr(fetch, "ZSTD_COMMAND", ["cat"])


@pytest.fixture
def fake_create_empty(monkeypatch):
    """Replace mkfs with a plain file write."""
    created = []

    def create_empty(path, profile=ImageProfile.DEFAULT):
        path.write_bytes(b"ext4")
        created.append((path, profile))
        return DiskImage(path=path, provenance="created")

    monkeypatch.setattr(cache_module, "create_empty", create_empty)
    return created


def make_cache(tmp_path, client, sessions, one_shot=False):
    """Build a cache over a preloaded index."""
    return ArtifactCache(
        cache_dir=tmp_path / "cache",
        arch="x86_64",
        project="libbpf",
        index=LazyIndex.of(ArtifactIndex(URLS)),
        client=client,
        session_factory=sessions,
        one_shot=one_shot,
    )


class TestPaths:
    """Tests for canonical cache paths."""

    def test_path_for(self, tmp_path, sessions):
        """Should place artifacts under the architecture directory."""
        cache = make_cache(tmp_path, httpx.Client(), sessions)
        arch_dir = tmp_path / "cache" / "x86_64"

        vmlinuz = cache.path_for(ArtifactKind.VMLINUZ, "5.10")
        vmlinux = cache.path_for(ArtifactKind.VMLINUX, "5.10")

        assert vmlinuz == arch_dir / "vmlinuz-5.10"
        assert vmlinux == arch_dir / "vmlinux-5.10"
        assert (
            cache.path_for(ArtifactKind.ROOTFS, "2021.03.24")
            == arch_dir / "libbpf-vmtest-rootfs-2021.03.24.img"
        )

    def test_index_name(self, tmp_path, sessions):
        """Should map kinds to index names."""
        cache = make_cache(tmp_path, httpx.Client(), sessions)

        assert (
            cache.index_name(ArtifactKind.VMLINUX, "5.10") == "x86_64/vmlinux-5.10.zst"
        )
        assert (
            cache.index_name(ArtifactKind.ROOTFS, "1")
            == "x86_64/libbpf-vmtest-rootfs-1.tar.zst"
        )


class TestFetchOrReuse:
    """Tests for fetch_or_reuse in cached mode."""

    @respx.mock
    def test_second_fetch_reuses(self, tmp_path, sessions):
        """A cached artifact should not be downloaded again."""
        route = respx.get(f"{BASE}/vmlinuz-5.10").mock(
            return_value=httpx.Response(200, content=b"bzImage")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            first = cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")
            second = cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")

        assert first == second == cache.path_for(ArtifactKind.VMLINUZ, "5.10")
        assert first.read_bytes() == b"bzImage"
        assert route.call_count == 1

    @respx.mock
    def test_vmlinux_is_decompressed(self, tmp_path, sessions):
        """vmlinux should go through the decompressor."""
        respx.get(f"{BASE}/vmlinux-5.10.zst").mock(
            return_value=httpx.Response(200, content=b"ELF debug kernel")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            path = cache.fetch_or_reuse(ArtifactKind.VMLINUX, "5.10")

        assert path.name == "vmlinux-5.10"
        assert path.read_bytes() == b"ELF debug kernel"

    @respx.mock
    def test_failed_download_leaves_nothing(self, tmp_path, sessions):
        """A failed download should leave neither the artifact nor a temp file."""
        respx.get(f"{BASE}/vmlinuz-5.10").mock(
            side_effect=httpx.ConnectError("Connection reset")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            with pytest.raises(DownloadError):
                cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")

        assert list((tmp_path / "cache" / "x86_64").iterdir()) == []

    def test_interrupted_write_leaves_nothing(self, tmp_path, sessions, monkeypatch):
        """A download dying after a partial write should be cleaned up."""

        def partial_download(client, url, dest_path, timeout):
            dest_path.write_bytes(b"half")
            raise DownloadError("connection reset", code="network_error")

        monkeypatch.setattr(cache_module, "download_file", partial_download)
        cache = make_cache(tmp_path, httpx.Client(), sessions)

        with pytest.raises(DownloadError):
            cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")

        assert not cache.path_for(ArtifactKind.VMLINUZ, "5.10").exists()
        assert list((tmp_path / "cache" / "x86_64").iterdir()) == []

    @respx.mock
    def test_stale_temp_files_ignored(self, tmp_path, sessions):
        """Leftover temp files should not count as cached artifacts."""
        arch_dir = tmp_path / "cache" / "x86_64"
        arch_dir.mkdir(parents=True)
        (arch_dir / "vmlinuz-5.10.abc123.part").write_bytes(b"junk")
        route = respx.get(f"{BASE}/vmlinuz-5.10").mock(
            return_value=httpx.Response(200, content=b"bzImage")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            assert cache.cached_artifacts() == []
            cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")

        assert route.call_count == 1
        assert cache.cached_artifacts() == [arch_dir / "vmlinuz-5.10"]

    def test_unknown_artifact(self, tmp_path, sessions):
        """A release missing from the index should raise before any download."""
        cache = make_cache(tmp_path, httpx.Client(), sessions)

        with pytest.raises(ArtifactNotFoundError):
            cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "9.9")

        assert not cache.path_for(ArtifactKind.VMLINUZ, "9.9").exists()


class TestOneShot:
    """Tests for one-shot mode."""

    @respx.mock
    def test_always_downloads_and_keeps_nothing(self, tmp_path, sessions):
        """Each fetch should download, and discard_scratch should clean up."""
        route = respx.get(f"{BASE}/vmlinuz-5.10").mock(
            return_value=httpx.Response(200, content=b"bzImage")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions, one_shot=True)
            first = cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")
            second = cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")
            assert first.read_bytes() == b"bzImage"
            assert first != second
            cache.discard_scratch()

        assert route.call_count == 2
        assert not first.exists()
        assert not second.exists()
        assert cache.cached_artifacts() == []

    @respx.mock
    def test_ignores_existing_cache_entry(self, tmp_path, sessions):
        """One-shot mode should not reuse a cached artifact."""
        route = respx.get(f"{BASE}/vmlinuz-5.10").mock(
            return_value=httpx.Response(200, content=b"fresh")
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions, one_shot=True)
            cached = cache.path_for(ArtifactKind.VMLINUZ, "5.10")
            cached.parent.mkdir(parents=True)
            cached.write_bytes(b"stale")
            path = cache.fetch_or_reuse(ArtifactKind.VMLINUZ, "5.10")

            assert path.read_bytes() == b"fresh"

        assert route.call_count == 1
        assert cached.read_bytes() == b"stale"

    def test_no_master_images(self, tmp_path, sessions):
        """One-shot mode should refuse to build master images."""
        cache = make_cache(tmp_path, httpx.Client(), sessions, one_shot=True)

        with pytest.raises(UsageError):
            cache.ensure_master_image("2021.03.24")


class TestMasterImage:
    """Tests for ensure_master_image."""

    @respx.mock
    def test_builds_once(self, tmp_path, sessions, fake_create_empty, tar_archive):
        """The rootfs should be extracted into a new image exactly once."""
        rootfs = tar_archive({"bin/sh": b"#!", "etc/hostname": b"vmtest\n"})
        route = respx.get(f"{BASE}/rootfs.tar.zst").mock(
            return_value=httpx.Response(200, content=rootfs)
        )
        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            first = cache.ensure_master_image("2021.03.24")
            second = cache.ensure_master_image("2021.03.24")

        assert first == second == cache.path_for(ArtifactKind.ROOTFS, "2021.03.24")
        assert first.read_bytes() == b"ext4"
        assert route.call_count == 1
        assert len(sessions.sessions) == 1
        session = sessions.sessions[0]
        assert session.files["/bin/sh"] == b"#!"
        assert session.files["/etc/hostname"] == b"vmtest\n"
        assert session.closed
        assert fake_create_empty[0][1] is ImageProfile.DEFAULT

    @respx.mock
    def test_rootfs_kind_goes_through_master_image(
        self,
        tmp_path,
        sessions,
        fake_create_empty,
        tar_archive,
    ):
        """fetch_or_reuse(ROOTFS) should return the master image."""
        respx.get(f"{BASE}/rootfs.tar.zst").mock(
            return_value=httpx.Response(200, content=tar_archive({"a": b"1"}))
        )

        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            path = cache.fetch_or_reuse(ArtifactKind.ROOTFS, "2021.03.24")

        assert path.name == "libbpf-vmtest-rootfs-2021.03.24.img"

    @respx.mock
    def test_failed_extraction_leaves_nothing(
        self,
        tmp_path,
        sessions,
        fake_create_empty,
    ):
        """A failed rootfs download should not leave a master image behind."""
        respx.get(f"{BASE}/rootfs.tar.zst").mock(return_value=httpx.Response(503))
        with httpx.Client() as client:
            cache = make_cache(tmp_path, client, sessions)
            with pytest.raises(DownloadError):
                cache.ensure_master_image("2021.03.24")

        assert list((tmp_path / "cache" / "x86_64").iterdir()) == []
        assert sessions.sessions[0].closed
