"""Shared fixtures for vmtest_imagegen tests."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path

import pytest

from vmtest_imagegen.config import Settings


class FakeSession:
    """In-memory stand-in for a guestfish session.

    Records every operation and keeps uploaded and extracted files in a
    dictionary keyed by guest path.
    """

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.dirs: set[str] = set()
        self.modes: dict[str, int] = {}
        self.calls: list[tuple] = []
        self.image: Path | None = None
        self.closed = False

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def attach_and_mount(self, image: Path, label: str = "img") -> None:
        self.calls.append(("attach_and_mount", image))
        self.image = image

    def mkdir(self, path: str, mode: int = 0o755) -> None:
        self.calls.append(("mkdir", path))
        self.dirs.add(path)
        self.modes[path] = mode

    def upload_file(self, host_path: Path, guest_path: str, mode: int = 0o644) -> None:
        self.calls.append(("upload_file", guest_path))
        self.files[guest_path] = Path(host_path).read_bytes()
        self.modes[guest_path] = mode

    def upload_text(self, text: str, guest_path: str, mode: int) -> None:
        self.calls.append(("upload_text", guest_path))
        self.files[guest_path] = text.encode()
        self.modes[guest_path] = mode

    def download_file(self, guest_path: str, host_path: Path) -> None:
        self.calls.append(("download_file", guest_path))
        Path(host_path).write_bytes(self.files[guest_path])

    def is_file(self, guest_path: str) -> bool:
        return guest_path in self.files

    def inject_tree(self, producer, guest_dest: str) -> None:
        self.calls.append(("inject_tree", guest_dest))
        buffer = io.BytesIO()
        producer(buffer)
        buffer.seek(0)
        prefix = guest_dest.rstrip("/")
        with tarfile.open(fileobj=buffer, mode="r|") as tar:
            for member in tar:
                path = f"{prefix}/{member.name}"
                if member.isdir():
                    self.dirs.add(path)
                elif member.isfile():
                    f = tar.extractfile(member)
                    assert f is not None
                    self.files[path] = f.read()

    def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True


class SessionRecorder:
    """Session factory handing out FakeSessions and remembering them."""

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files = files
        self.sessions: list[FakeSession] = []

    def __call__(self) -> FakeSession:
        session = FakeSession(self.files)
        self.sessions.append(session)
        return session


def make_tar(entries: dict[str, bytes]) -> bytes:
    """Build an uncompressed tar archive from name->content pairs."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture
def sessions():
    """Session factory recording the fake sessions it opens."""
    return SessionRecorder()


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings pointing at temp directories."""
    workspace = tmp_path / "workspace"
    repo = tmp_path / "repo"
    workspace.mkdir()
    repo.mkdir()
    return Settings(
        index_location=str(tmp_path / "INDEX"),
        workspace=workspace,
        repo_root=repo,
        cache_dir=tmp_path / "cache",
        target_arch="x86_64",
        project_name="libbpf",
    )


@pytest.fixture
def tar_archive():
    """Build tar archives from name->content pairs."""
    return make_tar
