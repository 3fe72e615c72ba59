"""Artifact index module.

This module handles:
- Loading the name<TAB>url artifact table from a file or URL
- Resolving artifact names to download URLs
- Version-aware release matching (kernel releases, rootfs versions)

The index is loaded once per process and never mutated afterwards.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from collections.abc import Iterator, Mapping
from functools import cmp_to_key
from pathlib import Path
from types import MappingProxyType
from typing import cast

import httpx

from vmtest_imagegen.errors import (
    ArtifactNotFoundError,
    IndexLoadError,
    NoMatchingReleaseError,
)

logger = logging.getLogger(__name__)

# Timeout for fetching a remote index (seconds)
INDEX_TIMEOUT = 30

# Splits a version into a leading non-digit run, a digit run and the rest
_CHUNK_RE = re.compile(r"(\D*)(\d*)(.*)", re.DOTALL)

# A string with no unescaped glob metacharacters, optionally ending in '\'
_LITERAL_RE = re.compile(r"(?:[^\\*?\[]|\\[*?\[])*\\?", re.DOTALL)


def vmlinux_name(arch: str, release: str) -> str:
    """Index name of the compressed debug kernel image."""
    return f"{arch}/vmlinux-{release}.zst"


def vmlinuz_name(arch: str, release: str) -> str:
    """Index name of the bootable kernel image."""
    return f"{arch}/vmlinuz-{release}"


def rootfs_name(arch: str, project: str, version: str) -> str:
    """Index name of the compressed root filesystem tarball."""
    return f"{arch}/{project}-vmtest-rootfs-{version}.tar.zst"


def _char_order(c: str) -> int:
    # '~' sorts before everything, even the end of the string
    if c == "~":
        return -1
    if c.isalpha():
        return ord(c)
    return ord(c) + 256


def _compare_text(a: str, b: str) -> int:
    for i in range(max(len(a), len(b))):
        oa = _char_order(a[i]) if i < len(a) else 0
        ob = _char_order(b[i]) if i < len(b) else 0
        if oa != ob:
            return -1 if oa < ob else 1
    return 0


def compare_versions(a: str, b: str) -> int:
    """Compare two release strings like ``sort -V``.

    Digit runs compare numerically and the rest character by character.
    Release-candidate suffixes sort before the final release, so
    ``5.10-rc1 < 5.10 < 5.10.1``.

    Args:
        a: First release string.
        b: Second release string.

    Returns:
        Negative, zero or positive like a classic ``cmp``.
    """
    left = a.replace("-rc", "~rc")
    right = b.replace("-rc", "~rc")
    while left or right:
        # the pattern matches any string, including the empty one
        ma = cast(re.Match[str], _CHUNK_RE.match(left))
        mb = cast(re.Match[str], _CHUNK_RE.match(right))
        result = _compare_text(ma[1], mb[1])
        if result:
            return result
        na = int(ma[2] or 0)
        nb = int(mb[2] or 0)
        if na != nb:
            return -1 if na < nb else 1
        left, right = ma[3], mb[3]
    return (a > b) - (a < b)


version_key = cmp_to_key(compare_versions)


def is_glob_pattern(text: str) -> bool:
    """Return True if text contains an unescaped '*', '?' or '['."""
    return _LITERAL_RE.fullmatch(text) is None


def unescape_glob(text: str) -> str:
    """Strip the backslashes escaping glob metacharacters in a literal."""
    return re.sub(r"\\([*?\[])", r"\1", text)


def parse_index(content: str) -> dict[str, str]:
    """Parse a tab-separated name->URL table.

    Args:
        content: Index text, one ``name<TAB>url`` record per line.

    Returns:
        Dictionary mapping artifact names to URLs.
    """
    urls: dict[str, str] = {}
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        parts = line.split("\t", 1)
        if len(parts) != 2 or not parts[0]:
            logger.warning("Skipping malformed index line %d: %r", lineno, line)
            continue
        name, url = parts
        urls[name] = url.strip()
    return urls


class ArtifactIndex(Mapping[str, str]):
    """Read-only mapping from artifact names to download URLs."""

    def __init__(self, urls: Mapping[str, str]) -> None:
        self._urls = MappingProxyType(dict(urls))

    def __getitem__(self, name: str) -> str:
        return self._urls[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._urls)

    def __len__(self) -> int:
        return len(self._urls)

    def resolve(self, name: str) -> str:
        """Return the download URL for an artifact name.

        Raises:
            ArtifactNotFoundError: If the index has no such entry.
        """
        try:
            return self._urls[name]
        except KeyError:
            raise ArtifactNotFoundError(name) from None

    def _releases(self, regex: re.Pattern[str]) -> Iterator[str]:
        for name in self._urls:
            match = regex.fullmatch(name)
            if match:
                yield match[1]

    def matching_kernel_releases(self, arch: str, pattern: str = "*") -> list[str]:
        """List kernel releases matching a glob pattern, newest first.

        Args:
            arch: Target architecture.
            pattern: Shell glob matched against the release string.

        Returns:
            Matching releases sorted by version, newest first. Empty if
            nothing matches.
        """
        regex = re.compile(rf"{re.escape(arch)}/vmlinux-(.*)\.zst")
        releases = [
            r for r in self._releases(regex) if fnmatch.fnmatchcase(r, pattern)
        ]
        return sorted(releases, key=version_key, reverse=True)

    def newest_kernel_release(self, arch: str, pattern: str = "*") -> str:
        """Return the newest kernel release matching a glob pattern.

        Raises:
            NoMatchingReleaseError: If no release matches.
        """
        releases = self.matching_kernel_releases(arch, pattern)
        if not releases:
            raise NoMatchingReleaseError("kernel release", pattern)
        return releases[0]

    def newest_rootfs_version(self, arch: str, project: str) -> str:
        """Return the newest root filesystem version in the index.

        Raises:
            NoMatchingReleaseError: If the index has no rootfs for arch.
        """
        regex = re.compile(
            rf"{re.escape(arch)}/{re.escape(project)}-vmtest-rootfs-(.*)\.tar\.zst"
        )
        versions = sorted(self._releases(regex), key=version_key, reverse=True)
        if not versions:
            raise NoMatchingReleaseError("root filesystem version", "*")
        return versions[0]


def load_index(
    location: str,
    client: httpx.Client | None = None,
    timeout: float = INDEX_TIMEOUT,
) -> ArtifactIndex:
    """Load the artifact index from a local path or an http(s) URL.

    Args:
        location: File path or URL of the index.
        client: HTTPX client used for remote indexes (created if needed).
        timeout: Request timeout in seconds.

    Returns:
        Loaded ArtifactIndex.

    Raises:
        IndexLoadError: If the index cannot be read.
    """
    logger.debug("Loading artifact index from %s", location)

    if location.startswith(("http://", "https://")):
        try:
            if client is None:
                with httpx.Client(follow_redirects=True) as own_client:
                    response = own_client.get(location, timeout=timeout)
            else:
                response = client.get(location, timeout=timeout)
            response.raise_for_status()
            content = response.text
        except httpx.HTTPError as e:
            raise IndexLoadError(location, str(e)) from e
    else:
        try:
            content = Path(location).read_text()
        except OSError as e:
            raise IndexLoadError(location, str(e)) from e

    index = ArtifactIndex(parse_index(content))
    logger.debug("Loaded %d artifact index entries", len(index))
    return index


class LazyIndex:
    """Process-scoped holder that loads the index on first use.

    The holder is passed explicitly to the components that need the index;
    runs that never touch the network never read it.
    """

    def __init__(self, location: str, client: httpx.Client | None = None) -> None:
        self.location = location
        self._client = client
        self._index: ArtifactIndex | None = None

    @classmethod
    def of(cls, index: ArtifactIndex) -> LazyIndex:
        """Wrap an already loaded index."""
        lazy = cls("<preloaded>")
        lazy._index = index
        return lazy

    @property
    def loaded(self) -> bool:
        """Whether the index has been read."""
        return self._index is not None

    def get(self) -> ArtifactIndex:
        """Return the index, loading it exactly once."""
        if self._index is None:
            self._index = load_index(self.location, self._client)
        return self._index


__all__ = [
    "ArtifactIndex",
    "LazyIndex",
    "compare_versions",
    "is_glob_pattern",
    "load_index",
    "parse_index",
    "rootfs_name",
    "unescape_glob",
    "version_key",
    "vmlinux_name",
    "vmlinuz_name",
]
