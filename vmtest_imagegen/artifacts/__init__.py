"""Artifact management module.

This module handles:
- Loading the artifact index and resolving versions
- Downloading and decompressing artifacts
- Caching kernel images and rootfs master images across runs
"""

from vmtest_imagegen.artifacts.cache import ArtifactCache
from vmtest_imagegen.artifacts.index import (
    ArtifactIndex,
    LazyIndex,
    compare_versions,
    load_index,
)

__all__ = [
    "ArtifactCache",
    "ArtifactIndex",
    "LazyIndex",
    "compare_versions",
    "load_index",
]
