"""Helpers for building known-good and deliberately damaged archives in tests."""

from __future__ import annotations

import os
import zipfile
from typing import Mapping, Optional, Union

from .corrupt import CorruptedArchiveResult, CorruptionType, inject_corruption


FIXED_DATE_TIME = (2024, 1, 1, 0, 0, 0)


def create_test_archive(
    path: Union[str, os.PathLike],
    files: Mapping[str, Union[bytes, str]],
    compression: int = zipfile.ZIP_STORED,
) -> str:
    """Write a deterministic ZIP archive with entries in the given order."""
    path = os.fspath(path)
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in files.items():
            if isinstance(data, str):
                data = data.encode("utf-8")
            info = zipfile.ZipInfo(name, date_time=FIXED_DATE_TIME)
            info.compress_type = compression
            info.external_attr = 0o644 << 16
            zf.writestr(info, data)
    return path


def create_corrupted_test_archive(
    path: Union[str, os.PathLike],
    files: Mapping[str, Union[bytes, str]],
    corruption_type: Union[CorruptionType, str],
    seed: int = 0,
    *,
    dest: Optional[Union[str, os.PathLike]] = None,
    length: Optional[int] = None,
    compression: int = zipfile.ZIP_STORED,
) -> CorruptedArchiveResult:
    """Create a clean archive at path, then inject one corruption into a copy."""
    create_test_archive(path, files, compression=compression)
    return inject_corruption(path, corruption_type, seed, dest, length=length)
