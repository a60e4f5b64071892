from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Optional

from .constants import DEFAULT_ALGORITHM
from .errors import ChecksumError
from .hashutil import canonical_algorithm, digest_stream
from .models import Archive, ChecksumManifest
from .sidecar import SidecarStore


log = logging.getLogger(__name__)


def generate_checksums(file_map: Mapping[str, str], algorithm: str = DEFAULT_ALGORITHM) -> ChecksumManifest:
    """Hash every source file of an archive.

    Args:
        file_map: Logical entry name -> source file path.
        algorithm: Digest algorithm identifier (see hashutil.SUPPORTED_ALGORITHMS).

    Returns:
        A ChecksumManifest with hex-encoded digests.

    Raises:
        UnsupportedAlgorithmError: Before any file is read.
        ChecksumError: If a source file cannot be read; names the entry.
    """
    algorithm = canonical_algorithm(algorithm)
    checksums = {}
    for name, src in file_map.items():
        try:
            with open(src, "rb") as fh:
                checksums[name] = digest_stream(fh, algorithm)
        except OSError as exc:
            raise ChecksumError(name, str(src), exc.strerror or str(exc)) from exc
    log.debug("generated %d %s checksums", len(checksums), algorithm)
    return ChecksumManifest(algorithm=algorithm, checksums=checksums)


def store_checksums(archive: Archive, manifest: ChecksumManifest, store: Optional[SidecarStore] = None) -> Path:
    store = store or SidecarStore()
    return store.save_checksums(archive.path, manifest)


def load_checksums(path: str, store: Optional[SidecarStore] = None) -> Optional[ChecksumManifest]:
    store = store or SidecarStore()
    return store.load_checksums(path)
