from __future__ import annotations

import concurrent.futures as _fut
import functools
import logging
import zipfile
import zlib
from typing import Callable, List, Mapping, Optional, Sequence, TypeVar

from . import zipfmt
from .checksums import generate_checksums, store_checksums
from .constants import DEFAULT_ALGORITHM, DEFAULT_WORKERS
from .errors import ArchiveIOError, ZipStructureError
from .hashutil import new_hasher
from .models import Archive, ChecksumManifest, DetectionLayer, Finding, VerificationStatus
from .sidecar import SidecarStore
from .status import store_verification_status


log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_OPEN_ERRORS = (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError, RuntimeError)


def _check_readable(path: str) -> None:
    try:
        with open(path, "rb"):
            pass
    except OSError as exc:
        raise ArchiveIOError(f"cannot read archive {path}: {exc.strerror or exc}") from exc


def _map_entries(func: Callable[[T], R], items: Sequence[T], workers: int) -> List[R]:
    """Apply func to every item, optionally on a bounded pool; results keep item order."""
    if workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]
    ex = _fut.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bkpverify")
    try:
        return list(ex.map(func, items))
    finally:
        ex.shutdown(wait=True, cancel_futures=True)


def _check_entry(
    path: str,
    manifest: Optional[ChecksumManifest],
    central: zipfmt.CentralEntry,
) -> Optional[Finding]:
    name = central.name
    hasher = new_hasher(manifest.algorithm) if manifest is not None and not central.is_dir else None
    crc = 0
    size = 0
    # Layer (b): headers agree with the central directory, then the payload
    # decodes to the end of its stream with the recorded size and CRC-32.
    try:
        with open(path, "rb") as fh:
            local = zipfmt.read_local_header(fh, central.local_header_offset)
            zipfmt.check_local_header(local, central)
            desc = zipfmt.entry_data_descriptor(fh, local, central)
            if desc is not None:
                zipfmt.check_data_descriptor(desc, central)
            for block in zipfmt.iter_entry_data(fh, local, central):
                crc = zlib.crc32(block, crc)
                size += len(block)
                if hasher is not None:
                    hasher.update(block)
    except ZipStructureError as exc:
        return Finding(DetectionLayer.ENTRY, name, str(exc))
    if size != central.uncompressed_size:
        return Finding(
            DetectionLayer.ENTRY, name, f"decompressed size {size} does not match recorded size {central.uncompressed_size}"
        )
    if crc != central.crc32:
        return Finding(DetectionLayer.ENTRY, name, f"CRC-32 0x{crc:08x} does not match recorded 0x{central.crc32:08x}")

    # Layer (c): content matches the external manifest
    if hasher is None:
        return None
    expected = manifest.checksums.get(name)
    if expected is None:
        return Finding(DetectionLayer.MANIFEST, name, "no recorded checksum")
    if hasher.hexdigest() != expected.lower():
        return Finding(DetectionLayer.MANIFEST, name, "checksum mismatched")
    return None


def _inspect(path: str, manifest: Optional[ChecksumManifest], workers: int) -> List[Finding]:
    try:
        with open(path, "rb") as fh:
            layout = zipfmt.read_layout(fh)
    except OSError as exc:
        raise ArchiveIOError(f"cannot read archive {path}: {exc.strerror or exc}") from exc
    except ZipStructureError as exc:
        return [Finding(DetectionLayer.CONTAINER, None, f"cannot open archive: {exc}")]
    # The stock reader must agree on the entry list before entries are checked
    try:
        with zipfile.ZipFile(path) as zf:
            listed = len(zf.infolist())
    except _OPEN_ERRORS as exc:
        return [Finding(DetectionLayer.CONTAINER, None, f"cannot open archive: {exc}")]
    if listed != len(layout.entries):
        return [
            Finding(
                DetectionLayer.CONTAINER,
                None,
                f"cannot open archive: reader lists {listed} entries, central directory holds {len(layout.entries)}",
            )
        ]

    check = functools.partial(_check_entry, path, manifest)
    results = _map_entries(check, layout.entries, max(1, int(workers)))

    findings = [f for f in results if f is not None]
    if manifest is not None:
        present = {e.name for e in layout.entries}
        for name in sorted(manifest.checksums):
            if name not in present:
                findings.append(Finding(DetectionLayer.MANIFEST, name, "missing from archive"))
    for f in findings:
        log.debug("%s: %s", path, f)
    return findings


def _finish(path: str, findings: List[Finding], has_checksums: bool) -> VerificationStatus:
    status = VerificationStatus.from_findings(findings, has_checksums=has_checksums)
    if not status.is_verified:
        log.warning("verification of %s failed with %d problem(s)", path, len(status.errors))
    return status


def verify_archive(path: str, workers: int = DEFAULT_WORKERS) -> VerificationStatus:
    """Structural verification: the container opens and every entry decompresses
    to its recorded size and CRC-32.

    Corruption is reported in the returned status; only an unreadable path raises
    (ArchiveIOError).
    """
    _check_readable(path)
    return _finish(path, _inspect(path, None, workers), has_checksums=False)


def verify_checksums(path: str, store: Optional[SidecarStore] = None, workers: int = DEFAULT_WORKERS) -> VerificationStatus:
    """Structural verification plus comparison against the stored manifest.

    Without a stored manifest the result equals verify_archive(path).
    """
    _check_readable(path)
    store = store or SidecarStore()
    manifest = store.load_checksums(path)
    if manifest is None:
        return verify_archive(path, workers=workers)
    return _finish(path, _inspect(path, manifest, workers), has_checksums=True)


def collect_findings(
    path: str,
    store: Optional[SidecarStore] = None,
    use_checksums: bool = True,
    workers: int = DEFAULT_WORKERS,
) -> List[Finding]:
    _check_readable(path)
    manifest = None
    if use_checksums:
        manifest = (store or SidecarStore()).load_checksums(path)
    return _inspect(path, manifest, workers)


def record_archive(
    archive: Archive,
    file_map: Mapping[str, str],
    algorithm: str = DEFAULT_ALGORITHM,
    *,
    verify: bool = True,
    store: Optional[SidecarStore] = None,
    workers: int = DEFAULT_WORKERS,
) -> Optional[VerificationStatus]:
    """Record checksums for a freshly created archive and optionally verify it.

    Returns the stored status when verify is set, otherwise None.
    """
    store = store or SidecarStore()
    manifest = generate_checksums(file_map, algorithm)
    store_checksums(archive, manifest, store=store)
    if not verify:
        return None
    status = verify_checksums(archive.path, store=store, workers=workers)
    store_verification_status(archive, status, store=store)
    return status
