from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    CHECKSUMS_FORMAT,
    CHECKSUMS_SUFFIX,
    METADATA_DIR_NAME,
    SIDECAR_VERSION,
    STATUS_FORMAT,
    STATUS_SUFFIX,
)
from .errors import PersistenceError, UnsupportedAlgorithmError
from .hashutil import canonical_algorithm
from .models import ChecksumManifest, VerificationStatus


log = logging.getLogger(__name__)


class SidecarStore:
    """Persists checksum manifests and verification statuses next to archives.

    Records never touch the archive container. By default each archive gets
    ``<dir>/.metadata/<file name>.checksums.json`` and ``.status.json``. When
    ``metadata_dir`` is given, all records go there and the file stem also
    carries a short digest of the archive's absolute path.
    """

    def __init__(self, metadata_dir: Optional[str] = None):
        self.metadata_dir = metadata_dir

    def _record_path(self, archive_path: str, suffix: str) -> Path:
        p = Path(archive_path)
        if self.metadata_dir is None:
            return p.parent / METADATA_DIR_NAME / (p.name + suffix)
        key = hashlib.blake2s(os.path.abspath(archive_path).encode("utf-8"), digest_size=6).hexdigest()
        return Path(self.metadata_dir) / f"{p.name}-{key}{suffix}"

    def checksums_path(self, archive_path: str) -> Path:
        return self._record_path(archive_path, CHECKSUMS_SUFFIX)

    def status_path(self, archive_path: str) -> Path:
        return self._record_path(archive_path, STATUS_SUFFIX)

    # checksums
    def save_checksums(self, archive_path: str, manifest: ChecksumManifest) -> Path:
        doc = {
            "format": CHECKSUMS_FORMAT,
            "version": SIDECAR_VERSION,
            "archive": Path(archive_path).name,
            "algorithm": manifest.algorithm,
            "checksums": dict(sorted(manifest.checksums.items())),
        }
        return self._write(self.checksums_path(archive_path), doc)

    def load_checksums(self, archive_path: str) -> Optional[ChecksumManifest]:
        doc = self._read(self.checksums_path(archive_path), CHECKSUMS_FORMAT)
        if doc is None:
            return None
        algorithm = doc.get("algorithm")
        checksums = doc.get("checksums")
        if not isinstance(algorithm, str) or not isinstance(checksums, dict):
            raise PersistenceError(f"malformed checksum record for {archive_path}")
        try:
            algorithm = canonical_algorithm(algorithm)
        except UnsupportedAlgorithmError as exc:
            raise PersistenceError(f"checksum record for {archive_path} names {exc}")
        return ChecksumManifest(algorithm=algorithm, checksums={str(k): str(v) for k, v in checksums.items()})

    # verification status
    def save_status(self, archive_path: str, status: VerificationStatus) -> Path:
        doc = {
            "format": STATUS_FORMAT,
            "version": SIDECAR_VERSION,
            "archive": Path(archive_path).name,
            "verified_at": status.verified_at.isoformat(),
            "is_verified": status.is_verified,
            "has_checksums": status.has_checksums,
            "errors": list(status.errors),
        }
        return self._write(self.status_path(archive_path), doc)

    def load_status(self, archive_path: str) -> Optional[VerificationStatus]:
        doc = self._read(self.status_path(archive_path), STATUS_FORMAT)
        if doc is None:
            return None
        try:
            return VerificationStatus(
                is_verified=bool(doc["is_verified"]),
                has_checksums=bool(doc["has_checksums"]),
                errors=tuple(str(e) for e in doc.get("errors", [])),
                verified_at=datetime.fromisoformat(doc["verified_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"malformed verification status for {archive_path}: {exc}")

    # internals
    def _write(self, path: Path, doc: Dict[str, Any]) -> Path:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".bkpverify-", suffix=".tmp", dir=str(path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(doc, fh, indent=2)
                    fh.write("\n")
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            raise PersistenceError(f"failed to write {path}: {exc}")
        log.debug("wrote sidecar %s", path)
        return path

    def _read(self, path: Path, fmt: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                doc = json.load(fh)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"failed to read {path}: {exc}")
        except ValueError as exc:
            raise PersistenceError(f"failed to decode {path}: {exc}")
        if not isinstance(doc, dict) or doc.get("format") != fmt:
            raise PersistenceError(f"{path} is not a {fmt} record")
        if doc.get("version") != SIDECAR_VERSION:
            raise PersistenceError(f"{path} has unsupported record version {doc.get('version')!r}")
        return doc
