from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple


@dataclass(frozen=True)
class Archive:
    name: str
    path: str


@dataclass(frozen=True)
class ChecksumManifest:
    algorithm: str
    checksums: Dict[str, str] = field(default_factory=dict)


class DetectionLayer(enum.IntEnum):
    """Verification layers, weakest first."""

    CONTAINER = 1  # the container can be opened
    ENTRY = 2  # per-entry integrity fields match the decompressed bytes
    MANIFEST = 3  # content matches an independently recorded digest


class DisplayState(str, enum.Enum):
    VERIFIED = "VERIFIED"
    UNVERIFIED = "UNVERIFIED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Finding:
    layer: DetectionLayer
    entry: Optional[str]
    message: str

    def __str__(self) -> str:
        if self.entry is None:
            return f"archive: {self.message}"
        return f"entry {self.entry}: {self.message}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VerificationStatus:
    is_verified: bool
    has_checksums: bool
    errors: Tuple[str, ...] = ()
    verified_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        object.__setattr__(self, "errors", tuple(self.errors))
        if self.is_verified and self.errors:
            raise ValueError("a verified status cannot carry errors")
        if not self.is_verified and not self.errors:
            raise ValueError("an unverified status must list at least one error")

    @classmethod
    def from_findings(cls, findings: Iterable[Finding], *, has_checksums: bool) -> "VerificationStatus":
        errors = tuple(str(f) for f in findings)
        return cls(is_verified=not errors, has_checksums=has_checksums, errors=errors)
