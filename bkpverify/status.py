from __future__ import annotations

from pathlib import Path
from typing import Optional

from .models import Archive, DisplayState, VerificationStatus
from .sidecar import SidecarStore


def store_verification_status(archive: Archive, status: VerificationStatus, store: Optional[SidecarStore] = None) -> Path:
    store = store or SidecarStore()
    return store.save_status(archive.path, status)


def load_verification_status(archive: Archive, store: Optional[SidecarStore] = None) -> Optional[VerificationStatus]:
    """Return the last stored status, or None when the archive was never verified."""
    store = store or SidecarStore()
    return store.load_status(archive.path)


def display_state(status: Optional[VerificationStatus]) -> DisplayState:
    if status is None:
        return DisplayState.UNVERIFIED
    return DisplayState.VERIFIED if status.is_verified else DisplayState.FAILED
