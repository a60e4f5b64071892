"""
bkpverify: integrity verification and controlled corruption testing for ZIP backups.

Features:

- Layered verification: the container opens, every entry decompresses to its
  recorded size and CRC-32, and (optionally) content matches an external
  checksum manifest.
- Checksum manifests and verification statuses kept in sidecar records, never
  inside the archive.
- Deterministic, seeded corruption injection covering container, entry and
  content damage, for exercising the verifier.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "zipfmt",
    "checksums",
    "verify",
    "status",
    "corrupt",
]
