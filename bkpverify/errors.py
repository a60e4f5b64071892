class BkpVerifyError(Exception):
    """Base class for bkpverify errors."""


class ArchiveIOError(BkpVerifyError, OSError):
    """The archive path cannot be read at all (missing, permissions, not a file)."""


class UnsupportedAlgorithmError(BkpVerifyError, ValueError):
    pass


class ChecksumError(BkpVerifyError):
    """A source file could not be hashed while building a manifest."""

    def __init__(self, name: str, path: str, reason: str):
        super().__init__(f"failed to calculate checksum for {name} ({path}): {reason}")
        self.name = name
        self.path = path


class PersistenceError(BkpVerifyError):
    pass


class InjectionError(BkpVerifyError):
    pass


# Container structure
class ZipStructureError(BkpVerifyError):
    pass


class EndRecordError(ZipStructureError):
    pass


class CentralDirectoryError(ZipStructureError):
    pass


class LocalHeaderError(ZipStructureError):
    pass


class DataDescriptorError(ZipStructureError):
    pass


class EntryDataError(ZipStructureError):
    """An entry's compressed stream cannot be decoded or does not end at its recorded size."""
