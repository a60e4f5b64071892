"""
ZIP container structure parser shared by the verifier and the corruption tools.

Only the structures needed to reason about integrity are decoded:

- End of central directory record (plus the ZIP64 locator/end record when the
  classic fields carry ZIP64 sentinels)
- Central directory headers, including the ZIP64 extended information field
- Local file headers and optional data descriptors
- Entry payloads (stored, deflate, bzip2, LZMA), decoded to the exact end of
  their compressed stream

Every offset exposed here is absolute within the file, so the corruption
framework patches exactly the bytes the verifier reads.
"""

from __future__ import annotations

import bz2
import io
import itertools
import logging
import lzma
import os
import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Optional

from .constants import (
    CENTRAL_HEADER_SIG,
    DATA_DESCRIPTOR_SIG,
    END_RECORD_SIG,
    GPF_DATA_DESCRIPTOR,
    GPF_ENCRYPTED,
    GPF_LZMA_EOS,
    GPF_UTF8,
    LOCAL_HEADER_SIG,
    MAX_COMMENT_LEN,
    MAX_LZMA_DICT_SIZE,
    METHOD_BZIP2,
    METHOD_DEFLATED,
    METHOD_LZMA,
    METHOD_STORED,
    READ_BLOCK_SIZE,
    ZIP64_END_RECORD_SIG,
    ZIP64_EXTRA_ID,
    ZIP64_LOCATOR_SIG,
    ZIP64_SENTINEL_16,
    ZIP64_SENTINEL_32,
)
from .errors import (
    CentralDirectoryError,
    DataDescriptorError,
    EndRecordError,
    EntryDataError,
    LocalHeaderError,
)


log = logging.getLogger(__name__)

# End of central directory (fixed 22 bytes)
# struct: <4s H H H H I I H
#  - signature, disk number, central directory disk
#  - entries on this disk, entries total
#  - central directory size, central directory offset, comment length
_EOCD_STRUCT = struct.Struct("<4sHHHHIIH")
_ZIP64_LOCATOR_STRUCT = struct.Struct("<4sIQI")
_ZIP64_EOCD_STRUCT = struct.Struct("<4sQHHIIQQQQ")
_CDH_STRUCT = struct.Struct("<4sHHHHHHIIIHHHHHII")
_LFH_STRUCT = struct.Struct("<4sHHHHHIIIHH")
_EXTRA_HDR_STRUCT = struct.Struct("<HH")
_DD_STRUCT = struct.Struct("<III")
_DD64_STRUCT = struct.Struct("<IQQ")

END_RECORD_SIZE = _EOCD_STRUCT.size
CENTRAL_HEADER_SIZE = _CDH_STRUCT.size
LOCAL_HEADER_SIZE = _LFH_STRUCT.size


@dataclass
class EndRecord:
    offset: int
    entry_count: int
    cd_size: int
    cd_offset: int
    comment: bytes = b""
    zip64_offset: Optional[int] = None

    @property
    def size(self) -> int:
        return END_RECORD_SIZE + len(self.comment)


@dataclass
class CentralEntry:
    index: int
    offset: int
    name: str
    raw_name: bytes
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    local_header_offset: int
    record_size: int
    zip64: bool = False

    @property
    def is_dir(self) -> bool:
        return self.name.endswith("/")

    @property
    def uses_data_descriptor(self) -> bool:
        return bool(self.flags & GPF_DATA_DESCRIPTOR)


@dataclass
class LocalHeader:
    offset: int
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    raw_name: bytes
    extra: bytes
    zip64: bool = False

    @property
    def data_offset(self) -> int:
        return self.offset + LOCAL_HEADER_SIZE + len(self.raw_name) + len(self.extra)


@dataclass
class DataDescriptor:
    offset: int
    has_signature: bool
    crc32: int
    compressed_size: int
    uncompressed_size: int

    @property
    def crc_offset(self) -> int:
        return self.offset + (4 if self.has_signature else 0)


@dataclass
class Layout:
    size: int
    end: EndRecord
    base_offset: int
    entries: List[CentralEntry]

    @property
    def cd_start(self) -> int:
        return self.end.cd_offset + self.base_offset

    def entry(self, name: str) -> Optional[CentralEntry]:
        return next((e for e in self.entries if e.name == name), None)


def _file_size(fh: BinaryIO) -> int:
    fh.seek(0, os.SEEK_END)
    return fh.tell()


def _fmt(value: int, label: str) -> str:
    return f"0x{value:08x}" if label == "CRC-32" else str(value)


def find_end_record(fh: BinaryIO, size: Optional[int] = None) -> int:
    """Return the absolute offset of the end of central directory record.

    The tail of the file is scanned backwards for the record signature; a
    candidate is accepted only if its declared comment length ends exactly at
    end of file.
    """
    if size is None:
        size = _file_size(fh)
    if size < END_RECORD_SIZE:
        raise EndRecordError(f"file too small for an end of central directory record ({size} bytes)")
    window = min(size, END_RECORD_SIZE + MAX_COMMENT_LEN)
    fh.seek(size - window)
    tail = fh.read(window)
    pos = len(tail) - END_RECORD_SIZE
    while pos >= 0:
        pos = tail.rfind(END_RECORD_SIG, 0, pos + len(END_RECORD_SIG))
        if pos < 0:
            break
        (comment_len,) = struct.unpack_from("<H", tail, pos + END_RECORD_SIZE - 2)
        if pos + END_RECORD_SIZE + comment_len == len(tail):
            return size - window + pos
        pos -= 1
    raise EndRecordError("end of central directory record not found")


def has_end_record(data: bytes) -> bool:
    try:
        find_end_record(io.BytesIO(data), len(data))
    except EndRecordError:
        return False
    return True


def read_end_record(fh: BinaryIO, size: Optional[int] = None) -> EndRecord:
    if size is None:
        size = _file_size(fh)
    off = find_end_record(fh, size)
    fh.seek(off)
    raw = fh.read(END_RECORD_SIZE)
    _sig, disk, cd_disk, n_this, n_total, cd_size, cd_offset, comment_len = _EOCD_STRUCT.unpack(raw)
    comment = fh.read(comment_len)
    end = EndRecord(offset=off, entry_count=n_total, cd_size=cd_size, cd_offset=cd_offset, comment=comment)
    if ZIP64_SENTINEL_16 in (n_this, n_total) or ZIP64_SENTINEL_32 in (cd_size, cd_offset):
        _read_zip64_end(fh, end)
    elif disk != 0 or cd_disk != 0 or n_this != n_total:
        raise EndRecordError("multi-disk archives are not supported")
    return end


def _read_zip64_end(fh: BinaryIO, end: EndRecord) -> None:
    loc_off = end.offset - _ZIP64_LOCATOR_STRUCT.size
    if loc_off < 0:
        return
    fh.seek(loc_off)
    raw = fh.read(_ZIP64_LOCATOR_STRUCT.size)
    if len(raw) != _ZIP64_LOCATOR_STRUCT.size or raw[:4] != ZIP64_LOCATOR_SIG:
        # Sentinel values without a locator are taken literally, as zipfile does
        return
    _sig, _disk, _z64_off, disks = _ZIP64_LOCATOR_STRUCT.unpack(raw)
    if disks > 1:
        raise EndRecordError("multi-disk archives are not supported")
    rec_off = loc_off - _ZIP64_EOCD_STRUCT.size
    if rec_off < 0:
        raise EndRecordError("ZIP64 end record out of range")
    fh.seek(rec_off)
    raw = fh.read(_ZIP64_EOCD_STRUCT.size)
    if len(raw) != _ZIP64_EOCD_STRUCT.size or raw[:4] != ZIP64_END_RECORD_SIG:
        raise EndRecordError(f"bad ZIP64 end record signature at offset {rec_off}")
    (_sig, _rec_size, _made, _need, _disk_no, _cd_disk, _n_this, n_total, cd_size, cd_offset) = _ZIP64_EOCD_STRUCT.unpack(raw)
    end.entry_count = n_total
    end.cd_size = cd_size
    end.cd_offset = cd_offset
    end.zip64_offset = rec_off


def _decode_name(raw: bytes, flags: int) -> str:
    return raw.decode("utf-8" if flags & GPF_UTF8 else "cp437")


def _zip64_values(extra: bytes, wanted: int, where: str) -> Optional[List[int]]:
    pos = 0
    while pos + _EXTRA_HDR_STRUCT.size <= len(extra):
        tag, ln = _EXTRA_HDR_STRUCT.unpack_from(extra, pos)
        body = extra[pos + _EXTRA_HDR_STRUCT.size : pos + _EXTRA_HDR_STRUCT.size + ln]
        if tag == ZIP64_EXTRA_ID:
            if len(body) < 8 * wanted:
                raise CentralDirectoryError(f"corrupt ZIP64 extra field in {where}")
            return list(struct.unpack_from(f"<{wanted}Q", body))
        pos += _EXTRA_HDR_STRUCT.size + ln
    return None


def read_central_directory(fh: BinaryIO, end: EndRecord) -> List[CentralEntry]:
    start = end.zip64_offset if end.zip64_offset is not None else end.offset
    base = start - end.cd_size - end.cd_offset
    if base < 0:
        raise CentralDirectoryError("central directory extends past the end record")
    cd_start = end.cd_offset + base
    fh.seek(cd_start)
    data = fh.read(end.cd_size)
    if len(data) != end.cd_size:
        raise CentralDirectoryError("central directory truncated")
    entries: List[CentralEntry] = []
    pos = 0
    while pos < len(data):
        here = cd_start + pos
        if pos + CENTRAL_HEADER_SIZE > len(data):
            raise CentralDirectoryError(f"truncated central directory header at offset {here}")
        (sig, _made, _need, flags, method, _mtime, _mdate, crc, csize, usize,
         nlen, xlen, clen, _disk, _iattr, _eattr, loff) = _CDH_STRUCT.unpack_from(data, pos)
        if sig != CENTRAL_HEADER_SIG:
            raise CentralDirectoryError(f"bad central directory signature at offset {here}")
        var_start = pos + CENTRAL_HEADER_SIZE
        var_end = var_start + nlen + xlen + clen
        if var_end > len(data):
            raise CentralDirectoryError(f"central directory header at offset {here} overruns the directory")
        raw_name = data[var_start : var_start + nlen]
        extra = data[var_start + nlen : var_start + nlen + xlen]
        try:
            name = _decode_name(raw_name, flags)
        except UnicodeDecodeError:
            raise CentralDirectoryError(f"undecodable entry name at offset {here}")
        entry = CentralEntry(
            index=len(entries),
            offset=here,
            name=name,
            raw_name=raw_name,
            flags=flags,
            method=method,
            crc32=crc,
            compressed_size=csize,
            uncompressed_size=usize,
            local_header_offset=loff,
            record_size=var_end - pos,
        )
        wanted = [usize, csize, loff].count(ZIP64_SENTINEL_32)
        if wanted:
            values = _zip64_values(extra, wanted, name)
            if values is not None:
                entry.zip64 = True
                it = iter(values)
                if usize == ZIP64_SENTINEL_32:
                    entry.uncompressed_size = next(it)
                if csize == ZIP64_SENTINEL_32:
                    entry.compressed_size = next(it)
                if loff == ZIP64_SENTINEL_32:
                    entry.local_header_offset = next(it)
        entry.local_header_offset += base
        entries.append(entry)
        pos = var_end
    if len(entries) != end.entry_count:
        raise CentralDirectoryError(
            f"central directory holds {len(entries)} entries, end record declares {end.entry_count}"
        )
    return entries


def read_layout(fh: BinaryIO) -> Layout:
    size = _file_size(fh)
    end = read_end_record(fh, size)
    entries = read_central_directory(fh, end)
    start = end.zip64_offset if end.zip64_offset is not None else end.offset
    layout = Layout(size=size, end=end, base_offset=start - end.cd_size - end.cd_offset, entries=entries)
    log.debug("parsed layout: %d entries, central directory at %d, end record at %d", len(entries), layout.cd_start, end.offset)
    return layout


def load_layout(path: str) -> Layout:
    with open(path, "rb") as fh:
        return read_layout(fh)


def read_local_header(fh: BinaryIO, offset: int) -> LocalHeader:
    if offset < 0:
        raise LocalHeaderError(f"local header offset {offset} out of range")
    fh.seek(offset)
    raw = fh.read(LOCAL_HEADER_SIZE)
    if len(raw) != LOCAL_HEADER_SIZE:
        raise LocalHeaderError(f"truncated local header at offset {offset}")
    (sig, _need, flags, method, _mtime, _mdate, crc, csize, usize, nlen, xlen) = _LFH_STRUCT.unpack(raw)
    if sig != LOCAL_HEADER_SIG:
        raise LocalHeaderError(f"bad local header signature at offset {offset}")
    raw_name = fh.read(nlen)
    extra = fh.read(xlen)
    if len(raw_name) != nlen or len(extra) != xlen:
        raise LocalHeaderError(f"truncated local header at offset {offset}")
    local = LocalHeader(
        offset=offset,
        flags=flags,
        method=method,
        crc32=crc,
        compressed_size=csize,
        uncompressed_size=usize,
        raw_name=raw_name,
        extra=extra,
    )
    if ZIP64_SENTINEL_32 in (usize, csize):
        try:
            values = _zip64_values(extra, 2, f"local header at offset {offset}")
        except CentralDirectoryError as exc:
            raise LocalHeaderError(str(exc))
        if values is not None:
            local.zip64 = True
            local.uncompressed_size, local.compressed_size = values
    return local


def check_local_header(local: LocalHeader, central: CentralEntry) -> None:
    """Raise LocalHeaderError if the local header disagrees with the central record."""
    if local.raw_name != central.raw_name:
        raise LocalHeaderError(f"local header name {local.raw_name!r} differs from central directory")
    if local.method != central.method:
        raise LocalHeaderError(
            f"compression method {local.method} in local header, {central.method} in central directory"
        )
    if central.uses_data_descriptor or local.flags & GPF_DATA_DESCRIPTOR:
        return
    for label, lv, cv in (
        ("CRC-32", local.crc32, central.crc32),
        ("compressed size", local.compressed_size, central.compressed_size),
        ("uncompressed size", local.uncompressed_size, central.uncompressed_size),
    ):
        if lv != cv:
            raise LocalHeaderError(f"{label} {_fmt(lv, label)} in local header, {_fmt(cv, label)} in central directory")


def read_data_descriptor(fh: BinaryIO, offset: int, zip64: bool = False) -> DataDescriptor:
    body_struct = _DD64_STRUCT if zip64 else _DD_STRUCT
    fh.seek(offset)
    head = fh.read(4)
    has_sig = head == DATA_DESCRIPTOR_SIG
    if has_sig:
        body = fh.read(body_struct.size)
    else:
        body = head + fh.read(body_struct.size - len(head))
    if len(body) != body_struct.size:
        raise DataDescriptorError(f"truncated data descriptor at offset {offset}")
    crc, csize, usize = body_struct.unpack(body)
    return DataDescriptor(offset=offset, has_signature=has_sig, crc32=crc, compressed_size=csize, uncompressed_size=usize)


def check_data_descriptor(desc: DataDescriptor, central: CentralEntry) -> None:
    for label, dv, cv in (
        ("CRC-32", desc.crc32, central.crc32),
        ("compressed size", desc.compressed_size, central.compressed_size),
        ("uncompressed size", desc.uncompressed_size, central.uncompressed_size),
    ):
        if dv != cv:
            raise DataDescriptorError(f"{label} {_fmt(dv, label)} in data descriptor, {_fmt(cv, label)} in central directory")


def entry_data_descriptor(fh: BinaryIO, local: LocalHeader, central: CentralEntry) -> Optional[DataDescriptor]:
    if not central.uses_data_descriptor:
        return None
    return read_data_descriptor(fh, local.data_offset + central.compressed_size, zip64=central.zip64 or local.zip64)


def _lzma_decompressor(props: bytes):
    # ZIP LZMA header: version (2 bytes), properties size (2 bytes), then
    # the 5-byte LZMA1 properties: lc/lp/pb byte and dictionary size.
    if len(props) != 5:
        raise EntryDataError(f"unsupported LZMA properties size {len(props)}")
    d = props[0]
    if d >= 9 * 5 * 5:
        raise EntryDataError(f"invalid LZMA properties byte 0x{d:02x}")
    pb, d = divmod(d, 45)
    lp, lc = divmod(d, 9)
    (dict_size,) = struct.unpack("<I", props[1:5])
    if dict_size > MAX_LZMA_DICT_SIZE:
        raise EntryDataError(f"LZMA dictionary size {dict_size} exceeds {MAX_LZMA_DICT_SIZE}")
    filt = {"id": lzma.FILTER_LZMA1, "dict_size": dict_size, "lc": lc, "lp": lp, "pb": pb}
    try:
        return lzma.LZMADecompressor(lzma.FORMAT_RAW, filters=[filt])
    except (lzma.LZMAError, ValueError, MemoryError) as exc:
        raise EntryDataError(f"invalid LZMA properties: {exc}")


_DECODE_ERRORS = (zlib.error, OSError, lzma.LZMAError, EOFError, ValueError)


def iter_entry_data(fh: BinaryIO, local: LocalHeader, central: CentralEntry) -> Iterator[bytes]:
    """Yield the decompressed payload of an entry, block by block.

    The compressed stream must end exactly at the recorded compressed size:
    a stream that stops early, runs past it, or fails to decode raises
    EntryDataError. Stored payloads are yielded as read.
    """
    if central.flags & GPF_ENCRYPTED:
        raise EntryDataError("encrypted entries cannot be verified")
    method = central.method
    remaining = central.compressed_size
    fh.seek(local.data_offset)

    def raw_blocks() -> Iterator[bytes]:
        nonlocal remaining
        while remaining > 0:
            block = fh.read(min(READ_BLOCK_SIZE, remaining))
            if not block:
                raise EntryDataError(f"compressed data truncated, {remaining} byte(s) missing")
            remaining -= len(block)
            yield block

    if method == METHOD_STORED:
        yield from raw_blocks()
        return
    if remaining == 0 and central.uncompressed_size == 0:
        # Some writers store empty members with no compressed stream at all
        return

    blocks = raw_blocks()
    needs_eof = True
    if method == METHOD_DEFLATED:
        dec = zlib.decompressobj(-15)
    elif method == METHOD_BZIP2:
        dec = bz2.BZ2Decompressor()
    elif method == METHOD_LZMA:
        head = b""
        for block in blocks:
            head += block
            if len(head) >= 4:
                break
        if len(head) < 4:
            raise EntryDataError("LZMA header truncated")
        (psize,) = struct.unpack_from("<H", head, 2)
        while len(head) < 4 + psize:
            block = next(blocks, b"")
            if not block:
                raise EntryDataError("LZMA properties truncated")
            head += block
        dec = _lzma_decompressor(head[4 : 4 + psize])
        # Without the end-of-stream marker the stream ends at the recorded size
        needs_eof = bool(central.flags & GPF_LZMA_EOS)
        rest = head[4 + psize :]
        blocks = itertools.chain([rest], blocks) if rest else blocks
    else:
        raise EntryDataError(f"unsupported compression method {method}")

    try:
        for block in blocks:
            if dec.eof:
                raise EntryDataError(f"{len(block) + remaining} byte(s) of data after end of compressed stream")
            out = dec.decompress(block)
            if out:
                yield out
            if dec.eof and dec.unused_data:
                raise EntryDataError(
                    f"{len(dec.unused_data) + remaining} byte(s) of data after end of compressed stream"
                )
        if method == METHOD_DEFLATED:
            tail = dec.flush()
            if tail:
                yield tail
    except _DECODE_ERRORS as exc:
        raise EntryDataError(f"cannot decompress: {str(exc) or exc.__class__.__name__}")
    if needs_eof and not dec.eof:
        raise EntryDataError("compressed stream ends before its end marker")
