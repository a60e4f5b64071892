"""
Deterministic corruption injection for ZIP archives.

Each call copies a known-good archive, parses the copy with the same parser
the verifier uses, and applies exactly one corruption. Every randomized
choice comes from a DeterministicPRNG keyed by the seed and the corruption
type, so a given source archive and seed always produce the same bytes and
the same description.
"""

from __future__ import annotations

import enum
import io
import logging
import os
import shutil
import struct
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from . import zipfmt
from .constants import (
    CD_COMPRESSED_SIZE_FIELD,
    CD_CRC_FIELD,
    CD_LOCAL_OFFSET_FIELD,
    DEFAULT_PAYLOAD_FLIP_LEN,
    DEFAULT_ZERO_FILL_LEN,
    GPF_DATA_DESCRIPTOR,
    LFH_COMPRESSED_SIZE_FIELD,
    LFH_CRC_FIELD,
    MAX_COMMENT_LEN,
    MAX_PLACEMENT_ATTEMPTS,
    METHOD_STORED,
    ZIP64_SENTINEL_32,
)
from .errors import ArchiveIOError, InjectionError, ZipStructureError
from .models import Archive, DetectionLayer
from .prng import SEED_MAX, SEED_MIN, DeterministicPRNG
from .sidecar import SidecarStore
from .verify import collect_findings


log = logging.getLogger(__name__)


class CorruptionType(enum.Enum):
    TRUNCATION = "truncation"
    END_RECORD = "end-record"
    CENTRAL_DIRECTORY_ENTRY = "central-directory-entry"
    LOCAL_HEADER = "local-header"
    STORED_CRC = "stored-crc"
    PAYLOAD_BYTES = "payload-bytes"
    ZERO_FILL = "zero-fill"
    CONTENT_SUBSTITUTION = "content-substitution"

    @property
    def expected_layers(self) -> FrozenSet[DetectionLayer]:
        return _EXPECTED_LAYERS[self]


_EXPECTED_LAYERS: Dict[CorruptionType, FrozenSet[DetectionLayer]] = {
    CorruptionType.TRUNCATION: frozenset({DetectionLayer.CONTAINER}),
    CorruptionType.END_RECORD: frozenset({DetectionLayer.CONTAINER}),
    CorruptionType.CENTRAL_DIRECTORY_ENTRY: frozenset({DetectionLayer.ENTRY}),
    CorruptionType.LOCAL_HEADER: frozenset({DetectionLayer.ENTRY}),
    CorruptionType.STORED_CRC: frozenset({DetectionLayer.ENTRY}),
    CorruptionType.PAYLOAD_BYTES: frozenset({DetectionLayer.ENTRY}),
    CorruptionType.ZERO_FILL: frozenset({DetectionLayer.CONTAINER, DetectionLayer.ENTRY}),
    CorruptionType.CONTENT_SUBSTITUTION: frozenset({DetectionLayer.MANIFEST}),
}


@dataclass(frozen=True)
class CorruptionSpec:
    type: CorruptionType
    target_offset: int
    seed: int
    description: str
    expected_layer: DetectionLayer
    entry: Optional[str] = None
    length: int = 0


@dataclass(frozen=True)
class CorruptedArchiveResult:
    path: str
    spec: CorruptionSpec
    applied_at: Tuple[int, ...] = ()
    original_bytes: bytes = b""
    corrupted_bytes: bytes = b""


@dataclass
class _Plan:
    spec: CorruptionSpec
    patches: List[Tuple[int, bytes]] = field(default_factory=list)
    truncate_at: Optional[int] = None
    # Whole-file replacement (content substitution of compressed entries)
    replacement: Optional[bytes] = None
    record: Optional[Tuple[Tuple[int, ...], bytes, bytes]] = None


@dataclass
class _Target:
    path: str
    fh: BinaryIO
    layout: zipfmt.Layout
    locals: List[Optional[zipfmt.LocalHeader]]
    prng: DeterministicPRNG
    ctype: CorruptionType
    seed: int
    length: Optional[int]

    def read(self, offset: int, n: int) -> bytes:
        self.fh.seek(offset)
        return self.fh.read(n)

    def pick_entry(self, predicate: Callable[[zipfmt.CentralEntry, zipfmt.LocalHeader], bool]):
        eligible = [
            (e, loc) for e, loc in zip(self.layout.entries, self.locals) if loc is not None and predicate(e, loc)
        ]
        if not eligible:
            raise InjectionError(f"{self.ctype.value}: archive has no entry to target")
        return self.prng.choice(eligible)

    def spec(self, target_offset: int, description: str, *, layer: Optional[DetectionLayer] = None,
             entry: Optional[str] = None, length: int = 0) -> CorruptionSpec:
        if layer is None:
            (layer,) = tuple(self.ctype.expected_layers)
        return CorruptionSpec(
            type=self.ctype,
            target_offset=target_offset,
            seed=self.seed,
            description=description,
            expected_layer=layer,
            entry=entry,
            length=length,
        )


def _xor(data: bytes, mask: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(data, mask))


def _u32(value: int) -> bytes:
    return struct.pack("<I", value)


def _crc_patch_offset(ctx: _Target, entry: zipfmt.CentralEntry, local: zipfmt.LocalHeader) -> int:
    """Where the entry's CRC-32 is repeated outside the central directory."""
    if entry.uses_data_descriptor:
        try:
            desc = zipfmt.entry_data_descriptor(ctx.fh, local, entry)
        except ZipStructureError as exc:
            raise InjectionError(f"{ctx.ctype.value}: data descriptor of {entry.name} cannot be parsed: {exc}")
        return desc.crc_offset
    return local.offset + LFH_CRC_FIELD


class _PatchedView:
    """Read-only view of an open file with one byte range replaced."""

    def __init__(self, fh: BinaryIO, offset: int, data: bytes):
        self.fh = fh
        self.offset = offset
        self.data = data
        self.pos = 0

    def seek(self, pos: int, whence: int = os.SEEK_SET) -> int:
        if whence != os.SEEK_SET:
            raise ValueError("only absolute seeks are supported")
        self.pos = pos
        return pos

    def read(self, n: int = -1) -> bytes:
        self.fh.seek(self.pos)
        chunk = self.fh.read(n)
        lo = max(self.pos, self.offset)
        hi = min(self.pos + len(chunk), self.offset + len(self.data))
        if lo < hi:
            chunk = chunk[: lo - self.pos] + self.data[lo - self.offset : hi - self.offset] + chunk[hi - self.pos :]
        self.pos += len(chunk)
        return chunk


def _payload_damage_visible(
    ctx: _Target, entry: zipfmt.CentralEntry, local: zipfmt.LocalHeader, offset: int, data: bytes
) -> bool:
    """True if patching the entry's compressed data changes what the verifier decodes.

    Padding bits at the end of a compressed stream, for instance, can be
    flipped without any effect on the decoded bytes.
    """
    view = _PatchedView(ctx.fh, offset, data)
    crc = 0
    size = 0
    try:
        for block in zipfmt.iter_entry_data(view, local, entry):
            crc = zlib.crc32(block, crc)
            size += len(block)
            if size > entry.uncompressed_size:
                return True
    except ZipStructureError:
        return True
    return size != entry.uncompressed_size or crc != entry.crc32


# -------- Handlers (one per CorruptionType) --------

def _truncation(ctx: _Target) -> _Plan:
    end = ctx.layout.end
    limit = end.zip64_offset if end.zip64_offset is not None else end.offset
    if limit <= 0:
        raise InjectionError("truncation: no bytes precede the end of central directory record")
    cut = ctx.prng.next_uint(limit)
    window_start = max(0, cut - (zipfmt.END_RECORD_SIZE + MAX_COMMENT_LEN))
    if zipfmt.has_end_record(ctx.read(window_start, cut - window_start)):
        raise InjectionError(f"truncation: data before offset {cut} still ends in an end of central directory record")
    size = ctx.layout.size
    desc = f"truncated archive from {size} to {cut} bytes, before the end of central directory record at offset {end.offset}"
    return _Plan(ctx.spec(cut, desc, length=size - cut), truncate_at=cut)


def _end_record(ctx: _Target) -> _Plan:
    off = ctx.layout.end.offset
    old = ctx.read(off, 4)
    new = _xor(old, ctx.prng.nonzero_mask(4))
    desc = f"overwrote end of central directory signature at offset {off} ({old.hex()} -> {new.hex()})"
    return _Plan(ctx.spec(off, desc, length=4), patches=[(off, new)])


def _central_directory_entry(ctx: _Target) -> _Plan:
    entry, _local = ctx.pick_entry(lambda e, loc: not e.zip64)
    fields = [("local header offset", CD_LOCAL_OFFSET_FIELD)]
    if entry.compressed_size > 0:
        fields.append(("compressed size", CD_COMPRESSED_SIZE_FIELD))
    label, rel = ctx.prng.choice(fields)
    off = entry.offset + rel
    (old,) = struct.unpack("<I", ctx.read(off, 4))
    if rel == CD_LOCAL_OFFSET_FIELD:
        # Lands inside the real local header, never on its signature
        new = (old + 1 + ctx.prng.next_uint(3)) % ZIP64_SENTINEL_32
    else:
        new = ctx.prng.next_uint(old)
    desc = f"central directory entry {entry.name}: {label} {old} -> {new} at offset {off}"
    return _Plan(ctx.spec(off, desc, entry=entry.name, length=4), patches=[(off, _u32(new))])


def _local_header(ctx: _Target) -> _Plan:
    entry, local = ctx.pick_entry(lambda e, loc: True)
    fields = ["signature"]
    if not (local.flags & GPF_DATA_DESCRIPTOR or entry.uses_data_descriptor or local.zip64):
        fields.append("compressed size")
    label = ctx.prng.choice(fields)
    if label == "signature":
        off = local.offset
        old = ctx.read(off, 4)
        new = _xor(old, ctx.prng.nonzero_mask(4))
        desc = f"local header of {entry.name}: signature {old.hex()} -> {new.hex()} at offset {off}"
    else:
        off = local.offset + LFH_COMPRESSED_SIZE_FIELD
        (old_size,) = struct.unpack("<I", ctx.read(off, 4))
        new_size = (old_size + 1 + ctx.prng.next_uint(0xFFFF)) % ZIP64_SENTINEL_32
        new = _u32(new_size)
        desc = f"local header of {entry.name}: compressed size {old_size} -> {new_size} at offset {off}"
    return _Plan(ctx.spec(off, desc, entry=entry.name, length=4), patches=[(off, new)])


def _stored_crc(ctx: _Target) -> _Plan:
    entry, local = ctx.pick_entry(lambda e, loc: True)
    new_crc = entry.crc32 ^ (1 + ctx.prng.next_uint(ZIP64_SENTINEL_32))
    packed = _u32(new_crc)
    cd_off = entry.offset + CD_CRC_FIELD
    patches = sorted([(cd_off, packed), (_crc_patch_offset(ctx, entry, local), packed)])
    desc = f"CRC-32 of {entry.name}: 0x{entry.crc32:08x} -> 0x{new_crc:08x} (data untouched)"
    return _Plan(ctx.spec(cd_off, desc, entry=entry.name, length=4), patches=patches)


def _payload_bytes(ctx: _Target) -> _Plan:
    want = ctx.length or DEFAULT_PAYLOAD_FLIP_LEN
    for _ in range(MAX_PLACEMENT_ATTEMPTS):
        entry, local = ctx.pick_entry(lambda e, loc: e.compressed_size > 0)
        n = min(want, entry.compressed_size)
        start = local.data_offset + ctx.prng.next_uint(entry.compressed_size - n + 1)
        new = _xor(ctx.read(start, n), ctx.prng.nonzero_mask(n))
        if _payload_damage_visible(ctx, entry, local, start, new):
            desc = f"flipped {n} byte(s) of {entry.name} compressed data at offset {start}"
            return _Plan(ctx.spec(start, desc, entry=entry.name, length=n), patches=[(start, new)])
    raise InjectionError(
        f"payload-bytes: no byte flip in {MAX_PLACEMENT_ATTEMPTS} draws changes the decoded data of any entry"
    )


def _zero_fill(ctx: _Target) -> _Plan:
    want = ctx.length or DEFAULT_ZERO_FILL_LEN
    regions: List[Tuple[str, Optional[str], int, int, DetectionLayer]] = []
    for entry, local in zip(ctx.layout.entries, ctx.locals):
        if local is not None:
            regions.append((f"local header of {entry.name}", entry.name, local.offset,
                            local.data_offset - local.offset, DetectionLayer.ENTRY))
            n = min(want, entry.compressed_size)
            if n > 0 and _payload_damage_visible(ctx, entry, local, local.data_offset, bytes(n)):
                regions.append((f"compressed data of {entry.name}", entry.name, local.data_offset,
                                entry.compressed_size, DetectionLayer.ENTRY))
        regions.append((f"central directory header of {entry.name}", entry.name, entry.offset,
                        entry.record_size, DetectionLayer.CONTAINER))
    end = ctx.layout.end
    regions.append(("end of central directory record", None, end.offset, end.size, DetectionLayer.CONTAINER))
    # Only ranges that actually change when zeroed
    eligible = []
    for label, name, start, size, layer in regions:
        n = min(want, size)
        if n > 0 and any(ctx.read(start, n)):
            eligible.append((label, name, start, n, layer))
    if not eligible:
        raise InjectionError("zero-fill: archive has no nonzero region to target")
    label, name, start, n, layer = ctx.prng.choice(eligible)
    desc = f"zero-filled {n} byte(s) of {label} at offset {start}"
    return _Plan(ctx.spec(start, desc, layer=layer, entry=name, length=n), patches=[(start, bytes(n))])


def _rewrite_with(path: str, index: int, data: bytes) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(path) as src, zipfile.ZipFile(buf, "w") as out:
        out.comment = src.comment
        for i, info in enumerate(src.infolist()):
            payload = data if i == index else src.read(info)
            clone = zipfile.ZipInfo(info.filename, date_time=info.date_time)
            clone.compress_type = info.compress_type
            clone.create_system = info.create_system
            clone.external_attr = info.external_attr
            clone.comment = info.comment
            out.writestr(clone, payload)
    return buf.getvalue()


def _content_substitution(ctx: _Target) -> _Plan:
    entry, local = ctx.pick_entry(lambda e, loc: not e.is_dir and e.uncompressed_size > 0)
    try:
        with zipfile.ZipFile(ctx.path) as zf:
            content = zf.read(zf.infolist()[entry.index])
    except (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, ValueError) as exc:
        raise InjectionError(f"content-substitution: {entry.name} cannot be read: {exc}")
    new = _xor(content, ctx.prng.nonzero_mask(len(content)))
    new_crc = zlib.crc32(new)
    summary = f"replaced {len(new)} byte(s) of {entry.name} content, CRC-32 0x{entry.crc32:08x} -> 0x{new_crc:08x}"
    if entry.method == METHOD_STORED and not entry.zip64:
        packed = _u32(new_crc)
        patches = sorted([
            (local.data_offset, new),
            (entry.offset + CD_CRC_FIELD, packed),
            (_crc_patch_offset(ctx, entry, local), packed),
        ])
        spec = ctx.spec(local.data_offset, summary + " (patched in place)", entry=entry.name, length=len(new))
        return _Plan(spec, patches=patches)
    try:
        replacement = _rewrite_with(ctx.path, entry.index, new)
    except (zipfile.BadZipFile, zlib.error, EOFError, RuntimeError, ValueError) as exc:
        raise InjectionError(f"content-substitution: archive cannot be rewritten: {exc}")
    rebuilt = io.BytesIO(replacement)
    new_entry = zipfmt.read_layout(rebuilt).entries[entry.index]
    offset = zipfmt.read_local_header(rebuilt, new_entry.local_header_offset).data_offset
    spec = ctx.spec(offset, summary + " (archive rewritten)", entry=entry.name, length=len(new))
    return _Plan(spec, replacement=replacement, record=((offset,), content, new))


_HANDLERS: Dict[CorruptionType, Callable[[_Target], _Plan]] = {
    CorruptionType.TRUNCATION: _truncation,
    CorruptionType.END_RECORD: _end_record,
    CorruptionType.CENTRAL_DIRECTORY_ENTRY: _central_directory_entry,
    CorruptionType.LOCAL_HEADER: _local_header,
    CorruptionType.STORED_CRC: _stored_crc,
    CorruptionType.PAYLOAD_BYTES: _payload_bytes,
    CorruptionType.ZERO_FILL: _zero_fill,
    CorruptionType.CONTENT_SUBSTITUTION: _content_substitution,
}

_unhandled = set(CorruptionType) - set(_HANDLERS)
if _unhandled:
    raise TypeError(f"corruption types without a handler: {sorted(t.value for t in _unhandled)}")


def _apply(path: str, plan: _Plan) -> Tuple[Tuple[int, ...], bytes, bytes]:
    if plan.replacement is not None:
        if plan.record is None:
            raise InjectionError(f"{plan.spec.type.value}: replacement archive carries no change record")
        with open(path, "wb") as fh:
            fh.write(plan.replacement)
            fh.flush()
            os.fsync(fh.fileno())
        return plan.record
    applied: List[int] = []
    original = bytearray()
    corrupted = bytearray()
    with open(path, "r+b") as fh:
        for off, data in plan.patches:
            fh.seek(off)
            old = fh.read(len(data))
            if len(old) != len(data):
                raise InjectionError(f"patch at offset {off} runs past end of file")
            fh.seek(off)
            fh.write(data)
            applied.append(off)
            original += old
            corrupted += data
        if plan.truncate_at is not None:
            fh.seek(plan.truncate_at)
            original += fh.read()
            fh.truncate(plan.truncate_at)
            applied.append(plan.truncate_at)
        fh.flush()
        os.fsync(fh.fileno())
    return tuple(applied), bytes(original), bytes(corrupted)


def default_corrupt_path(source: str, corruption_type: CorruptionType, seed: int) -> str:
    p = Path(source)
    return str(p.with_name(f"{p.stem}.corrupt-{corruption_type.value}-{seed}{p.suffix}"))


def inject_corruption(
    source: Union[str, os.PathLike, Archive],
    corruption_type: Union[CorruptionType, str],
    seed: int = 0,
    dest: Optional[Union[str, os.PathLike]] = None,
    *,
    length: Optional[int] = None,
) -> CorruptedArchiveResult:
    """Copy an archive and apply exactly one corruption to the copy.

    Args:
        source: Known-good archive (path or Archive); never modified.
        corruption_type: CorruptionType member or its value string.
        seed: Seed for every randomized choice.
        dest: Path of the damaged copy (default: next to source).
        length: Bytes to flip (payload-bytes) or zero (zero-fill).

    Returns:
        CorruptedArchiveResult describing the damaged copy.

    Raises:
        InjectionError: The corruption cannot be applied to this archive.
        ArchiveIOError: The source cannot be read.
    """
    try:
        ctype = CorruptionType(corruption_type)
    except ValueError:
        raise InjectionError(f"unknown corruption type: {corruption_type!r}")
    if length is not None and length < 1:
        raise InjectionError(f"{ctype.value}: length must be positive")
    if not SEED_MIN <= seed <= SEED_MAX:
        raise InjectionError(f"{ctype.value}: seed {seed} outside [{SEED_MIN}, {SEED_MAX}]")
    src = source.path if isinstance(source, Archive) else os.fspath(source)
    dst = os.fspath(dest) if dest is not None else default_corrupt_path(src, ctype, seed)
    if os.path.abspath(src) == os.path.abspath(dst) or (
        os.path.exists(src) and os.path.exists(dst) and os.path.samefile(src, dst)
    ):
        raise InjectionError("corruption must target a copy, not the source archive")
    try:
        shutil.copyfile(src, dst)
    except OSError as exc:
        raise ArchiveIOError(f"cannot copy archive {src}: {exc.strerror or exc}") from exc

    try:
        with open(dst, "rb") as fh:
            try:
                layout = zipfmt.read_layout(fh)
            except ZipStructureError as exc:
                raise InjectionError(f"{ctype.value}: source archive cannot be parsed: {exc}")
            locals_: List[Optional[zipfmt.LocalHeader]] = []
            for entry in layout.entries:
                try:
                    locals_.append(zipfmt.read_local_header(fh, entry.local_header_offset))
                except ZipStructureError:
                    locals_.append(None)
            ctx = _Target(
                path=dst,
                fh=fh,
                layout=layout,
                locals=locals_,
                prng=DeterministicPRNG(seed, ctype.value),
                ctype=ctype,
                seed=seed,
                length=length,
            )
            plan = _HANDLERS[ctype](ctx)
        applied, original, corrupted = _apply(dst, plan)
    except BaseException:
        if os.path.exists(dst):
            os.unlink(dst)
        raise
    log.debug("%s: %s", dst, plan.spec.description)
    return CorruptedArchiveResult(
        path=dst,
        spec=plan.spec,
        applied_at=applied,
        original_bytes=original,
        corrupted_bytes=corrupted,
    )


def detect_layer(path: str, store: Optional[SidecarStore] = None) -> Optional[DetectionLayer]:
    """Weakest verification layer at which the archive fails, or None if it verifies."""
    findings = collect_findings(path, store=store)
    if not findings:
        return None
    return min(f.layer for f in findings)
