from __future__ import annotations

import dataclasses
import io
import struct
import tempfile
import unittest
import zipfile
from pathlib import Path

from bkpverify import zipfmt
from bkpverify.constants import CENTRAL_HEADER_SIG, LFH_CRC_FIELD
from bkpverify.errors import (
    CentralDirectoryError,
    DataDescriptorError,
    EndRecordError,
    EntryDataError,
    LocalHeaderError,
)
from bkpverify.testutil import create_test_archive


_FILES = {
    "docs/": b"",
    "docs/a.txt": "hello world\n" * 50,
    "docs/b.bin": bytes(range(256)) * 4,
    "notes.md": "# Title\nSome content\n",
}


class _StreamOnly:
    """Write-only sink; zipfile falls back to data descriptors for it."""

    def __init__(self):
        self.buf = io.BytesIO()

    def write(self, data):
        return self.buf.write(data)

    def flush(self):
        pass


def _descriptor_archive(files) -> bytes:
    sink = _StreamOnly()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(zipfile.ZipInfo(name, date_time=(2024, 1, 1, 0, 0, 0)), data)
    return sink.buf.getvalue()


class ZipLayoutTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_layout_matches_zipfile(self):
        def scenario(tmp_path: Path):
            path = create_test_archive(tmp_path / "sample.zip", _FILES, compression=zipfile.ZIP_DEFLATED)
            layout = zipfmt.load_layout(path)
            with zipfile.ZipFile(path) as zf:
                infos = zf.infolist()
            self.assertEqual(layout.end.entry_count, len(infos))
            self.assertEqual([e.name for e in layout.entries], [i.filename for i in infos])
            for entry, info in zip(layout.entries, infos):
                self.assertEqual(entry.crc32, info.CRC)
                self.assertEqual(entry.compressed_size, info.compress_size)
                self.assertEqual(entry.uncompressed_size, info.file_size)
                self.assertEqual(entry.local_header_offset, info.header_offset)
                self.assertFalse(entry.zip64)
            self.assertEqual(layout.base_offset, 0)
            self.assertTrue(layout.entry("docs/").is_dir)
            self.assertIsNone(layout.entry("missing.txt"))

        self.run_with_tmpdir(scenario)

    def test_local_headers_agree_with_central_directory(self):
        def scenario(tmp_path: Path):
            path = create_test_archive(tmp_path / "sample.zip", _FILES)
            with open(path, "rb") as fh:
                layout = zipfmt.read_layout(fh)
                for entry in layout.entries:
                    local = zipfmt.read_local_header(fh, entry.local_header_offset)
                    zipfmt.check_local_header(local, entry)
                    self.assertIsNone(zipfmt.entry_data_descriptor(fh, local, entry))
                    fh.seek(local.data_offset)
                    data = fh.read(entry.compressed_size)
                    expected = _FILES[entry.name]
                    if isinstance(expected, str):
                        expected = expected.encode("utf-8")
                    self.assertEqual(data, expected)

        self.run_with_tmpdir(scenario)

    def test_end_record_with_comment(self):
        def scenario(tmp_path: Path):
            path = tmp_path / "commented.zip"
            with zipfile.ZipFile(path, "w") as zf:
                zf.writestr("a.txt", b"alpha")
                zf.comment = b"weekly backup set 7"
            end = zipfmt.load_layout(str(path)).end
            self.assertEqual(end.comment, b"weekly backup set 7")
            self.assertEqual(end.offset + end.size, path.stat().st_size)

        self.run_with_tmpdir(scenario)

    def test_prepended_data_sets_base_offset(self):
        def scenario(tmp_path: Path):
            inner = create_test_archive(tmp_path / "inner.zip", {"a.txt": b"alpha", "b.txt": b"beta"})
            stub = b"#!/bin/sh\necho stub\nexit 0\n"
            path = tmp_path / "selfextract.zip"
            path.write_bytes(stub + Path(inner).read_bytes())
            with open(path, "rb") as fh:
                layout = zipfmt.read_layout(fh)
                self.assertEqual(layout.base_offset, len(stub))
                for entry in layout.entries:
                    local = zipfmt.read_local_header(fh, entry.local_header_offset)
                    zipfmt.check_local_header(local, entry)

        self.run_with_tmpdir(scenario)

    def test_data_descriptors(self):
        raw = _descriptor_archive({"a.txt": "hello world\n" * 50, "b.txt": b"beta"})
        fh = io.BytesIO(raw)
        layout = zipfmt.read_layout(fh)
        for entry in layout.entries:
            self.assertTrue(entry.uses_data_descriptor)
            local = zipfmt.read_local_header(fh, entry.local_header_offset)
            zipfmt.check_local_header(local, entry)
            desc = zipfmt.entry_data_descriptor(fh, local, entry)
            self.assertIsNotNone(desc)
            self.assertTrue(desc.has_signature)
            zipfmt.check_data_descriptor(desc, entry)

        entry = layout.entries[0]
        local = zipfmt.read_local_header(fh, entry.local_header_offset)
        desc = zipfmt.entry_data_descriptor(fh, local, entry)
        damaged = bytearray(raw)
        struct.pack_into("<I", damaged, desc.crc_offset, entry.crc32 ^ 1)
        fh = io.BytesIO(bytes(damaged))
        with self.assertRaises(DataDescriptorError):
            zipfmt.check_data_descriptor(zipfmt.entry_data_descriptor(fh, local, entry), entry)

    def test_not_a_zip(self):
        with self.assertRaises(EndRecordError):
            zipfmt.read_layout(io.BytesIO(b"not a zip file"))
        with self.assertRaises(EndRecordError):
            zipfmt.read_layout(io.BytesIO(b"\x00" * 4096))
        self.assertFalse(zipfmt.has_end_record(b"not a zip file"))

    def test_damaged_central_header(self):
        def scenario(tmp_path: Path):
            path = create_test_archive(tmp_path / "sample.zip", _FILES)
            layout = zipfmt.load_layout(path)
            raw = bytearray(Path(path).read_bytes())
            off = layout.entries[1].offset
            self.assertEqual(bytes(raw[off:off + 4]), CENTRAL_HEADER_SIG)
            raw[off] ^= 0xFF
            with self.assertRaises(CentralDirectoryError):
                zipfmt.read_layout(io.BytesIO(bytes(raw)))

        self.run_with_tmpdir(scenario)

    def test_local_header_mismatch(self):
        def scenario(tmp_path: Path):
            path = create_test_archive(tmp_path / "sample.zip", {"a.txt": b"alpha"})
            layout = zipfmt.load_layout(path)
            entry = layout.entries[0]
            raw = bytearray(Path(path).read_bytes())
            struct.pack_into("<I", raw, entry.local_header_offset + LFH_CRC_FIELD, entry.crc32 ^ 0xFFFF)
            fh = io.BytesIO(bytes(raw))
            local = zipfmt.read_local_header(fh, entry.local_header_offset)
            with self.assertRaises(LocalHeaderError) as ctx:
                zipfmt.check_local_header(local, entry)
            self.assertIn("CRC-32", str(ctx.exception))

            raw[entry.local_header_offset] = 0
            with self.assertRaises(LocalHeaderError):
                zipfmt.read_local_header(io.BytesIO(bytes(raw)), entry.local_header_offset)

        self.run_with_tmpdir(scenario)

    def test_entry_data_for_every_method(self):
        def scenario(tmp_path: Path):
            for compression in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA):
                path = create_test_archive(tmp_path / f"m{compression}.zip", _FILES, compression=compression)
                layout = zipfmt.load_layout(path)
                with open(path, "rb") as fh, zipfile.ZipFile(path) as zf:
                    for entry in layout.entries:
                        with self.subTest(compression=compression, entry=entry.name):
                            local = zipfmt.read_local_header(fh, entry.local_header_offset)
                            data = b"".join(zipfmt.iter_entry_data(fh, local, entry))
                            self.assertEqual(data, zf.read(entry.name))

        self.run_with_tmpdir(scenario)

    def test_stream_must_end_at_recorded_size(self):
        def scenario(tmp_path: Path):
            for compression in (zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA):
                path = create_test_archive(tmp_path / f"e{compression}.zip", _FILES, compression=compression)
                entry = zipfmt.load_layout(path).entry("docs/a.txt")
                with open(path, "rb") as fh:
                    local = zipfmt.read_local_header(fh, entry.local_header_offset)
                    short = dataclasses.replace(entry, compressed_size=entry.compressed_size - 1)
                    with self.assertRaises(EntryDataError):
                        b"".join(zipfmt.iter_entry_data(fh, local, short))
                    long = dataclasses.replace(entry, compressed_size=entry.compressed_size + 1)
                    with self.assertRaises(EntryDataError) as ctx:
                        b"".join(zipfmt.iter_entry_data(fh, local, long))
                    self.assertIn("after end of compressed stream", str(ctx.exception))

        self.run_with_tmpdir(scenario)

    def test_unsupported_method(self):
        def scenario(tmp_path: Path):
            path = create_test_archive(tmp_path / "sample.zip", {"a.txt": b"alpha"})
            entry = zipfmt.load_layout(path).entries[0]
            with open(path, "rb") as fh:
                local = zipfmt.read_local_header(fh, entry.local_header_offset)
                with self.assertRaises(EntryDataError) as ctx:
                    list(zipfmt.iter_entry_data(fh, local, dataclasses.replace(entry, method=99)))
            self.assertIn("unsupported compression method 99", str(ctx.exception))

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
