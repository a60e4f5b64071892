from __future__ import annotations

import hashlib
import io
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest import mock

from bkpverify import corrupt, zipfmt
from bkpverify.checksums import generate_checksums
from bkpverify.corrupt import CorruptionSpec, CorruptionType, default_corrupt_path, detect_layer, inject_corruption
from bkpverify.errors import InjectionError
from bkpverify.models import Archive, DetectionLayer
from bkpverify.prng import DeterministicPRNG
from bkpverify.sidecar import SidecarStore
from bkpverify.testutil import create_corrupted_test_archive, create_test_archive
from bkpverify.verify import collect_findings, verify_archive, verify_checksums


_FILES = {
    "docs/": b"",
    "docs/a.txt": ("hello world\n" * 50).encode("utf-8"),
    "docs/b.bin": bytes(range(256)) * 16,
    "empty.txt": b"",
    "notes.md": b"# Title\nSome content\n",
}


_COMPRESSIONS = (
    ("stored", zipfile.ZIP_STORED),
    ("deflated", zipfile.ZIP_DEFLATED),
    ("bzip2", zipfile.ZIP_BZIP2),
    ("lzma", zipfile.ZIP_LZMA),
)


def _sha256(path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


def _write_sources(base: Path):
    file_map = {}
    for name, data in _FILES.items():
        if name.endswith("/"):
            continue
        src = base / "src" / name
        src.parent.mkdir(parents=True, exist_ok=True)
        src.write_bytes(data)
        file_map[name] = str(src)
    return file_map


class _StreamOnly:
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
            zf.writestr(name, data)
    return sink.buf.getvalue()


class CorruptionTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def _check_every_type(self, compression):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES, compression=compression)
            manifest = generate_checksums(_write_sources(tmp_path))
            store = SidecarStore(str(tmp_path / "records"))
            before = _sha256(source)
            for ctype in CorruptionType:
                for seed in (0, 1, 7):
                    with self.subTest(type=ctype.value, seed=seed):
                        first = inject_corruption(source, ctype, seed, tmp_path / f"{ctype.value}-{seed}-a.zip")
                        second = inject_corruption(source, ctype, seed, tmp_path / f"{ctype.value}-{seed}-b.zip")
                        self.assertEqual(Path(first.path).read_bytes(), Path(second.path).read_bytes())
                        self.assertEqual(first.spec, second.spec)
                        self.assertEqual(first.applied_at, second.applied_at)
                        self.assertNotEqual(_sha256(first.path), before)
                        self.assertEqual(first.spec.type, ctype)
                        self.assertEqual(first.spec.seed, seed)
                        self.assertIn(first.spec.expected_layer, ctype.expected_layers)

                        store.save_checksums(first.path, manifest)
                        self.assertEqual(detect_layer(first.path, store=store), first.spec.expected_layer)
            self.assertEqual(_sha256(source), before)
            self.assertIsNone(detect_layer(source))

        self.run_with_tmpdir(scenario)

    def test_every_type_stored(self):
        self._check_every_type(zipfile.ZIP_STORED)

    def test_every_type_deflated(self):
        self._check_every_type(zipfile.ZIP_DEFLATED)

    def test_detection_sweep(self):
        def scenario(tmp_path: Path):
            manifest = generate_checksums(_write_sources(tmp_path))
            store = SidecarStore(str(tmp_path / "records"))
            sources = {}
            for label, compression in _COMPRESSIONS:
                sources[label] = create_test_archive(tmp_path / f"{label}.zip", _FILES, compression=compression)
            streamed = tmp_path / "streamed.zip"
            streamed.write_bytes(_descriptor_archive(_FILES))
            sources["streamed"] = str(streamed)

            for label, source in sources.items():
                for ctype in CorruptionType:
                    for seed in range(24):
                        with self.subTest(archive=label, type=ctype.value, seed=seed):
                            result = inject_corruption(source, ctype, seed, tmp_path / "damaged.zip")
                            store.save_checksums(result.path, manifest)
                            self.assertEqual(
                                detect_layer(result.path, store=store),
                                result.spec.expected_layer,
                                result.spec.description,
                            )

        self.run_with_tmpdir(scenario)

    def test_compressed_stream_damage_is_reported(self):
        def scenario(tmp_path: Path):
            for label, compression in _COMPRESSIONS[1:]:
                source = create_test_archive(tmp_path / f"{label}.zip", _FILES, compression=compression)
                for ctype in (CorruptionType.PAYLOAD_BYTES, CorruptionType.ZERO_FILL):
                    for seed in range(16):
                        with self.subTest(archive=label, type=ctype.value, seed=seed):
                            result = inject_corruption(source, ctype, seed, tmp_path / "damaged.zip")
                            status = verify_archive(result.path)
                            self.assertFalse(status.is_verified)
                            if result.spec.entry is not None and result.spec.expected_layer == DetectionLayer.ENTRY:
                                self.assertTrue(
                                    any(err.startswith(f"entry {result.spec.entry}:") for err in status.errors),
                                    status.errors,
                                )

        self.run_with_tmpdir(scenario)

    def test_seeds_vary_choices(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES)
            descriptions = {
                inject_corruption(source, CorruptionType.PAYLOAD_BYTES, seed, tmp_path / f"p{seed}.zip").spec.description
                for seed in range(8)
            }
            self.assertGreater(len(descriptions), 1)

        self.run_with_tmpdir(scenario)

    def test_payload_corruption_names_entry(self):
        def scenario(tmp_path: Path):
            result = create_corrupted_test_archive(
                tmp_path / "test.zip", {"test.txt": "test content"}, CorruptionType.PAYLOAD_BYTES, seed=1
            )
            self.assertEqual(result.path, default_corrupt_path(str(tmp_path / "test.zip"), CorruptionType.PAYLOAD_BYTES, 1))
            self.assertEqual(Path(result.path).name, "test.corrupt-payload-bytes-1.zip")
            self.assertEqual(result.spec.entry, "test.txt")
            self.assertEqual(result.spec.length, 1)
            self.assertEqual(len(result.original_bytes), 1)
            self.assertNotEqual(result.original_bytes, result.corrupted_bytes)
            raw = Path(result.path).read_bytes()
            self.assertEqual(raw[result.applied_at[0]:result.applied_at[0] + 1], result.corrupted_bytes)

            status = verify_checksums(result.path)
            self.assertFalse(status.is_verified)
            self.assertTrue(any("test.txt" in err for err in status.errors))

        self.run_with_tmpdir(scenario)

    def test_container_damage_fails_at_open(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES, compression=zipfile.ZIP_DEFLATED)
            for ctype in (CorruptionType.TRUNCATION, CorruptionType.END_RECORD):
                result = inject_corruption(source, ctype, 3)
                findings = collect_findings(result.path)
                self.assertEqual(len(findings), 1)
                self.assertEqual(findings[0].layer, DetectionLayer.CONTAINER)
                self.assertTrue(str(findings[0]).startswith("archive: cannot open archive"))
                with self.assertRaises(zipfile.BadZipFile):
                    zipfile.ZipFile(result.path)

            truncated = inject_corruption(source, CorruptionType.TRUNCATION, 5)
            size = Path(truncated.path).stat().st_size
            self.assertEqual(size, truncated.spec.target_offset)
            self.assertEqual(size + len(truncated.original_bytes), Path(source).stat().st_size)

        self.run_with_tmpdir(scenario)

    def test_content_substitution_passes_structural_checks(self):
        def scenario(tmp_path: Path):
            for compression in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
                source = create_test_archive(tmp_path / f"clean-{compression}.zip", _FILES, compression=compression)
                file_map = _write_sources(tmp_path)
                result = inject_corruption(source, CorruptionType.CONTENT_SUBSTITUTION, 2)
                self.assertTrue(verify_archive(result.path).is_verified)

                SidecarStore().save_checksums(result.path, generate_checksums(file_map))
                status = verify_checksums(result.path)
                self.assertFalse(status.is_verified)
                self.assertEqual(status.errors, (f"entry {result.spec.entry}: checksum mismatched",))

                with zipfile.ZipFile(result.path) as zf:
                    data = zf.read(result.spec.entry)
                self.assertEqual(len(data), len(_FILES[result.spec.entry]))
                self.assertNotEqual(data, _FILES[result.spec.entry])
                if compression == zipfile.ZIP_DEFLATED:
                    self.assertEqual(result.original_bytes, _FILES[result.spec.entry])
                    self.assertEqual(data, result.corrupted_bytes)

        self.run_with_tmpdir(scenario)

    def test_stored_crc_keeps_data_descriptor_consistent(self):
        def scenario(tmp_path: Path):
            sink = _StreamOnly()
            with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr("a.txt", "hello world\n" * 50)
                zf.writestr("b.txt", "beta")
            source = tmp_path / "streamed.zip"
            source.write_bytes(sink.buf.getvalue())

            result = inject_corruption(Archive("streamed.zip", str(source)), CorruptionType.STORED_CRC, 4)
            with open(result.path, "rb") as fh:
                layout = zipfmt.read_layout(fh)
                entry = layout.entry(result.spec.entry)
                local = zipfmt.read_local_header(fh, entry.local_header_offset)
                desc = zipfmt.entry_data_descriptor(fh, local, entry)
                zipfmt.check_data_descriptor(desc, entry)
            findings = collect_findings(result.path)
            self.assertEqual([f.layer for f in findings], [DetectionLayer.ENTRY])
            self.assertEqual(findings[0].entry, result.spec.entry)

        self.run_with_tmpdir(scenario)

    def test_length_option(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES)
            flipped = inject_corruption(source, CorruptionType.PAYLOAD_BYTES, 0, length=8)
            self.assertEqual(flipped.spec.length, 8)
            self.assertEqual(len(flipped.corrupted_bytes), 8)
            zeroed = inject_corruption(source, CorruptionType.ZERO_FILL, 0, length=4)
            self.assertLessEqual(zeroed.spec.length, 4)
            self.assertEqual(zeroed.corrupted_bytes, bytes(zeroed.spec.length))

        self.run_with_tmpdir(scenario)

    def test_inapplicable_corruptions(self):
        def scenario(tmp_path: Path):
            empty_only = create_test_archive(tmp_path / "empty.zip", {"empty.txt": b""})
            for ctype in (CorruptionType.PAYLOAD_BYTES, CorruptionType.CONTENT_SUBSTITUTION):
                with self.assertRaises(InjectionError):
                    inject_corruption(empty_only, ctype, 0)
                self.assertFalse(Path(default_corrupt_path(empty_only, ctype, 0)).exists())

            bogus = tmp_path / "bogus.zip"
            bogus.write_text("not a zip file", encoding="utf-8")
            with self.assertRaises(InjectionError):
                inject_corruption(bogus, CorruptionType.STORED_CRC, 0)
            self.assertFalse(Path(default_corrupt_path(str(bogus), CorruptionType.STORED_CRC, 0)).exists())

            good = create_test_archive(tmp_path / "good.zip", _FILES)
            before = _sha256(good)
            with self.assertRaises(InjectionError):
                inject_corruption(good, CorruptionType.END_RECORD, 0, good)
            with self.assertRaises(InjectionError):
                inject_corruption(good, "bit-rot", 0)
            with self.assertRaises(InjectionError):
                inject_corruption(good, CorruptionType.ZERO_FILL, 0, length=0)
            self.assertEqual(_sha256(good), before)

        self.run_with_tmpdir(scenario)

    def test_out_of_range_seed_leaves_no_copy(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES)
            dest = tmp_path / "damaged.zip"
            for seed in (2 ** 130, 2 ** 127, -(2 ** 127) - 1):
                with self.subTest(seed=seed):
                    with self.assertRaises(InjectionError):
                        inject_corruption(source, CorruptionType.PAYLOAD_BYTES, seed, dest)
                    self.assertFalse(dest.exists())
            edge = inject_corruption(source, CorruptionType.PAYLOAD_BYTES, 2 ** 127 - 1, dest)
            self.assertEqual(edge.spec.seed, 2 ** 127 - 1)
            with self.assertRaises(ValueError):
                DeterministicPRNG(2 ** 127)

            Path(edge.path).unlink()
            with mock.patch("bkpverify.corrupt._apply", side_effect=OSError("disk full")):
                with self.assertRaises(OSError):
                    inject_corruption(source, CorruptionType.STORED_CRC, 0, dest)
            self.assertFalse(dest.exists())

        self.run_with_tmpdir(scenario)

    def test_replacement_without_change_record_is_rejected(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES)
            before = Path(source).read_bytes()
            spec = CorruptionSpec(
                type=CorruptionType.CONTENT_SUBSTITUTION,
                target_offset=0,
                seed=0,
                description="rewrite",
                expected_layer=DetectionLayer.MANIFEST,
            )
            with self.assertRaises(InjectionError):
                corrupt._apply(source, corrupt._Plan(spec, replacement=b"PK"))
            self.assertEqual(Path(source).read_bytes(), before)

        self.run_with_tmpdir(scenario)

    def test_type_values_are_accepted(self):
        def scenario(tmp_path: Path):
            source = create_test_archive(tmp_path / "clean.zip", _FILES)
            by_value = inject_corruption(source, "stored-crc", 9, tmp_path / "a.zip")
            by_member = inject_corruption(source, CorruptionType.STORED_CRC, 9, tmp_path / "b.zip")
            self.assertEqual(by_value.spec, by_member.spec)

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
