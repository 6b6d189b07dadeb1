from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from uepak import codec
from uepak.append import append_to_archive
from uepak.batch import archive_stats, create_from_directory, extract_all
from uepak.codec import Compression
from uepak.constants import Version
from uepak.encryption import _HAS_CRYPTODOME
from uepak.errors import MissingKey, NotFound
from uepak.reader import ArchiveReader
from uepak.rebuild import RebuildError, rebuild_archive, remove_entries
from uepak.writer import ArchiveWriter

KEY = bytes(range(32))
BIG = (b"texture bytes " * 20000)[:250000]


def _build_archive(path: Path, files, **kwargs) -> Path:
    with ArchiveWriter(path, **kwargs) as w:
        for name, data in files.items():
            w.write_file(name, data)
        w.write_index()
    return path


def _contents(path: Path, key=None):
    with ArchiveReader(path, key=key) as r:
        return {p: r.read(p) for p in r.files()}


def _leftovers(directory: Path):
    return [p.name for p in directory.iterdir() if p.name.startswith("uepak-rebuild-")]


def _corrupt_last_byte(path: Path, name: str) -> None:
    with ArchiveReader(path) as r:
        e = r.entry_info(name)
        pos = e.offset + e.header_size(r.version.format) + e.compressed_size - 1
    with open(path, "r+b") as f:
        f.seek(pos)
        byte = f.read(1)
        f.seek(pos)
        f.write(bytes([byte[0] ^ 0xFF]))


class AppendTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_append_files_and_directories(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "base.pak", {"a.txt": b"alpha"}, compression=Compression.ZLIB)
            extra = tmp_path / "Maps"
            (extra / "Sub").mkdir(parents=True)
            (extra / "Sub" / "level.umap").write_bytes(BIG)
            (extra / "notes.txt").write_text("hello")
            loose = tmp_path / "loose.bin"
            loose.write_bytes(b"\x00\x01")

            written = append_to_archive(archive, [extra, loose], prefix="Content", compression=Compression.ZLIB)
            self.assertEqual(written, ["Content/Maps/notes.txt", "Content/Maps/Sub/level.umap", "Content/loose.bin"])
            got = _contents(archive)
            self.assertEqual(list(got), ["a.txt"] + written)
            self.assertEqual(got["Content/Maps/Sub/level.umap"], BIG)
            self.assertEqual(got["a.txt"], b"alpha")

        self.run_with_tmpdir(scenario)

    def test_append_missing_input(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "base.pak", {"a.txt": b"alpha"})
            before = archive.read_bytes()
            with self.assertRaises(FileNotFoundError):
                append_to_archive(archive, [tmp_path / "nope"])
            self.assertEqual(archive.read_bytes(), before)

        self.run_with_tmpdir(scenario)

    def test_append_stop_still_writes_index(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "base.pak", {"a.txt": b"alpha"})
            src = tmp_path / "src"
            src.mkdir()
            for name in ("1.txt", "2.txt", "3.txt"):
                (src / name).write_text(name)
            written = append_to_archive(archive, [src], progress=lambda done, total, path: done < 2)
            self.assertEqual(written, ["src/1.txt", "src/2.txt"])
            self.assertEqual(list(_contents(archive)), ["a.txt", "src/1.txt", "src/2.txt"])

        self.run_with_tmpdir(scenario)


class RebuildTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_remove_shrinks_archive(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(
                tmp_path / "data.pak",
                {"keep.txt": b"keep", "drop.bin": os.urandom(50000), "also.txt": b"also"},
            )
            size_before = archive.stat().st_size
            result = remove_entries(archive, ["drop.bin"])
            self.assertEqual(result.removed, ["drop.bin"])
            self.assertEqual(result.written, ["keep.txt", "also.txt"])
            self.assertFalse(result.failures)
            self.assertLess(archive.stat().st_size, size_before - 50000 + 1)
            self.assertEqual(_contents(archive), {"keep.txt": b"keep", "also.txt": b"also"})
            self.assertEqual(_leftovers(tmp_path), [])

        self.run_with_tmpdir(scenario)

    def test_rebuild_drops_dead_bytes_after_append(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"a.bin": os.urandom(30000)})
            replacement = tmp_path / "a.bin"
            replacement.write_bytes(b"small")
            append_to_archive(archive, [replacement])
            grown = archive.stat().st_size
            rebuild_archive(archive)
            self.assertLess(archive.stat().st_size, grown - 29000)
            self.assertEqual(_contents(archive), {"a.bin": b"small"})

        self.run_with_tmpdir(scenario)

    def test_save_as_leaves_source_untouched(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "src.pak", {"a.txt": b"a", "b.txt": b"b"})
            before = archive.read_bytes()
            out = tmp_path / "out"
            out.mkdir()
            result = rebuild_archive(archive, remove=["a.txt"], output=out / "copy.pak")
            self.assertEqual(result.path, out / "copy.pak")
            self.assertEqual(archive.read_bytes(), before)
            self.assertEqual(_contents(out / "copy.pak"), {"b.txt": b"b"})

        self.run_with_tmpdir(scenario)

    def test_unknown_path_is_rejected(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"a.txt": b"a"})
            before = archive.read_bytes()
            with self.assertRaises(NotFound):
                remove_entries(archive, ["missing.txt"])
            self.assertEqual(archive.read_bytes(), before)
            self.assertEqual(_leftovers(tmp_path), [])

        self.run_with_tmpdir(scenario)

    def test_missing_archive(self):
        def scenario(tmp_path: Path):
            with self.assertRaises(FileNotFoundError):
                rebuild_archive(tmp_path / "absent.pak")

        self.run_with_tmpdir(scenario)

    def test_stop_keeps_original(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"a": b"1", "b": b"2", "c": b"3"})
            before = archive.read_bytes()
            result = remove_entries(archive, ["c"], progress=lambda done, total, path: False)
            self.assertTrue(result.stopped)
            self.assertEqual(archive.read_bytes(), before)
            self.assertEqual(_leftovers(tmp_path), [])

        self.run_with_tmpdir(scenario)

    def test_preserves_layout_of_each_entry(self):
        def scenario(tmp_path: Path):
            archive = tmp_path / "mixed.pak"
            with ArchiveWriter(archive, version=Version.V9, path_hash_seed=0, block_size=0x4000) as w:
                w.write_file("z.bin", BIG, method=Compression.ZLIB)
                w.write_file("g.bin", BIG, method=Compression.GZIP)
                w.write_file("raw.bin", BIG, compress=False)
                w.write_index()
            rebuild_archive(archive)
            with ArchiveReader(archive) as r:
                self.assertIs(r.version, Version.V9)
                z = r.entry_info("z.bin")
                self.assertIs(z.compression, Compression.ZLIB)
                self.assertEqual(z.compression_block_size, 0x4000)
                self.assertIs(r.entry_info("g.bin").compression, Compression.GZIP)
                self.assertIs(r.entry_info("raw.bin").compression, Compression.NONE)
                self.assertEqual(r.read("g.bin"), BIG)

        self.run_with_tmpdir(scenario)

    @unittest.skipUnless(_HAS_CRYPTODOME, "PyCryptodomex required")
    def test_encrypted_rebuild(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(
                tmp_path / "enc.pak",
                {"secret.txt": b"top secret", "big.bin": BIG},
                key=KEY,
                compression=Compression.ZLIB,
            )
            with self.assertRaises(MissingKey):
                rebuild_archive(archive)
            self.assertEqual(_leftovers(tmp_path), [])
            remove_entries(archive, ["secret.txt"], key=KEY)
            with ArchiveReader(archive, key=KEY) as r:
                self.assertTrue(r.encrypted_index)
                self.assertTrue(r.entry_info("big.bin").is_encrypted)
                self.assertEqual(r.read("big.bin"), BIG)
                self.assertEqual(r.files(), ["big.bin"])

        self.run_with_tmpdir(scenario)

    def test_remove_accepts_unnormalised_spelling(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"a.txt": b"a", "dir/b.txt": b"b", "c.txt": b"c"})
            result = remove_entries(archive, ["./a.txt", "/dir\\b.txt"])
            self.assertEqual(result.removed, ["a.txt", "dir/b.txt"])
            self.assertEqual(_contents(archive), {"c.txt": b"c"})

        self.run_with_tmpdir(scenario)

    def test_in_place_failure_keeps_source(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(
                tmp_path / "data.pak",
                {"good.txt": b"good", "bad.bin": os.urandom(4000), "drop.txt": b"drop"},
                compression=Compression.NONE,
            )
            _corrupt_last_byte(archive, "bad.bin")
            before = archive.read_bytes()
            with self.assertRaises(RebuildError):
                remove_entries(archive, ["drop.txt"])
            self.assertEqual(archive.read_bytes(), before)
            self.assertEqual(_leftovers(tmp_path), [])

        self.run_with_tmpdir(scenario)

    def test_save_as_reports_failed_entries(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(
                tmp_path / "data.pak",
                {"good.txt": b"good", "bad.bin": os.urandom(4000)},
                compression=Compression.NONE,
            )
            _corrupt_last_byte(archive, "bad.bin")
            before = archive.read_bytes()
            result = rebuild_archive(archive, output=tmp_path / "copy.pak")
            self.assertEqual([p for p, _ in result.failures], ["bad.bin"])
            self.assertEqual(result.written, ["good.txt"])
            self.assertEqual(_contents(tmp_path / "copy.pak"), {"good.txt": b"good"})
            self.assertEqual(archive.read_bytes(), before)

        self.run_with_tmpdir(scenario)

    @unittest.skipUnless(codec._HAS_ZSTD, "zstandard required")
    def test_entries_copied_when_codec_unavailable(self):
        def scenario(tmp_path: Path):
            files = {"keep/a.uasset": BIG, "keep/b.uasset": BIG[::-1], "drop.txt": b"drop"}
            archive = _build_archive(
                tmp_path / "data.pak", files, version=Version.V11, compression=Compression.ZSTD, block_size=0x10000
            )
            with ArchiveReader(archive) as r:
                hashes = {p: r.entry_info(p).hash for p in r.files()}
            with mock.patch.object(codec, "_HAS_ZSTD", False):
                result = remove_entries(archive, ["drop.txt"])
                self.assertFalse(result.failures)
                with ArchiveReader(archive) as r:
                    self.assertEqual(r.files(), ["keep/a.uasset", "keep/b.uasset"])
            with ArchiveReader(archive) as r:
                for path in ("keep/a.uasset", "keep/b.uasset"):
                    e = r.entry_info(path)
                    self.assertIs(e.compression, Compression.ZSTD)
                    self.assertEqual(e.compression_block_size, 0x10000)
                    self.assertEqual(e.hash, hashes[path])
                    self.assertEqual(r.read(path), files[path])

        self.run_with_tmpdir(scenario)

    @unittest.skipUnless(codec._HAS_ZSTD and _HAS_CRYPTODOME, "zstandard and PyCryptodomex required")
    def test_encrypted_entries_copied_when_codec_unavailable(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(
                tmp_path / "enc.pak",
                {"a.bin": BIG, "b.txt": b"short"},
                version=Version.V11,
                compression=Compression.ZSTD,
                key=KEY,
            )
            with mock.patch.object(codec, "_HAS_ZSTD", False):
                remove_entries(archive, ["b.txt"], key=KEY)
            with ArchiveReader(archive, key=KEY) as r:
                self.assertEqual(r.files(), ["a.bin"])
                self.assertTrue(r.entry_info("a.bin").is_encrypted)
                self.assertEqual(r.read("a.bin"), BIG)

        self.run_with_tmpdir(scenario)


class BatchTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_create_and_extract_directory(self):
        def scenario(tmp_path: Path):
            src = tmp_path / "src"
            (src / "Content" / "Maps").mkdir(parents=True)
            (src / "Content" / "Maps" / "a.umap").write_bytes(BIG)
            (src / "readme.txt").write_text("read me")
            (src / "empty.dat").write_bytes(b"")
            archive = tmp_path / "out.pak"
            seen = []
            result = create_from_directory(
                src, archive, compression=Compression.ZLIB,
                progress=lambda done, total, path: seen.append((done, total, path)),
            )
            self.assertTrue(result.ok)
            self.assertEqual(result.done, ["empty.dat", "readme.txt", "Content/Maps/a.umap"])
            self.assertEqual([s[0] for s in seen], [1, 2, 3])

            with ArchiveReader(archive) as r:
                out = tmp_path / "out"
                extracted = extract_all(r, out)
                self.assertTrue(extracted.ok)
                stats = archive_stats(r)
            self.assertEqual((out / "Content" / "Maps" / "a.umap").read_bytes(), BIG)
            self.assertEqual((out / "readme.txt").read_text(), "read me")
            self.assertEqual((out / "empty.dat").read_bytes(), b"")
            self.assertEqual(stats.file_count, 3)
            self.assertEqual(stats.uncompressed_size, len(BIG) + 7)
            self.assertLess(stats.ratio, 1.0)
            self.assertEqual(stats.methods[Compression.ZLIB], 1)

        self.run_with_tmpdir(scenario)

    def test_create_requires_directory(self):
        def scenario(tmp_path: Path):
            with self.assertRaises(NotADirectoryError):
                create_from_directory(tmp_path / "missing", tmp_path / "x.pak")

        self.run_with_tmpdir(scenario)

    def test_extract_continues_past_corrupt_entry(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"bad.bin": BIG, "good.txt": b"fine"},
                                     compression=Compression.ZLIB)
            with ArchiveReader(archive) as r:
                e = r.entry_info("bad.bin")
                flip_at = e.offset + e.blocks[0].start + 5
            raw = bytearray(archive.read_bytes())
            raw[flip_at] ^= 0xFF
            archive.write_bytes(bytes(raw))
            with ArchiveReader(archive) as r:
                result = extract_all(r, tmp_path / "out")
            self.assertEqual(result.done, ["good.txt"])
            self.assertEqual([f[0] for f in result.failures], ["bad.bin"])
            self.assertFalse((tmp_path / "out" / "bad.bin").exists())
            self.assertEqual((tmp_path / "out" / "good.txt").read_bytes(), b"fine")

        self.run_with_tmpdir(scenario)

    def test_extract_selected_paths_and_stop(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "data.pak", {"a": b"1", "b": b"2", "c": b"3"})
            with ArchiveReader(archive) as r:
                picked = extract_all(r, tmp_path / "picked", paths=["c", "nope"])
                stopped = extract_all(r, tmp_path / "stopped", progress=lambda done, total, path: False)
            self.assertEqual(picked.done, ["c"])
            self.assertEqual([f[0] for f in picked.failures], ["nope"])
            self.assertTrue(stopped.stopped)
            self.assertEqual(stopped.done, ["a"])

        self.run_with_tmpdir(scenario)

    @unittest.skipUnless(_HAS_CRYPTODOME, "PyCryptodomex required")
    def test_extract_aborts_without_key(self):
        def scenario(tmp_path: Path):
            archive = _build_archive(tmp_path / "v3.pak", {"a": b"1", "b": b"2"}, version=Version.V3, key=KEY)
            with ArchiveReader(archive) as r:
                with self.assertRaises(MissingKey):
                    extract_all(r, tmp_path / "out")
                stats = archive_stats(r)
            self.assertEqual(stats.encrypted_entries, 2)
            self.assertFalse(stats.encrypted_index)

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
