from __future__ import annotations

import io
import os
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union

from .codec import Codec, Compression
from .constants import MAX_INDEX_SIZE, Version
from .encryption import align, make_cipher, parse_key
from .entry import EntryRecord, unpack_entry
from .errors import CorruptIndex, DecodeFailed, IoFailure, MissingKey, PakError
from .footer import Footer, read_footer
from .hashutil import NULL_SHA1, sha1
from .index import ArchiveIndex, loads_index
from .binio import reader_for

Source = Union[str, "os.PathLike[str]", BinaryIO]
KeyLike = Union[str, bytes, bytearray]


class ArchiveReader:
    """
    Read access to a pak archive.

    ``source`` is either a filesystem path (opened and owned by the reader) or
    a seekable binary stream (borrowed; never closed by the reader). Every
    payload access is an explicit positioned read, but the underlying handle
    is shared, so a reader must not be used from several threads at once.
    """

    def __init__(self, source: Source, key: Optional[KeyLike] = None, *, writable: bool = False):
        self.source = source
        self.key: Optional[bytes] = parse_key(key) if key is not None else None
        self.writable = writable
        self.f: Optional[BinaryIO] = None
        self.footer: Optional[Footer] = None
        self._index: Optional[ArchiveIndex] = None
        self._owns_handle = False
        self._size = 0
        self._cipher = make_cipher(self.key)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        if isinstance(self.source, (str, os.PathLike)):
            try:
                self.f = open(self.source, "r+b" if self.writable else "rb")
            except OSError as exc:
                raise IoFailure(f"Cannot open {os.fspath(self.source)}: {exc}") from exc
            self._owns_handle = True
        else:
            self.f = self.source
            self._owns_handle = False
        try:
            self._load_index()
        except (PakError, OSError, ValueError) as exc:
            self.close()
            if isinstance(exc, OSError):
                raise IoFailure(str(exc)) from exc
            raise

    def close(self):
        if self.f is not None:
            if self._owns_handle:
                self.f.close()
            self.f = None
            self._owns_handle = False

    # -- metadata -------------------------------------------------------

    @property
    def index(self) -> ArchiveIndex:
        if self._index is None:
            raise RuntimeError("Archive not open")
        return self._index

    @property
    def version(self) -> Version:
        return self.index.version

    @property
    def mount_point(self) -> str:
        return self.index.mount_point

    @property
    def encrypted_index(self) -> bool:
        return self.index.encrypted_index

    @property
    def path_hash_seed(self) -> int:
        return self.index.path_hash_seed

    def files(self) -> List[str]:
        """Entry paths in insertion order. Each call returns a fresh list."""
        return self.index.paths()

    def __iter__(self) -> Iterator[str]:
        return iter(self.files())

    def __len__(self) -> int:
        return len(self.index)

    def entry_info(self, path: str) -> EntryRecord:
        return self.index.get(path)

    # -- payloads -------------------------------------------------------

    def read_file(self, path: str, sink: BinaryIO) -> int:
        """Decode one entry into ``sink``; returns the number of bytes written."""
        e = self.entry_info(path)
        stored = self._read_stored(e)
        codec = Codec(e.compression)
        lengths = e.block_lengths()
        if len(lengths) != len(stored) or sum(lengths) != e.uncompressed_size:
            raise DecodeFailed(f"Block layout of {path!r} does not match its size")
        written = 0
        for chunk, expected in zip(stored, lengths):
            # A block stored at its full length was kept raw by the writer
            if e.compression is Compression.NONE or len(chunk) == expected:
                raw = chunk
            else:
                raw = codec.decompress(chunk, expected)
            sink.write(raw)
            written += len(raw)
        return written

    def read(self, path: str) -> bytes:
        buf = io.BytesIO()
        self.read_file(path, buf)
        return buf.getvalue()

    def read_stored(self, path: str) -> Tuple[EntryRecord, List[bytes]]:
        """Return the record and its decrypted, still compressed blocks."""
        e = self.entry_info(path)
        return e, self._read_stored(e)

    def _read_stored(self, e: EntryRecord) -> List[bytes]:
        if e.is_encrypted and self._cipher is None:
            raise MissingKey(f"Entry {e.path!r} is encrypted; an AES key is required")
        fmt = self.version.format
        header_size = e.header_size(fmt)
        inline = unpack_entry(
            reader_for(self._read_at(e.offset, header_size)), fmt, self.index.compression_slots, e.path
        )
        if inline.compressed_size != e.compressed_size or inline.uncompressed_size != e.uncompressed_size:
            raise DecodeFailed(f"Inline header of {e.path!r} disagrees with the index")

        if e.blocks:
            ranges = [(b.start, b.size) for b in e.blocks]
        else:
            ranges = [(header_size, e.compressed_size)]
        stored: List[bytes] = []
        for start, size in ranges:
            on_disk = align(size) if e.is_encrypted else size
            raw = self._read_at(e.offset + start, on_disk)
            if e.is_encrypted:
                raw = self._cipher.decrypt(raw)[:size]
            stored.append(raw)

        if inline.hash != NULL_SHA1 and sha1(b"".join(stored)) != inline.hash:
            raise DecodeFailed(f"Hash mismatch for {e.path!r} (corrupt data or wrong key)")
        return stored

    def _read_at(self, offset: int, size: int) -> bytes:
        if self.f is None:
            raise RuntimeError("Archive not open")
        if offset < 0 or size < 0 or offset + size > self._size:
            raise IoFailure(f"Read of {size} bytes at {offset} runs past the end of the archive")
        try:
            self.f.seek(offset)
            data = self.f.read(size)
        except OSError as exc:
            raise IoFailure(str(exc)) from exc
        if len(data) != size:
            raise IoFailure(f"Short read at {offset}: wanted {size}, got {len(data)}")
        return data

    def _read_index_region(self, offset: int, size: int) -> bytes:
        if size > MAX_INDEX_SIZE or offset + size > self._size - self.footer.version.format.footer_size:
            raise CorruptIndex("Index section lies outside the archive")
        return self._read_at(offset, size)

    def _load_index(self):
        f = self.f
        f.seek(0, os.SEEK_END)
        self._size = f.tell()
        self.footer = footer = read_footer(f, self._size)
        if footer.frozen:
            raise CorruptIndex("Frozen indexes are not supported")
        if footer.encrypted_index and self._cipher is None:
            raise MissingKey("Archive index is encrypted; an AES key is required")
        stored = self._read_index_region(footer.index_offset, footer.index_size)
        self._index = loads_index(
            footer.version,
            stored,
            footer.index_hash,
            self._read_index_region,
            cipher=self._cipher,
            encrypted=footer.encrypted_index,
            compression_slots=footer.compression_slots,
        )

    # -- mutation -------------------------------------------------------

    def to_writer(self, sink: Optional[Source] = None, **options):
        """
        Return an ArchiveWriter that continues this archive.

        The writer carries over version, mount point, hash seed, key,
        compression slots and every record, with its cursor at the old index
        offset so new payloads overwrite the index and footer. Without
        ``sink`` the reader's own handle is reused and must be writable.
        """
        from .writer import ArchiveWriter

        if sink is None:
            if self.f is None:
                raise RuntimeError("Archive not open")
            if not self.f.writable():
                raise IoFailure("Archive was opened read-only; reopen with writable=True")
            sink = self.f
        return ArchiveWriter.resume(sink, self.index, self.footer.index_offset, key=self.key, **options)
