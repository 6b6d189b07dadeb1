from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .binio import I32, U32, U64, pack_fstring, read_exact, read_fstring, read_u32, read_u64, reader_for
from .codec import Compression
from .constants import (
    DEFAULT_MOUNT_POINT,
    DEFAULT_VERSION,
    MAX_ENTRY_COUNT,
    Version,
)
from .encryption import AesCipher, align, pad_zeros
from .entry import EntryRecord, can_encode, pack_encoded, pack_entry, unpack_encoded, unpack_entry
from .errors import CorruptIndex, MissingKey, NotFound
from .hashutil import fnv64_path, sha1
from .pathutil import join_dir, norm_path, split_dir

ReadAt = Callable[[int, int], bytes]

_SECTION_REF = struct.Struct("<QQ20s")  # offset, size, sha1


@dataclass
class ArchiveIndex:
    version: Version = DEFAULT_VERSION
    mount_point: str = DEFAULT_MOUNT_POINT
    path_hash_seed: int = 0
    encrypted_index: bool = False
    entries: Dict[str, EntryRecord] = field(default_factory=dict)
    compression_slots: List[Optional[Compression]] = field(default_factory=list)
    # Filled when parsing a path hash index (V10+): hash -> path
    path_hash_index: Dict[int, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        try:
            self.resolve(path)
        except NotFound:
            return False
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def add(self, record: EntryRecord) -> None:
        # Re-adding a path keeps its first position; the record itself is replaced
        self.entries[record.path] = record

    def resolve(self, path: str) -> str:
        """Return the stored spelling of ``path``; lookups accept any form ``norm_path`` maps to it."""
        if path in self.entries:
            return path
        try:
            normalized = norm_path(path)
        except ValueError:
            normalized = None
        if normalized is None or normalized not in self.entries:
            raise NotFound(f"No entry named {path!r}")
        return normalized

    def get(self, path: str) -> EntryRecord:
        return self.entries[self.resolve(path)]

    def paths(self) -> List[str]:
        return list(self.entries)

    def slot_for(self, method: Compression) -> int:
        """Return the 1-based compression slot for ``method``, allocating one if needed."""
        if method is Compression.NONE:
            return 0
        if method in self.compression_slots:
            return self.compression_slots.index(method) + 1
        self.compression_slots.append(method)
        return len(self.compression_slots)


@dataclass
class IndexBlob:
    """Serialized index ready to be written at ``index_offset``."""

    primary: bytes
    primary_hash: bytes
    secondary: bytes = b""  # path hash index + full directory index (V10+)

    @property
    def total_size(self) -> int:
        return len(self.primary) + len(self.secondary)


def _seal(plain: bytes, cipher: Optional[AesCipher]) -> Tuple[bytes, bytes]:
    """Return (stored bytes, sha1). The hash covers the padded plaintext."""
    if cipher is None:
        return plain, sha1(plain)
    padded = pad_zeros(plain)
    return cipher.encrypt(padded), sha1(padded)


def _stored_size(plain_len: int, cipher: Optional[AesCipher]) -> int:
    return align(plain_len) if cipher is not None else plain_len


def _unseal(stored: bytes, expected_hash: bytes, cipher: Optional[AesCipher], what: str) -> bytes:
    if cipher is not None:
        if len(stored) % 16:
            raise CorruptIndex(f"Encrypted {what} size is not AES aligned")
        plain = cipher.decrypt(stored)
    else:
        plain = stored
    if sha1(plain) != expected_hash:
        raise CorruptIndex(f"{what} hash mismatch (corrupt data or wrong key)")
    return plain


class _LegacyLayout:
    """Index before V10: mount point, entry count, then (path, full entry) pairs."""

    def dumps(self, index: ArchiveIndex, index_offset: int, cipher: Optional[AesCipher]) -> IndexBlob:
        fmt = index.version.format
        buf = bytearray(pack_fstring(index.mount_point))
        buf += U32.pack(len(index.entries))
        for path, e in index.entries.items():
            buf += pack_fstring(path)
            buf += pack_entry(e, fmt, index.compression_slots)
        stored, digest = _seal(bytes(buf), cipher)
        return IndexBlob(primary=stored, primary_hash=digest)

    def loads(self, index: ArchiveIndex, plain: bytes, read_at: ReadAt, cipher: Optional[AesCipher]) -> None:
        fmt = index.version.format
        f = reader_for(plain)
        index.mount_point = read_fstring(f)
        count = read_u32(f)
        if count > MAX_ENTRY_COUNT:
            raise CorruptIndex("Entry count exceeds safety bound")
        for _ in range(count):
            path = read_fstring(f)
            index.add(unpack_entry(f, fmt, index.compression_slots, path))


class _PathHashLayout:
    """
    V10+ index: a primary block holding the seed, references to the path hash
    index and the full directory index, and the encoded entries. Both secondary
    indexes refer to entries by byte offset into the encoded-entry blob;
    negative offsets point into the list of entries that did not fit the
    encoded form.
    """

    def dumps(self, index: ArchiveIndex, index_offset: int, cipher: Optional[AesCipher]) -> IndexBlob:
        fmt = index.version.format
        slots = index.compression_slots
        encoded = bytearray()
        fallback: List[EntryRecord] = []
        offsets: Dict[str, int] = {}
        for path, e in index.entries.items():
            if can_encode(e):
                offsets[path] = len(encoded)
                encoded += pack_encoded(e, slots)
            else:
                fallback.append(e)
                offsets[path] = -len(fallback)

        seed = index.path_hash_seed
        phi = bytearray(U32.pack(len(offsets)))
        for path, off in offsets.items():
            phi += U64.pack(fnv64_path(path, seed))
            phi += I32.pack(off)
        phi += U32.pack(0)  # pruned directory index, not written

        directories: Dict[str, Dict[str, int]] = {"/": {}}
        for path, off in offsets.items():
            directory, name = split_dir(path)
            parent = directory
            while parent != "/":
                directories.setdefault(parent, {})
                parent, _ = split_dir(parent.rstrip("/"))
            directories.setdefault(directory, {})[name] = off
        fdi = bytearray(U32.pack(len(directories)))
        for directory, files in directories.items():
            fdi += pack_fstring(directory)
            fdi += U32.pack(len(files))
            for name, off in files.items():
                fdi += pack_fstring(name)
                fdi += I32.pack(off)

        tail = bytearray(U32.pack(len(encoded)))
        tail += encoded
        tail += U32.pack(len(fallback))
        for e in fallback:
            tail += pack_entry(e, fmt, slots)

        head = bytearray(pack_fstring(index.mount_point))
        head += U32.pack(len(index.entries))
        head += U64.pack(seed)
        primary_len = len(head) + 4 + _SECTION_REF.size + 4 + _SECTION_REF.size + len(tail)

        phi_stored, phi_hash = _seal(bytes(phi), cipher)
        fdi_stored, fdi_hash = _seal(bytes(fdi), cipher)
        phi_offset = index_offset + _stored_size(primary_len, cipher)
        fdi_offset = phi_offset + len(phi_stored)

        primary = head
        primary += U32.pack(1) + _SECTION_REF.pack(phi_offset, len(phi_stored), phi_hash)
        primary += U32.pack(1) + _SECTION_REF.pack(fdi_offset, len(fdi_stored), fdi_hash)
        primary += tail
        stored, digest = _seal(bytes(primary), cipher)
        return IndexBlob(primary=stored, primary_hash=digest, secondary=phi_stored + fdi_stored)

    def loads(self, index: ArchiveIndex, plain: bytes, read_at: ReadAt, cipher: Optional[AesCipher]) -> None:
        fmt = index.version.format
        slots = index.compression_slots
        f = reader_for(plain)
        index.mount_point = read_fstring(f)
        count = read_u32(f)
        if count > MAX_ENTRY_COUNT:
            raise CorruptIndex("Entry count exceeds safety bound")
        index.path_hash_seed = read_u64(f)
        phi_ref = _SECTION_REF.unpack(read_exact(f, _SECTION_REF.size)) if read_u32(f) else None
        fdi_ref = _SECTION_REF.unpack(read_exact(f, _SECTION_REF.size)) if read_u32(f) else None
        encoded = read_exact(f, read_u32(f))
        fallback = [unpack_entry(f, fmt, slots) for _ in range(read_u32(f))]

        if fdi_ref is None:
            raise CorruptIndex("Archive has no full directory index; entry names are unavailable")
        fdi = reader_for(_unseal(read_at(fdi_ref[0], fdi_ref[1]), fdi_ref[2], cipher, "Directory index"))
        located: List[Tuple[str, int]] = []
        for _ in range(read_u32(fdi)):
            directory = read_fstring(fdi)
            for _ in range(read_u32(fdi)):
                name = read_fstring(fdi)
                located.append((join_dir(directory, name), I32.unpack(read_exact(fdi, 4))[0]))
        if len(located) != count:
            raise CorruptIndex(f"Directory index lists {len(located)} files, index declares {count}")

        phi_pairs: List[Tuple[int, int]] = []
        if phi_ref is not None:
            phi = reader_for(_unseal(read_at(phi_ref[0], phi_ref[1]), phi_ref[2], cipher, "Path hash index"))
            for _ in range(read_u32(phi)):
                h = read_u64(phi)
                phi_pairs.append((h, I32.unpack(read_exact(phi, 4))[0]))

        located.sort(key=_order_key([off for _, off in phi_pairs]))
        by_offset: Dict[int, str] = {}
        for path, off in located:
            if off >= 0:
                if off >= len(encoded):
                    raise CorruptIndex(f"Encoded entry offset out of range for {path!r}")
                e = unpack_encoded(reader_for(encoded[off:]), fmt, slots, path)
            else:
                if -off > len(fallback):
                    raise CorruptIndex(f"Entry reference out of range for {path!r}")
                e = fallback[-off - 1]
                e.path = path
            by_offset[off] = path
            index.add(e)

        for h, off in phi_pairs:
            if off not in by_offset:
                raise CorruptIndex("Path hash index refers to an unknown entry")
            index.path_hash_index[h] = by_offset[off]


def _order_key(phi_offsets: List[int]) -> Callable[[Tuple[str, int]], Tuple[float, int, int]]:
    """
    Sort key restoring insertion order of located (path, offset) pairs.

    Encoded offsets grow in write order. A fallback entry (negative offset)
    is placed right after the encoded entry that precedes it in the path hash
    index, which this writer emits in insertion order; without one it goes
    last.
    """
    anchors: Dict[int, float] = {}
    anchor: float = -1
    for off in phi_offsets:
        if off >= 0:
            anchor = off
        else:
            anchors[off] = anchor

    def key(item: Tuple[str, int]) -> Tuple[float, int, int]:
        off = item[1]
        if off >= 0:
            return (off, 0, 0)
        return (anchors.get(off, float("inf")), 1, -off)

    return key


_LEGACY = _LegacyLayout()
_PATH_HASH = _PathHashLayout()

LAYOUTS = {
    Version.V1: _LEGACY,
    Version.V2: _LEGACY,
    Version.V3: _LEGACY,
    Version.V4: _LEGACY,
    Version.V5: _LEGACY,
    Version.V6: _LEGACY,
    Version.V7: _LEGACY,
    Version.V8A: _LEGACY,
    Version.V8B: _LEGACY,
    Version.V9: _LEGACY,
    Version.V10: _PATH_HASH,
    Version.V11: _PATH_HASH,
}


def dumps_index(index: ArchiveIndex, index_offset: int, cipher: Optional[AesCipher] = None) -> IndexBlob:
    return LAYOUTS[index.version].dumps(index, index_offset, cipher)


def loads_index(
    version: Version,
    stored: bytes,
    index_hash: bytes,
    read_at: ReadAt,
    *,
    cipher: Optional[AesCipher] = None,
    encrypted: bool = False,
    compression_slots: Optional[List[Optional[Compression]]] = None,
) -> ArchiveIndex:
    """Decrypt, verify and parse an index region read from an archive."""
    if encrypted and cipher is None:
        raise MissingKey("Archive index is encrypted; an AES key is required")
    plain = _unseal(stored, index_hash, cipher if encrypted else None, "Index")
    index = ArchiveIndex(
        version=version,
        encrypted_index=encrypted,
        compression_slots=list(compression_slots or []),
    )
    section_cipher = cipher if encrypted else None
    try:
        LAYOUTS[version].loads(index, plain, read_at, section_cipher)
    except (struct.error, UnicodeDecodeError) as exc:
        raise CorruptIndex(f"Malformed index: {exc}") from exc
    return index


__all__ = ["ArchiveIndex", "IndexBlob", "dumps_index", "loads_index", "LAYOUTS"]
