"""
Entry records and their two wire forms.

Full entry (index before V10, and the inline header in front of every payload)
- u64 offset (0 in the inline header)
- u64 compressed size
- u64 uncompressed size
- compression: u32 legacy flags (< V8), u8 slot (V8A), u32 slot (V8B+)
- u64 timestamp (V1 only)
- sha1[20] of the stored payload
- (V3+) if compressed: u32 block count, count x (u64 start, u64 end)
- (V3+) u8 flags (0x01 encrypted, 0x02 deleted), u32 compression block size

Block ranges are relative to the entry offset from V5 on and absolute before.

Encoded entry (V10+ index), one u32 of bit fields followed by variable data
- bits 0-5   compression block size >> 11 (0x3f: explicit u32 follows)
- bits 6-21  compression block count
- bit  22    encrypted
- bits 23-28 compression slot + 1 (0 = none)
- bit  29    compressed size fits in u32
- bit  30    uncompressed size fits in u32
- bit  31    offset fits in u32
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Sequence

from .binio import U8, U32, U64, read_exact, read_u8, read_u32, read_u64
from .codec import Compression
from .constants import (
    ENTRY_FLAG_DELETED,
    ENTRY_FLAG_ENCRYPTED,
    SHA1_SIZE,
    VersionFormat,
)
from .encryption import align
from .errors import CorruptIndex, UnsupportedMethod
from .hashutil import NULL_SHA1

_U32_MAX = 0xFFFFFFFF
_MAX_ENCODED_BLOCKS = 0xFFFF


@dataclass
class Block:
    start: int  # relative to the entry offset
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class EntryRecord:
    path: str
    offset: int
    compressed_size: int
    uncompressed_size: int
    compression: Compression = Compression.NONE
    is_encrypted: bool = False
    is_deleted: bool = False
    hash: bytes = NULL_SHA1
    timestamp: Optional[int] = None
    compression_block_size: int = 0
    blocks: List[Block] = field(default_factory=list)

    @property
    def flags(self) -> int:
        f = 0
        if self.is_encrypted:
            f |= ENTRY_FLAG_ENCRYPTED
        if self.is_deleted:
            f |= ENTRY_FLAG_DELETED
        return f

    def header_size(self, fmt: VersionFormat) -> int:
        return serialized_size(fmt, self.compression, len(self.blocks))

    def block_lengths(self) -> List[int]:
        """Decompressed length of every block, in order."""
        if not self.blocks:
            return [self.uncompressed_size]
        bs = self.compression_block_size or self.uncompressed_size
        out = []
        left = self.uncompressed_size
        for _ in self.blocks:
            n = min(bs, left)
            out.append(n)
            left -= n
        return out


def serialized_size(fmt: VersionFormat, compression: Compression, block_count: int) -> int:
    size = 8 + 8 + 8
    size += 1 if fmt.compression_field == "slot8" else 4
    if fmt.has_timestamp:
        size += 8
    size += SHA1_SIZE
    if fmt.has_block_info:
        if compression is not Compression.NONE:
            size += 4 + 16 * block_count
        size += 1 + 4
    return size


def _slot_of(compression: Compression, slots: Sequence[Optional[Compression]]) -> int:
    if compression is Compression.NONE:
        return 0
    try:
        return list(slots).index(compression) + 1
    except ValueError:
        raise UnsupportedMethod(f"{compression.value} has no compression slot in this archive") from None


def _method_of_slot(slot: int, slots: Sequence[Optional[Compression]]) -> Compression:
    if slot == 0:
        return Compression.NONE
    if slot > len(slots):
        raise CorruptIndex(f"Compression slot {slot} out of range")
    method = slots[slot - 1]
    if method is None:
        raise UnsupportedMethod(f"Entry uses unknown compression in slot {slot}")
    return method


def pack_entry(
    e: EntryRecord,
    fmt: VersionFormat,
    slots: Sequence[Optional[Compression]],
    *,
    inline: bool = False,
) -> bytes:
    """Serialize the full entry form; ``inline`` writes the header stored before the payload."""
    out = bytearray()
    out += U64.pack(0 if inline else e.offset)
    out += U64.pack(e.compressed_size)
    out += U64.pack(e.uncompressed_size)
    if fmt.compression_field == "legacy":
        flag = e.compression.legacy_flag
        if flag is None:
            raise UnsupportedMethod(f"{e.compression.value} cannot be stored before V8")
        out += U32.pack(flag)
    elif fmt.compression_field == "slot8":
        out += U8.pack(_slot_of(e.compression, slots))
    else:
        out += U32.pack(_slot_of(e.compression, slots))
    if fmt.has_timestamp:
        out += U64.pack(e.timestamp or 0)
    out += e.hash
    if fmt.has_block_info:
        if e.compression is not Compression.NONE:
            out += U32.pack(len(e.blocks))
            base = 0 if fmt.relative_blocks else e.offset
            for b in e.blocks:
                out += U64.pack(base + b.start)
                out += U64.pack(base + b.end)
        out += U8.pack(e.flags)
        out += U32.pack(e.compression_block_size)
    return bytes(out)


def unpack_entry(
    f: BinaryIO,
    fmt: VersionFormat,
    slots: Sequence[Optional[Compression]],
    path: str = "",
) -> EntryRecord:
    offset = read_u64(f)
    compressed = read_u64(f)
    uncompressed = read_u64(f)
    if fmt.compression_field == "legacy":
        compression = Compression.from_legacy_flag(read_u32(f))
    elif fmt.compression_field == "slot8":
        compression = _method_of_slot(read_u8(f), slots)
    else:
        compression = _method_of_slot(read_u32(f), slots)
    timestamp = read_u64(f) if fmt.has_timestamp else None
    digest = read_exact(f, SHA1_SIZE)
    e = EntryRecord(
        path=path,
        offset=offset,
        compressed_size=compressed,
        uncompressed_size=uncompressed,
        compression=compression,
        hash=digest,
        timestamp=timestamp,
    )
    if fmt.has_block_info:
        if compression is not Compression.NONE:
            count = read_u32(f)
            base = 0 if fmt.relative_blocks else offset
            for _ in range(count):
                start = read_u64(f)
                end = read_u64(f)
                if end < start:
                    raise CorruptIndex(f"Bad compression block range in {path!r}")
                e.blocks.append(Block(start - base, end - base))
        flags = read_u8(f)
        e.is_encrypted = bool(flags & ENTRY_FLAG_ENCRYPTED)
        e.is_deleted = bool(flags & ENTRY_FLAG_DELETED)
        e.compression_block_size = read_u32(f)
    return e


def can_encode(e: EntryRecord) -> bool:
    return len(e.blocks) <= _MAX_ENCODED_BLOCKS and not e.is_deleted


def pack_encoded(e: EntryRecord, slots: Sequence[Optional[Compression]]) -> bytes:
    if not can_encode(e):
        raise ValueError("Entry cannot be stored in the encoded form")
    cbs = e.compression_block_size
    bs_bits = (cbs >> 11) & 0x3F
    if (bs_bits << 11) != cbs:
        bs_bits = 0x3F
    slot = _slot_of(e.compression, slots)
    count = len(e.blocks) if slot else 0
    size_32 = e.compressed_size <= _U32_MAX
    usize_32 = e.uncompressed_size <= _U32_MAX
    offset_32 = e.offset <= _U32_MAX
    bits = (
        bs_bits
        | (count << 6)
        | (int(e.is_encrypted) << 22)
        | (slot << 23)
        | (int(size_32) << 29)
        | (int(usize_32) << 30)
        | (int(offset_32) << 31)
    )
    out = bytearray(U32.pack(bits))
    if bs_bits == 0x3F:
        out += U32.pack(cbs)
    out += U32.pack(e.offset) if offset_32 else U64.pack(e.offset)
    out += U32.pack(e.uncompressed_size) if usize_32 else U64.pack(e.uncompressed_size)
    if slot:
        out += U32.pack(e.compressed_size) if size_32 else U64.pack(e.compressed_size)
        if count > 1 or (count == 1 and e.is_encrypted):
            for b in e.blocks:
                out += U32.pack(b.size)
    return bytes(out)


def unpack_encoded(
    f: BinaryIO,
    fmt: VersionFormat,
    slots: Sequence[Optional[Compression]],
    path: str = "",
) -> EntryRecord:
    bits = read_u32(f)
    compression = _method_of_slot((bits >> 23) & 0x3F, slots)
    encrypted = bool(bits & (1 << 22))
    count = (bits >> 6) & 0xFFFF
    cbs = bits & 0x3F
    if cbs == 0x3F:
        cbs = read_u32(f)
    else:
        cbs <<= 11
    offset = read_u32(f) if bits & (1 << 31) else read_u64(f)
    uncompressed = read_u32(f) if bits & (1 << 30) else read_u64(f)
    if compression is not Compression.NONE:
        compressed = read_u32(f) if bits & (1 << 29) else read_u64(f)
    else:
        compressed = uncompressed
    e = EntryRecord(
        path=path,
        offset=offset,
        compressed_size=compressed,
        uncompressed_size=uncompressed,
        compression=compression,
        is_encrypted=encrypted,
        compression_block_size=cbs,
    )
    base = serialized_size(fmt, compression, count)
    if count == 1 and not encrypted:
        e.blocks.append(Block(base, base + compressed))
    elif count > 0:
        pos = base
        for _ in range(count):
            size = read_u32(f)
            e.blocks.append(Block(pos, pos + size))
            pos += align(size) if encrypted else size
    return e
