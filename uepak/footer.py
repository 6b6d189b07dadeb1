from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Tuple

from .codec import Compression
from .constants import (
    COMPRESSION_NAME_SIZE,
    FORMATS,
    PAK_MAGIC,
    SHA1_SIZE,
    Version,
)
from .errors import BadMagic, CorruptIndex, UnknownVersion

_CORE_STRUCT = struct.Struct("<IIQQ20s")  # magic, major, index offset, index size, index sha1

# Newest first; V8B before V8A since both report major 8.
_DETECT_ORDER: Tuple[Version, ...] = tuple(reversed(list(Version)))


@dataclass
class Footer:
    version: Version
    index_offset: int
    index_size: int
    index_hash: bytes
    encrypted_index: bool = False
    encryption_guid: bytes = b"\x00" * 16
    frozen: bool = False
    compression_slots: List[Optional[Compression]] = field(default_factory=list)

    def pack(self) -> bytes:
        fmt = self.version.format
        out = bytearray()
        if fmt.has_key_guid:
            out += self.encryption_guid
        if fmt.has_encrypted_flag:
            out += struct.pack("<B", int(self.encrypted_index))
        out += _CORE_STRUCT.pack(PAK_MAGIC, fmt.major, self.index_offset, self.index_size, self.index_hash)
        if fmt.has_frozen_flag:
            out += struct.pack("<B", int(self.frozen))
        if fmt.compression_slots:
            slots = list(self.compression_slots)
            if len(slots) > fmt.compression_slots:
                raise CorruptIndex(
                    f"{self.version} can name at most {fmt.compression_slots} compression methods"
                )
            slots += [None] * (fmt.compression_slots - len(slots))
            for method in slots:
                name = method.value.encode("ascii") if method is not None else b""
                out += name.ljust(COMPRESSION_NAME_SIZE, b"\x00")
        return bytes(out)


def _unpack(raw: bytes, version: Version) -> Footer:
    fmt = version.format
    pos = 0
    guid = b"\x00" * 16
    encrypted = False
    if fmt.has_key_guid:
        guid = raw[pos : pos + 16]
        pos += 16
    if fmt.has_encrypted_flag:
        encrypted = raw[pos] != 0
        pos += 1
    magic, major, index_offset, index_size, index_hash = _CORE_STRUCT.unpack_from(raw, pos)
    pos += _CORE_STRUCT.size
    if magic != PAK_MAGIC:
        raise BadMagic(f"Bad pak magic {magic:#010x}")
    if major != fmt.major:
        raise UnknownVersion(f"Footer major {major} does not match {version}")
    frozen = False
    if fmt.has_frozen_flag:
        frozen = raw[pos] != 0
        pos += 1
    names: List[bytes] = []
    for _ in range(fmt.compression_slots):
        names.append(raw[pos : pos + COMPRESSION_NAME_SIZE].split(b"\x00", 1)[0])
        pos += COMPRESSION_NAME_SIZE
    # Trailing empty names carry no information
    while names and not names[-1]:
        names.pop()
    # Unknown names keep their position so slot numbers stay stable
    slots: List[Optional[Compression]] = [
        Compression.from_string(n.decode("ascii", errors="replace")) if n else None for n in names
    ]
    return Footer(
        version=version,
        index_offset=index_offset,
        index_size=index_size,
        index_hash=index_hash,
        encrypted_index=encrypted,
        encryption_guid=guid,
        frozen=frozen,
        compression_slots=slots,
    )


def read_footer(f: BinaryIO, size: int) -> Footer:
    """
    Locate and decode the footer at the end of a stream of ``size`` bytes.

    Every known layout is tried from the newest version down. A candidate is
    accepted only when both the magic and the stored major version match the
    layout; anything else is a hard failure.
    """
    saw_magic = False
    for version in _DETECT_ORDER:
        fmt = FORMATS[version]
        footer_size = fmt.footer_size
        if footer_size > size:
            continue
        f.seek(size - footer_size)
        raw = f.read(footer_size)
        if len(raw) != footer_size:
            continue
        try:
            footer = _unpack(raw, version)
        except BadMagic:
            continue
        except UnknownVersion:
            saw_magic = True
            continue
        if footer.index_offset + footer.index_size > size - footer_size:
            raise CorruptIndex("Index offset/size runs past the footer")
        return footer
    if saw_magic:
        raise UnknownVersion("Pak footer carries an unknown version")
    raise BadMagic("No pak footer found (bad magic)")


def footer_size(version: Version) -> int:
    return FORMATS[version].footer_size


__all__ = ["Footer", "read_footer", "footer_size", "SHA1_SIZE"]
