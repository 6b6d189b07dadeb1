from __future__ import annotations

import io
import struct
from typing import BinaryIO

from .errors import CorruptIndex

U8 = struct.Struct("<B")
U32 = struct.Struct("<I")
I32 = struct.Struct("<i")
U64 = struct.Struct("<Q")

MAX_FSTRING_CHARS = 64 * 1024


def read_exact(f: BinaryIO, n: int) -> bytes:
    b = f.read(n)
    if len(b) != n:
        raise CorruptIndex("Unexpected end of index data")
    return b


def read_u8(f: BinaryIO) -> int:
    return U8.unpack(read_exact(f, 1))[0]


def read_u32(f: BinaryIO) -> int:
    return U32.unpack(read_exact(f, 4))[0]


def read_u64(f: BinaryIO) -> int:
    return U64.unpack(read_exact(f, 8))[0]


def read_fstring(f: BinaryIO) -> str:
    """Read an Unreal FString: i32 length (incl. NUL), negative for UTF-16LE."""
    n = I32.unpack(read_exact(f, 4))[0]
    if n == 0:
        return ""
    if abs(n) > MAX_FSTRING_CHARS:
        raise CorruptIndex(f"String length {n} exceeds safety bound")
    if n > 0:
        raw = read_exact(f, n)
        text = raw.decode("utf-8", errors="strict") if raw.isascii() else raw.decode("latin-1")
    else:
        raw = read_exact(f, -n * 2)
        text = raw.decode("utf-16-le")
    return text.rstrip("\x00")


def pack_fstring(text: str) -> bytes:
    if text == "":
        return I32.pack(0)
    if text.isascii():
        raw = text.encode("ascii") + b"\x00"
        return I32.pack(len(raw)) + raw
    raw = text.encode("utf-16-le") + b"\x00\x00"
    return I32.pack(-(len(raw) // 2)) + raw


def reader_for(data: bytes) -> io.BytesIO:
    return io.BytesIO(data)
