from __future__ import annotations

import hashlib

FNV64_OFFSET = 0xCBF29CE484222325
FNV64_PRIME = 0x00000100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

NULL_SHA1 = b"\x00" * 20


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def fnv64(data: bytes, seed: int = 0) -> int:
    h = (FNV64_OFFSET + seed) & _MASK64
    for b in data:
        h ^= b
        h = (h * FNV64_PRIME) & _MASK64
    return h


def fnv64_path(path: str, seed: int) -> int:
    """Hash used by the path hash index: FNV-1a over the lower-cased UTF-16LE path."""
    return fnv64(path.lower().encode("utf-16-le"), seed)
