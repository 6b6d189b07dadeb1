from __future__ import annotations

import binascii
import os
from typing import Optional, Union

try:  # pragma: no cover - availability depends on environment
    from Cryptodome.Cipher import AES  # type: ignore
    _HAS_CRYPTODOME = True
except ImportError:  # pragma: no cover - fallback
    AES = None  # type: ignore
    _HAS_CRYPTODOME = False

from .constants import AES_BLOCK_SIZE, KEY_SIZE


def align(n: int, alignment: int = AES_BLOCK_SIZE) -> int:
    return (n + alignment - 1) & ~(alignment - 1)


def pad_zeros(data: bytes, alignment: int = AES_BLOCK_SIZE) -> bytes:
    extra = align(len(data), alignment) - len(data)
    return data + b"\x00" * extra if extra else data


def parse_key(key: Union[str, bytes, bytearray]) -> bytes:
    """Accept a raw 32-byte key or its 64-character hex form (optional 0x prefix)."""
    if isinstance(key, (bytes, bytearray)):
        raw = bytes(key)
    else:
        text = key.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        if len(text) != KEY_SIZE * 2:
            raise ValueError("AES key must be exactly 64 hexadecimal characters")
        try:
            raw = binascii.unhexlify(text)
        except (binascii.Error, ValueError):
            raise ValueError("AES key must be exactly 64 hexadecimal characters") from None
    if len(raw) != KEY_SIZE:
        raise ValueError(f"AES key must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def generate_key() -> bytes:
    return os.urandom(KEY_SIZE)


def key_to_hex(key: bytes) -> str:
    return binascii.hexlify(key).decode("ascii").upper()


class AesCipher:
    """AES-256-ECB over 16-byte aligned buffers, as used for pak indexes and payloads."""

    def __init__(self, key: Union[str, bytes, bytearray]):
        if not _HAS_CRYPTODOME:
            raise RuntimeError("PyCryptodomex is required for AES support")
        self.key = parse_key(key)

    def _cipher(self):
        return AES.new(self.key, AES.MODE_ECB)

    def encrypt(self, data: bytes) -> bytes:
        """Zero-pad ``data`` to the AES block size and encrypt it."""
        return self._cipher().encrypt(pad_zeros(data))

    def decrypt(self, data: bytes) -> bytes:
        if len(data) % AES_BLOCK_SIZE:
            raise ValueError("Encrypted buffer is not a multiple of the AES block size")
        return self._cipher().decrypt(data)


def make_cipher(key: Optional[Union[str, bytes, bytearray]]) -> Optional[AesCipher]:
    return AesCipher(key) if key is not None else None
