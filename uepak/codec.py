from __future__ import annotations

import ctypes
import gzip
import os
import sys
import zlib
from enum import Enum
from typing import List, Optional

from .errors import DecodeFailed, UnsupportedMethod

_HAS_ZSTD = False
_zstd_mod = None
_ZstdError = RuntimeError
try:
    import zstandard as _zstd_mod  # type: ignore
    from zstandard import ZstdError as _ZstdError  # type: ignore
    _HAS_ZSTD = True
except ImportError:
    _zstd_mod = None
    _HAS_ZSTD = False

_HAS_LZ4 = False
_lz4_block = None
_LZ4Error = RuntimeError
try:
    import lz4.block as _lz4_block  # type: ignore
    from lz4.block import LZ4BlockError as _LZ4Error  # type: ignore
    _HAS_LZ4 = True
except ImportError:
    _lz4_block = None
    _HAS_LZ4 = False


OODLE_LIB_ENV = "UEPAK_OODLE_LIB"

# Kraken at the "Normal" level
_OODLE_COMPRESSOR_KRAKEN = 8
_OODLE_LEVEL_NORMAL = 4

if sys.platform == "win32":
    _OODLE_LIB_NAMES = ("oo2core_9_win64.dll", "oo2core_8_win64.dll")
elif sys.platform == "darwin":
    _OODLE_LIB_NAMES = ("liboo2coremac64.2.9.dylib", "liboo2coremac64.dylib")
else:
    _OODLE_LIB_NAMES = ("liboo2corelinux64.so.9", "liboo2corelinux64.so")


class Compression(Enum):
    NONE = "None"
    ZLIB = "Zlib"
    GZIP = "Gzip"
    ZSTD = "Zstd"
    LZ4 = "LZ4"
    OODLE = "Oodle"

    @classmethod
    def from_string(cls, name: str) -> Optional["Compression"]:
        """Case-insensitive lookup by wire name; None for unknown names."""
        key = (name or "").strip().lower()
        for member in cls:
            if member is not cls.NONE and member.value.lower() == key:
                return member
        return None

    @classmethod
    def from_legacy_flag(cls, flag: int) -> "Compression":
        """Map the pre-V8 u32 compression flags to a method."""
        if flag == 0:
            return cls.NONE
        if flag & 0x01:
            return cls.ZLIB
        if flag & 0x02:
            return cls.GZIP
        if flag & 0x04:
            return cls.OODLE
        raise UnsupportedMethod(f"unknown legacy compression flag: {flag:#x}")

    @property
    def legacy_flag(self) -> Optional[int]:
        return _LEGACY_FLAGS.get(self)

    def __str__(self) -> str:
        return self.value


_LEGACY_FLAGS = {
    Compression.NONE: 0x00,
    Compression.ZLIB: 0x01,
    Compression.GZIP: 0x02,
    Compression.OODLE: 0x04,
}


class _OodleLib:
    """ctypes binding for the handful of Oodle entry points we need."""

    def __init__(self, path: str):
        lib = ctypes.CDLL(path)
        self.path = path
        self._decompress = lib.OodleLZ_Decompress
        self._decompress.restype = ctypes.c_ssize_t
        self._decompress.argtypes = [
            ctypes.c_void_p, ctypes.c_ssize_t, ctypes.c_void_p, ctypes.c_ssize_t,
            ctypes.c_int, ctypes.c_int, ctypes.c_int,
            ctypes.c_void_p, ctypes.c_ssize_t, ctypes.c_void_p, ctypes.c_void_p,
            ctypes.c_void_p, ctypes.c_ssize_t, ctypes.c_int,
        ]
        self._compress = lib.OodleLZ_Compress
        self._compress.restype = ctypes.c_ssize_t
        self._compress.argtypes = [
            ctypes.c_int, ctypes.c_void_p, ctypes.c_ssize_t, ctypes.c_void_p, ctypes.c_int,
            ctypes.c_void_p, ctypes.c_void_p, ctypes.c_void_p, ctypes.c_void_p, ctypes.c_ssize_t,
        ]
        self._bound = lib.OodleLZ_GetCompressedBufferSizeNeeded
        self._bound.restype = ctypes.c_ssize_t
        self._bound.argtypes = [ctypes.c_int, ctypes.c_ssize_t]

    def compress(self, data: bytes) -> bytes:
        out = ctypes.create_string_buffer(self._bound(_OODLE_COMPRESSOR_KRAKEN, len(data)))
        n = self._compress(
            _OODLE_COMPRESSOR_KRAKEN, data, len(data), out, _OODLE_LEVEL_NORMAL,
            None, None, None, None, 0,
        )
        if n <= 0:
            raise RuntimeError("Oodle compression failed")
        return out.raw[:n]

    def decompress(self, data: bytes, expected_length: int) -> bytes:
        out = ctypes.create_string_buffer(expected_length)
        n = self._decompress(
            data, len(data), out, expected_length,
            1, 0, 0, None, 0, None, None, None, 0, 3,
        )
        if n != expected_length:
            raise DecodeFailed(f"Oodle produced {n} bytes, expected {expected_length}")
        return out.raw


def _oodle_search_paths() -> List[str]:
    paths: List[str] = []
    env = os.environ.get(OODLE_LIB_ENV)
    if env:
        paths.append(env)
    here = os.path.dirname(os.path.abspath(__file__))
    for base in (os.getcwd(), here, os.path.dirname(here), os.path.dirname(os.path.abspath(sys.argv[0] or "."))):
        for name in _OODLE_LIB_NAMES:
            paths.append(os.path.join(base, name))
    seen = set()
    return [p for p in paths if not (p in seen or seen.add(p))]


def _find_oodle() -> Optional[_OodleLib]:
    for path in _oodle_search_paths():
        if not os.path.isfile(path):
            continue
        try:
            return _OodleLib(path)
        except (OSError, AttributeError):
            # Not loadable or missing symbols; keep looking
            continue
    return None


# Looked up once at import; read-only afterwards.
_OODLE = _find_oodle()
_HAS_OODLE = _OODLE is not None


def is_available(method: Compression) -> bool:
    if method in (Compression.NONE, Compression.ZLIB, Compression.GZIP):
        return True
    if method is Compression.ZSTD:
        return _HAS_ZSTD
    if method is Compression.LZ4:
        return _HAS_LZ4
    if method is Compression.OODLE:
        return _HAS_OODLE
    return False


def available_methods() -> List[Compression]:
    return [m for m in Compression if is_available(m)]


def _require(method: Compression) -> None:
    if not is_available(method):
        raise UnsupportedMethod(f"{method.value} compression is not available in this runtime")


class Codec:
    def __init__(self, method: Compression, level: Optional[int] = None):
        self.method = method
        self.level = level

    def compress(self, data: bytes) -> bytes:
        method = self.method
        if method is Compression.NONE:
            return bytes(data)
        _require(method)
        if method is Compression.ZLIB:
            return zlib.compress(data, self.level if self.level is not None else 6)
        if method is Compression.GZIP:
            return gzip.compress(data, compresslevel=self.level if self.level is not None else 6, mtime=0)
        if method is Compression.ZSTD:
            try:
                c = _zstd_mod.ZstdCompressor(level=self.level if self.level is not None else 3)
                return c.compress(data)
            except _ZstdError as e:
                raise RuntimeError(f"zstd compression failed: {e}")
        if method is Compression.LZ4:
            return _lz4_block.compress(data, store_size=False)
        if method is Compression.OODLE:
            return _OODLE.compress(data)
        raise UnsupportedMethod(f"unsupported compression method: {method}")

    def decompress(self, data: bytes, expected_length: int) -> bytes:
        method = self.method
        if method is Compression.NONE:
            raw = bytes(data)
        else:
            _require(method)
            try:
                raw = self._decompress(data, expected_length)
            except (zlib.error, OSError, EOFError, _ZstdError, _LZ4Error) as e:
                raise DecodeFailed(f"{method.value} decompression failed: {e}") from e
        if len(raw) != expected_length:
            raise DecodeFailed(
                f"{method.value} block decoded to {len(raw)} bytes, expected {expected_length}"
            )
        return raw

    def _decompress(self, data: bytes, expected_length: int) -> bytes:
        method = self.method
        # Output is capped at expected_length + 1 bytes; the length check
        # in decompress() rejects anything longer
        if method is Compression.ZLIB:
            return _inflate(data, expected_length, zlib.MAX_WBITS)
        if method is Compression.GZIP:
            return _inflate(data, expected_length, zlib.MAX_WBITS | 16)
        if method is Compression.ZSTD:
            return _unzstd(data, expected_length)
        if method is Compression.LZ4:
            return _lz4_block.decompress(data, uncompressed_size=expected_length)
        if method is Compression.OODLE:
            return _OODLE.decompress(data, expected_length)
        raise UnsupportedMethod(f"unsupported compression method: {method}")


def _inflate(data: bytes, expected_length: int, wbits: int) -> bytes:
    d = zlib.decompressobj(wbits)
    raw = d.decompress(data, expected_length + 1)
    if len(raw) <= expected_length and not d.eof:
        raise zlib.error("truncated stream")
    return raw


def _unzstd(data: bytes, expected_length: int) -> bytes:
    out = bytearray()
    with _zstd_mod.ZstdDecompressor().stream_reader(data) as reader:
        while len(out) <= expected_length:
            chunk = reader.read(expected_length + 1 - len(out))
            if not chunk:
                break
            out += chunk
    return bytes(out)


def compress(data: bytes, method: Compression, level: Optional[int] = None) -> bytes:
    return Codec(method, level).compress(data)


def decompress(data: bytes, method: Compression, expected_length: int) -> bytes:
    return Codec(method).decompress(data, expected_length)
