from __future__ import annotations

from typing import Optional, Union

from .codec import Compression
from .constants import DEFAULT_BLOCK_SIZE, DEFAULT_MOUNT_POINT, DEFAULT_VERSION, Version
from .encryption import parse_key
from .reader import ArchiveReader, Source
from .writer import ArchiveWriter, Sink


class PakBuilder:
    """
    Shared configuration for readers and writers.

    Setters return the builder so calls can be chained::

        builder = PakBuilder().compression(Compression.ZSTD).key(hex_key)
        with builder.writer("out.pak") as w:
            ...

    Values are copied into every reader or writer at construction; changing
    the builder afterwards does not affect objects it already produced.
    """

    def __init__(self):
        self._compression: Compression = Compression.NONE
        self._key: Optional[bytes] = None
        self._block_size: int = DEFAULT_BLOCK_SIZE
        self._level: Optional[int] = None

    def compression(self, method: Union[Compression, str, None]) -> "PakBuilder":
        if isinstance(method, str):
            parsed = Compression.from_string(method)
            if parsed is None and method.strip().lower() != "none":
                raise ValueError(f"Unknown compression method: {method}")
            method = parsed
        self._compression = method or Compression.NONE
        return self

    def key(self, key: Union[str, bytes, bytearray, None]) -> "PakBuilder":
        self._key = parse_key(key) if key is not None else None
        return self

    def block_size(self, size: int) -> "PakBuilder":
        if size <= 0:
            raise ValueError("block_size must be positive")
        self._block_size = size
        return self

    def level(self, level: Optional[int]) -> "PakBuilder":
        self._level = level
        return self

    def reader(self, source: Source, *, writable: bool = False) -> ArchiveReader:
        return ArchiveReader(source, key=self._key, writable=writable)

    def writer(
        self,
        sink: Sink,
        version: Version = DEFAULT_VERSION,
        mount_point: str = DEFAULT_MOUNT_POINT,
        path_hash_seed: Optional[int] = None,
    ) -> ArchiveWriter:
        return ArchiveWriter(
            sink,
            version=version,
            mount_point=mount_point,
            path_hash_seed=path_hash_seed,
            key=self._key,
            compression=self._compression,
            block_size=self._block_size,
            level=self._level,
        )
