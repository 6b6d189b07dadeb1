from __future__ import annotations

import os
from typing import BinaryIO, List, Optional, Union

from .codec import Codec, Compression, is_available
from .constants import DEFAULT_BLOCK_SIZE, DEFAULT_MOUNT_POINT, DEFAULT_VERSION, Version
from .encryption import align, make_cipher, parse_key
from .entry import Block, EntryRecord, pack_entry, serialized_size
from .errors import IoFailure, UnsupportedMethod
from .footer import Footer
from .hashutil import sha1
from .index import ArchiveIndex, dumps_index
from .pathutil import norm_path

Sink = Union[str, "os.PathLike[str]", BinaryIO]
KeyLike = Union[str, bytes, bytearray]


class ArchiveWriter:
    """Streaming writer: payloads go out as they are added, the index and footer last."""

    def __init__(
        self,
        sink: Sink,
        version: Version = DEFAULT_VERSION,
        mount_point: str = DEFAULT_MOUNT_POINT,
        path_hash_seed: Optional[int] = None,
        key: Optional[KeyLike] = None,
        compression: Optional[Compression] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        level: Optional[int] = None,
        encrypt_index: Optional[bool] = None,
    ):
        fmt = version.format
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        if key is not None and not fmt.supports_entry_encryption:
            raise ValueError(f"{version} does not support encryption")
        self.sink = sink
        self.f: Optional[BinaryIO] = None
        self._owns_handle = False
        self._resume = False
        self.version = version
        self.key: Optional[bytes] = parse_key(key) if key is not None else None
        self._cipher = make_cipher(self.key)
        if encrypt_index is None:
            encrypt_index = self.key is not None and fmt.supports_index_encryption
        if encrypt_index and (self.key is None or not fmt.supports_index_encryption):
            raise ValueError(f"Index encryption needs a key and {version} or later than V3")
        self.compression = compression or Compression.NONE
        self.block_size = block_size
        self.level = level
        self.index = ArchiveIndex(
            version=version,
            mount_point=mount_point,
            path_hash_seed=path_hash_seed or 0,
            encrypted_index=encrypt_index,
        )
        self._cursor = 0
        self._finalized = False

    @classmethod
    def resume(
        cls,
        sink: Sink,
        index: ArchiveIndex,
        offset: int,
        key: Optional[KeyLike] = None,
        **options,
    ) -> "ArchiveWriter":
        """Continue an existing archive whose payload region ends at ``offset``."""
        w = cls(
            sink,
            version=index.version,
            mount_point=index.mount_point,
            path_hash_seed=index.path_hash_seed,
            key=key,
            encrypt_index=index.encrypted_index,
            **options,
        )
        w.index.entries = dict(index.entries)
        w.index.compression_slots = list(index.compression_slots)
        w._cursor = offset
        w._resume = True
        return w

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def open(self):
        if self.f is not None:
            return
        if isinstance(self.sink, (str, os.PathLike)):
            try:
                self.f = open(self.sink, "r+b" if self._resume else "wb")
            except OSError as exc:
                raise IoFailure(f"Cannot open {os.fspath(self.sink)}: {exc}") from exc
            self._owns_handle = True
        else:
            self.f = self.sink

    def close(self):
        if self.f is not None:
            if self._owns_handle:
                self.f.close()
            self.f = None
            self._owns_handle = False

    @property
    def entries(self) -> List[EntryRecord]:
        return list(self.index.entries.values())

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _check_method(self, method: Compression, *, need_codec: bool = True) -> None:
        fmt = self.version.format
        if method is Compression.NONE:
            return
        if fmt.compression_field == "legacy":
            if method.legacy_flag is None:
                raise UnsupportedMethod(f"{method.value} cannot be stored in a {self.version} archive")
        elif method not in self.index.compression_slots and len(self.index.compression_slots) >= fmt.compression_slots:
            raise UnsupportedMethod(
                f"{self.version} can name at most {fmt.compression_slots} compression methods"
            )
        if need_codec and not is_available(method):
            raise UnsupportedMethod(f"{method.value} compression is not available in this runtime")

    def _split(self, data: bytes, method: Compression) -> List[bytes]:
        """Compress ``data`` block by block; an empty list means store it uncompressed."""
        if method is Compression.NONE or not data:
            return []
        # Without block info (V1, V2) the whole payload is a single block
        bs = self.block_size if self.version.format.has_block_info else len(data)
        codec = Codec(method, self.level)
        stored = []
        shrunk = False
        for pos in range(0, len(data), bs):
            chunk = data[pos : pos + bs]
            packed = codec.compress(chunk)
            if len(packed) < len(chunk):
                stored.append(packed)
                shrunk = True
            else:
                stored.append(chunk)
        return stored if shrunk else []

    def _resolve_encrypt(self, encrypt: Optional[bool]) -> bool:
        if encrypt is None:
            encrypt = self._cipher is not None
        if encrypt and self._cipher is None:
            raise ValueError("Entry encryption requires a key")
        return encrypt

    def write_file(
        self,
        path: str,
        data: bytes,
        compress: bool = True,
        method: Optional[Compression] = None,
        encrypt: Optional[bool] = None,
    ) -> EntryRecord:
        """Append one entry at the cursor and record it in the index."""
        self._check_open()
        path = norm_path(path)
        data = bytes(data)
        encrypt = self._resolve_encrypt(encrypt)
        method = (method or self.compression) if compress else Compression.NONE
        self._check_method(method)

        stored = self._split(data, method)
        if stored:
            block_size = self.block_size if self.version.format.has_block_info else 0
        else:
            method = Compression.NONE
            stored = [data]
            block_size = 0
        return self._emit(path, stored, method, len(data), block_size, encrypt)

    def write_stored(
        self,
        path: str,
        stored: List[bytes],
        method: Compression,
        uncompressed_size: int,
        block_size: int = 0,
        encrypt: Optional[bool] = None,
    ) -> EntryRecord:
        """
        Append an entry from blocks that are already compressed with ``method``.

        No codec is needed, so payloads whose method is unavailable in this
        runtime can still be copied. ``stored`` and ``block_size`` must
        describe the same block layout the source entry had.
        """
        self._check_open()
        path = norm_path(path)
        encrypt = self._resolve_encrypt(encrypt)
        self._check_method(method, need_codec=False)
        stored = [bytes(c) for c in stored]
        if method is Compression.NONE:
            stored = [b"".join(stored)]
            block_size = 0
        elif not self.version.format.has_block_info:
            if len(stored) != 1:
                raise ValueError(f"{self.version} entries hold a single compressed block")
            block_size = 0
        return self._emit(path, stored, method, uncompressed_size, block_size, encrypt)

    def _check_open(self) -> None:
        if self._finalized:
            raise RuntimeError("Index already written; no further entries can be added")
        if self.f is None:
            raise RuntimeError("Archive not open")

    def _emit(
        self,
        path: str,
        stored: List[bytes],
        method: Compression,
        uncompressed_size: int,
        block_size: int,
        encrypt: bool,
    ) -> EntryRecord:
        fmt = self.version.format
        if method is not Compression.NONE and fmt.compression_field != "legacy":
            self.index.slot_for(method)
        has_blocks = method is not Compression.NONE and fmt.has_block_info
        header_size = serialized_size(fmt, method, len(stored) if has_blocks else 0)
        blocks: List[Block] = []
        pos = header_size
        for chunk in stored:
            blocks.append(Block(pos, pos + len(chunk)))
            pos += align(len(chunk)) if encrypt else len(chunk)

        record = EntryRecord(
            path=path,
            offset=self._cursor,
            compressed_size=sum(len(c) for c in stored),
            uncompressed_size=uncompressed_size,
            compression=method,
            is_encrypted=encrypt,
            hash=sha1(b"".join(stored)),
            timestamp=0 if fmt.has_timestamp else None,
            compression_block_size=block_size,
            blocks=blocks if has_blocks else [],
        )
        header = pack_entry(record, fmt, self.index.compression_slots, inline=True)
        try:
            self.f.seek(self._cursor)
            self.f.write(header)
            for chunk in stored:
                self.f.write(self._cipher.encrypt(chunk) if encrypt else chunk)
        except OSError as exc:
            raise IoFailure(f"Writing {path!r} failed: {exc}") from exc
        self._cursor = record.offset + pos
        self.index.add(record)
        return record

    def write_index(self) -> Footer:
        """Write the index and footer after the last payload, then truncate the sink there."""
        if self._finalized:
            raise RuntimeError("Index already written")
        if self.f is None:
            raise RuntimeError("Archive not open")
        index_offset = self._cursor
        cipher = self._cipher if self.index.encrypted_index else None
        blob = dumps_index(self.index, index_offset, cipher)
        footer = Footer(
            version=self.version,
            index_offset=index_offset,
            index_size=len(blob.primary),
            index_hash=blob.primary_hash,
            encrypted_index=self.index.encrypted_index,
            compression_slots=list(self.index.compression_slots),
        )
        try:
            self.f.seek(index_offset)
            self.f.write(blob.primary)
            self.f.write(blob.secondary)
            self.f.write(footer.pack())
            self.f.truncate()
            self.f.flush()
        except OSError as exc:
            raise IoFailure(f"Writing the index failed: {exc}") from exc
        self._cursor = index_offset + blob.total_size
        self._finalized = True
        return footer
