from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


PAK_MAGIC = 0x5A6F12E1

DEFAULT_MOUNT_POINT = "../../../"
DEFAULT_BLOCK_SIZE = 0x10000  # 64 KiB, last block may be shorter

AES_BLOCK_SIZE = 16
KEY_SIZE = 32
SHA1_SIZE = 20
COMPRESSION_NAME_SIZE = 32

# Entry flags byte (major >= 3)
ENTRY_FLAG_ENCRYPTED = 0x01
ENTRY_FLAG_DELETED = 0x02

# Safety bounds when parsing untrusted archives
MAX_INDEX_SIZE = 512 * 1024 * 1024
MAX_ENTRY_COUNT = 10_000_000


class VersionMajor:
    INITIAL = 1
    NO_TIMESTAMPS = 2
    COMPRESSION_ENCRYPTION = 3
    INDEX_ENCRYPTION = 4
    RELATIVE_CHUNK_OFFSETS = 5
    DELETE_RECORDS = 6
    ENCRYPTION_KEY_GUID = 7
    FNAME_BASED_COMPRESSION = 8
    FROZEN_INDEX = 9
    PATH_HASH_INDEX = 10
    FNV64_BUGFIX = 11


class Version(Enum):
    V1 = "V1"
    V2 = "V2"
    V3 = "V3"
    V4 = "V4"
    V5 = "V5"
    V6 = "V6"
    V7 = "V7"
    V8A = "V8A"
    V8B = "V8B"
    V9 = "V9"
    V10 = "V10"
    V11 = "V11"

    @classmethod
    def parse(cls, name: str) -> "Version":
        key = name.strip().upper()
        if not key.startswith("V"):
            key = "V" + key
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"unknown pak version: {name}") from None

    @property
    def format(self) -> "VersionFormat":
        return FORMATS[self]

    @property
    def major(self) -> int:
        return FORMATS[self].major

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class VersionFormat:
    """Every layout decision that depends on the wire version."""

    major: int
    # footer
    has_key_guid: bool
    has_encrypted_flag: bool
    has_frozen_flag: bool
    compression_slots: int
    # entry
    has_timestamp: bool
    has_block_info: bool
    relative_blocks: bool
    compression_field: str  # "legacy" (u32 flags), "slot8" (u8), "slot32" (u32)
    # index
    path_hash_index: bool

    @property
    def footer_size(self) -> int:
        # magic + major + index offset + index size + index hash
        size = 4 + 4 + 8 + 8 + SHA1_SIZE
        if self.has_key_guid:
            size += 16
        if self.has_encrypted_flag:
            size += 1
        if self.has_frozen_flag:
            size += 1
        size += COMPRESSION_NAME_SIZE * self.compression_slots
        return size

    @property
    def supports_entry_encryption(self) -> bool:
        return self.has_block_info

    @property
    def supports_index_encryption(self) -> bool:
        return self.has_encrypted_flag


def _fmt(major: int, *, slots: int = 0, field: str = "legacy", frozen: bool = False) -> VersionFormat:
    return VersionFormat(
        major=major,
        has_key_guid=major >= VersionMajor.ENCRYPTION_KEY_GUID,
        has_encrypted_flag=major >= VersionMajor.INDEX_ENCRYPTION,
        has_frozen_flag=frozen,
        compression_slots=slots,
        has_timestamp=major == VersionMajor.INITIAL,
        has_block_info=major >= VersionMajor.COMPRESSION_ENCRYPTION,
        relative_blocks=major >= VersionMajor.RELATIVE_CHUNK_OFFSETS,
        compression_field=field,
        path_hash_index=major >= VersionMajor.PATH_HASH_INDEX,
    )


# One explicit row per version; lookups never fall through to a neighbour.
FORMATS: Dict[Version, VersionFormat] = {
    Version.V1: _fmt(VersionMajor.INITIAL),
    Version.V2: _fmt(VersionMajor.NO_TIMESTAMPS),
    Version.V3: _fmt(VersionMajor.COMPRESSION_ENCRYPTION),
    Version.V4: _fmt(VersionMajor.INDEX_ENCRYPTION),
    Version.V5: _fmt(VersionMajor.RELATIVE_CHUNK_OFFSETS),
    Version.V6: _fmt(VersionMajor.DELETE_RECORDS),
    Version.V7: _fmt(VersionMajor.ENCRYPTION_KEY_GUID),
    Version.V8A: _fmt(VersionMajor.FNAME_BASED_COMPRESSION, slots=4, field="slot8"),
    Version.V8B: _fmt(VersionMajor.FNAME_BASED_COMPRESSION, slots=5, field="slot32"),
    Version.V9: _fmt(VersionMajor.FROZEN_INDEX, slots=5, field="slot32", frozen=True),
    Version.V10: _fmt(VersionMajor.PATH_HASH_INDEX, slots=5, field="slot32"),
    Version.V11: _fmt(VersionMajor.FNV64_BUGFIX, slots=5, field="slot32"),
}

DEFAULT_VERSION = Version.V11
