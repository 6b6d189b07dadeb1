from __future__ import annotations

import errno
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

from .codec import Compression
from .constants import DEFAULT_BLOCK_SIZE
from .errors import MissingKey, PakError, UnsupportedMethod
from .reader import ArchiveReader
from .writer import ArchiveWriter

Progress = Callable[[int, int, str], Optional[bool]]


class RebuildError(PakError):
    """Raised when the rebuild operation cannot complete safely."""


@dataclass
class RebuildResult:
    path: Path
    written: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    stopped: bool = False


def rebuild_archive(
    archive: Union[str, os.PathLike],
    *,
    key: Optional[Union[str, bytes]] = None,
    remove: Iterable[str] = (),
    output: Optional[Union[str, os.PathLike]] = None,
    progress: Optional[Progress] = None,
) -> RebuildResult:
    """
    Rewrite an archive without dead bytes and without the entries in ``remove``.

    The new archive is written to a temporary file next to the destination,
    re-opened and checked against the expected file list, and only then moved
    over the destination with ``os.replace``. Without ``output`` the source
    archive itself is replaced (save in place).

    Every retained entry is decoded and encoded again with its original
    compression method, block size and encryption flag. An entry whose
    method is not available here is copied block for block instead. An entry
    that still fails is reported in ``failures``: a save-as leaves it out of
    the copy, while an in-place rebuild raises ``RebuildError`` and keeps the
    source unchanged. A missing key aborts the whole rebuild.
    """
    src = Path(archive)
    if not src.exists():
        raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(src))
    if not src.is_file():
        raise RebuildError(f"Archive is not a regular file: {src}")
    dest = Path(output) if output is not None else src
    in_place = dest.resolve() == src.resolve()
    dest_dir = dest.parent if str(dest.parent) else Path(".")
    result = RebuildResult(path=dest)

    fd, temp_name = tempfile.mkstemp(prefix="uepak-rebuild-", suffix=".pak", dir=str(dest_dir))
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        with ArchiveReader(src, key=key) as reader:
            drop = {reader.index.resolve(p) for p in remove}
            keep = [p for p in reader.files() if p not in drop]
            result.removed = [p for p in reader.files() if p in drop]
            has_key = reader.key is not None
            with ArchiveWriter(
                temp_path,
                version=reader.version,
                mount_point=reader.mount_point,
                path_hash_seed=reader.path_hash_seed,
                key=reader.key if reader.version.format.supports_entry_encryption else None,
                encrypt_index=reader.encrypted_index,
            ) as writer:
                for i, path in enumerate(keep, 1):
                    try:
                        _copy_entry(reader, writer, path, has_key)
                    except MissingKey:
                        raise
                    except PakError as exc:
                        result.failures.append((path, str(exc)))
                    else:
                        result.written.append(path)
                    if progress is not None and progress(i, len(keep), path) is False:
                        result.stopped = True
                        break
                if not result.stopped:
                    writer.write_index()

        if result.stopped:
            temp_path.unlink(missing_ok=True)
            return result
        if result.failures and in_place:
            raise RebuildError(
                f"{len(result.failures)} entries could not be copied; {src} was left unchanged"
            )
        with ArchiveReader(temp_path, key=key) as check:
            if check.files() != result.written:
                raise RebuildError("Rebuilt archive contents differ from the expected file list")
    except (PakError, OSError, ValueError, RuntimeError):
        temp_path.unlink(missing_ok=True)
        raise

    try:
        os.replace(str(temp_path), str(dest))
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    return result


def _copy_entry(reader: ArchiveReader, writer: ArchiveWriter, path: str, has_key: bool) -> None:
    """Decode and re-encode one entry; copy its stored blocks when its codec is unavailable."""
    e = reader.entry_info(path)
    encrypt = e.is_encrypted and has_key
    try:
        data = reader.read(path)
    except UnsupportedMethod:
        e, stored = reader.read_stored(path)
        writer.write_stored(
            path,
            stored,
            e.compression,
            e.uncompressed_size,
            block_size=e.compression_block_size,
            encrypt=encrypt,
        )
        return
    writer.block_size = e.compression_block_size or DEFAULT_BLOCK_SIZE
    writer.write_file(
        path,
        data,
        compress=e.compression is not Compression.NONE,
        method=e.compression,
        encrypt=encrypt,
    )


def remove_entries(
    archive: Union[str, os.PathLike],
    paths: Iterable[str],
    *,
    key: Optional[Union[str, bytes]] = None,
    progress: Optional[Progress] = None,
) -> RebuildResult:
    return rebuild_archive(archive, key=key, remove=paths, progress=progress)
