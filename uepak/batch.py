from __future__ import annotations

import os
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .append import _scan_inputs
from .codec import Compression
from .constants import DEFAULT_MOUNT_POINT, DEFAULT_VERSION, Version
from .errors import MissingKey, PakError
from .pathutil import norm_path
from .reader import ArchiveReader
from .writer import ArchiveWriter

Progress = Callable[[int, int, str], Optional[bool]]


@dataclass
class BatchResult:
    done: List[str] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.stopped


@dataclass
class ArchiveStats:
    version: Version
    mount_point: str
    file_count: int
    uncompressed_size: int
    compressed_size: int
    encrypted_index: bool
    encrypted_entries: int
    methods: Dict[Compression, int]

    @property
    def ratio(self) -> float:
        """Stored bytes over original bytes; 1.0 for an empty archive."""
        if not self.uncompressed_size:
            return 1.0
        return self.compressed_size / self.uncompressed_size


def archive_stats(reader: ArchiveReader) -> ArchiveStats:
    methods: Counter = Counter()
    usize = csize = encrypted = 0
    for path in reader.files():
        e = reader.entry_info(path)
        methods[e.compression] += 1
        usize += e.uncompressed_size
        csize += e.compressed_size
        encrypted += int(e.is_encrypted)
    return ArchiveStats(
        version=reader.version,
        mount_point=reader.mount_point,
        file_count=len(reader),
        uncompressed_size=usize,
        compressed_size=csize,
        encrypted_index=reader.encrypted_index,
        encrypted_entries=encrypted,
        methods=dict(methods),
    )


def extract_all(
    reader: ArchiveReader,
    dest: Union[str, os.PathLike],
    *,
    paths: Optional[Iterable[str]] = None,
    progress: Optional[Progress] = None,
) -> BatchResult:
    """
    Decode entries into ``dest``, mirroring their archive paths.

    A failing entry is recorded and skipped; its partial output is removed.
    ``MissingKey`` aborts the batch since every later entry would fail the
    same way.
    """
    out_root = Path(dest)
    wanted = list(paths) if paths is not None else reader.files()
    result = BatchResult()
    for i, path in enumerate(wanted, 1):
        target: Optional[Path] = None
        try:
            target = out_root / norm_path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as fh:
                reader.read_file(path, fh)
        except (PakError, OSError, ValueError) as exc:
            if target is not None and target.exists():
                target.unlink()
            if isinstance(exc, MissingKey):
                raise
            result.failures.append((path, str(exc)))
        else:
            result.done.append(path)
        if progress is not None and progress(i, len(wanted), path) is False:
            result.stopped = True
            break
    return result


def create_from_directory(
    source: Union[str, os.PathLike],
    archive: Union[str, os.PathLike],
    *,
    version: Version = DEFAULT_VERSION,
    mount_point: str = DEFAULT_MOUNT_POINT,
    path_hash_seed: Optional[int] = None,
    key: Optional[Union[str, bytes]] = None,
    compression: Optional[Compression] = None,
    block_size: Optional[int] = None,
    level: Optional[int] = None,
    progress: Optional[Progress] = None,
) -> BatchResult:
    """
    Pack every regular file below ``source`` into a new archive.

    Archive paths are relative to ``source`` itself. Files that cannot be
    read are reported and skipped; the index is always written so the
    archive stays openable.
    """
    root = Path(source)
    if not root.is_dir():
        raise NotADirectoryError(f"Not a directory: {root}")
    files = _scan_inputs([root], include_root=False)
    options = {"block_size": block_size} if block_size else {}
    result = BatchResult()
    with ArchiveWriter(
        archive,
        version=version,
        mount_point=mount_point,
        path_hash_seed=path_hash_seed,
        key=key,
        compression=compression,
        level=level,
        **options,
    ) as w:
        for i, (arc, full) in enumerate(files, 1):
            try:
                with open(full, "rb") as fh:
                    data = fh.read()
            except OSError as exc:
                result.failures.append((arc, str(exc)))
            else:
                w.write_file(arc, data)
                result.done.append(arc)
            if progress is not None and progress(i, len(files), arc) is False:
                result.stopped = True
                break
        w.write_index()
    return result
