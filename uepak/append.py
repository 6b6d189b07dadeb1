from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .codec import Compression
from .pathutil import norm_path
from .reader import ArchiveReader

Progress = Callable[[int, int, str], Optional[bool]]


def _scan_inputs(
    paths: Sequence[Union[str, os.PathLike]], prefix: str = "", include_root: bool = True
) -> List[Tuple[str, str]]:
    """Return (archive path, filesystem path) pairs for every regular file under ``paths``.

    A directory contributes its own name as the first path segment, the way
    ``cp -r`` would, unless ``include_root`` is false; a file contributes just
    its name. ``prefix`` is prepended to every archive path.
    """
    def _arc(rel: str) -> str:
        return norm_path(f"{prefix}/{rel}" if prefix else rel)

    files: List[Tuple[str, str]] = []
    for p in [Path(x) for x in paths]:
        if p.is_dir():
            base = p.resolve().name if include_root else ""
            for root, dirnames, filenames in os.walk(str(p)):
                dirnames.sort()
                for f in sorted(filenames):
                    full = os.path.join(root, f)
                    if os.path.islink(full) and not os.path.isfile(full):
                        continue
                    rel = os.path.relpath(full, start=str(p))
                    files.append((_arc(os.path.join(base, rel)), full))
        elif p.is_file():
            files.append((_arc(p.name), str(p)))
        else:
            raise FileNotFoundError(f"No such file or directory: {p}")
    return files


def append_to_archive(
    archive: Union[str, os.PathLike],
    inputs: Sequence[Union[str, os.PathLike]],
    *,
    key: Optional[Union[str, bytes]] = None,
    compression: Optional[Compression] = None,
    prefix: str = "",
    progress: Optional[Progress] = None,
) -> List[str]:
    """
    Add files to an existing archive in place.

    New payloads are written where the old index started; the old payload
    bytes are left untouched, including those of entries the new files
    replace. A fresh index and footer are written at the end even when
    ``progress`` stops the run early. Returns the archive paths written.
    """
    files = _scan_inputs(inputs, prefix)
    written: List[str] = []
    with ArchiveReader(archive, key=key, writable=True) as r:
        with r.to_writer(compression=compression) as w:
            for i, (arc, full) in enumerate(files, 1):
                with open(full, "rb") as fh:
                    w.write_file(arc, fh.read())
                written.append(arc)
                if progress is not None and progress(i, len(files), arc) is False:
                    break
            w.write_index()
    return written
