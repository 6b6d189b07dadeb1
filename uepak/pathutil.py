from __future__ import annotations

from typing import Tuple


def norm_path(p: str) -> str:
    """Normalize archive paths to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments and empty results
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Path may not contain '..'")
    if not parts:
        raise ValueError("Empty archive path")
    return "/".join(parts)


def split_dir(path: str) -> Tuple[str, str]:
    """Split into the directory-index form: ("dir/sub/", "name") or ("/", "name")."""
    head, sep, name = path.rpartition("/")
    if not sep:
        return "/", name
    return head + "/", name


def join_dir(directory: str, name: str) -> str:
    if directory in ("", "/"):
        return name
    return directory.lstrip("/") + name
