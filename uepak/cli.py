from __future__ import annotations

import argparse
import json as _json
import os
import sys
import time
from typing import List, Optional

from uepak.append import append_to_archive
from uepak.batch import archive_stats, create_from_directory, extract_all
from uepak.codec import Compression, available_methods
from uepak.constants import DEFAULT_BLOCK_SIZE, DEFAULT_MOUNT_POINT, DEFAULT_VERSION, Version
from uepak.encryption import generate_key, key_to_hex
from uepak.errors import MissingKey, PakError
from uepak.pathutil import norm_path
from uepak.reader import ArchiveReader
from uepak.rebuild import rebuild_archive, remove_entries


def _parse_compression(name: Optional[str]) -> Optional[Compression]:
    if name is None or name.strip().lower() == "none":
        return None
    method = Compression.from_string(name)
    if method is None:
        raise ValueError(f"Unknown compression method: {name}")
    return method


def _progress_printer(verb: str, quiet: bool):
    """Return a progress callback printing one percentage line per entry."""

    def _report(done: int, total: int, path: str) -> bool:
        if not quiet:
            pct = done * 100.0 / (total or 1)
            print(f" {pct:6.2f}% {verb}: {path}")
        return True

    return _report


def _report_failures(failures) -> None:
    for path, msg in failures:
        print(f"Warning: {path}: {msg}", file=sys.stderr)


def _human(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024.0 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{n} B"


def cmd_create(
    output: str,
    source: str,
    *,
    version: str = DEFAULT_VERSION.value,
    mount_point: str = DEFAULT_MOUNT_POINT,
    compression: Optional[str] = None,
    key: Optional[str] = None,
    block_size: int = DEFAULT_BLOCK_SIZE,
    level: Optional[int] = None,
    seed: Optional[int] = None,
    quiet: bool = False,
) -> bool:
    """Create a new archive from the contents of a directory."""
    t0 = time.time()
    result = create_from_directory(
        source,
        output,
        version=Version.parse(version),
        mount_point=mount_point,
        path_hash_seed=seed,
        key=key,
        compression=_parse_compression(compression),
        block_size=block_size,
        level=level,
        progress=_progress_printer("packing", quiet),
    )
    _report_failures(result.failures)
    dt = max(0.000001, time.time() - t0)
    size = os.path.getsize(output)
    print(f"Done: {len(result.done)} files; {_human(size)} written in {dt:.1f}s")
    return not result.failures


def cmd_list(archive: str, *, key: Optional[str] = None, long: bool = False) -> bool:
    """List archive entries, one path per line."""
    with ArchiveReader(archive, key=key) as r:
        for path in r.files():
            if not long:
                print(path)
                continue
            e = r.entry_info(path)
            flags = "E" if e.is_encrypted else "-"
            print(f"{e.uncompressed_size}\t{e.compressed_size}\t{e.compression.value}\t{flags}\t{path}")
    return True


def cmd_info(archive: str, *, key: Optional[str] = None, as_json: bool = False) -> bool:
    """Show archive-level facts: version, mount point, sizes and methods."""
    with ArchiveReader(archive, key=key) as r:
        stats = archive_stats(r)
        seed = r.path_hash_seed
    methods = {m.value: n for m, n in stats.methods.items()}
    if as_json:
        print(
            _json.dumps(
                {
                    "archive": archive,
                    "version": stats.version.value,
                    "mount_point": stats.mount_point,
                    "path_hash_seed": seed,
                    "encrypted_index": stats.encrypted_index,
                    "encrypted_entries": stats.encrypted_entries,
                    "files": stats.file_count,
                    "uncompressed_size": stats.uncompressed_size,
                    "compressed_size": stats.compressed_size,
                    "ratio": round(stats.ratio, 4),
                    "methods": methods,
                },
                indent=2,
            )
        )
        return True
    print(f"Archive: {archive}")
    print(f"  Version: {stats.version.value}")
    print(f"  Mount point: {stats.mount_point}")
    print(f"  Path hash seed: {seed:#018x}")
    print(f"  Encrypted index: {'yes' if stats.encrypted_index else 'no'}")
    print(f"  Files: {stats.file_count} ({stats.encrypted_entries} encrypted)")
    print(f"  Size: {_human(stats.uncompressed_size)} -> {_human(stats.compressed_size)} ({stats.ratio * 100.0:.1f}%)")
    print(f"  Compression: {', '.join(f'{k} x{v}' for k, v in methods.items()) or 'none'}")
    return True


def cmd_extract(
    archive: str,
    *,
    outdir: str = ".",
    key: Optional[str] = None,
    paths: Optional[List[str]] = None,
    quiet: bool = False,
) -> bool:
    """Extract all entries, or the named files and directories, below ``outdir``."""
    with ArchiveReader(archive, key=key) as r:
        selected = None
        if paths:
            wanted = [norm_path(p) for p in paths]
            selected = [ep for ep in r.files() if any(ep == w or ep.startswith(w + "/") for w in wanted)]
            if not selected:
                raise FileNotFoundError(f"No entries match: {' '.join(paths)}")
        t0 = time.time()
        result = extract_all(r, outdir, paths=selected, progress=_progress_printer("extracting", quiet))
    _report_failures(result.failures)
    dt = max(0.000001, time.time() - t0)
    print(f"Done: {len(result.done)} extracted, {len(result.failures)} failed in {dt:.1f}s")
    return not result.failures


def cmd_add(
    archive: str,
    inputs: List[str],
    *,
    key: Optional[str] = None,
    compression: Optional[str] = None,
    prefix: str = "",
    quiet: bool = False,
) -> bool:
    """Append files to an existing archive and rewrite its index."""
    written = append_to_archive(
        archive,
        inputs,
        key=key,
        compression=_parse_compression(compression),
        prefix=prefix,
        progress=_progress_printer("adding", quiet),
    )
    print(f"Done: {len(written)} files added")
    return True


def cmd_remove(archive: str, paths: List[str], *, key: Optional[str] = None, quiet: bool = False) -> bool:
    """Remove entries by rebuilding the archive without them."""
    print(" Rebuilding archive without removed entries...", flush=True)
    result = remove_entries(archive, paths, key=key, progress=_progress_printer("copying", quiet))
    _report_failures(result.failures)
    print(f"Done: {len(result.removed)} removed, {len(result.written)} kept")
    return not result.failures


def cmd_save(archive: str, *, output: Optional[str] = None, key: Optional[str] = None, quiet: bool = False) -> bool:
    """Rewrite an archive compactly, in place or to ``output``."""
    result = rebuild_archive(archive, key=key, output=output, progress=_progress_printer("copying", quiet))
    _report_failures(result.failures)
    print(f"Done: {len(result.written)} files written to {result.path}")
    return not result.failures


def cmd_genkey() -> bool:
    """Print a fresh random AES-256 key as hex."""
    print(key_to_hex(generate_key()))
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="uepak",
        description="Read, create and modify Unreal Engine .pak archives",
        epilog=(
            "Keys are 32-byte AES-256 keys given as 64 hex characters. "
            "Available compression: " + ", ".join(m.value for m in available_methods())
        ),
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_create = sub.add_parser("create", help="Create an archive from a directory")
    ap_create.add_argument("output", help="Output .pak path")
    ap_create.add_argument("source", help="Directory whose contents are packed")
    ap_create.add_argument(
        "--version", default=DEFAULT_VERSION.value, help=f"Wire version V1..V11, V8A or V8B (default {DEFAULT_VERSION.value})"
    )
    ap_create.add_argument("--mount-point", default=DEFAULT_MOUNT_POINT, help="Mount point (default ../../../)")
    ap_create.add_argument("--compression", help="Zlib, Gzip, Zstd, LZ4, Oodle or None")
    ap_create.add_argument("--key", help="AES key; encrypts the index and all entries")
    ap_create.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE, help="Compression block size in bytes")
    ap_create.add_argument("--level", type=int, help="Compression level for Zlib, Gzip and Zstd")
    ap_create.add_argument("--seed", type=lambda s: int(s, 0), help="Path hash seed (V10+)")
    ap_create.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_list = sub.add_parser("list", help="List archive contents")
    ap_list.add_argument("archive", help="Archive path")
    ap_list.add_argument("--key", help="AES key")
    ap_list.add_argument("--long", "-l", action="store_true", help="Show sizes, method and encryption flag")

    ap_info = sub.add_parser("info", help="Show archive information")
    ap_info.add_argument("archive", help="Archive path")
    ap_info.add_argument("--key", help="AES key")
    ap_info.add_argument("--json", action="store_true", help="Emit JSON")

    ap_extract = sub.add_parser("extract", help="Extract files")
    ap_extract.add_argument("archive", help="Archive path")
    ap_extract.add_argument("paths", nargs="*", help="Specific archive paths to extract (files or directories)")
    ap_extract.add_argument("--outdir", default=".", help="Output directory")
    ap_extract.add_argument("--key", help="AES key")
    ap_extract.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_add = sub.add_parser("add", aliases=["append"], help="Append files to an existing archive")
    ap_add.add_argument("archive", help="Archive path")
    ap_add.add_argument("inputs", nargs="+", help="Input files/directories to append")
    ap_add.add_argument("--key", help="AES key (required if encrypted)")
    ap_add.add_argument("--compression", help="Compression for the new entries")
    ap_add.add_argument("--prefix", default="", help="Archive directory the inputs are placed under")
    ap_add.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_remove = sub.add_parser("remove", help="Remove entries (rebuilds the archive)")
    ap_remove.add_argument("archive", help="Archive path")
    ap_remove.add_argument("paths", nargs="+", help="Archive paths to remove")
    ap_remove.add_argument("--key", help="AES key (required if encrypted)")
    ap_remove.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_save = sub.add_parser("save", aliases=["rebuild"], help="Rewrite the archive compactly (in place or --output)")
    ap_save.add_argument("archive", help="Archive path")
    ap_save.add_argument("--output", help="Write to this path instead of replacing the archive")
    ap_save.add_argument("--key", help="AES key (required if encrypted)")
    ap_save.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    sub.add_parser("genkey", help="Generate a random AES-256 key")

    args = ap.parse_args(argv)
    try:
        if args.cmd == "create":
            success = cmd_create(
                args.output,
                args.source,
                version=args.version,
                mount_point=args.mount_point,
                compression=args.compression,
                key=args.key,
                block_size=args.block_size,
                level=args.level,
                seed=args.seed,
                quiet=args.quiet,
            )
        elif args.cmd == "list":
            success = cmd_list(args.archive, key=args.key, long=args.long)
        elif args.cmd == "info":
            success = cmd_info(args.archive, key=args.key, as_json=args.json)
        elif args.cmd == "extract":
            success = cmd_extract(args.archive, outdir=args.outdir, key=args.key, paths=args.paths, quiet=args.quiet)
        elif args.cmd in ("add", "append"):
            success = cmd_add(
                args.archive,
                args.inputs,
                key=args.key,
                compression=args.compression,
                prefix=args.prefix,
                quiet=args.quiet,
            )
        elif args.cmd == "remove":
            success = cmd_remove(args.archive, args.paths, key=args.key, quiet=args.quiet)
        elif args.cmd in ("save", "rebuild"):
            success = cmd_save(args.archive, output=args.output, key=args.key, quiet=args.quiet)
        elif args.cmd == "genkey":
            success = cmd_genkey()
        else:
            raise RuntimeError("Unknown command")
        sys.exit(0 if success else 1)
    except MissingKey as e:
        print(f"Error: {e}. Provide --key.", file=sys.stderr)
        sys.exit(2)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (PakError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
