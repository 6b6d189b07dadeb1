"""
uepak: read, write and modify Unreal Engine .pak archives.

Features:

- Every wire version from V1 to V11 (including the V8A/V8B split), detected from the footer.
- Block-chunked compression with Zlib, Gzip, Zstd, LZ4 and, when the native library is
  present, Oodle.
- AES-256 encryption of the index and of individual entries.
- The V10+ path hash index and full directory index.
- In-place append, and rebuild (remove entries, save, save-as) via a verified temp file.

The programmatic API lives in uepak.reader/uepak.writer (or uepak.builder.PakBuilder);
the CLI functions in uepak.cli (cmd_create/cmd_extract/...) take normal parameters.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "codec",
    "encryption",
    "reader",
    "writer",
    "builder",
    "append",
    "rebuild",
    "batch",
]
