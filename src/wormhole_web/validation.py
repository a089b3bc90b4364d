"""Validation and sanitization of untrusted names, codes and transfer ids."""

from __future__ import annotations

import os
import re

MAX_FILENAME_BYTES = 255
FALLBACK_FILENAME = "unnamed"

# Exchange codes are number-word-word, e.g. "7-guitarist-revenge".
_EXCHANGE_CODE_RE = re.compile(r"[0-9]+-[A-Za-z]+-[A-Za-z]+")
# Transfer ids are send-<n> or recv-<n>; they end up in filesystem paths.
_TRANSFER_ID_RE = re.compile(r"(send|recv)-[0-9]+")


def _truncate(name: str, limit: int) -> str:
    """Cut *name* to at most *limit* UTF-8 bytes, keeping its extension."""
    if len(name.encode()) <= limit:
        return name

    stem, ext = os.path.splitext(name)
    ext_bytes = ext.encode()
    if len(ext_bytes) >= limit:
        # Nothing sensible left to keep; cut the whole name.
        stem, ext_bytes = name, b""

    budget = limit - len(ext_bytes)
    # errors="ignore" drops a multi-byte character split by the cut.
    head = stem.encode()[:budget].decode(errors="ignore")
    return head + ext_bytes.decode()


def sanitize_filename(name: str) -> str:
    """Return a display/storage-safe version of an untrusted filename.

    Only the final path segment is kept (both ``/`` and ``\\`` count as
    separators), control characters are removed, the result is truncated to
    :data:`MAX_FILENAME_BYTES` bytes with the extension preserved, and empty,
    ``.`` or ``..`` results become :data:`FALLBACK_FILENAME`.

    The function is idempotent.
    """
    # Trailing separators do not hide the last segment: "photos/" -> "photos".
    name = name.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]
    name = "".join(ch for ch in name if ord(ch) >= 32 and ord(ch) != 127)
    name = _truncate(name, MAX_FILENAME_BYTES)
    if name in ("", ".", ".."):
        name = FALLBACK_FILENAME
    return name


def sanitize_relative_path(path: str) -> str:
    """Sanitize every ``/``-separated segment of a client-supplied relative path."""
    return "/".join(sanitize_filename(part) for part in path.split("/"))


def is_valid_exchange_code(code: str) -> bool:
    """Check that *code* is exactly ``<digits>-<letters>-<letters>``."""
    return _EXCHANGE_CODE_RE.fullmatch(code) is not None


def is_valid_transfer_id(transfer_id: str) -> bool:
    """Check that *transfer_id* is exactly ``send-<digits>`` or ``recv-<digits>``."""
    return _TRANSFER_ID_RE.fullmatch(transfer_id) is not None
