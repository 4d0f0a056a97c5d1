"""Content keys and entry ids.

A content key identifies file content independent of name or location:
``<byteSize>-<16 hex chars of the content hash>``. Older builds wrote
``<name>-<byteSize>-<hash16>``; those still parse. An entry id is a djb2
digest of ``displayName-contentKey`` so the same content opened under two
names gets two history entries.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Callable, Optional, Union

log = logging.getLogger(__name__)

_CANONICAL_KEY = re.compile(r"^\d+-[0-9a-f]{16}$")
# Name may itself contain dashes; size and hash are always the last two segments.
_LEGACY_KEY = re.compile(r"^.+-(\d+-[0-9a-f]{16})$")

# Debug representations that leaked into keys written by older builds
_DEBUG_REPR_MARKERS = ("Optional(", "b'", 'b"')

_DJB2_SEED = 5381
_MASK64 = 0xFFFFFFFFFFFFFFFF

# Content hashing collaborator: bytes -> hex digest (at least 16 chars)
ContentHasher = Callable[[bytes], str]


def derive_entry_id(display_name: str, content_key: str) -> str:
    """16 lowercase hex digits of a 64-bit djb2 hash over ``display_name-content_key``."""
    h = _DJB2_SEED
    for byte in f"{display_name}-{content_key}".encode("utf-8"):
        h = (h * 33 + byte) & _MASK64
    return f"{h:016x}"


def is_canonical_content_key(raw: str) -> bool:
    """True if raw is exactly ``<size>-<hash16>``."""
    return bool(_CANONICAL_KEY.match(raw or ""))


def extract_content_key(raw: str) -> str:
    """
    Return the canonical ``<size>-<hash16>`` part of raw.

    Canonical keys are returned unchanged, legacy ``<name>-<size>-<hash16>`` keys
    lose their name prefix, and anything else is returned as given.
    """
    if not raw or _CANONICAL_KEY.match(raw):
        return raw
    m = _LEGACY_KEY.match(raw)
    if m:
        return m.group(1)
    return raw


def is_corrupted_content_key(raw: str) -> bool:
    """True if raw contains a debug-representation artifact instead of a real value."""
    if not raw or is_canonical_content_key(extract_content_key(raw)):
        return False
    return any(marker in raw for marker in _DEBUG_REPR_MARKERS)


def sha256_prefix(data: bytes) -> str:
    """Default content hasher: first 16 hex chars of SHA-256."""
    return hashlib.sha256(data).hexdigest()[:16]


def make_content_key(size: int, data: bytes, hasher: ContentHasher = sha256_prefix) -> str:
    """Build ``<size>-<hash16>`` from a byte size and the bytes to hash."""
    return f"{size}-{hasher(data)[:16].lower()}"


def content_key_for_path(
    path: Union[str, Path],
    chunk_size: int = 1024 * 1024,
    hasher: ContentHasher = sha256_prefix,
) -> Optional[str]:
    """
    Content key of a file on disk: its size plus the hash of its first chunk_size bytes.
    Returns None when the file is missing or unreadable.
    """
    p = Path(path)
    try:
        size = p.stat().st_size
        with open(p, "rb") as f:
            head = f.read(chunk_size)
    except OSError as e:
        log.debug("Cannot compute content key for %s: %s", p, e)
        return None
    return make_content_key(size, head, hasher)
