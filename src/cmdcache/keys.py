"""Cache key derivation from a command line."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence


def cache_key(argv: Sequence[str]) -> str:
    """Derive the cache key for a command and its arguments.

    The key is the MD5 hex digest of the arguments joined with single
    spaces, i.e. the literal invocation. Argument order matters.

    Args:
        argv: Command followed by its arguments.

    Returns:
        32-character lowercase hex digest.
    """
    if not argv:
        raise ValueError("Cannot derive a cache key from an empty command")
    joined = " ".join(argv)
    return hashlib.md5(joined.encode("utf-8", errors="surrogateescape")).hexdigest()  # noqa: S324
