"""Content integrity hashing for mdsync.

Clients send the hash of the content they believe they are uploading and the
server recomputes it from the bytes it actually received. A mismatch means the
content was corrupted in transit or mangled by the client. This is not a
security primitive.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import hashlib
from typing import Optional


def integrity_hash(content: str) -> str:
    """Compute the integrity hash of document content.

    Args:
        content: Document text

    Returns:
        Lowercase hex SHA-256 digest of the UTF-8 encoded content
    """
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def verify_integrity(content: str, expected_hash: Optional[str]) -> bool:
    """Check content against a client-supplied hash.

    A missing hash cannot be checked and is treated as valid.
    """
    if expected_hash is None:
        return True
    return integrity_hash(content) == expected_hash
