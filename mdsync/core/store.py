"""Storage interfaces consumed by the sync protocol.

The protocol layer never owns state. It talks to two collaborators:

- DocumentStore: holds the authoritative documents and offers an atomic
  compare-and-swap update keyed on the version.
- CursorLedger: an append-only change feed whose positions form the
  strictly increasing sync cursor.

Both are injected, so the protocol can run against SQLite (see
database.py) or any other backend that honours the same atomicity rules.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import ChangeRecord, DocumentRecord, SyncMeta


class StorageError(RuntimeError):
    """The storage backend is unavailable or failed unexpectedly.

    Unlike conflicts, this aborts the whole request.
    """


class DocumentStore(ABC):
    """Authoritative document storage with optimistic concurrency."""

    @abstractmethod
    def read_by_identity(self, identity: str) -> Optional[DocumentRecord]:
        """Return the document (including tombstones), or None if absent."""

    @abstractmethod
    def create_at(
        self,
        identity: str,
        content: str,
        sync_meta: SyncMeta,
        title: Optional[str] = None,
        version: int = 1,
    ) -> Optional[DocumentRecord]:
        """Create a document at the given version.

        Returns:
            The created record, or None if the identity already exists
            (another writer created it first).
        """

    @abstractmethod
    def compare_and_swap_update(
        self,
        identity: str,
        expected_version: int,
        new_content: str,
        new_sync_meta: SyncMeta,
        new_version: int,
        title: Optional[str] = None,
    ) -> Optional[DocumentRecord]:
        """Atomically update a document if its version is still expected_version.

        Returns:
            The updated record, or None if the stored version moved on.
        """

    @abstractmethod
    def list_non_deleted_under_namespace(self, namespace: str) -> List[DocumentRecord]:
        """List live documents whose identity starts with namespace."""


class CursorLedger(ABC):
    """Append-only change feed."""

    @abstractmethod
    def append_change(self, identity: str) -> int:
        """Record a mutation of identity and return its cursor position."""

    @abstractmethod
    def current_cursor(self) -> int:
        """Return the latest cursor position (0 if nothing was ever written)."""

    @abstractmethod
    def changes_since(self, cursor: int) -> List[ChangeRecord]:
        """Return every change with a position greater than cursor, in order."""
