"""Test helper functions for mdsync tests.

This module provides builders for push operations and the sample documents
shared by the fixtures, an in-process transport for sync client tests and a
store that fails partway through a batch.
"""

from __future__ import annotations

from typing import Dict, List, Tuple

from mdsync.core.database import SqliteDocumentStore
from mdsync.core.integrity import integrity_hash
from mdsync.core.models import OperationType, PullResponse, PushOperation, PushResponse
from mdsync.core.store import StorageError
from mdsync.core.sync import PullProcessor, PushProcessor, StatusReporter
from mdsync.core.sync_client import SyncTransportError


# Fixed timestamp used for tombstones in tests
TEST_DELETED_AT = "2026-01-31T12:00:00+00:00"

# file_id -> (server_path, content)
SAMPLE_FILES: Dict[str, Tuple[str, str]] = {
    "alpha": ("notes/alpha.md", "# Alpha\n\nFirst file.\n"),
    "beta": ("notes/beta.md", "# Beta\n\nSecond file.\n"),
    "gamma": ("journal/2026-01-31.md", "Today I wrote tests.\n"),
}


def upsert_op(
    file_id: str,
    content: str,
    base_version: int = 0,
    server_path: str = "",
    with_hash: bool = True,
) -> PushOperation:
    """Build an upsert operation with a correct content hash."""
    return PushOperation(
        type=OperationType.UPSERT,
        file_id=file_id,
        server_path=server_path or f"{file_id}.md",
        base_version=base_version,
        content=content,
        content_hash=integrity_hash(content) if with_hash else None,
    )


def delete_op(file_id: str, base_version: int, server_path: str = "") -> PushOperation:
    """Build a delete operation."""
    return PushOperation(
        type=OperationType.DELETE,
        file_id=file_id,
        server_path=server_path or f"{file_id}.md",
        base_version=base_version,
    )


def upsert_wire(file_id: str, content: str, base_version: int = 0, server_path: str = "") -> dict:
    """Build an upsert operation in its JSON wire form."""
    return upsert_op(file_id, content, base_version, server_path).to_dict()


class LocalTransport:
    """Sync transport that calls the protocol processors in-process.

    Attributes:
        pushed: Every (request_id, ops) batch received
        fail_next_push_response: When set, the next push is applied on the
            server but its response is lost
    """

    def __init__(self, store, ledger, namespace: str = "docs:article/sync-") -> None:
        self.ledger = ledger
        self.push_processor = PushProcessor(store, ledger, namespace)
        self.pull_processor = PullProcessor(store, ledger, namespace)
        self.status_reporter = StatusReporter(ledger)
        self.pushed: List[Tuple[str, List[PushOperation]]] = []
        self.fail_next_push_response = False
        self.offline = False

    def pull(self, since_cursor: int) -> PullResponse:
        if self.offline:
            raise SyncTransportError("Connection refused")
        return self.pull_processor.pull(since_cursor)

    def push(self, request_id: str, ops: List[PushOperation]) -> PushResponse:
        if self.offline:
            raise SyncTransportError("Connection refused")
        self.pushed.append((request_id, list(ops)))
        results = self.push_processor.process(ops)
        if self.fail_next_push_response:
            self.fail_next_push_response = False
            raise SyncTransportError("Connection reset")
        return PushResponse(results=results, new_cursor=self.ledger.current_cursor())

    def status(self) -> dict:
        return self.status_reporter.status().to_dict()


class FailingStore(SqliteDocumentStore):
    """Document store whose Nth write raises StorageError.

    Writes before the failing one go through to the real database.
    """

    def __init__(self, inner: SqliteDocumentStore, fail_on_write: int = 2) -> None:
        super().__init__(inner.db)
        self.fail_on_write = fail_on_write
        self.writes = 0

    def _count_write(self) -> None:
        self.writes += 1
        if self.writes == self.fail_on_write:
            raise StorageError("disk I/O error")

    def create_at(self, *args, **kwargs):
        self._count_write()
        return super().create_at(*args, **kwargs)

    def compare_and_swap_update(self, *args, **kwargs):
        self._count_write()
        return super().compare_and_swap_update(*args, **kwargs)
