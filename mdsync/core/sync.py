"""Sync protocol and server for mdsync.

This module implements the server side of the push/pull protocol and the
Flask blueprint that exposes it.

Sync Protocol:
1. Push: client submits a batch of upsert/delete operations, each stamped
   with the version it was based on. Every operation is resolved on its
   own: ok, conflict (stale base version) or bad_hash (integrity check
   failed). Batches are not transactional.
2. Pull: client sends the last cursor it consumed. Cursor 0 returns a full
   snapshot of live documents; any other cursor returns the documents
   changed since then. Both return the current cursor to persist.
3. Status: diagnostic view of the change ledger.

Conflicts and integrity failures are normal, in-band results. Only storage
failures abort a request.

The processors hold no state between requests; all shared state lives in
the injected DocumentStore and CursorLedger.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from flask import Blueprint, Flask, jsonify, request

from .integrity import integrity_hash, verify_integrity
from .models import (
    DocumentRecord,
    OperationType,
    PullChange,
    PullResponse,
    PushOperation,
    PushResponse,
    PushResult,
    PushStatus,
    SyncMeta,
    SyncStatus,
    title_from_server_path,
)
from .store import CursorLedger, DocumentStore, StorageError
from .timestamp_utils import utc_now_iso
from .validation import ValidationError, parse_pull_request, parse_push_request

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0"
DEFAULT_NAMESPACE = "docs:article/sync-"


def identity_for(namespace: str, file_id: str) -> str:
    """Build the stored identity of a synchronized file."""
    return f"{namespace}{file_id}"


class PushProcessor:
    """Applies client operations with optimistic concurrency control.

    Args:
        store: Document storage
        ledger: Change feed, advanced once per successful mutation
        namespace: Identity prefix for synchronized documents
        clock: Returns the timestamp recorded on deletes (for tests)
    """

    def __init__(
        self,
        store: DocumentStore,
        ledger: CursorLedger,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Optional[Callable[[], str]] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.namespace = namespace
        self.clock = clock or utc_now_iso

    def process(self, ops: List[PushOperation]) -> List[PushResult]:
        """Apply a batch, one result per operation in request order.

        Raises:
            StorageError: if storage fails; operations already applied stay
                applied.
        """
        return [self.apply(op) for op in ops]

    def apply(self, op: PushOperation) -> PushResult:
        """Apply a single operation."""
        identity = identity_for(self.namespace, op.file_id)
        existing = self.store.read_by_identity(identity)
        current_version = existing.version if existing else 0

        # Fast path only; the compare-and-swap below is the real guard
        if op.base_version != current_version:
            logger.warning(
                f"Conflict on {op.file_id}: base version {op.base_version}, "
                f"server has {current_version}"
            )
            return PushResult.conflict(op.file_id, current_version)

        if op.content is not None and not verify_integrity(op.content, op.content_hash):
            logger.warning(f"Content hash mismatch for {op.file_id}")
            return PushResult.bad_hash(op.file_id)

        new_version = current_version + 1
        content, sync_meta = self._next_state(op, existing)
        title = title_from_server_path(op.server_path)

        if existing is not None:
            updated = self.store.compare_and_swap_update(
                identity, current_version, content, sync_meta, new_version, title=title
            )
        else:
            updated = self.store.create_at(
                identity, content, sync_meta, title=title, version=new_version
            )

        if updated is None:
            latest = self.store.read_by_identity(identity)
            server_version = latest.version if latest else current_version
            logger.warning(
                f"Conflict on {op.file_id}: lost race at version {current_version}, "
                f"server now has {server_version}"
            )
            return PushResult.conflict(op.file_id, server_version)

        cursor = self.ledger.append_change(identity)
        logger.debug(f"{op.type.value} {op.file_id} -> v{updated.version} (cursor {cursor})")
        return PushResult.ok(op.file_id, updated.version)

    def _next_state(
        self, op: PushOperation, existing: Optional[DocumentRecord]
    ) -> Tuple[str, SyncMeta]:
        """Compute the content and sync metadata after applying op."""
        if existing is not None:
            base_meta = existing.sync_meta
            base_content = existing.content
        else:
            base_meta = SyncMeta(file_id=op.file_id, server_path=op.server_path)
            base_content = ""

        if op.type is OperationType.DELETE:
            return base_content, base_meta.mark_deleted(self.clock(), op.server_path)

        content = op.content if op.content is not None else base_content
        content_hash = op.content_hash or integrity_hash(content)
        return content, base_meta.mark_updated(op.server_path, content_hash)


class PullProcessor:
    """Builds snapshots and deltas from the change feed."""

    def __init__(
        self,
        store: DocumentStore,
        ledger: CursorLedger,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.namespace = namespace

    def pull(self, since_cursor: int = 0) -> PullResponse:
        """Return the changes a client at since_cursor needs to catch up.

        The returned cursor is read first, before the changes. Every change
        at or below it is then included, so a client persisting it never
        skips a change. Writes landing during the read may appear both now
        and in the next pull; clients skip those by version.
        """
        new_cursor = self.ledger.current_cursor()
        if since_cursor == 0:
            changes = self._snapshot()
        else:
            changes = self._delta(since_cursor)

        return PullResponse(new_cursor=max(new_cursor, since_cursor), changes=changes)

    def _snapshot(self) -> List[PullChange]:
        docs = self.store.list_non_deleted_under_namespace(self.namespace)
        return [
            PullChange(
                file_id=doc.sync_meta.file_id,
                server_path=doc.sync_meta.server_path,
                version=doc.version,
                deleted=False,
                content=doc.content,
                content_hash=integrity_hash(doc.content),
            )
            for doc in docs
        ]

    def _delta(self, since_cursor: int) -> List[PullChange]:
        # Several change rows for one document resolve to the same current
        # state; keep only the latest occurrence.
        latest: Dict[str, int] = {}
        for change in self.ledger.changes_since(since_cursor):
            latest.pop(change.document_identity, None)
            latest[change.document_identity] = change.cursor_position

        changes: List[PullChange] = []
        for identity in latest:
            if not identity.startswith(self.namespace):
                continue
            doc = self.store.read_by_identity(identity)
            if doc is None:
                continue
            meta = doc.sync_meta
            changes.append(PullChange(
                file_id=meta.file_id,
                server_path=meta.server_path,
                version=doc.version,
                deleted=meta.deleted,
                content=None if meta.deleted else doc.content,
                content_hash=None if meta.deleted else integrity_hash(doc.content),
            ))
        return changes


class StatusReporter:
    """Read-only diagnostic view of the change ledger."""

    def __init__(self, ledger: CursorLedger) -> None:
        self.ledger = ledger

    def status(self) -> SyncStatus:
        files = self.ledger.changes_since(0)
        cursor = self.ledger.current_cursor()
        return SyncStatus(cursor=cursor, files=files)


def summarize_results(results: List[PushResult]) -> Dict[str, int]:
    """Count push results by status value."""
    counts = {status.value: 0 for status in PushStatus}
    for result in results:
        counts[result.status.value] += 1
    return counts


def create_sync_blueprint(
    store: DocumentStore,
    ledger: CursorLedger,
    namespace: str = DEFAULT_NAMESPACE,
) -> Blueprint:
    """Create Flask blueprint for sync endpoints.

    Args:
        store: Document storage
        ledger: Change feed
        namespace: Identity prefix for synchronized documents

    Returns:
        Flask Blueprint with sync routes under /v1/sync
    """
    sync_bp = Blueprint("sync", __name__, url_prefix="/v1/sync")

    push_processor = PushProcessor(store, ledger, namespace)
    pull_processor = PullProcessor(store, ledger, namespace)
    status_reporter = StatusReporter(ledger)

    @sync_bp.route("/push", methods=["POST"])
    def push() -> Tuple[Any, int]:
        """Apply a batch of client operations.

        Request body:
            {
                "requestId": "...",
                "ops": [{"type": "upsert", "fileId": "...", "serverPath": "...",
                         "baseVersion": 0, "content": "...", "contentHash": "..."}]
            }

        Response:
            {
                "results": [{"fileId": "...", "status": "ok", "newVersion": 1}],
                "newCursor": 1
            }
        """
        data = request.get_json(silent=True)
        try:
            request_id, ops = parse_push_request(data)
        except ValidationError as e:
            logger.warning(f"Push rejected: {e}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400

        logger.info(f"Push of {len(ops)} operation(s) (request {request_id or '-'})")

        try:
            results = push_processor.process(ops)
            response = PushResponse(results=results, new_cursor=ledger.current_cursor())
        except StorageError as e:
            logger.error(f"Error in push endpoint: {e}")
            return jsonify({"error": "Failed to push changes"}), 500

        counts = summarize_results(results)
        if counts["conflict"] or counts["bad_hash"]:
            logger.warning(
                f"Push {request_id or '-'}: {counts['ok']} ok, {counts['conflict']} conflicts, "
                f"{counts['bad_hash']} bad hashes"
            )
        else:
            logger.info(f"Push {request_id or '-'}: {counts['ok']} ok")

        return jsonify(response.to_dict()), 200

    @sync_bp.route("/pull", methods=["POST"])
    def pull() -> Tuple[Any, int]:
        """Return changes since a cursor.

        Request body:
            {"sinceCursor": 0}

        Response:
            {
                "newCursor": 12,
                "changes": [{"fileId": "...", "serverPath": "...", "version": 3,
                             "deleted": false, "content": "...", "contentHash": "..."}]
            }
        """
        data = request.get_json(silent=True)
        try:
            since_cursor = parse_pull_request(data)
        except ValidationError as e:
            logger.warning(f"Pull rejected: {e}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400

        try:
            response = pull_processor.pull(since_cursor)
        except StorageError as e:
            logger.error(f"Error in pull endpoint: {e}")
            return jsonify({"error": "Failed to pull changes"}), 500

        logger.info(
            f"Pull since {since_cursor}: {len(response.changes)} change(s), "
            f"new cursor {response.new_cursor}"
        )
        return jsonify(response.to_dict()), 200

    @sync_bp.route("/status", methods=["GET"])
    def status() -> Tuple[Any, int]:
        """Get change ledger status.

        Response:
            {
                "cursor": 12,
                "fileCount": 12,
                "files": [{"documentIdentity": "...", "cursorPosition": 1}]
            }
        """
        try:
            sync_status = status_reporter.status()
        except StorageError as e:
            logger.error(f"Error in status endpoint: {e}")
            return jsonify({"error": "Failed to get status"}), 500
        return jsonify(sync_status.to_dict()), 200

    @sync_bp.route("/info", methods=["GET"])
    def info() -> Tuple[Any, int]:
        """Get protocol information (reachability check for clients)."""
        return jsonify({
            "status": "ok",
            "protocol_version": PROTOCOL_VERSION,
            "namespace": namespace,
        }), 200

    return sync_bp


def create_sync_server(
    store: DocumentStore,
    ledger: CursorLedger,
    config: Any = None,
) -> Flask:
    """Create a standalone Flask sync server.

    Args:
        store: Document storage
        ledger: Change feed
        config: Config instance (namespace is read from it when given)

    Returns:
        Flask application instance
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    namespace = config.get_sync_namespace() if config is not None else DEFAULT_NAMESPACE

    sync_bp = create_sync_blueprint(store, ledger, namespace)
    app.register_blueprint(sync_bp)

    return app
