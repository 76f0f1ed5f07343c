"""Sync client for mdsync.

This module provides the client side of the sync protocol. It mirrors a
local directory of Markdown files against a sync server:
- Pull server changes into the directory
- Push local edits, new files and deletions to the server
- Keep conflicting server copies aside until the user resolves them

Client state lives in <sync_dir>/.mdsync/:
    state.json    last consumed cursor and one entry per tracked file
    pending.json  operations sent but not yet acknowledged
    trash/        local copies of files deleted on the server
    conflicts/    server copies of files that conflict with local edits

Only pull advances the stored cursor. Changes this client pushed come back
in the next pull with a version it already has and are skipped.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Set, Tuple

from uuid6 import uuid7

from .config import Config
from .integrity import integrity_hash, verify_integrity
from .models import (
    OperationType,
    PullChange,
    PullResponse,
    PushOperation,
    PushResponse,
    PushStatus,
)
from .timestamp_utils import utc_now_iso
from .validation import ValidationError, parse_push_request

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".mdsync"


class SyncTransportError(Exception):
    """The sync server could not be reached or rejected the request."""


@dataclass
class SyncResult:
    """Result of a sync operation."""

    success: bool
    pulled: int = 0  # Files written, moved or trashed locally
    pushed: int = 0  # Operations accepted by the server
    conflicts: int = 0
    errors: List[str] = None

    def __post_init__(self):
        if self.errors is None:
            self.errors = []

    def merge(self, other: "SyncResult") -> None:
        """Fold another result into this one."""
        self.success = self.success and other.success
        self.pulled += other.pulled
        self.pushed += other.pushed
        self.conflicts += other.conflicts
        self.errors.extend(other.errors)


@dataclass
class FileEntry:
    """Client-side record of one synchronized file."""

    file_id: str
    client_path: str
    server_path: str
    server_version: int = 0
    content_hash: Optional[str] = None
    deleted: bool = False
    conflicted: bool = False
    conflict_server_version: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileEntry":
        return cls(
            file_id=data["file_id"],
            client_path=data["client_path"],
            server_path=data["server_path"],
            server_version=int(data.get("server_version", 0)),
            content_hash=data.get("content_hash"),
            deleted=bool(data.get("deleted", False)),
            conflicted=bool(data.get("conflicted", False)),
            conflict_server_version=data.get("conflict_server_version"),
        )


@dataclass
class SyncState:
    """Persistent client state."""

    last_cursor: int = 0
    files: Dict[str, FileEntry] = field(default_factory=dict)

    def by_client_path(self) -> Dict[str, FileEntry]:
        """Map client paths of live entries to their entries."""
        return {e.client_path: e for e in self.files.values() if not e.deleted}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_cursor": self.last_cursor,
            "files": [asdict(e) for e in self.files.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        entries = [FileEntry.from_dict(f) for f in data.get("files", [])]
        return cls(
            last_cursor=int(data.get("last_cursor", 0)),
            files={e.file_id: e for e in entries},
        )


class HttpTransport:
    """Talks to a sync server over HTTP using urllib.

    Each call returns the decoded response model or raises
    SyncTransportError.
    """

    def __init__(self, server_url: str, timeout: int = 30) -> None:
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout

    def pull(self, since_cursor: int) -> PullResponse:
        result = self._make_request(
            f"{self.server_url}/v1/sync/pull", method="POST", data={"sinceCursor": since_cursor}
        )
        if not result["success"]:
            raise SyncTransportError(result["error"])
        return PullResponse.from_dict(result["data"])

    def push(self, request_id: str, ops: List[PushOperation]) -> PushResponse:
        result = self._make_request(
            f"{self.server_url}/v1/sync/push",
            method="POST",
            data={"requestId": request_id, "ops": [op.to_dict() for op in ops]},
        )
        if not result["success"]:
            raise SyncTransportError(result["error"])
        return PushResponse.from_dict(result["data"])

    def status(self) -> Dict[str, Any]:
        result = self._make_request(f"{self.server_url}/v1/sync/status")
        if not result["success"]:
            raise SyncTransportError(result["error"])
        return result["data"]

    def _make_request(
        self,
        url: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP request to the sync server.

        Args:
            url: Full URL to request
            method: HTTP method
            data: JSON data to send (for POST)

        Returns:
            Dict with success status and response data or error
        """
        try:
            if data is not None:
                json_data = json.dumps(data).encode("utf-8")
                request = urllib.request.Request(
                    url,
                    data=json_data,
                    method=method,
                    headers={"Content-Type": "application/json"},
                )
            else:
                request = urllib.request.Request(url, method=method)

            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                response_data = json.loads(response.read().decode("utf-8"))

            return {"success": True, "data": response_data}

        except urllib.error.HTTPError as e:
            try:
                error_data = json.loads(e.read().decode("utf-8"))
                error_msg = error_data.get("error", f"HTTP {e.code}: {e.reason}")
            except (ValueError, AttributeError):
                error_msg = f"HTTP {e.code}: {e.reason}"

            logger.error(f"Request to {url} failed: {error_msg}")
            return {"success": False, "error": f"Server error: {error_msg}"}

        except urllib.error.URLError as e:
            error_msg = f"Connection failed to {url}: {e.reason}"
            logger.error(error_msg)
            return {"success": False, "error": error_msg}

        except (OSError, ValueError) as e:
            error_msg = f"Request to {url} failed: {e}"
            logger.error(error_msg)
            return {"success": False, "error": error_msg}


def _new_id() -> str:
    return uuid7().hex


def _safe_client_path(server_path: str) -> str:
    """Map a server path to a relative client path, refusing escapes."""
    path = PurePosixPath(server_path.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or not path.parts:
        raise ValidationError("serverPath", f"unsafe path {server_path!r}")
    if path.parts[0] == STATE_DIR_NAME:
        raise ValidationError("serverPath", f"reserved path {server_path!r}")
    return path.as_posix()


class SyncClient:
    """Client that mirrors a local directory against a sync server.

    Args:
        config: Config instance
        sync_dir: Directory to mirror (defaults to sync.sync_directory)
        transport: Object with pull/push/status (defaults to HttpTransport
            pointed at sync.server_url)
    """

    def __init__(
        self,
        config: Config,
        sync_dir: Optional[Path] = None,
        transport: Any = None,
    ) -> None:
        self.config = config
        sync_dir = sync_dir or config.get_sync_directory()
        if sync_dir is None:
            raise ValidationError("sync.sync_directory", "is not configured")
        self.sync_dir = Path(sync_dir)
        self.transport = transport or HttpTransport(config.get_sync_server_url())

        self.state_dir = self.sync_dir / STATE_DIR_NAME
        self.state_file = self.state_dir / "state.json"
        self.pending_file = self.state_dir / "pending.json"
        self.trash_dir = self.state_dir / "trash"
        self.conflicts_dir = self.state_dir / "conflicts"

        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(exist_ok=True)
        self.state = self._load_state()

    # ===== State persistence =====

    def _load_state(self) -> SyncState:
        if not self.state_file.exists():
            return SyncState()
        with open(self.state_file, "r", encoding="utf-8") as f:
            return SyncState.from_dict(json.load(f))

    def _save_state(self) -> None:
        self._write_json(self.state_file, self.state.to_dict())

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)

    def _load_pending(self) -> Optional[Tuple[str, List[PushOperation]]]:
        if not self.pending_file.exists():
            return None
        with open(self.pending_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        request_id, ops = parse_push_request(data)
        return request_id or _new_id(), ops

    def _save_pending(self, request_id: str, ops: List[PushOperation]) -> None:
        self._write_json(self.pending_file, {
            "requestId": request_id,
            "createdAt": utc_now_iso(),
            "ops": [op.to_dict() for op in ops],
        })

    def _clear_pending(self) -> None:
        if self.pending_file.exists():
            self.pending_file.unlink()

    # ===== Local file helpers =====

    def _local_path(self, client_path: str) -> Path:
        return self.sync_dir / client_path

    def _read_local(self, client_path: str) -> Optional[str]:
        path = self._local_path(client_path)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def _write_local(self, client_path: str, content: str) -> None:
        path = self._local_path(client_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    def _move_to_trash(self, client_path: str) -> Optional[Path]:
        source = self._local_path(client_path)
        if not source.exists():
            return None
        target = self.trash_dir / client_path
        if target.exists():
            target = target.with_name(f"{target.stem}.{_new_id()[:8]}{target.suffix}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        return target

    def _conflict_copy_path(self, client_path: str) -> Path:
        return self.conflicts_dir / client_path

    def scan_local_files(self) -> List[str]:
        """List Markdown files under the sync directory as relative POSIX paths."""
        files = []
        for path in sorted(self.sync_dir.rglob("*.md")):
            rel = path.relative_to(self.sync_dir)
            if rel.parts and rel.parts[0] == STATE_DIR_NAME:
                continue
            if path.is_file():
                files.append(rel.as_posix())
        return files

    # ===== Pull =====

    def pull(self) -> SyncResult:
        """Apply server changes since the stored cursor.

        The cursor is only advanced when every change was applied.
        """
        result = SyncResult(success=True)
        since = self.state.last_cursor

        try:
            response = self.transport.pull(since)
        except SyncTransportError as e:
            return SyncResult(success=False, errors=[f"Pull failed: {e}"])

        logger.info(f"Pulled {len(response.changes)} change(s) since cursor {since}")

        for change in response.changes:
            try:
                self._apply_change(change, result)
            except (ValidationError, OSError) as e:
                logger.error(f"Failed to apply change for {change.file_id}: {e}")
                result.errors.append(f"{change.file_id}: {e}")

        if result.errors:
            result.success = False
        else:
            self.state.last_cursor = response.new_cursor
        self._save_state()
        return result

    def _apply_change(self, change: PullChange, result: SyncResult) -> None:
        entry = self.state.files.get(change.file_id)

        if change.deleted:
            if entry is None or entry.deleted:
                if entry is not None:
                    entry.server_version = max(entry.server_version, change.version)
                return
            trash_path = self._move_to_trash(entry.client_path)
            if trash_path:
                logger.info(f"[TRASHED] {entry.client_path} -> {trash_path}")
                result.pulled += 1
            entry.deleted = True
            entry.conflicted = False
            entry.conflict_server_version = None
            entry.server_version = change.version
            return

        content = change.content if change.content is not None else ""
        if not verify_integrity(content, change.content_hash):
            raise ValidationError("contentHash", "integrity check failed for pulled content")
        server_hash = integrity_hash(content)
        client_path = _safe_client_path(change.server_path)

        if entry is None:
            local = self._read_local(client_path)
            entry = FileEntry(
                file_id=change.file_id,
                client_path=client_path,
                server_path=change.server_path,
            )
            self.state.files[change.file_id] = entry
            if local is not None and local != content:
                self._flag_conflict(entry, content, change.version)
                result.conflicts += 1
                return
            self._write_local(client_path, content)
            entry.server_version = change.version
            entry.content_hash = server_hash
            logger.info(f"[NEW] {client_path} v{change.version}")
            result.pulled += 1
            return

        if change.version <= entry.server_version:
            return

        if not entry.deleted:
            local = self._read_local(entry.client_path)
            locally_changed = local is not None and integrity_hash(local) != entry.content_hash
            if locally_changed and local != content:
                self._flag_conflict(entry, content, change.version)
                result.conflicts += 1
                return
            if entry.client_path != client_path and local is not None:
                self._local_path(entry.client_path).unlink()
                logger.info(f"[MOVED] {entry.client_path} -> {client_path}")

        self._write_local(client_path, content)
        entry.client_path = client_path
        entry.server_path = change.server_path
        entry.server_version = change.version
        entry.content_hash = server_hash
        entry.deleted = False
        entry.conflicted = False
        entry.conflict_server_version = None
        logger.info(f"[UPDATED] {client_path} v{change.version}")
        result.pulled += 1

    def _flag_conflict(self, entry: FileEntry, server_content: str, server_version: int) -> None:
        copy_path = self._conflict_copy_path(entry.client_path)
        copy_path.parent.mkdir(parents=True, exist_ok=True)
        copy_path.write_text(server_content, encoding="utf-8")
        entry.conflicted = True
        entry.conflict_server_version = server_version
        logger.warning(
            f"[CONFLICT] {entry.client_path}: local edits kept, server v{server_version} "
            f"saved to {copy_path}"
        )

    # ===== Push =====

    def _collect_ops(self) -> List[PushOperation]:
        ops: List[PushOperation] = []
        tracked = self.state.by_client_path()
        local_files = self.scan_local_files()
        seen: Set[str] = set()

        for client_path in local_files:
            seen.add(client_path)
            entry = tracked.get(client_path)
            if entry is not None and entry.conflicted:
                logger.warning(f"[SKIP-CONFLICT] {client_path} has an unresolved conflict")
                continue

            content = self._read_local(client_path) or ""
            content_hash = integrity_hash(content)

            if entry is None:
                entry = FileEntry(file_id=_new_id(), client_path=client_path, server_path=client_path)
                self.state.files[entry.file_id] = entry
            elif content_hash == entry.content_hash:
                continue

            ops.append(PushOperation(
                type=OperationType.UPSERT,
                file_id=entry.file_id,
                server_path=entry.server_path,
                base_version=entry.server_version,
                content=content,
                content_hash=content_hash,
            ))

        pending = self._load_pending()
        pending_ids = {op.file_id for op in pending[1]} if pending else set()

        for client_path, entry in tracked.items():
            if client_path in seen or entry.conflicted:
                continue
            if entry.server_version == 0:
                # Never reached the server; nothing to delete there
                if entry.file_id not in pending_ids:
                    del self.state.files[entry.file_id]
                    logger.info(f"[FORGOTTEN] {client_path} removed before first push")
                continue
            ops.append(PushOperation(
                type=OperationType.DELETE,
                file_id=entry.file_id,
                server_path=entry.server_path,
                base_version=entry.server_version,
            ))

        return ops

    def push(self) -> SyncResult:
        """Send local changes to the server."""
        ops = self._collect_ops()
        if not ops:
            logger.info("No local changes to push")
            self._save_state()
            return SyncResult(success=True)

        request_id = _new_id()
        self._save_pending(request_id, ops)
        self._save_state()
        return self._send(request_id, ops)

    def _send(self, request_id: str, ops: List[PushOperation]) -> SyncResult:
        logger.info(f"Pushing {len(ops)} operation(s) (request {request_id})")
        try:
            response = self.transport.push(request_id, ops)
        except SyncTransportError as e:
            return SyncResult(success=False, errors=[f"Push failed: {e}"])

        result = self._apply_push_results(ops, response)
        self._clear_pending()
        self._save_state()
        return result

    def _apply_push_results(self, ops: List[PushOperation], response: PushResponse) -> SyncResult:
        result = SyncResult(success=True)
        ops_by_id = {op.file_id: op for op in ops}

        for r in response.results:
            op = ops_by_id.get(r.file_id)
            entry = self.state.files.get(r.file_id)
            if op is None or entry is None:
                continue

            if r.status is PushStatus.OK:
                entry.server_version = r.new_version or entry.server_version
                if op.type is OperationType.DELETE:
                    entry.deleted = True
                    logger.info(f"✓ {entry.client_path} deleted (tombstoned)")
                else:
                    entry.content_hash = op.content_hash
                    logger.info(f"✓ {entry.client_path} -> v{r.new_version}")
                result.pushed += 1
            elif r.status is PushStatus.CONFLICT:
                logger.warning(
                    f"✗ {entry.client_path} CONFLICT (server has v{r.server_version}) - re-run sync"
                )
                result.conflicts += 1
            else:
                logger.error(f"✗ {entry.client_path} INTEGRITY CHECK FAILED")
                result.errors.append(f"{entry.client_path}: server rejected content hash")

        if result.errors:
            result.success = False
        return result

    def resend_pending(self) -> Optional[SyncResult]:
        """Resend operations whose response never arrived.

        Returns:
            SyncResult, or None if nothing was pending
        """
        pending = self._load_pending()
        if pending is None:
            return None
        request_id, ops = pending
        logger.warning(f"Found {len(ops)} pending operation(s), resending {request_id}")
        return self._send(request_id, ops)

    # ===== Full sync =====

    def sync(self) -> SyncResult:
        """Resend pending operations, pull, then push.

        Returns:
            SyncResult with summary of sync operation
        """
        result = SyncResult(success=True)

        pending_result = self.resend_pending()
        if pending_result is not None:
            result.merge(pending_result)
            if not pending_result.success:
                return result

        pull_result = self.pull()
        result.merge(pull_result)
        if not pull_result.success:
            return result

        result.merge(self.push())
        return result

    # ===== Conflicts =====

    def list_conflicts(self) -> List[FileEntry]:
        """List files flagged as conflicted."""
        return [e for e in self.state.files.values() if e.conflicted and not e.deleted]

    def resolve_conflict(self, client_path: str, keep: str) -> FileEntry:
        """Resolve a conflicted file.

        Args:
            client_path: Relative path of the conflicted file
            keep: "local" to keep local edits (they are pushed on the next
                sync) or "server" to take the server copy

        Returns:
            The resolved entry

        Raises:
            ValidationError: if keep is invalid or the file is not conflicted
        """
        if keep not in ("local", "server"):
            raise ValidationError("keep", 'must be "local" or "server"')

        entry = self.state.by_client_path().get(client_path)
        if entry is None or not entry.conflicted:
            raise ValidationError("client_path", f"{client_path} has no unresolved conflict")

        copy_path = self._conflict_copy_path(client_path)
        if keep == "server":
            server_content = copy_path.read_text(encoding="utf-8")
            self._write_local(client_path, server_content)
            entry.content_hash = integrity_hash(server_content)

        entry.server_version = entry.conflict_server_version or entry.server_version
        entry.conflicted = False
        entry.conflict_server_version = None
        if copy_path.exists():
            copy_path.unlink()
        self._save_state()

        logger.info(f"[RESOLVED] {client_path} keeping {keep} copy")
        return entry

    def server_status(self) -> Dict[str, Any]:
        """Fetch the server's change ledger status."""
        return self.transport.status()
