"""Data models for mdsync.

This module defines the dataclasses exchanged between the sync protocol,
the storage layer and the HTTP wire format:
DocumentRecord, SyncMeta, ChangeRecord, PushOperation, PushResult,
PullChange and the response envelopes.

Python attributes are snake_case; `to_dict()` produces the camelCase JSON
wire form and omits optional fields that are absent.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class OperationType(Enum):
    """Kinds of client-submitted operations."""

    UPSERT = "upsert"
    DELETE = "delete"


class PushStatus(Enum):
    """Per-operation outcome of a push."""

    OK = "ok"
    CONFLICT = "conflict"
    BAD_HASH = "bad_hash"


@dataclass(frozen=True)
class SyncMeta:
    """Sync-specific facet of a stored document.

    Attributes:
        file_id: Client-assigned stable file identifier
        server_path: Path of the file relative to the sync root
        content_hash: Integrity hash of the stored content
        deleted: Tombstone flag (documents are never physically removed)
        deleted_at: ISO timestamp of the delete (None if not deleted)
    """

    file_id: str
    server_path: str
    content_hash: Optional[str] = None
    deleted: bool = False
    deleted_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fileId": self.file_id,
            "serverPath": self.server_path,
            "deleted": self.deleted,
        }
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
        if self.deleted_at is not None:
            data["deletedAt"] = self.deleted_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncMeta":
        return cls(
            file_id=data["fileId"],
            server_path=data["serverPath"],
            content_hash=data.get("contentHash"),
            deleted=bool(data.get("deleted", False)),
            deleted_at=data.get("deletedAt"),
        )

    def mark_deleted(self, deleted_at: str, server_path: Optional[str] = None) -> "SyncMeta":
        """Return a tombstoned copy."""
        return replace(
            self,
            server_path=server_path or self.server_path,
            deleted=True,
            deleted_at=deleted_at,
        )

    def mark_updated(self, server_path: str, content_hash: str) -> "SyncMeta":
        """Return a live copy carrying new path and hash (clears any tombstone)."""
        return replace(
            self,
            server_path=server_path,
            content_hash=content_hash,
            deleted=False,
            deleted_at=None,
        )


@dataclass(frozen=True)
class DocumentRecord:
    """The authoritative server-side copy of a synchronized document.

    Attributes:
        identity: Namespaced identifier (namespace + file_id)
        version: Incremented by exactly one on every accepted mutation
        content: Markdown body
        sync_meta: Sync facet (file id, path, hash, tombstone)
        title: Display title derived from the server path
        created_at: ISO timestamp of creation
        updated_at: ISO timestamp of the last mutation
    """

    identity: str
    version: int
    content: str
    sync_meta: SyncMeta
    title: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def deleted(self) -> bool:
        return self.sync_meta.deleted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "version": self.version,
            "title": self.title,
            "content": self.content,
            "syncMeta": self.sync_meta.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class ChangeRecord:
    """One row of the append-only change feed."""

    document_identity: str
    cursor_position: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentIdentity": self.document_identity,
            "cursorPosition": self.cursor_position,
        }


@dataclass(frozen=True)
class PushOperation:
    """A single client-submitted change (transient, never persisted)."""

    type: OperationType
    file_id: str
    server_path: str
    base_version: int
    content: Optional[str] = None
    content_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type.value,
            "fileId": self.file_id,
            "serverPath": self.server_path,
            "baseVersion": self.base_version,
        }
        if self.content is not None:
            data["content"] = self.content
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
        return data


@dataclass(frozen=True)
class PushResult:
    """Outcome of one push operation.

    Only OK results carry new_version and only CONFLICT results carry
    server_version.
    """

    file_id: str
    status: PushStatus
    new_version: Optional[int] = None
    server_version: Optional[int] = None

    @classmethod
    def ok(cls, file_id: str, new_version: int) -> "PushResult":
        return cls(file_id=file_id, status=PushStatus.OK, new_version=new_version)

    @classmethod
    def conflict(cls, file_id: str, server_version: int) -> "PushResult":
        return cls(file_id=file_id, status=PushStatus.CONFLICT, server_version=server_version)

    @classmethod
    def bad_hash(cls, file_id: str) -> "PushResult":
        return cls(file_id=file_id, status=PushStatus.BAD_HASH)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"fileId": self.file_id, "status": self.status.value}
        if self.new_version is not None:
            data["newVersion"] = self.new_version
        if self.server_version is not None:
            data["serverVersion"] = self.server_version
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushResult":
        return cls(
            file_id=data["fileId"],
            status=PushStatus(data["status"]),
            new_version=data.get("newVersion"),
            server_version=data.get("serverVersion"),
        )


@dataclass(frozen=True)
class PullChange:
    """One entry of a pull response. Deleted entries carry no content."""

    file_id: str
    server_path: str
    version: int
    deleted: bool = False
    content: Optional[str] = None
    content_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fileId": self.file_id,
            "serverPath": self.server_path,
            "version": self.version,
            "deleted": self.deleted,
        }
        if self.content is not None:
            data["content"] = self.content
        if self.content_hash is not None:
            data["contentHash"] = self.content_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PullChange":
        return cls(
            file_id=data["fileId"],
            server_path=data["serverPath"],
            version=int(data["version"]),
            deleted=bool(data.get("deleted", False)),
            content=data.get("content"),
            content_hash=data.get("contentHash"),
        )


@dataclass
class PushResponse:
    """Response envelope for a push batch."""

    results: List[PushResult] = field(default_factory=list)
    new_cursor: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "newCursor": self.new_cursor,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PushResponse":
        return cls(
            results=[PushResult.from_dict(r) for r in data.get("results", [])],
            new_cursor=int(data.get("newCursor", 0)),
        )


@dataclass
class PullResponse:
    """Response envelope for a pull."""

    new_cursor: int = 0
    changes: List[PullChange] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "newCursor": self.new_cursor,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PullResponse":
        return cls(
            new_cursor=int(data.get("newCursor", 0)),
            changes=[PullChange.from_dict(c) for c in data.get("changes", [])],
        )


@dataclass
class SyncStatus:
    """Diagnostic view of the change ledger."""

    cursor: int = 0
    files: List[ChangeRecord] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.files)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cursor": self.cursor,
            "fileCount": self.file_count,
            "files": [f.to_dict() for f in self.files],
        }


def title_from_server_path(server_path: str) -> str:
    """Derive a document title from its server path.

    >>> title_from_server_path("notes/ideas.md")
    'ideas'
    """
    filename = server_path.rsplit("/", 1)[-1]
    if filename.endswith(".md"):
        return filename[:-3]
    return filename


# Upper bound on operations accepted in a single push request
MAX_PUSH_OPS = 500
