"""Input validation for mdsync.

This module validates sync requests arriving over the wire and converts
them into model objects. All validators raise ValidationError with
descriptive messages.

CRITICAL: This module must have NO Flask dependencies.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from .models import MAX_PUSH_OPS, OperationType, PushOperation


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_file_id",
    "validate_server_path",
    "validate_version",
    "validate_cursor",
    "parse_push_operation",
    "parse_push_request",
    "parse_pull_request",
]

MAX_FILE_ID_LENGTH = 200
MAX_SERVER_PATH_LENGTH = 1000


def _is_int(value: Any) -> bool:
    # bool is a subclass of int but never a valid version or cursor
    return isinstance(value, int) and not isinstance(value, bool)


def validate_file_id(file_id: Any, field_name: str = "fileId") -> str:
    """Validate a client-supplied file ID.

    File IDs become part of the stored identity, so path separators and
    parent references are rejected.
    """
    if not isinstance(file_id, str) or not file_id:
        raise ValidationError(field_name, "must be a non-empty string")
    if "/" in file_id or "\\" in file_id or ".." in file_id:
        raise ValidationError(field_name, "contains invalid path characters")
    if len(file_id) > MAX_FILE_ID_LENGTH:
        raise ValidationError(
            field_name, f"cannot exceed {MAX_FILE_ID_LENGTH} characters (got {len(file_id)})"
        )
    return file_id


def validate_server_path(server_path: Any, field_name: str = "serverPath") -> str:
    """Validate a server path."""
    if not isinstance(server_path, str) or not server_path.strip():
        raise ValidationError(field_name, "is required")
    if len(server_path) > MAX_SERVER_PATH_LENGTH:
        raise ValidationError(
            field_name, f"cannot exceed {MAX_SERVER_PATH_LENGTH} characters"
        )
    return server_path


def validate_version(value: Any, field_name: str = "baseVersion") -> int:
    """Validate a document version (non-negative integer)."""
    if not _is_int(value):
        raise ValidationError(field_name, "must be an integer")
    if value < 0:
        raise ValidationError(field_name, f"must be >= 0, got {value}")
    return value


def validate_cursor(value: Any, field_name: str = "sinceCursor") -> int:
    """Validate a change cursor. None means "from the beginning"."""
    if value is None:
        return 0
    if not _is_int(value):
        raise ValidationError(field_name, "must be an integer")
    if value < 0:
        raise ValidationError(field_name, f"must be >= 0, got {value}")
    return value


def _optional_str(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {type(value).__name__}")
    return value


def parse_push_operation(data: Any, index: int = 0) -> PushOperation:
    """Validate one wire operation and convert it to a PushOperation."""
    prefix = f"ops[{index}]"
    if not isinstance(data, dict):
        raise ValidationError(prefix, "must be an object")

    try:
        op_type = OperationType(data.get("type"))
    except ValueError:
        raise ValidationError(f"{prefix}.type", 'must be "upsert" or "delete"') from None

    return PushOperation(
        type=op_type,
        file_id=validate_file_id(data.get("fileId"), f"{prefix}.fileId"),
        server_path=validate_server_path(data.get("serverPath"), f"{prefix}.serverPath"),
        base_version=validate_version(data.get("baseVersion"), f"{prefix}.baseVersion"),
        content=_optional_str(data.get("content"), f"{prefix}.content"),
        content_hash=_optional_str(data.get("contentHash"), f"{prefix}.contentHash"),
    )


def parse_push_request(data: Any) -> Tuple[Optional[str], List[PushOperation]]:
    """Validate a push request body.

    Args:
        data: Decoded JSON body

    Returns:
        Tuple of (request ID or None, list of operations)
    """
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")

    request_id = _optional_str(data.get("requestId"), "requestId")

    ops = data.get("ops")
    if not isinstance(ops, list) or not ops:
        raise ValidationError("ops", "must be a non-empty array")
    if len(ops) > MAX_PUSH_OPS:
        raise ValidationError("ops", f"exceeds maximum of {MAX_PUSH_OPS} operations")

    return request_id, [parse_push_operation(op, i) for i, op in enumerate(ops)]


def parse_pull_request(data: Optional[Dict[str, Any]]) -> int:
    """Validate a pull request body and return the cursor to resume from.

    An absent body or absent sinceCursor means a full snapshot (0).
    """
    if data is None:
        return 0
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")
    return validate_cursor(data.get("sinceCursor"))
