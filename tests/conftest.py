"""Pytest fixtures for mdsync tests.

This module provides fixtures for test configuration, storage and sample
documents.
"""

from __future__ import annotations

from pathlib import Path
from typing import Generator, List

import pytest

from mdsync.core.config import Config
from mdsync.core.database import Database, SqliteCursorLedger, SqliteDocumentStore
from mdsync.core.models import PushResult
from mdsync.core.sync import DEFAULT_NAMESPACE, PullProcessor, PushProcessor
from tests.helpers import SAMPLE_FILES, TEST_DELETED_AT, upsert_op


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "mdsync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def test_db_path(test_config_dir: Path) -> Path:
    """Get path for test database (the default database_file)."""
    return test_config_dir / "mdsync.sqlite"


@pytest.fixture
def empty_db(test_db_path: Path) -> Generator[Database, None, None]:
    """Create empty test database.

    Yields:
        Empty Database instance.
    """
    db = Database(test_db_path)
    yield db
    db.close()


@pytest.fixture
def store(empty_db: Database) -> SqliteDocumentStore:
    """Document store on the empty test database."""
    return empty_db.document_store()


@pytest.fixture
def ledger(empty_db: Database) -> SqliteCursorLedger:
    """Cursor ledger on the empty test database."""
    return empty_db.cursor_ledger()


@pytest.fixture
def push_processor(store: SqliteDocumentStore, ledger: SqliteCursorLedger) -> PushProcessor:
    """Push processor with a fixed delete timestamp."""
    return PushProcessor(store, ledger, DEFAULT_NAMESPACE, clock=lambda: TEST_DELETED_AT)


@pytest.fixture
def pull_processor(store: SqliteDocumentStore, ledger: SqliteCursorLedger) -> PullProcessor:
    """Pull processor on the test database."""
    return PullProcessor(store, ledger, DEFAULT_NAMESPACE)


@pytest.fixture
def populated_store(
    push_processor: PushProcessor, store: SqliteDocumentStore
) -> SqliteDocumentStore:
    """Store holding the SAMPLE_FILES documents, each at version 1.

    Cursor positions 1-3 belong to alpha, beta and gamma in that order.
    """
    results: List[PushResult] = push_processor.process([
        upsert_op(file_id, content, server_path=path)
        for file_id, (path, content) in SAMPLE_FILES.items()
    ])
    assert all(r.new_version == 1 for r in results)
    return store


@pytest.fixture
def sync_dir(tmp_path: Path) -> Path:
    """Empty local directory for sync client tests."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path
