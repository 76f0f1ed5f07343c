"""Tests for the sync HTTP endpoints.

Drives /v1/sync/push, /v1/sync/pull and /v1/sync/status through the Flask
test client, including the request-level error responses.
"""

from __future__ import annotations

from typing import Any, Dict, List

import pytest
from flask.testing import FlaskClient

from mdsync.core.database import Database, SqliteCursorLedger, SqliteDocumentStore
from mdsync.core.integrity import integrity_hash
from mdsync.core.models import MAX_PUSH_OPS
from mdsync.core.sync import create_sync_server
from tests.helpers import FailingStore, upsert_wire


def push(client: FlaskClient, ops: List[Dict[str, Any]], request_id: str = "req-1"):
    return client.post("/v1/sync/push", json={"requestId": request_id, "ops": ops})


def pull(client: FlaskClient, since: int = 0):
    return client.post("/v1/sync/pull", json={"sinceCursor": since})


class TestPushEndpoint:
    """POST /v1/sync/push."""

    def test_push_create(self, sync_client: FlaskClient) -> None:
        response = push(sync_client, [upsert_wire("A", "# Hi", 0, "a.md")])

        assert response.status_code == 200
        data = response.get_json()
        assert data == {
            "results": [{"fileId": "A", "status": "ok", "newVersion": 1}],
            "newCursor": 1,
        }

    def test_mixed_results(self, sync_client: FlaskClient) -> None:
        push(sync_client, [upsert_wire("A", "v1")])
        bad = upsert_wire("B", "content")
        bad["contentHash"] = "deadbeef"

        response = push(sync_client, [
            upsert_wire("A", "stale", 0),
            bad,
            upsert_wire("C", "fine"),
        ])

        assert response.status_code == 200
        data = response.get_json()
        assert data["results"] == [
            {"fileId": "A", "status": "conflict", "serverVersion": 1},
            {"fileId": "B", "status": "bad_hash"},
            {"fileId": "C", "status": "ok", "newVersion": 1},
        ]
        assert data["newCursor"] == 2

    def test_push_without_request_id(self, sync_client: FlaskClient) -> None:
        response = sync_client.post("/v1/sync/push", json={"ops": [upsert_wire("A", "x")]})
        assert response.status_code == 200

    @pytest.mark.parametrize("body", [
        {"ops": []},
        {"ops": None},
        {"requestId": "r"},
    ])
    def test_empty_ops_rejected(self, sync_client: FlaskClient, body: Dict[str, Any]) -> None:
        response = sync_client.post("/v1/sync/push", json=body)
        assert response.status_code == 400
        assert response.get_json() == {"error": "Invalid ops: must be a non-empty array"}

    def test_too_many_ops_rejected(self, sync_client: FlaskClient) -> None:
        ops = [upsert_wire(f"f{i}", "x") for i in range(MAX_PUSH_OPS + 1)]
        response = push(sync_client, ops)
        assert response.status_code == 400

    def test_invalid_op_rejects_whole_batch(self, sync_client: FlaskClient) -> None:
        bad = upsert_wire("../escape", "x")
        response = push(sync_client, [upsert_wire("A", "x"), bad])

        assert response.status_code == 400
        assert "ops[1].fileId" in response.get_json()["error"]
        # Nothing from the batch was applied
        assert pull(sync_client).get_json()["changes"] == []

    def test_missing_server_path(self, sync_client: FlaskClient) -> None:
        op = upsert_wire("A", "x")
        del op["serverPath"]
        response = push(sync_client, [op])
        assert response.status_code == 400
        assert "serverPath" in response.get_json()["error"]

    def test_non_json_body(self, sync_client: FlaskClient) -> None:
        response = sync_client.post(
            "/v1/sync/push", data="not json", content_type="text/plain"
        )
        assert response.status_code == 400
        assert "error" in response.get_json()

    def test_get_not_allowed(self, sync_client: FlaskClient) -> None:
        assert sync_client.get("/v1/sync/push").status_code == 405


class TestPullEndpoint:
    """POST /v1/sync/pull."""

    def test_empty_snapshot(self, sync_client: FlaskClient) -> None:
        response = pull(sync_client)
        assert response.status_code == 200
        assert response.get_json() == {"newCursor": 0, "changes": []}

    def test_pull_without_body(self, sync_client: FlaskClient) -> None:
        push(sync_client, [upsert_wire("A", "x")])
        response = sync_client.post("/v1/sync/pull")
        assert response.status_code == 200
        assert len(response.get_json()["changes"]) == 1

    def test_snapshot_contents(self, sync_client: FlaskClient) -> None:
        push(sync_client, [upsert_wire("A", "alpha", 0, "notes/a.md")])

        data = pull(sync_client).get_json()

        assert data["newCursor"] == 1
        assert data["changes"] == [{
            "fileId": "A",
            "serverPath": "notes/a.md",
            "version": 1,
            "deleted": False,
            "content": "alpha",
            "contentHash": integrity_hash("alpha"),
        }]

    def test_delta(self, sync_client: FlaskClient) -> None:
        push(sync_client, [upsert_wire("A", "a"), upsert_wire("B", "b")])
        push(sync_client, [upsert_wire("A", "a2", 1)])

        data = pull(sync_client, 2).get_json()

        assert [c["fileId"] for c in data["changes"]] == ["A"]
        assert data["changes"][0]["version"] == 2
        assert data["newCursor"] == 3

    @pytest.mark.parametrize("cursor", [-1, "5", 1.5])
    def test_invalid_cursor(self, sync_client: FlaskClient, cursor: Any) -> None:
        response = sync_client.post("/v1/sync/pull", json={"sinceCursor": cursor})
        assert response.status_code == 400
        assert "sinceCursor" in response.get_json()["error"]


class TestStatusEndpoint:
    """GET /v1/sync/status and /v1/sync/info."""

    def test_status(self, sync_client: FlaskClient) -> None:
        push(sync_client, [upsert_wire("A", "a"), upsert_wire("B", "b")])
        push(sync_client, [upsert_wire("A", "a2", 1)])

        data = sync_client.get("/v1/sync/status").get_json()

        assert data["cursor"] == 3
        assert data["fileCount"] == 3
        assert [f["cursorPosition"] for f in data["files"]] == [1, 2, 3]
        assert data["files"][0]["documentIdentity"] == "docs:article/sync-A"

    def test_info(self, sync_client: FlaskClient) -> None:
        data = sync_client.get("/v1/sync/info").get_json()
        assert data["status"] == "ok"
        assert data["namespace"] == "docs:article/sync-"


class TestStorageFailure:
    """Storage failures abort the request with a 500."""

    @pytest.fixture
    def broken_client(self, test_db_path, test_config) -> FlaskClient:
        db = Database(test_db_path)
        store, ledger = db.document_store(), db.cursor_ledger()
        app = create_sync_server(store, ledger, test_config)
        app.config["TESTING"] = True
        db.close()
        return app.test_client()

    def test_push_storage_failure(self, broken_client: FlaskClient) -> None:
        response = push(broken_client, [upsert_wire("A", "x")])
        assert response.status_code == 500
        assert response.get_json() == {"error": "Failed to push changes"}

    def test_pull_storage_failure(self, broken_client: FlaskClient) -> None:
        response = pull(broken_client)
        assert response.status_code == 500
        assert response.get_json() == {"error": "Failed to pull changes"}

    def test_status_storage_failure(self, broken_client: FlaskClient) -> None:
        response = broken_client.get("/v1/sync/status")
        assert response.status_code == 500
        assert response.get_json() == {"error": "Failed to get status"}

    def test_failure_mid_batch_keeps_applied_ops(
        self, store: SqliteDocumentStore, ledger: SqliteCursorLedger, test_config,
    ) -> None:
        app = create_sync_server(FailingStore(store, fail_on_write=2), ledger, test_config)
        app.config["TESTING"] = True
        client = app.test_client()

        response = push(client, [upsert_wire("A", "a"), upsert_wire("B", "b")])

        assert response.status_code == 500
        assert response.get_json() == {"error": "Failed to push changes"}
        snapshot = pull(client).get_json()
        assert [c["fileId"] for c in snapshot["changes"]] == ["A"]
        assert snapshot["newCursor"] == 1

    def test_validation_runs_before_storage(self, broken_client: FlaskClient) -> None:
        response = broken_client.post("/v1/sync/push", json={"ops": []})
        assert response.status_code == 400
