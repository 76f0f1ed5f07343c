"""Pytest fixtures for sync protocol tests.

This module provides fixtures for:
- An in-process sync server (Flask test client over a temporary database)
- A real sync server process reachable over HTTP
"""

from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Generator, Optional

import pytest
import requests
from flask import Flask
from flask.testing import FlaskClient

from mdsync.core.config import Config
from mdsync.core.database import Database, SqliteCursorLedger, SqliteDocumentStore
from mdsync.core.sync import create_sync_server

PROJECT_ROOT = Path(__file__).parent.parent.parent


@pytest.fixture
def sync_app(
    store: SqliteDocumentStore, ledger: SqliteCursorLedger, test_config: Config,
) -> Flask:
    """Standalone sync server on the test database."""
    app = create_sync_server(store, ledger, test_config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def sync_client(sync_app: Flask) -> FlaskClient:
    """Flask test client for the sync server."""
    return sync_app.test_client()


@dataclass
class ServerNode:
    """A sync server running in its own process."""

    config_dir: Path
    port: int
    process: Optional[subprocess.Popen] = None

    @property
    def log_file(self) -> Path:
        return self.config_dir / "server.log"

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def is_server_running(self) -> bool:
        """Check if the server is responding."""
        try:
            resp = requests.get(f"{self.url}/api/health", timeout=1)
            return resp.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def wait_for_server(self, timeout: float = 15.0) -> bool:
        """Wait for server to become available."""
        start = time.time()
        while time.time() - start < timeout:
            if self.process is not None and self.process.poll() is not None:
                return False
            if self.is_server_running():
                return True
            time.sleep(0.1)
        return False

    def stop_server(self) -> None:
        """Stop the server process."""
        if self.process:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
            self.process = None

    def open_database(self) -> Database:
        """Open the server's database from the test process."""
        return Database(self.config_dir / "mdsync.sqlite")


def find_free_port() -> int:
    """Find a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        return s.getsockname()[1]


def start_server(node: ServerNode) -> subprocess.Popen:
    """Start the web server process for the given node."""
    env = os.environ.copy()
    env["PYTHONPATH"] = str(PROJECT_ROOT)

    cmd = [
        sys.executable,
        "-m", "mdsync.main",
        "-d", str(node.config_dir),
        "web",
        "--host", "127.0.0.1",
        "--port", str(node.port),
    ]

    # Server logs go to a file so a full pipe never blocks the server
    with open(node.log_file, "wb") as log:
        node.process = subprocess.Popen(
            cmd,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=log,
            cwd=str(PROJECT_ROOT),
        )
    return node.process


@pytest.fixture
def running_server(tmp_path: Path) -> Generator[ServerNode, None, None]:
    """A sync server process with an empty database."""
    config_dir = tmp_path / "server"
    config_dir.mkdir()
    port = find_free_port()
    with open(config_dir / "config.json", "w") as f:
        json.dump({"sync": {"server_port": port}}, f)

    node = ServerNode(config_dir=config_dir, port=port)
    start_server(node)
    if not node.wait_for_server():
        node.stop_server()
        pytest.fail(f"Failed to start sync server: {node.log_file.read_text(errors='replace')}")
    yield node
    node.stop_server()
