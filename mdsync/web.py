#!/usr/bin/env python3
"""Web API for mdsync.

This module serves the sync protocol together with a small read-only
document API. Uses only core/ modules.

Endpoints:
    POST /v1/sync/push           Apply a batch of client operations
    POST /v1/sync/pull           Changes since a cursor
    GET  /v1/sync/status         Change ledger status
    GET  /v1/sync/info           Protocol information
    GET  /api/docs               List live synchronized documents
    GET  /api/docs/<file_id>     Get a document (including tombstones)
    GET  /api/health             Health check

All endpoints return JSON responses.
"""

from __future__ import annotations

import argparse
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, jsonify, Response
from flask_cors import CORS

from mdsync.core.config import Config
from mdsync.core.database import open_storage
from mdsync.core.store import StorageError
from mdsync.core.sync import create_sync_blueprint, identity_for
from mdsync.core.validation import ValidationError, validate_file_id

logger = logging.getLogger(__name__)


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Catches ValidationError (400), StorageError and Exception (500) with
    proper JSON error responses and logging.
    """
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except StorageError as e:
            logger.error(f"Storage error in {func.__name__}: {e}")
            return jsonify({"error": "Storage unavailable"}), 500
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return jsonify({"error": str(e)}), 500
    return wrapper


def create_app(config_dir: Optional[Path] = None) -> Flask:
    """Create and configure Flask application.

    Args:
        config_dir: Custom configuration directory (default: None)

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)  # Enable CORS for all routes

    config = Config(config_dir=config_dir)
    db_path = config.get_database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    db, store, ledger = open_storage(db_path)
    namespace = config.get_sync_namespace()
    app.extensions["mdsync"] = {"db": db, "store": store, "ledger": ledger, "config": config}

    logger.info(f"Web API initialized with database: {db_path}")

    app.register_blueprint(create_sync_blueprint(store, ledger, namespace))

    # Error handlers
    @app.errorhandler(404)
    def not_found(error: Any) -> tuple[Response, int]:
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> tuple[Response, int]:
        """Handle 405 errors."""
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(error: Any) -> tuple[Response, int]:
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(ValidationError)
    def validation_error(error: ValidationError) -> tuple[Response, int]:
        """Handle validation errors."""
        logger.warning(f"Validation error: {error.field} - {error.message}")
        return jsonify({"error": f"Invalid {error.field}: {error.message}"}), 400

    # Routes
    @app.route("/api/docs", methods=["GET"])
    @api_endpoint
    def list_docs() -> tuple[Response, int]:
        """List live synchronized documents (without content)."""
        docs = store.list_non_deleted_under_namespace(namespace)
        return jsonify([
            {
                "fileId": doc.sync_meta.file_id,
                "serverPath": doc.sync_meta.server_path,
                "title": doc.title,
                "version": doc.version,
                "updatedAt": doc.updated_at,
            }
            for doc in docs
        ]), 200

    @app.route("/api/docs/<file_id>", methods=["GET"])
    @api_endpoint
    def get_doc(file_id: str) -> tuple[Response, int]:
        """Get a specific document by file ID."""
        validate_file_id(file_id, "file_id")
        doc = store.read_by_identity(identity_for(namespace, file_id))
        if doc is None:
            return jsonify({"error": f"Document {file_id} not found"}), 404
        return jsonify(doc.to_dict()), 200

    @app.route("/api/health", methods=["GET"])
    def health_check() -> tuple[Response, int]:
        """Health check endpoint.

        Returns:
            JSON response indicating service health
        """
        return jsonify({"status": "ok"}), 200

    return app


def add_web_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add web subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add web parser to
    """
    web_parser = subparsers.add_parser(
        "web",
        help="Start web API and sync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    web_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )

    web_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: sync.server_port from config)"
    )

    web_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run web server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have host, port, debug attributes)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting mdsync Web API")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir)
    port = args.port or app.extensions["mdsync"]["config"].get_sync_server_port()

    app.run(
        host=args.host,
        port=port,
        debug=args.debug
    )

    return 0
