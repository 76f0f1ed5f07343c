#!/usr/bin/env python3
"""Command-line interface for mdsync.

This module provides CLI commands for inspecting the document store and
for running the sync client and server.
Uses only core/ modules.

Commands:
    status                  Show configuration and storage status
    list-docs               List synchronized documents
    show-doc <file_id>      Show a specific document
    sync now                Pull then push against the sync server
    sync pull               Pull server changes only
    sync push               Push local changes only
    sync conflicts          List unresolved conflicts
    sync resolve <path> <local|server>
                            Resolve a conflict
    sync serve              Start the sync server
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from mdsync.core.config import Config
from mdsync.core.database import SqliteCursorLedger, SqliteDocumentStore, open_storage
from mdsync.core.models import DocumentRecord
from mdsync.core.store import StorageError
from mdsync.core.sync import create_sync_server, identity_for
from mdsync.core.sync_client import SyncClient, SyncResult
from mdsync.core.timestamp_utils import format_timestamp
from mdsync.core.validation import ValidationError, validate_file_id


def format_document(doc: DocumentRecord, format_type: str = "text") -> str:
    """Format a single document for display.

    Args:
        doc: Document record
        format_type: Output format (text, json)

    Returns:
        Formatted document string
    """
    if format_type == "json":
        return json.dumps(doc.to_dict(), indent=2, ensure_ascii=False)

    meta = doc.sync_meta
    lines = [
        f"File ID: {meta.file_id}",
        f"Path: {meta.server_path}",
        f"Version: {doc.version}",
        f"Updated: {format_timestamp(doc.updated_at)}",
    ]
    if meta.deleted:
        lines.append(f"Deleted: {format_timestamp(meta.deleted_at)}")
    lines.append(f"\n{doc.content}")
    return "\n".join(lines)


def _result_to_dict(result: SyncResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "pulled": result.pulled,
        "pushed": result.pushed,
        "conflicts": result.conflicts,
        "errors": result.errors,
    }


def _print_result(label: str, result: SyncResult, args: argparse.Namespace) -> int:
    if args.format == "json":
        print(json.dumps(_result_to_dict(result), indent=2))
    elif result.success:
        print(f"{label} completed:")
        print(f"  Pulled: {result.pulled} changes")
        print(f"  Pushed: {result.pushed} changes")
        if result.conflicts > 0:
            print(f"  Conflicts: {result.conflicts} (see 'sync conflicts')")
    else:
        print(f"{label} failed:")
        for error in result.errors:
            print(f"  - {error}")
    return 0 if result.success else 1


def cmd_status(
    config: Config,
    store: SqliteDocumentStore,
    ledger: SqliteCursorLedger,
    args: argparse.Namespace,
) -> int:
    """Show configuration and storage status.

    Returns:
        Exit code (0 for success)
    """
    sync_config = config.get_sync_config()
    status = {
        "config_dir": str(config.get_config_dir()),
        "database_file": str(config.get_database_path()),
        "namespace": config.get_sync_namespace(),
        "server_port": config.get_sync_server_port(),
        "server_url": config.get_sync_server_url(),
        "sync_directory": sync_config.get("sync_directory"),
        "documents": store.count_documents(),
        "tombstones": store.count_documents(include_deleted=True) - store.count_documents(),
        "cursor": ledger.current_cursor(),
    }

    if args.format == "json":
        print(json.dumps(status, indent=2))
    else:
        print(f"Config Directory: {status['config_dir']}")
        print(f"Database: {status['database_file']}")
        print(f"Namespace: {status['namespace']}")
        print(f"Server Port: {status['server_port']}")
        print(f"Server URL: {status['server_url']}")
        print(f"Sync Directory: {status['sync_directory'] or '(not set)'}")
        print(f"Documents: {status['documents']} ({status['tombstones']} deleted)")
        print(f"Cursor: {status['cursor']}")
    return 0


def cmd_list_docs(config: Config, store: SqliteDocumentStore, args: argparse.Namespace) -> int:
    """List live synchronized documents.

    Returns:
        Exit code (0 for success)
    """
    docs = store.list_non_deleted_under_namespace(config.get_sync_namespace())

    if args.format == "json":
        print(json.dumps([doc.to_dict() for doc in docs], indent=2, ensure_ascii=False))
        return 0

    if not docs:
        print("No documents found.")
        return 0

    for doc in docs:
        print(f"{doc.sync_meta.file_id} | v{doc.version} | {doc.sync_meta.server_path}")
    return 0


def cmd_show_doc(config: Config, store: SqliteDocumentStore, args: argparse.Namespace) -> int:
    """Show details of a specific document.

    Returns:
        Exit code (0 for success, 1 if not found)
    """
    file_id = validate_file_id(args.file_id, "file_id")
    doc = store.read_by_identity(identity_for(config.get_sync_namespace(), file_id))

    if doc is None:
        print(f"Error: Document {file_id} not found", file=sys.stderr)
        return 1

    print(format_document(doc, args.format))
    return 0


def _make_client(config: Config, args: argparse.Namespace) -> SyncClient:
    sync_dir = getattr(args, "sync_dir", None)
    server_url = getattr(args, "server_url", None)
    if server_url:
        config.set_sync_server_url(server_url)
    if sync_dir:
        config.set_sync_directory(Path(sync_dir))
    return SyncClient(config, sync_dir=Path(sync_dir) if sync_dir else None)


def cmd_sync_now(config: Config, args: argparse.Namespace) -> int:
    """Resend pending operations, pull, then push."""
    client = _make_client(config, args)
    return _print_result("Sync", client.sync(), args)


def cmd_sync_pull(config: Config, args: argparse.Namespace) -> int:
    """Pull server changes into the sync directory."""
    client = _make_client(config, args)
    return _print_result("Pull", client.pull(), args)


def cmd_sync_push(config: Config, args: argparse.Namespace) -> int:
    """Push local changes to the server."""
    client = _make_client(config, args)
    result = client.resend_pending() or SyncResult(success=True)
    if result.success:
        result.merge(client.push())
    return _print_result("Push", result, args)


def cmd_sync_conflicts(config: Config, args: argparse.Namespace) -> int:
    """List unresolved sync conflicts.

    Returns:
        Exit code (0 for success)
    """
    client = _make_client(config, args)
    conflicts = client.list_conflicts()

    if args.format == "json":
        print(json.dumps([
            {
                "file_id": e.file_id,
                "client_path": e.client_path,
                "local_version": e.server_version,
                "server_version": e.conflict_server_version,
            }
            for e in conflicts
        ], indent=2))
        return 0

    if not conflicts:
        print("No unresolved conflicts.")
        return 0

    print(f"Unresolved Conflicts: {len(conflicts)}")
    for entry in conflicts:
        print(f"  {entry.client_path} (based on v{entry.server_version}, "
              f"server has v{entry.conflict_server_version})")
    return 0


def cmd_sync_resolve(config: Config, args: argparse.Namespace) -> int:
    """Resolve a sync conflict.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    client = _make_client(config, args)
    entry = client.resolve_conflict(args.client_path, args.choice)
    print(f"Resolved {entry.client_path} keeping {args.choice} copy")
    if args.choice == "local":
        print("Run 'sync now' to push your version.")
    return 0


def cmd_sync_serve(
    config: Config,
    store: SqliteDocumentStore,
    ledger: SqliteCursorLedger,
    args: argparse.Namespace,
) -> int:
    """Start the sync server.

    Returns:
        Exit code (0 for success)
    """
    port = getattr(args, "port", None) or config.get_sync_server_port()
    app = create_sync_server(store, ledger, config)

    print(f"Serving sync protocol on http://{args.host}:{port}/v1/sync")
    print("Press Ctrl+C to stop.")
    print()

    app.run(host=args.host, port=port)
    return 0


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line interface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    # status command
    cli_subparsers.add_parser("status", help="Show configuration and storage status")

    # list-docs command
    cli_subparsers.add_parser("list-docs", help="List synchronized documents")

    # show-doc command
    show_parser = cli_subparsers.add_parser("show-doc", help="Show a specific document")
    show_parser.add_argument("file_id", type=str, help="File ID of the document")

    # sync command with subcommands
    sync_parser = cli_subparsers.add_parser(
        "sync",
        help="Sync operations (now, pull, push, conflicts, serve)"
    )
    sync_parser.add_argument(
        "--dir",
        dest="sync_dir",
        type=str,
        default=None,
        help="Directory to sync (saved to config; default: sync.sync_directory)"
    )
    sync_parser.add_argument(
        "--server",
        dest="server_url",
        type=str,
        default=None,
        help="Sync server URL (saved to config; default: sync.server_url)"
    )
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")

    sync_subparsers.add_parser("now", help="Pull then push against the sync server")
    sync_subparsers.add_parser("pull", help="Pull server changes only")
    sync_subparsers.add_parser("push", help="Push local changes only")
    sync_subparsers.add_parser("conflicts", help="List unresolved sync conflicts")

    resolve_parser = sync_subparsers.add_parser("resolve", help="Resolve a sync conflict")
    resolve_parser.add_argument(
        "client_path",
        type=str,
        help="Path of the conflicted file, relative to the sync directory"
    )
    resolve_parser.add_argument(
        "choice",
        type=str,
        choices=["local", "server"],
        help="Keep the local edits or take the server copy"
    )

    serve_parser = sync_subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "--host",
        type=str,
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: 8384 or from config)"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not hasattr(args, 'cli_command') or not args.cli_command:
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    db_path = config.get_database_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db, store, ledger = open_storage(db_path)

    try:
        if args.cli_command == "status":
            return cmd_status(config, store, ledger, args)
        elif args.cli_command == "list-docs":
            return cmd_list_docs(config, store, args)
        elif args.cli_command == "show-doc":
            return cmd_show_doc(config, store, args)
        elif args.cli_command == "sync":
            sync_cmd = getattr(args, 'sync_command', None)
            if not sync_cmd:
                print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
                return 1
            if sync_cmd == "now":
                return cmd_sync_now(config, args)
            elif sync_cmd == "pull":
                return cmd_sync_pull(config, args)
            elif sync_cmd == "push":
                return cmd_sync_push(config, args)
            elif sync_cmd == "conflicts":
                return cmd_sync_conflicts(config, args)
            elif sync_cmd == "resolve":
                return cmd_sync_resolve(config, args)
            elif sync_cmd == "serve":
                return cmd_sync_serve(config, store, ledger, args)
            else:
                print(f"Error: Unknown sync command '{sync_cmd}'", file=sys.stderr)
                return 1
        else:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    except StorageError as e:
        print(f"Error: Storage failure - {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
