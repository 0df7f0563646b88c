#!/usr/bin/env python3
"""
Kanban Board Server
-------------------
JSON API over a KanbanBoard, for a browser or any other front end.
The board keeps its own local SQLite copy and syncs to the configured
remote tier in the background.

Usage:
    python board_server.py --port 3000
    python board_server.py --db /tmp/board.db --config ./kanban-sync.yaml

API:
    GET    /api/board                → { document, sync }
    POST   /api/cards                → create  { title, column?, priority?, effort? }
    PUT    /api/cards/<id>           → update  { title?, priority?, effort?, column? }
    POST   /api/cards/<id>/move      → move    { column, position? }
    DELETE /api/cards/<id>           → delete
    GET    /api/sync                 → sync status
    POST   /api/sync/configure       → { kind, credential?, path? }
    POST   /api/sync/flush           → push now
    GET    /api/export               → board JSON (download)
    POST   /api/import               → board JSON body
    GET    /health

Mutating routes require X-API-Key matching $KANBAN_API_SECRET.
"""

import asyncio
import hmac
import logging
import os
import sys
import threading
from functools import wraps
from typing import Any, Callable, Optional

from flask import Flask, Response, jsonify, request

from kanban_sync.board import EDITABLE_FIELDS, KanbanBoard
from kanban_sync.config import SyncConfig
from kanban_sync.errors import ParseError, SchemaVersionUnsupported
from kanban_sync.store import LocalStore

logger = logging.getLogger("board_server")

API_SECRET_ENV = "KANBAN_API_SECRET"
CALL_TIMEOUT = 60.0


# ── Event loop thread ────────────────────────────────────────────────────────

class BoardRuntime:
    """
    Owns the asyncio loop that the board and its coordinator live on.

    Flask handles requests on its own threads, so every board access is
    marshalled onto the loop thread with run_coroutine_threadsafe. That
    keeps the document and sync state single-threaded.
    """

    def __init__(self, config: SyncConfig):
        self.config = config
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run, name="board-loop", daemon=True)
        self.board: Optional[KanbanBoard] = None

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self, discover: bool = True) -> "BoardRuntime":
        self.thread.start()
        self.board = self.call(lambda: KanbanBoard(LocalStore(self.config.db_path), self.config))
        if discover:
            asyncio.run_coroutine_threadsafe(self.board.start(), self.loop)
        return self

    def call(self, fn: Callable[[], Any]) -> Any:
        """Run a plain callable on the loop thread and return its result."""
        async def _invoke():
            return fn()
        return self.run(_invoke())

    def run(self, coro) -> Any:
        """Run a coroutine on the loop thread and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(CALL_TIMEOUT)

    def stop(self):
        if self.board is not None:
            try:
                self.run(self.board.close())
            except Exception as e:
                logger.warning(f"Final sync on shutdown failed: {e}")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(runtime: BoardRuntime, api_secret: Optional[str] = None) -> Flask:
    """Build the Flask app bound to one running BoardRuntime."""
    app = Flask(__name__)
    secret = api_secret if api_secret is not None else os.environ.get(API_SECRET_ENV, "")

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if not secret:
                return jsonify({"error": f"{API_SECRET_ENV} not set"}), 503
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, secret):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    def board_call(fn: Callable[[KanbanBoard], Any]) -> Any:
        return runtime.call(lambda: fn(runtime.board))

    def body() -> dict:
        data = request.get_json(force=True, silent=True)
        return data if isinstance(data, dict) else {}

    @app.route("/api/board")
    def api_board():
        def _read(board: KanbanBoard):
            doc = board.get_document()
            data = doc.to_dict()
            data["cards"] = [c.to_dict() for c in doc.ordered()]
            return {"document": data, "sync": board.get_sync_status()}
        return jsonify(board_call(_read))

    @app.route("/api/cards", methods=["POST"])
    @require_api_key
    def api_create_card():
        data = body()
        try:
            card = board_call(lambda b: b.add_card(
                data.get("title", ""),
                column=data.get("column", "inbox"),
                priority=data.get("priority", "medium"),
                effort=data.get("effort", "1h"),
            ))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"card": card.to_dict(), "id": card.id}), 201

    @app.route("/api/cards/<card_id>", methods=["PUT"])
    @require_api_key
    def api_update_card(card_id):
        data = body()
        unknown = sorted(set(data) - set(EDITABLE_FIELDS))
        if unknown:
            return jsonify({"error": f"Unknown card fields: {', '.join(unknown)}"}), 400
        try:
            card = board_call(lambda b: b.update_card(card_id, **data))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        if card is None:
            return jsonify({"error": "Card not found"}), 404
        return jsonify({"card": card.to_dict()})

    @app.route("/api/cards/<card_id>/move", methods=["POST"])
    @require_api_key
    def api_move_card(card_id):
        data = body()
        column = str(data.get("column", "")).strip().lower()
        if not column:
            return jsonify({"error": "column is required"}), 400
        position = data.get("position")
        if position is not None and (isinstance(position, bool) or not isinstance(position, int)):
            return jsonify({"error": "position must be an integer"}), 400
        try:
            card = board_call(lambda b: b.move_card(card_id, column, position))
        except ValueError:
            return jsonify({"error": f"Invalid column: {column}"}), 400
        if card is None:
            return jsonify({"error": "Card not found"}), 404
        return jsonify({"card": card.to_dict()})

    @app.route("/api/cards/<card_id>", methods=["DELETE"])
    @require_api_key
    def api_delete_card(card_id):
        if not board_call(lambda b: b.remove_card(card_id)):
            return jsonify({"error": "Card not found"}), 404
        return jsonify({"deleted": card_id})

    @app.route("/api/sync", methods=["GET"])
    def api_sync_status():
        return jsonify(board_call(lambda b: b.get_sync_status()))

    @app.route("/api/sync/configure", methods=["POST"])
    @require_api_key
    def api_sync_configure():
        data = body()
        kind = str(data.get("kind", "")).strip().lower()
        if kind not in ("none", "filesystem", "gist", "manual"):
            return jsonify({"error": "kind must be one of none, filesystem, gist, manual"}), 400
        active = board_call(lambda b: b.configure_adapter(
            kind, credential=data.get("credential"), path=data.get("path"),
        ))
        # Discovery runs in the background; the status endpoint shows the outcome
        asyncio.run_coroutine_threadsafe(runtime.board.start(), runtime.loop)
        return jsonify({"requested": kind, "active": active.value})

    @app.route("/api/sync/flush", methods=["POST"])
    @require_api_key
    def api_sync_flush():
        return jsonify(runtime.run(runtime.board.sync_now()))

    @app.route("/api/export")
    def api_export():
        blob = board_call(lambda b: b.export_blob())
        return Response(
            blob,
            mimetype="application/json",
            headers={"Content-Disposition": "attachment; filename=kanban.json"},
        )

    @app.route("/api/import", methods=["POST"])
    @require_api_key
    def api_import():
        raw = request.get_data()
        try:
            doc = board_call(lambda b: b.import_blob(raw))
        except (ParseError, SchemaVersionUnsupported) as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"imported": len(doc.cards), "version": doc.version})

    @app.route("/health")
    def health():
        status = board_call(lambda b: b.get_sync_status())
        return jsonify({"status": "ok", "db": runtime.config.db_path, "sync": status["status"]})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Kanban Board Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--db", help="Path to board.db (overrides KANBAN_SYNC_DB env var)")
    parser.add_argument("--config", help="Path to YAML config")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.db:
        os.environ["KANBAN_SYNC_DB"] = args.db
    config = SyncConfig.load(args.config)

    runtime = BoardRuntime(config).start()
    app = create_app(runtime)
    status = runtime.call(lambda: runtime.board.get_sync_status())
    logger.info(f"Serving http://{args.host}:{args.port}  db={config.db_path}  sync={status['adapter']}")
    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
