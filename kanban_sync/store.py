"""
Local board storage backend (SQLite).

Records live in a key/value table under `kanban_v<version>`, one row per
schema version, holding the same JSON that is pushed to remotes. Sync
settings share the table under `sync_settings`.

save() never raises: a failed write is logged and surfaced through
`last_error`, and the caller's in-memory document is left untouched.
"""
import json
import logging
import re
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import LocalPersistenceError, ParseError, SchemaVersionUnsupported
from .migrations import dump_blob, parse_blob
from .schema import CURRENT_VERSION, BoardDocument

logger = logging.getLogger(__name__)

RECORD_PREFIX = "kanban_v"
SETTINGS_KEY = "sync_settings"
_RECORD_KEY = re.compile(r"^kanban_v(\d+)$")


def record_key(version: int) -> str:
    return f"{RECORD_PREFIX}{version}"


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class LocalStore:
    """SQLite-backed durable store for the board document and sync settings."""

    def __init__(self, db_path: str = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "kanban-sync" / "board.db")
        self.db_path = db_path
        self.last_error: Optional[str] = None
        # Set when the stored board is newer than this build; remote sync must stay off
        self.sync_blocked = False
        try:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(f"Cannot open {db_path}: {e}"))

    def _init_schema(self):
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS local_records (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def _record_failure(self, error: Exception) -> None:
        self.last_error = str(error)
        logger.error(f"Local persistence failed: {error}")

    def _put(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with _connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO local_records (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, value, now))
            conn.commit()

    def _get(self, key: str) -> Optional[str]:
        with _connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT value FROM local_records WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    # ── Board document ──────────────────────────────────────────────────

    def save(self, doc: BoardDocument) -> bool:
        """Persist the document under its version key. Returns False on failure."""
        try:
            self._put(record_key(doc.version), dump_blob(doc))
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(str(e)))
            return False
        self.last_error = None
        return True

    def stored_versions(self) -> list:
        """Versions that have a record in the store, ascending."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT key FROM local_records WHERE key LIKE ?", (RECORD_PREFIX + "%",)
            ).fetchall()
        versions = []
        for row in rows:
            m = _RECORD_KEY.match(row["key"])
            if m:
                versions.append(int(m.group(1)))
        return sorted(versions)

    def load(self) -> Optional[BoardDocument]:
        """
        Load the newest stored board, migrating it if it is older than current.

        Returns None when nothing is stored, when the record is unreadable
        (it is set aside, not overwritten), or when it is newer than this
        build understands (sync_blocked is then set).
        """
        try:
            versions = self.stored_versions()
            if not versions:
                return None
            newest = versions[-1]
            if newest > CURRENT_VERSION:
                raise SchemaVersionUnsupported(newest, CURRENT_VERSION)
            raw = self._get(record_key(newest))
        except SchemaVersionUnsupported as e:
            self.sync_blocked = True
            self.last_error = str(e)
            logger.error(f"Refusing to load board: {e}")
            return None
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(str(e)))
            return None

        try:
            doc = parse_blob(raw)
        except SchemaVersionUnsupported as e:
            self.sync_blocked = True
            self.last_error = str(e)
            logger.error(f"Refusing to load board: {e}")
            return None
        except ParseError as e:
            self._quarantine(newest, raw)
            self.last_error = str(e)
            logger.error(f"Stored board v{newest} is unreadable, starting empty: {e}")
            return None

        if newest < CURRENT_VERSION:
            logger.info(f"Migrated stored board from v{newest} to v{CURRENT_VERSION}")
            self.save(doc)
        return doc

    def _quarantine(self, version: int, raw: str) -> None:
        """Move an unreadable record aside so the next save cannot clobber it."""
        key = f"kanban_corrupt_v{version}_{int(time.time() * 1000)}"
        try:
            self._put(key, raw)
            with _connect(self.db_path) as conn:
                conn.execute("DELETE FROM local_records WHERE key = ?", (record_key(version),))
                conn.commit()
            logger.warning(f"Unreadable board record kept as {key}")
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(str(e)))

    # ── Sync settings ───────────────────────────────────────────────────

    def load_settings(self) -> Dict[str, Any]:
        """Return persisted sync settings ({} when none or unreadable)."""
        try:
            raw = self._get(SETTINGS_KEY)
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(str(e)))
            return {}
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable sync settings")
            return {}
        return data if isinstance(data, dict) else {}

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        try:
            self._put(SETTINGS_KEY, json.dumps(settings))
        except (sqlite3.Error, OSError) as e:
            self._record_failure(LocalPersistenceError(str(e)))
            return False
        return True
