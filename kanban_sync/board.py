"""
KanbanBoard: the one object the UI layer talks to.

It owns the BoardDocument, the LocalStore, the SyncState and the
SyncCoordinator for the life of the process. Every edit goes through
mutate(), which saves locally first and only then schedules a remote save.
Nothing the sync side does can roll back a local save.

Must be used from the thread running the asyncio loop that drives the
coordinator (see board_server.BoardRuntime for the threaded case).
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type, TypeVar, Union

from .adapters import AdapterKind, RemoteAdapter, select_adapter
from .config import SyncConfig
from .errors import ParseError, SchemaVersionUnsupported
from .migrations import dump_blob, parse_blob
from .schema import (
    CURRENT_VERSION, BoardDocument, Card, Column, Effort, Priority, new_card, utc_now,
)
from .store import LocalStore
from .sync import SyncCoordinator, SyncState

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

# Card fields update_card may change
EDITABLE_FIELDS = ("title", "priority", "effort", "column")


def _coerce(enum_cls: Type[E], value: Union[E, str]) -> E:
    """Strict enum conversion for user input (raises ValueError on unknown values)."""
    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).lower())


def validate_document(doc: BoardDocument) -> None:
    """Raise ValueError if a mutation broke a document invariant."""
    seen = set()
    for card in doc.cards:
        if not card.id:
            raise ValueError("Card id must not be empty")
        if card.id in seen:
            raise ValueError(f"Duplicate card id: {card.id}")
        seen.add(card.id)
        if not isinstance(card.column, Column):
            raise ValueError(f"Card {card.id} has invalid column {card.column!r}")
        if not isinstance(card.priority, Priority):
            raise ValueError(f"Card {card.id} has invalid priority {card.priority!r}")
        if not isinstance(card.effort, Effort):
            raise ValueError(f"Card {card.id} has invalid effort {card.effort!r}")


class KanbanBoard:
    """Board document + local persistence + remote sync, behind one facade."""

    def __init__(self, store: LocalStore, config: Optional[SyncConfig] = None):
        self.config = config or SyncConfig()
        self.store = store

        doc = store.load()
        if doc is None:
            doc = BoardDocument()
            if not store.sync_blocked:
                store.save(doc)
        self.document = doc

        settings = store.load_settings()
        if settings:
            self.sync_state = SyncState.from_settings(settings)
        else:
            self.sync_state = SyncState(
                adapter_kind=AdapterKind.from_str(self.config.adapter),
                file_path=self.config.file_path,
            )
        if not self.sync_state.credential:
            self.sync_state.credential = self.config.gist_token()

        self.coordinator = SyncCoordinator(
            self.sync_state,
            snapshot=self.document_snapshot,
            apply_remote=self._apply_remote,
            debounce_seconds=self.config.debounce_seconds,
            timeout_seconds=self.config.timeout_seconds,
            quiescent_seconds=self.config.quiescent_seconds,
            on_state_changed=self._save_settings,
        )
        self.coordinator.set_adapter(self._select(self.sync_state.adapter_kind))
        if store.sync_blocked:
            self.coordinator.block(store.last_error or "Stored board is newer than this version")

    # ── UI-facing contract ───────────────────────────────────────────────

    def get_document(self) -> BoardDocument:
        return self.document

    def document_snapshot(self) -> BoardDocument:
        return self.document.copy()

    def mutate(self, fn: Callable[[BoardDocument], Any]) -> Any:
        """
        Apply `fn` to the board, save locally, and schedule a remote save.

        `fn` works on a copy. If it raises, or leaves the board invalid, the
        current document is left exactly as it was.
        """
        working = self.document.copy()
        result = fn(working)
        validate_document(working)
        working.version = max(working.version, CURRENT_VERSION)
        working.saved_at = utc_now()
        self.document = working
        self.store.save(self.document)
        self.coordinator.notify_changed()
        return result

    def get_sync_status(self) -> Dict[str, Any]:
        status = self.sync_state.to_dict()
        status["phase"] = self.coordinator.phase.value
        status["local_error"] = self.store.last_error or ""
        status["blocked"] = self.coordinator.blocked
        return status

    def export_blob(self) -> str:
        """Whole board as JSON text, in the same shape as the stored record."""
        return dump_blob(self.document)

    def import_blob(self, blob: Union[str, bytes]) -> BoardDocument:
        """
        Replace the board with an exported one.

        Validation and migration match LocalStore.load. On ParseError or
        SchemaVersionUnsupported the current board is kept and the error is
        re-raised for the UI to report.
        """
        try:
            doc = parse_blob(blob)
        except (ParseError, SchemaVersionUnsupported) as e:
            logger.warning(f"Import rejected: {e}")
            raise
        self.document = doc
        self.store.save(self.document)
        self.coordinator.notify_changed()
        logger.info(f"Imported board with {len(doc.cards)} cards")
        return doc

    def configure_adapter(
        self,
        kind: Union[AdapterKind, str],
        credential: Optional[str] = None,
        path: Optional[str] = None,
    ) -> AdapterKind:
        """
        Choose the sync tier. Returns the tier actually in use, which can
        be a lower one if this environment lacks the preferred one.
        """
        if not isinstance(kind, AdapterKind):
            kind = AdapterKind.from_str(kind)
        if credential is not None:
            self.sync_state.credential = credential or None
        if path is not None:
            self.sync_state.file_path = path or None
        # A new tier or credential may point at a different remote document
        self.sync_state.remote_document_id = None
        self.coordinator.set_adapter(self._select(kind))
        self._save_settings()
        logger.info(f"Sync configured: requested {kind.value}, using {self.sync_state.adapter_kind.value}")
        return self.sync_state.adapter_kind

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self) -> Optional[BoardDocument]:
        """Look for an existing remote board; may replace the local one."""
        return await self.coordinator.discover_remote()

    async def sync_now(self) -> Dict[str, Any]:
        await self.coordinator.flush(force=True)
        return self.get_sync_status()

    async def close(self) -> None:
        await self.coordinator.flush()
        await self.coordinator.close()

    # ── Card helpers (all routed through mutate) ─────────────────────────

    def add_card(
        self,
        title: str,
        column: Union[Column, str] = Column.INBOX,
        priority: Union[Priority, str] = Priority.MEDIUM,
        effort: Union[Effort, str] = Effort.HOUR,
    ) -> Card:
        if not title or not title.strip():
            raise ValueError("title is required")
        card = new_card(
            title.strip(),
            column=_coerce(Column, column),
            priority=_coerce(Priority, priority),
            effort=_coerce(Effort, effort),
        )

        def _add(doc: BoardDocument) -> Card:
            doc.cards.append(card)
            return card

        return self.mutate(_add)

    def update_card(self, card_id: str, **changes) -> Optional[Card]:
        """Change title/priority/effort/column of a card. Returns None if not found."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown card fields: {', '.join(sorted(unknown))}")
        if self.document.get(card_id) is None:
            return None
        coerced: Dict[str, Any] = {}
        if "title" in changes:
            title = str(changes["title"]).strip()
            if not title:
                raise ValueError("title must not be empty")
            coerced["title"] = title
        if "priority" in changes:
            coerced["priority"] = _coerce(Priority, changes["priority"])
        if "effort" in changes:
            coerced["effort"] = _coerce(Effort, changes["effort"])
        if "column" in changes:
            coerced["column"] = _coerce(Column, changes["column"])

        def _update(doc: BoardDocument) -> Card:
            card = doc.get(card_id)
            for name, value in coerced.items():
                setattr(card, name, value)
            return card

        return self.mutate(_update)

    def move_card(
        self, card_id: str, column: Union[Column, str], position: Optional[int] = None
    ) -> Optional[Card]:
        """
        Move a card to `column`, optionally to `position` among that
        column's cards in stored order (default: last).
        """
        target = _coerce(Column, column)
        if self.document.get(card_id) is None:
            return None

        def _move(doc: BoardDocument) -> Card:
            card = doc.get(card_id)
            doc.cards.remove(card)
            card.column = target
            siblings = [i for i, c in enumerate(doc.cards) if c.column == target]
            if position is None or position >= len(siblings):
                insert_at = siblings[-1] + 1 if siblings else len(doc.cards)
            else:
                insert_at = siblings[max(position, 0)]
            doc.cards.insert(insert_at, card)
            return card

        return self.mutate(_move)

    def remove_card(self, card_id: str) -> bool:
        if self.document.get(card_id) is None:
            return False

        def _remove(doc: BoardDocument) -> None:
            doc.cards.remove(doc.get(card_id))

        self.mutate(_remove)
        return True

    # ── Internals ────────────────────────────────────────────────────────

    def _select(self, kind: AdapterKind) -> Optional[RemoteAdapter]:
        return select_adapter(
            kind,
            credential=self.sync_state.credential,
            path=self.sync_state.file_path,
            export_path=self.config.export_path,
            gist_api_url=self.config.gist_api_url,
            timeout=self.config.timeout_seconds,
        )

    def _apply_remote(self, doc: BoardDocument) -> None:
        """Adopt a pulled document. Saved locally, but not pushed back."""
        self.document = doc
        self.store.save(doc)

    def _save_settings(self) -> None:
        self.store.save_settings(self.sync_state.to_settings())
