"""
Board document schema.

A BoardDocument is the single versioned value that is saved locally,
pushed to remotes, and exported to files. Columns, priorities and effort
buckets are closed sets: unknown wire values fall back to a default member
instead of leaking free text into the board.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import time
import uuid

# Bump together with a new step in migrations.MIGRATIONS
CURRENT_VERSION = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_card_id() -> str:
    """Generate a sortable unique card ID (ms-precision timestamp + random hex)."""
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:8]
    return f"card-{ts}-{rand}"


def parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Column(Enum):
    """Board columns, in display order."""
    INBOX = "inbox"
    NOW = "now"
    NEXT = "next"
    LATER = "later"
    DONE = "done"

    @classmethod
    def from_str(cls, value: str) -> "Column":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.INBOX


class Priority(Enum):
    """Card priority, most urgent first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SOMEDAY = "someday"

    @classmethod
    def from_str(cls, value: str) -> "Priority":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MEDIUM


class Effort(Enum):
    """Estimated duration bucket."""
    QUICK = "15m"
    HOUR = "1h"
    HALF_DAY = "4h"
    DAY = "1d"
    WEEK = "1w"

    @classmethod
    def from_str(cls, value: str) -> "Effort":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.HOUR


COLUMN_ORDER = {c: i for i, c in enumerate(Column)}
PRIORITY_ORDER = {p: i for i, p in enumerate(Priority)}


@dataclass
class Card:
    """One task on the board."""

    id: str
    title: str
    column: Column = Column.INBOX
    priority: Priority = Priority.MEDIUM
    effort: Effort = Effort.HOUR
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "column": self.column.value,
            "priority": self.priority.value,
            "effort": self.effort.value,
            "createdAt": format_ts(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Card":
        """Deserialize one card from its current-version wire form."""
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            column=Column.from_str(data.get("column", "inbox")),
            priority=Priority.from_str(data.get("priority", "medium")),
            effort=Effort.from_str(data.get("effort", "1h")),
            created_at=parse_ts(data.get("createdAt")) or utc_now(),
        )


def new_card(
    title: str,
    column: Column = Column.INBOX,
    priority: Priority = Priority.MEDIUM,
    effort: Effort = Effort.HOUR,
) -> Card:
    """Create a card with a fresh ID and creation timestamp."""
    return Card(
        id=make_card_id(),
        title=title,
        column=column,
        priority=priority,
        effort=effort,
    )


@dataclass
class BoardDocument:
    """
    The whole board: schema version, cards, and the time of the last local save.

    `saved_at` is the recency indicator used by last-write-wins on discovery.
    Documents migrated from before v3 have none.
    """

    version: int = CURRENT_VERSION
    cards: List[Card] = field(default_factory=list)
    saved_at: Optional[datetime] = None

    def get(self, card_id: str) -> Optional[Card]:
        for card in self.cards:
            if card.id == card_id:
                return card
        return None

    def ordered(self) -> List[Card]:
        """Cards in render order: column, then priority, then stored order."""
        indexed = list(enumerate(self.cards))
        indexed.sort(key=lambda pair: (
            COLUMN_ORDER[pair[1].column],
            PRIORITY_ORDER[pair[1].priority],
            pair[0],
        ))
        return [card for _, card in indexed]

    def in_column(self, column: Column) -> List[Card]:
        return [c for c in self.ordered() if c.column == column]

    def copy(self) -> "BoardDocument":
        """Independent snapshot, safe to serialize while the original keeps changing."""
        return BoardDocument(
            version=self.version,
            cards=[Card(**vars(c)) for c in self.cards],
            saved_at=self.saved_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire/record shape: {"v", "savedAt", "cards"}."""
        data: Dict[str, Any] = {"v": self.version}
        if self.saved_at:
            data["savedAt"] = format_ts(self.saved_at)
        data["cards"] = [c.to_dict() for c in self.cards]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BoardDocument":
        """
        Deserialize a current-version record.

        Older or foreign records must go through migrations.parse_record,
        which validates the version first.
        """
        return cls(
            version=int(data.get("v", CURRENT_VERSION)),
            cards=[Card.from_dict(c) for c in data.get("cards", [])],
            saved_at=parse_ts(data.get("savedAt")),
        )
