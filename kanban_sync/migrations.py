"""
Record parsing and schema migrations.

Every path that turns external bytes into a BoardDocument (local load,
remote pull, manual import) goes through parse_record so that version
checks and upgrades are applied identically.

History:
  v1 - cards: id, title, column, priority, createdAt
  v2 - adds card.effort (default "1h"); priorities normalised to lower case
  v3 - adds document-level savedAt (default: absent)
"""
import copy
import json
import logging
from typing import Any, Callable, Dict, Union

from .errors import ParseError, SchemaVersionUnsupported
from .schema import CURRENT_VERSION, BoardDocument

logger = logging.getLogger(__name__)


def _v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
    for card in data.get("cards", []):
        card.setdefault("effort", "1h")
        if isinstance(card.get("priority"), str):
            card["priority"] = card["priority"].lower()
    return data


def _v2_to_v3(data: Dict[str, Any]) -> Dict[str, Any]:
    # savedAt stays absent: a migrated board has no trustworthy recency marker
    data.pop("savedAt", None)
    return data


# from_version -> step producing from_version + 1
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def record_version(data: Any) -> int:
    """Return the integer schema version of a raw record, or raise ParseError."""
    if not isinstance(data, dict):
        raise ParseError("Board record must be a JSON object")
    version = data.get("v")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ParseError(f"Board record has no integer version: {version!r}")
    if version < 1:
        raise ParseError(f"Invalid board version: {version}")
    return version


def upgrade(data: Dict[str, Any]) -> Dict[str, Any]:
    """Apply migration steps in order until the record is at CURRENT_VERSION."""
    version = record_version(data)
    if version > CURRENT_VERSION:
        raise SchemaVersionUnsupported(version, CURRENT_VERSION)

    data = copy.deepcopy(data)
    while version < CURRENT_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise ParseError(f"No migration from board version {version}")
        data = step(data)
        version += 1
        data["v"] = version
        logger.debug(f"Migrated board record to v{version}")
    return data


def _validate_cards(data: Dict[str, Any]) -> None:
    cards = data.get("cards")
    if not isinstance(cards, list):
        raise ParseError("Board record 'cards' must be a list")
    seen = set()
    for i, card in enumerate(cards):
        if not isinstance(card, dict):
            raise ParseError(f"Card #{i} is not an object")
        card_id = card.get("id")
        if not card_id:
            raise ParseError(f"Card #{i} has no id")
        if not isinstance(card_id, str):
            raise ParseError(f"Card #{i} id must be a string, got {card_id!r}")
        if card_id in seen:
            raise ParseError(f"Duplicate card id: {card_id}")
        seen.add(card_id)


def parse_record(data: Any) -> BoardDocument:
    """
    Validate, migrate and deserialize a raw record.

    Raises:
        SchemaVersionUnsupported: the record is newer than CURRENT_VERSION.
        ParseError: the record is malformed.
    """
    data = upgrade(data)
    _validate_cards(data)
    try:
        return BoardDocument.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Invalid board record: {e}") from e


def parse_blob(blob: Union[str, bytes]) -> BoardDocument:
    """Parse a JSON text blob (export file, remote file content, stored record)."""
    if isinstance(blob, bytes):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Board data is not UTF-8: {e}") from e
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ParseError(f"Board data is not valid JSON: {e}") from e
    return parse_record(data)


def dump_blob(doc: BoardDocument) -> str:
    """Serialize a document to the JSON text used for records, remotes and exports."""
    return json.dumps(doc.to_dict(), indent=2, ensure_ascii=False)
