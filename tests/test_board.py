"""
Tests for KanbanBoard: the UI-facing contract, card helpers, import/export,
adapter configuration, and multi-device scenarios over a shared fake remote.
"""
import asyncio
import json
from datetime import timedelta

import pytest

from kanban_sync.adapters import AdapterKind
from kanban_sync.board import KanbanBoard
from kanban_sync.errors import ParseError, SchemaVersionUnsupported
from kanban_sync.migrations import dump_blob
from kanban_sync.schema import (
    CURRENT_VERSION, BoardDocument, Card, Column, Effort, Priority, new_card, utc_now,
)
from kanban_sync.store import LocalStore, record_key, _connect
from kanban_sync.sync import SyncStatus

from conftest import FakeAdapter, fast_config, make_board


@pytest.fixture
def board(db_path):
    return make_board(db_path)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Local persistence through mutate()
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_fresh_board_is_empty_and_saved(board, db_path):
    """Test a new board starts empty and is persisted"""
    assert board.get_document().cards == []
    assert LocalStore(str(db_path)).stored_versions() == [CURRENT_VERSION]


def test_local_record_matches_memory_after_each_mutation(board, db_path):
    """Test every mutation is saved locally before returning"""
    card = board.add_card("Write tests", column="now", priority="high")
    assert LocalStore(str(db_path)).load() == board.document
    board.update_card(card.id, title="Write more tests")
    assert LocalStore(str(db_path)).load() == board.document
    board.move_card(card.id, Column.DONE)
    assert LocalStore(str(db_path)).load() == board.document
    board.remove_card(card.id)
    assert LocalStore(str(db_path)).load() == board.document


def test_mutate_stamps_saved_at(board):
    """Test mutate stamps savedAt"""
    assert board.document.saved_at is None
    board.mutate(lambda doc: doc.cards.append(new_card("x")))
    first = board.document.saved_at
    assert first is not None
    board.mutate(lambda doc: None)
    assert board.document.saved_at >= first


def test_mutate_returns_callback_result(board):
    """Test mutate passes back the callback result"""
    assert board.mutate(lambda doc: len(doc.cards)) == 0


def test_mutate_rolls_back_on_exception(board, db_path):
    """Test a failing mutation leaves the board untouched"""
    board.add_card("keep")
    before = board.export_blob()

    def explode(doc):
        doc.cards.clear()
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        board.mutate(explode)
    assert board.export_blob() == before
    assert dump_blob(LocalStore(str(db_path)).load()) == before


def test_mutate_rejects_duplicate_ids(board):
    """Test duplicate card ids are refused"""
    card = board.add_card("original")
    with pytest.raises(ValueError, match="Duplicate"):
        board.mutate(lambda doc: doc.cards.append(Card(id=card.id, title="clone")))
    assert len(board.document.cards) == 1


def test_local_save_failure_is_reported_not_raised(board, monkeypatch):
    """Test local save errors surface in sync status"""
    def read_only(key, value):
        raise OSError("read-only")

    monkeypatch.setattr(board.store, "_put", read_only)
    card = board.add_card("still in memory")
    assert board.document.get(card.id) is not None
    assert "read-only" in board.get_sync_status()["local_error"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Card helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_add_card_parses_strings(board):
    """Test add_card accepts enum names as strings"""
    card = board.add_card("  Trim me  ", column="Next", priority="CRITICAL", effort="1d")
    assert card.title == "Trim me"
    assert card.column == Column.NEXT
    assert card.priority == Priority.CRITICAL
    assert card.effort == Effort.DAY


@pytest.mark.parametrize("kwargs", [
    {"title": ""},
    {"title": "   "},
    {"title": "ok", "column": "backlog"},
    {"title": "ok", "priority": "urgent"},
    {"title": "ok", "effort": "2h"},
])
def test_add_card_rejects_bad_input(board, kwargs):
    """Test add_card validation"""
    with pytest.raises(ValueError):
        board.add_card(**kwargs)
    assert board.document.cards == []


def test_update_card(board):
    """Test card field updates"""
    card = board.add_card("old")
    updated = board.update_card(card.id, title="new", priority="low", effort="15m")
    assert updated.title == "new"
    assert updated.priority == Priority.LOW
    assert updated.effort == Effort.QUICK
    assert updated.created_at == card.created_at


def test_update_card_unknown_field_or_card(board):
    """Test update_card with unknown fields or ids"""
    card = board.add_card("x")
    with pytest.raises(ValueError, match="Unknown card fields"):
        board.update_card(card.id, id="hijack")
    assert board.update_card("missing", title="y") is None


def test_move_card_to_position(board):
    """Test moving a card into a column at a position"""
    a = board.add_card("a", Column.NOW)
    b = board.add_card("b", Column.NOW)
    c = board.add_card("c", Column.LATER)
    board.move_card(c.id, "now", position=0)
    assert [x.id for x in board.document.in_column(Column.NOW)] == [c.id, a.id, b.id]
    board.move_card(c.id, Column.NOW)
    assert [x.id for x in board.document.in_column(Column.NOW)] == [a.id, b.id, c.id]
    assert board.document.in_column(Column.LATER) == []


def test_move_card_errors(board):
    """Test move_card validation"""
    card = board.add_card("x")
    assert board.move_card("missing", Column.DONE) is None
    with pytest.raises(ValueError):
        board.move_card(card.id, "archive")
    assert board.document.get(card.id).column == Column.INBOX


def test_remove_card(board):
    """Test card removal"""
    card = board.add_card("gone")
    assert board.remove_card(card.id) is True
    assert board.remove_card(card.id) is False
    assert board.document.cards == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Export / import
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_export_import_round_trip(board, tmp_path):
    """Test export from one board and import into another"""
    board.add_card("one", Column.NOW, Priority.HIGH, Effort.HALF_DAY)
    board.add_card("two", Column.DONE)
    blob = board.export_blob()

    other = make_board(tmp_path / "other.db")
    other.import_blob(blob)
    assert other.document == board.document
    assert other.export_blob() == blob
    assert LocalStore(str(tmp_path / "other.db")).load() == board.document


def test_import_migrates_old_export(board):
    """Test importing a v1 export"""
    v1 = {"v": 1, "cards": [{"id": "k1", "title": "Old", "column": "next",
                             "priority": "High", "createdAt": "2024-01-01T00:00:00+00:00"}]}
    doc = board.import_blob(json.dumps(v1))
    assert doc.version == CURRENT_VERSION
    assert board.document.cards[0].priority == Priority.HIGH


def test_import_newer_version_keeps_state(board):
    """Test newer exports are refused without touching the board"""
    board.add_card("precious")
    before = board.export_blob()
    with pytest.raises(SchemaVersionUnsupported):
        board.import_blob(json.dumps({"v": CURRENT_VERSION + 1, "cards": []}))
    assert board.export_blob() == before


@pytest.mark.parametrize("blob", [
    "",
    "not json",
    "[]",
    '{"v": 3, "cards": [{"title": "no id"}]}',
    '{"v": 3, "cards": [{"id": ["x"], "title": "list id"}]}',
    '{"v": 3, "cards": [{"id": 1, "title": "a"}, {"id": "1", "title": "b"}]}',
])
def test_import_garbage_keeps_state(board, blob):
    """Test malformed imports are refused without touching the board"""
    board.add_card("precious")
    before = board.export_blob()
    with pytest.raises(ParseError):
        board.import_blob(blob)
    assert board.export_blob() == before


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Adapter configuration
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_configure_filesystem(board, tmp_path):
    """Test configuring the filesystem tier"""
    target = tmp_path / "cloud" / "kanban.json"
    target.parent.mkdir()
    assert board.configure_adapter("filesystem", path=str(target)) == AdapterKind.FILESYSTEM
    assert board.get_sync_status()["adapter"] == "filesystem"


def test_configure_falls_back_down_the_tiers(board, tmp_path):
    """Test configure reports the tier actually used"""
    missing = str(tmp_path / "nowhere" / "kanban.json")
    assert board.configure_adapter(AdapterKind.FILESYSTEM, path=missing) == AdapterKind.MANUAL
    assert board.configure_adapter(AdapterKind.FILESYSTEM, credential="tok") == AdapterKind.GIST
    assert board.configure_adapter("gist", credential="") == AdapterKind.MANUAL
    assert board.configure_adapter("none") == AdapterKind.NONE


def test_configure_clears_remote_id(board):
    """Test reconfiguring forgets the remote document"""
    board.sync_state.remote_document_id = "old-gist"
    board.configure_adapter("manual")
    assert board.sync_state.remote_document_id is None


def test_settings_survive_restart(board, db_path):
    """Test sync settings persist across restarts"""
    board.configure_adapter("gist", credential="ghp_secret")
    restarted = make_board(db_path)
    assert restarted.sync_state.adapter_kind == AdapterKind.GIST
    assert restarted.sync_state.credential == "ghp_secret"
    status = restarted.get_sync_status()
    assert status["has_credential"] is True
    assert "ghp_secret" not in json.dumps(status)


def test_token_from_environment(db_path, monkeypatch):
    """Test gist token taken from the environment"""
    monkeypatch.setenv("KANBAN_GIST_TOKEN", "env-token")
    board = KanbanBoard(LocalStore(str(db_path)), fast_config(db_path, adapter="gist"))
    assert board.sync_state.adapter_kind == AdapterKind.GIST
    assert board.sync_state.credential == "env-token"


def test_newer_stored_board_blocks_sync(db_path, remote):
    """Test a board saved by a newer version blocks sync"""
    store = LocalStore(str(db_path))
    with _connect(store.db_path) as conn:
        conn.execute(
            "INSERT INTO local_records (key, value, updated_at) VALUES (?, ?, ?)",
            (record_key(CURRENT_VERSION + 1), json.dumps({"v": CURRENT_VERSION + 1, "cards": []}),
             "2030-01-01T00:00:00+00:00"),
        )
        conn.commit()

    async def scenario():
        adapter = FakeAdapter(remote)
        board = make_board(db_path, adapter)
        board.add_card("local only")
        await asyncio.sleep(0.2)
        return board, adapter

    board, adapter = asyncio.run(scenario())
    status = board.get_sync_status()
    assert status["blocked"] is True
    assert "newer" in status["last_error"]
    assert adapter.pushes == []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Devices sharing one remote
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_first_push_creates_one_remote_document(db_path, remote):
    """Test first push creates a single remote document"""
    async def scenario():
        board = make_board(db_path, FakeAdapter(remote))
        for title in ("a", "b", "c"):
            board.add_card(title)
        await board.sync_now()
        board.add_card("d")
        await board.sync_now()
        return board

    board = asyncio.run(scenario())
    assert remote.created == 1
    assert board.sync_state.remote_document_id == "gist-1"
    assert json.loads(remote.docs["gist-1"]) == board.document.to_dict()


def test_second_device_picks_up_first_devices_board(tmp_path, remote):
    """Test a second device adopts the shared board"""
    async def scenario():
        laptop = make_board(tmp_path / "laptop.db", FakeAdapter(remote))
        laptop.add_card("from laptop", Column.NOW)
        await laptop.sync_now()

        phone = make_board(tmp_path / "phone.db", FakeAdapter(remote))
        await phone.start()
        phone.add_card("from phone")
        await phone.sync_now()
        return laptop, phone

    laptop, phone = asyncio.run(scenario())
    assert [c.title for c in phone.document.cards] == ["from laptop", "from phone"]
    assert phone.sync_state.remote_document_id == laptop.sync_state.remote_document_id
    assert remote.created == 1


def test_unmarked_remote_replaces_newer_local_on_discovery(db_path, remote):
    """Test remote without savedAt wins at discovery"""
    remote.docs["gist-1"] = json.dumps({
        "v": 2,
        "cards": [{"id": "r1", "title": "remote", "column": "next",
                   "priority": "low", "effort": "1w", "createdAt": "2024-01-01T00:00:00+00:00"}],
    })

    async def scenario():
        board = make_board(db_path, FakeAdapter(remote))
        board.add_card("local")
        await board.coordinator.close()
        await board.start()
        return board

    board = asyncio.run(scenario())
    assert [c.id for c in board.document.cards] == ["r1"]
    assert board.sync_state.status == SyncStatus.SYNCED


def test_newer_remote_wins_over_older_local(db_path, remote):
    """Test newer remote replaces older local"""
    newer = BoardDocument(cards=[new_card("newer remote")], saved_at=utc_now() + timedelta(minutes=1))
    remote.docs["gist-1"] = dump_blob(newer)

    async def scenario():
        board = make_board(db_path, FakeAdapter(remote))
        board.add_card("older local")
        await board.coordinator.close()
        await board.start()
        return board

    board = asyncio.run(scenario())
    assert board.document == newer
    assert LocalStore(str(db_path)).load() == newer
