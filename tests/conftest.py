"""Shared fixtures for kanban-sync tests."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import pytest

# Ensure the repo root (kanban_sync, board_server) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from kanban_sync.adapters import AdapterKind, RemoteAdapter
from kanban_sync.board import KanbanBoard
from kanban_sync.config import SyncConfig
from kanban_sync.errors import RemoteUnavailable
from kanban_sync.migrations import dump_blob, parse_blob
from kanban_sync.store import LocalStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's real token/config out of tests."""
    for name in ("KANBAN_GIST_TOKEN", "KANBAN_SYNC_DB", "KANBAN_SYNC_CONFIG", "KANBAN_API_SECRET"):
        monkeypatch.delenv(name, raising=False)


class FakeRemote:
    """In-memory remote store shared by several FakeAdapters ("devices")."""

    def __init__(self):
        self.docs = {}      # handle -> JSON text
        self.created = 0


class FakeAdapter(RemoteAdapter):
    """Gist-like adapter over a FakeRemote, with optional latency and failures."""

    kind = AdapterKind.GIST

    def __init__(self, remote: FakeRemote, delay: float = 0.0):
        self.remote = remote
        self.delay = delay
        self.failures = []   # exceptions raised by the next pushes, in order
        self.pushes = []     # documents successfully pushed
        self.discover_calls = 0

    async def push(self, doc, handle: Optional[str] = None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        if handle is None:
            handle = await self.discover()
        if handle is None:
            self.remote.created += 1
            handle = f"gist-{self.remote.created}"
        self.remote.docs[handle] = dump_blob(doc)
        self.pushes.append(doc)
        return handle

    async def pull(self, handle: str):
        if handle not in self.remote.docs:
            raise RemoteUnavailable(f"no such document {handle}")
        return parse_blob(self.remote.docs[handle])

    async def discover(self):
        self.discover_calls += 1
        return next(iter(self.remote.docs), None)


def fast_config(db_path, **overrides) -> SyncConfig:
    values = dict(
        db_path=str(db_path),
        debounce_seconds=0.05,
        timeout_seconds=1.0,
        quiescent_seconds=0.05,
    )
    values.update(overrides)
    return SyncConfig(**values)


def make_board(db_path, adapter: Optional[RemoteAdapter] = None, **overrides) -> KanbanBoard:
    """Board on a temp DB with short timings; optionally wired to an adapter."""
    board = KanbanBoard(LocalStore(str(db_path)), fast_config(db_path, **overrides))
    if adapter is not None:
        board.coordinator.set_adapter(adapter)
    return board


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "board.db"


@pytest.fixture
def store(db_path):
    return LocalStore(str(db_path))


@pytest.fixture
def remote():
    return FakeRemote()
