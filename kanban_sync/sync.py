"""
Sync state and the debounced sync coordinator.

Cycle:
  Idle → Debouncing → Saving → Synced | Error → Idle (after a quiescent period)

Every local mutation calls notify_changed(). Mutations inside the debounce
window collapse into one push of the latest document. A mutation that lands
while a push is in flight queues one follow-up cycle, which starts as soon
as the current push resolves. At most one remote operation runs at a time.

All of this runs on one asyncio event loop. The document and SyncState are
only touched from that loop, so no further locking is needed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .adapters import AdapterKind, RemoteAdapter
from .errors import CredentialInvalid, RemoteUnavailable, SyncError
from .schema import BoardDocument, format_ts, parse_ts, utc_now

logger = logging.getLogger(__name__)


def _consume_result(task: asyncio.Future) -> None:
    """Done-callback for a timed-out remote operation: log how it ended."""
    if not task.cancelled() and task.exception() is not None:
        logger.info(f"Timed-out remote operation ended with: {task.exception()}")


class SyncStatus(Enum):
    """User-visible sync indicator."""
    IDLE = "idle"
    SAVING = "saving"
    SYNCED = "synced"
    ERROR = "error"


class SyncPhase(Enum):
    """Coordinator state machine position."""
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    SAVING = "saving"
    SYNCED = "synced"
    ERROR = "error"


@dataclass
class SyncState:
    """Process-local sync bookkeeping. Rebuilt from persisted settings at start."""

    adapter_kind: AdapterKind = AdapterKind.NONE
    remote_document_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    status: SyncStatus = SyncStatus.IDLE
    last_error: str = ""
    file_path: Optional[str] = None
    credential: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Public view for the UI. Never includes the credential."""
        return {
            "adapter": self.adapter_kind.value,
            "remote_document_id": self.remote_document_id,
            "last_synced_at": format_ts(self.last_synced_at),
            "status": self.status.value,
            "last_error": self.last_error,
            "has_credential": bool(self.credential),
        }

    def to_settings(self) -> Dict[str, Any]:
        """What survives a restart (stored locally, credential included)."""
        return {
            "adapter": self.adapter_kind.value,
            "remote_document_id": self.remote_document_id,
            "file_path": self.file_path,
            "credential": self.credential,
            "last_synced_at": format_ts(self.last_synced_at),
        }

    @classmethod
    def from_settings(cls, data: Dict[str, Any]) -> "SyncState":
        try:
            last_synced_at = parse_ts(data.get("last_synced_at"))
        except ValueError:
            last_synced_at = None
        return cls(
            adapter_kind=AdapterKind.from_str(data.get("adapter", "none")),
            remote_document_id=data.get("remote_document_id"),
            file_path=data.get("file_path"),
            credential=data.get("credential"),
            last_synced_at=last_synced_at,
        )


def remote_wins(local: BoardDocument, remote: BoardDocument) -> bool:
    """
    Last-write-wins on discovery.

    A remote without a savedAt marker always wins here. This rule is only
    used on the discovery path and never during steady-state editing.
    """
    if remote.saved_at is None or local.saved_at is None:
        return True
    return remote.saved_at > local.saved_at


class SyncCoordinator:
    """Debounces local changes into remote pushes through the active adapter."""

    def __init__(
        self,
        state: SyncState,
        snapshot: Callable[[], BoardDocument],
        apply_remote: Callable[[BoardDocument], None],
        adapter: Optional[RemoteAdapter] = None,
        debounce_seconds: float = 5.0,
        timeout_seconds: float = 30.0,
        quiescent_seconds: float = 2.0,
        on_state_changed: Optional[Callable[[], None]] = None,
    ):
        self.state = state
        self._snapshot = snapshot
        self._apply_remote = apply_remote
        self._on_state_changed = on_state_changed
        self.debounce_seconds = debounce_seconds
        self.timeout_seconds = timeout_seconds
        self.quiescent_seconds = quiescent_seconds

        self.adapter: Optional[RemoteAdapter] = adapter
        self.phase = SyncPhase.IDLE
        # Stored board is newer than this build
        self.blocked = False
        self._blocked_reason = ""
        self._credential_rejected = False
        self._dirty = False
        self._rerun = False
        self._generation = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._cycle: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        # Remote operation that outlived its timeout and is still running
        self._straggler: Optional[asyncio.Future] = None
        # Bumped on every local change
        self._changes = 0

    @property
    def active(self) -> bool:
        return self.adapter is not None and not self.blocked and not self._credential_rejected

    @property
    def in_flight(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    def set_adapter(self, adapter: Optional[RemoteAdapter]) -> None:
        """
        Switch tiers (None disables sync).

        An operation already in flight is allowed to finish, but its result
        is dropped.
        """
        self._generation += 1
        self._cancel_timers()
        self.adapter = adapter
        self._credential_rejected = False
        self._rerun = False
        self.phase = SyncPhase.IDLE
        self.state.adapter_kind = adapter.kind if adapter else AdapterKind.NONE
        self.state.status = SyncStatus.IDLE
        self.state.last_error = ""
        if self.blocked:
            self.state.status = SyncStatus.ERROR
            self.state.last_error = self._blocked_reason

    def block(self, reason: str) -> None:
        """Turn remote sync off for this process. Nothing is pushed or pulled."""
        self.blocked = True
        self._blocked_reason = reason
        self._cancel_timers()
        self.phase = SyncPhase.IDLE
        self.state.status = SyncStatus.ERROR
        self.state.last_error = reason

    def disable(self) -> None:
        self.set_adapter(None)

    # ── Local change notifications ───────────────────────────────────────

    def notify_changed(self) -> None:
        """Record a local mutation and (re)start the debounce timer."""
        self._dirty = True
        self._changes += 1
        if not self.active:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; remote save deferred until flush()")
            return
        self._cancel_timers()
        self._timer = loop.call_later(self.debounce_seconds, self._on_debounce_elapsed)
        if self.phase != SyncPhase.SAVING:
            self.phase = SyncPhase.DEBOUNCING

    def _cancel_timers(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None

    def _on_debounce_elapsed(self) -> None:
        self._timer = None
        if self.in_flight:
            self._rerun = True
            return
        self._cycle = asyncio.ensure_future(self._run_cycle())

    # ── Save cycle ───────────────────────────────────────────────────────

    async def _run_cycle(self) -> None:
        while True:
            self._rerun = False
            await self._push_once()
            if not self._rerun or not self.active:
                break
        self._schedule_idle()

    async def _bounded(self, coro, what: str):
        """
        Await one remote operation for at most timeout_seconds.

        Adapters run blocking I/O in worker threads, which a timeout cannot
        stop. On expiry the operation keeps running as the straggler, and the
        next remote operation waits for it first. Two remote writes therefore
        never overlap.
        """
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout_seconds)
        except asyncio.TimeoutError:
            task.add_done_callback(_consume_result)
            self._straggler = task
            raise RemoteUnavailable(f"{what} timed out after {self.timeout_seconds:g}s") from None

    async def _drain_straggler(self) -> None:
        task, self._straggler = self._straggler, None
        if task is not None and not task.done():
            logger.info("Waiting for a timed-out remote operation to finish")
            await asyncio.wait([task])

    async def _push_once(self) -> None:
        adapter = self.adapter
        generation = self._generation
        if adapter is None:
            return

        self.phase = SyncPhase.SAVING
        self.state.status = SyncStatus.SAVING
        error: Optional[Exception] = None
        handle = None
        async with self._lock:
            await self._drain_straggler()
            # Snapshot under the lock so the payload is the latest state
            doc = self._snapshot()
            self._dirty = False
            try:
                handle = await self._bounded(
                    adapter.push(doc, self.state.remote_document_id), "Push"
                )
            except SyncError as e:
                error = e
            except Exception as e:
                logger.exception("Unexpected error during push")
                error = e

        if generation != self._generation:
            logger.info("Discarding push result from a replaced adapter")
            return
        if error is not None:
            self._dirty = True
            self._fail(error)
            return

        if handle and handle != self.state.remote_document_id:
            self.state.remote_document_id = handle
        self.state.last_synced_at = utc_now()
        self.state.last_error = ""
        self.state.status = SyncStatus.SYNCED
        self.phase = SyncPhase.DEBOUNCING if self._timer else SyncPhase.SYNCED
        logger.info(f"Board pushed via {adapter.kind.value} ({len(doc.cards)} cards)")
        self._state_changed()

    def _fail(self, error: Exception) -> None:
        self.state.status = SyncStatus.ERROR
        self.state.last_error = str(error) or error.__class__.__name__
        self.phase = SyncPhase.ERROR
        if isinstance(error, CredentialInvalid):
            # Terminal for this tier until the user configures a new credential
            self._credential_rejected = True
            self._cancel_timers()
            logger.error(f"Sync credential rejected: {error}")
        else:
            logger.warning(f"Sync failed: {error}")

    def _schedule_idle(self) -> None:
        if self._timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._idle_timer = loop.call_later(self.quiescent_seconds, self._return_to_idle)

    def _return_to_idle(self) -> None:
        self._idle_timer = None
        if self.phase in (SyncPhase.SYNCED, SyncPhase.ERROR):
            self.phase = SyncPhase.IDLE
            if self.state.status == SyncStatus.SYNCED:
                self.state.status = SyncStatus.IDLE

    def _state_changed(self) -> None:
        if self._on_state_changed is not None:
            self._on_state_changed()

    # ── Discovery ────────────────────────────────────────────────────────

    async def discover_remote(self) -> Optional[BoardDocument]:
        """
        Find a pre-existing remote board and apply last-write-wins.

        Returns the remote document if it replaced the local one, else None.
        """
        adapter = self.adapter
        if adapter is None or not self.active or not adapter.supports_discovery:
            return None
        generation = self._generation

        error: Optional[Exception] = None
        handle = None
        remote = None
        changes = self._changes
        async with self._lock:
            await self._drain_straggler()
            try:
                handle = await self._bounded(adapter.discover(), "Discovery")
                handle = handle or self.state.remote_document_id
                if handle:
                    remote = await self._bounded(adapter.pull(handle), "Pull")
            except SyncError as e:
                error = e
            except Exception as e:
                logger.exception("Unexpected error during discovery")
                error = e

        if generation != self._generation:
            logger.info("Discarding discovery result from a replaced adapter")
            return None
        if error is not None:
            self._fail(error)
            return None
        if not handle:
            logger.info(f"No existing remote board for {adapter.kind.value}")
            return None

        self.state.remote_document_id = handle
        self.state.last_synced_at = utc_now()
        self.state.last_error = ""
        self.state.status = SyncStatus.SYNCED
        self._state_changed()

        if self._changes != changes:
            # Edited while the pull was in flight: local is newer than anything pulled
            logger.info("Local board changed during discovery; keeping local")
            return None
        if remote_wins(self._snapshot(), remote):
            logger.info(f"Remote board {handle} replaces local ({len(remote.cards)} cards)")
            self._apply_remote(remote)
            return remote
        logger.info("Local board is newer than remote; next change will push it")
        return None

    # ── Shutdown / manual trigger ────────────────────────────────────────

    async def flush(self, force: bool = False) -> None:
        """Push now instead of waiting for the debounce timer."""
        pending = force or self._dirty or self._timer is not None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.active or not pending:
            return
        if self.in_flight:
            self._rerun = True
            await self._cycle
            return
        self._cycle = asyncio.ensure_future(self._run_cycle())
        await self._cycle

    async def close(self) -> None:
        """Stop timers and wait for any in-flight or timed-out remote operation."""
        self._cancel_timers()
        if self.in_flight:
            await self._cycle
        await self._drain_straggler()
