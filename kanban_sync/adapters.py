"""
Remote adapters: where the board goes when it leaves this machine.

Tiers, in fixed priority order:
  filesystem - a user-chosen file, e.g. inside a synced cloud folder
  gist       - a private GitHub Gist (see gist.py)
  manual     - export/import of a JSON file by hand; always available

All adapters share one interface so the coordinator never branches on
adapter identity. Failures are raised from errors.py.
"""
import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .errors import ParseError, RemoteUnavailable
from .migrations import dump_blob, parse_blob
from .schema import BoardDocument

logger = logging.getLogger(__name__)


class AdapterKind(Enum):
    """Configured sync tier."""
    NONE = "none"
    FILESYSTEM = "filesystem"
    GIST = "gist"
    MANUAL = "manual"

    @classmethod
    def from_str(cls, value: str) -> "AdapterKind":
        try:
            return cls(str(value or "none").lower())
        except ValueError:
            return cls.NONE


# Highest priority first
TIER_ORDER = [AdapterKind.FILESYSTEM, AdapterKind.GIST, AdapterKind.MANUAL]


class RemoteAdapter(ABC):
    """Push/pull/discover against one external medium."""

    kind: AdapterKind = AdapterKind.NONE
    # False for tiers whose pulls are always user-initiated
    supports_discovery: bool = True

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def push(self, doc: BoardDocument, handle: Optional[str] = None) -> Optional[str]:
        """Write the whole document; return the handle it now lives under."""

    @abstractmethod
    async def pull(self, handle: str) -> BoardDocument:
        """Read and parse the document stored under `handle`."""

    async def discover(self) -> Optional[str]:
        """Locate a pre-existing remote document. Most tiers have nothing to search."""
        return None


def atomic_write(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    path = Path(path)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class FileHandleAdapter(RemoteAdapter):
    """Board file at a user-granted path outside the app's own storage."""

    kind = AdapterKind.FILESYSTEM

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def is_available(self) -> bool:
        parent = self.path.parent
        return parent.is_dir() and os.access(parent, os.W_OK)

    async def push(self, doc: BoardDocument, handle: Optional[str] = None) -> Optional[str]:
        target = Path(handle) if handle else self.path
        text = dump_blob(doc)
        try:
            await asyncio.to_thread(atomic_write, target, text)
        except OSError as e:
            raise RemoteUnavailable(f"Cannot write {target}: {e}") from e
        logger.info(f"Board written to {target}")
        return str(target)

    async def discover(self) -> Optional[str]:
        # The file is picked by the user; discovery is only an existence check
        exists = await asyncio.to_thread(self.path.is_file)
        return str(self.path) if exists else None

    async def pull(self, handle: str) -> BoardDocument:
        target = Path(handle) if handle else self.path
        try:
            raw = await asyncio.to_thread(target.read_text, encoding="utf-8")
        except OSError as e:
            raise RemoteUnavailable(f"Cannot read {target}: {e}") from e
        return parse_blob(raw)


class ManualAdapter(RemoteAdapter):
    """
    No network: the board travels as a JSON file the user carries.

    push() refreshes `last_blob` (and the export file, if configured);
    pull() parses a blob or a path the user supplied.
    """

    kind = AdapterKind.MANUAL
    supports_discovery = False

    def __init__(self, export_path: Union[str, Path, None] = None):
        self.export_path = Path(export_path).expanduser() if export_path else None
        self.last_blob: Optional[str] = None

    async def push(self, doc: BoardDocument, handle: Optional[str] = None) -> Optional[str]:
        self.last_blob = dump_blob(doc)
        if not self.export_path:
            return None
        try:
            await asyncio.to_thread(atomic_write, self.export_path, self.last_blob)
        except OSError as e:
            raise RemoteUnavailable(f"Cannot write export {self.export_path}: {e}") from e
        return str(self.export_path)

    async def pull(self, handle: Union[str, bytes]) -> BoardDocument:
        if isinstance(handle, str) and not handle.lstrip().startswith("{"):
            try:
                handle = await asyncio.to_thread(Path(handle).expanduser().read_text, encoding="utf-8")
            except OSError as e:
                raise ParseError(f"Cannot read import file: {e}") from e
        return parse_blob(handle)


def build_adapter(
    kind: AdapterKind,
    credential: Optional[str] = None,
    path: Optional[str] = None,
    export_path: Optional[str] = None,
    gist_api_url: Optional[str] = None,
    timeout: float = 30.0,
) -> Optional[RemoteAdapter]:
    """Construct one tier's adapter, or None if it cannot be built from these inputs."""
    if kind == AdapterKind.FILESYSTEM:
        return FileHandleAdapter(path) if path else None
    if kind == AdapterKind.GIST:
        if not credential:
            return None
        from .gist import GistAdapter, GITHUB_API_URL
        return GistAdapter(credential, api_url=gist_api_url or GITHUB_API_URL, timeout=timeout)
    if kind == AdapterKind.MANUAL:
        return ManualAdapter(export_path)
    return None


def select_adapter(preferred: AdapterKind, **kwargs) -> Optional[RemoteAdapter]:
    """
    Pick the adapter for the user's preferred tier, skipping down the
    fixed order past tiers this environment cannot provide.

    Only capability decides the skip. Runtime errors never move sync to
    another tier.
    """
    if preferred == AdapterKind.NONE:
        return None
    for kind in TIER_ORDER[TIER_ORDER.index(preferred):]:
        adapter = build_adapter(kind, **kwargs)
        if adapter is not None and adapter.is_available():
            if kind != preferred:
                logger.info(f"Sync tier {preferred.value} unavailable, using {kind.value}")
            return adapter
    return None
