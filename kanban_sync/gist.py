"""
GitHub Gist adapter.

The board lives in one private gist that holds a single file. The
filename/description pair below is the discovery key shared by every
device, so it must never change.

HTTP calls are blocking `requests` calls run via asyncio.to_thread, each
bounded by `timeout`.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from .adapters import AdapterKind, RemoteAdapter
from .errors import CredentialInvalid, ParseError, RemoteUnavailable
from .migrations import dump_blob, parse_blob
from .schema import BoardDocument

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GIST_FILENAME = "kanban.json"
GIST_DESCRIPTION = "Kanban Board Data"
LIST_PAGE_SIZE = 100


class GistNotFound(RemoteUnavailable):
    """The gist ID we hold no longer exists."""
    pass


class GistAdapter(RemoteAdapter):
    """Push/pull the board to a private gist with a bearer token."""

    kind = AdapterKind.GIST

    def __init__(
        self,
        credential: str,
        api_url: str = GITHUB_API_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self._credential = credential
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def __repr__(self) -> str:
        return f"GistAdapter(api_url={self.api_url!r})"

    def is_available(self) -> bool:
        return bool(self._credential)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._credential}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = path if path.startswith("http") else f"{self.api_url}{path}"
        try:
            resp = self.session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise RemoteUnavailable(f"{method} {path} failed: {e.__class__.__name__}") from e

        if resp.status_code == 401:
            raise CredentialInvalid("GitHub rejected the token (401)")
        if resp.status_code == 403:
            if resp.headers.get("X-RateLimit-Remaining") == "0":
                raise RemoteUnavailable("GitHub rate limit exceeded")
            raise CredentialInvalid("GitHub token lacks access to gists (403)")
        if resp.status_code == 404:
            raise GistNotFound(f"{method} {path} returned 404")
        if not resp.ok:
            raise RemoteUnavailable(f"{method} {path} returned HTTP {resp.status_code}")
        return resp

    def _json(self, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise ParseError(f"GitHub returned invalid JSON: {e}") from e

    # ── Blocking operations (run in a worker thread) ─────────────────────

    def validate_credential(self) -> str:
        """Check the token against the identity endpoint; return the login."""
        try:
            user = self._json(self._request("GET", "/user"))
        except GistNotFound as e:
            raise RemoteUnavailable(str(e)) from e
        return user.get("login", "") if isinstance(user, dict) else ""

    def find_gist(self) -> Optional[str]:
        """Return the ID of the board gist among the user's first page of gists."""
        gists = self._json(self._request("GET", "/gists", params={"per_page": LIST_PAGE_SIZE}))
        if not isinstance(gists, list):
            raise ParseError("GitHub gist listing is not a list")
        for gist in gists:
            files = gist.get("files") or {}
            if GIST_FILENAME in files and gist.get("description") == GIST_DESCRIPTION:
                return gist.get("id")
        return None

    def _discover_sync(self) -> Optional[str]:
        login = self.validate_credential()
        gist_id = self.find_gist()
        if gist_id:
            logger.info(f"Found board gist {gist_id} for {login or 'user'}")
        return gist_id

    def _create(self, content: str) -> str:
        body = {
            "description": GIST_DESCRIPTION,
            "public": False,
            "files": {GIST_FILENAME: {"content": content}},
        }
        gist = self._json(self._request("POST", "/gists", json=body))
        gist_id = gist.get("id")
        if not gist_id:
            raise ParseError("GitHub did not return a gist id")
        logger.info(f"Created board gist {gist_id}")
        return gist_id

    def _update(self, gist_id: str, content: str) -> str:
        body = {"files": {GIST_FILENAME: {"content": content}}}
        self._request("PATCH", f"/gists/{gist_id}", json=body)
        return gist_id

    def _push_sync(self, content: str, handle: Optional[str]) -> str:
        if handle:
            try:
                return self._update(handle, content)
            except GistNotFound:
                logger.warning(f"Board gist {handle} is gone, searching again")
        # Another device may have created the gist since this session started
        handle = self._discover_sync()
        if handle:
            return self._update(handle, content)
        return self._create(content)

    def _fetch(self, gist_id: str) -> str:
        gist = self._json(self._request("GET", f"/gists/{gist_id}"))
        entry = (gist.get("files") or {}).get(GIST_FILENAME)
        if not entry:
            raise ParseError(f"Gist {gist_id} has no {GIST_FILENAME}")
        if entry.get("truncated") and entry.get("raw_url"):
            return self._request("GET", entry["raw_url"]).text
        return entry.get("content") or ""

    # ── RemoteAdapter interface ──────────────────────────────────────────

    async def discover(self) -> Optional[str]:
        return await asyncio.to_thread(self._discover_sync)

    async def push(self, doc: BoardDocument, handle: Optional[str] = None) -> Optional[str]:
        content = dump_blob(doc)
        return await asyncio.to_thread(self._push_sync, content, handle)

    async def pull(self, handle: str) -> BoardDocument:
        raw = await asyncio.to_thread(self._fetch, handle)
        return parse_blob(raw)
