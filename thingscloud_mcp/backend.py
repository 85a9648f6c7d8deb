"""
Things Cloud backend access.

The authorization server only needs two things from the backend: a way to
check an email/password pair (``AccountVerifier``) and a way to build a
logged-in, fully hydrated session for an account (``SessionFactory``).
``ThingsCloudClient`` provides both on top of the Things Cloud HTTP API.

A Things Cloud account keeps its data as an append-only log of items inside a
"history". Hydrating a session means picking the account's most recent
history, paging through the whole item log and folding it into a
``ThingsState``.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp

logger = logging.getLogger(__name__)

API_ENDPOINT = "https://cloud.culturedcode.com"

# Item log actions
ACTION_CREATE = 0
ACTION_MODIFY = 1
ACTION_DELETE = 2


class BackendError(Exception):
    """Raised when Things Cloud cannot be reached or answers with an error."""


class BackendAuthError(BackendError):
    """Raised when Things Cloud rejects the account credentials."""


class AccountVerifier(Protocol):
    async def verify(self, email: str, password: str) -> dict[str, Any]: ...


class SessionFactory(Protocol):
    async def create(self, email: str, password: str) -> Any: ...


_ENTITY_NAME = re.compile(r"^([A-Za-z]+?)\d*$")

_ENTITY_BUCKETS = {
    "Task": "tasks",
    "Area": "areas",
    "Tag": "tags",
    "ChecklistItem": "checklist_items",
}


@dataclass
class ThingsState:
    """In-memory view of an account, rebuilt from the item log."""

    tasks: dict[str, dict[str, Any]] = field(default_factory=dict)
    areas: dict[str, dict[str, Any]] = field(default_factory=dict)
    tags: dict[str, dict[str, Any]] = field(default_factory=dict)
    checklist_items: dict[str, dict[str, Any]] = field(default_factory=dict)

    def _bucket(self, entity: str) -> dict[str, dict[str, Any]] | None:
        match = _ENTITY_NAME.match(entity or "")
        if not match:
            return None
        name = _ENTITY_BUCKETS.get(match.group(1))
        return getattr(self, name) if name else None

    def update(self, items: list[dict[str, Any]]) -> None:
        """Apply a page of item log entries in order."""
        for item in items:
            if not isinstance(item, dict):
                continue
            for uuid, change in item.items():
                if not isinstance(change, dict):
                    continue
                bucket = self._bucket(change.get("e", ""))
                if bucket is None:
                    continue
                action = change.get("t")
                payload = change.get("p") or {}
                if action == ACTION_DELETE:
                    bucket.pop(uuid, None)
                elif action == ACTION_CREATE:
                    bucket[uuid] = dict(payload)
                elif action == ACTION_MODIFY:
                    bucket.setdefault(uuid, {}).update(payload)

    def counts(self) -> dict[str, int]:
        return {
            "tasks": len(self.tasks),
            "areas": len(self.areas),
            "tags": len(self.tags),
            "checklist_items": len(self.checklist_items),
        }


class ThingsSession:
    """A logged-in account with its hydrated state."""

    def __init__(
        self,
        client: "ThingsCloudClient",
        email: str,
        password: str,
        history_id: str,
    ):
        self._client = client
        self._password = password
        self.email = email
        self.history_id = history_id
        self.server_index = 0
        self.state = ThingsState()
        self._lock = asyncio.Lock()

    async def rebuild(self) -> ThingsState:
        """Fetch the whole item log and replace the state."""
        async with self._lock:
            state = ThingsState()
            self.server_index = await self._fetch_into(state, 0)
            self.state = state
        logger.info(f"State rebuilt for {mask_email(self.email)}: {state.counts()}")
        return state

    async def sync(self) -> int:
        """Apply items appended since the last fetch. Returns the number applied."""
        async with self._lock:
            before = self.server_index
            self.server_index = await self._fetch_into(self.state, before)
        return self.server_index - before

    async def _fetch_into(self, state: ThingsState, start_index: int) -> int:
        index = start_index
        while True:
            items, current_index = await self._client.items(
                self.email, self._password, self.history_id, index
            )
            if not items:
                break
            state.update(items)
            index += len(items)
            if index >= current_index:
                break
        return index


class ThingsCloudClient:
    """HTTP client for the Things Cloud API."""

    def __init__(
        self,
        base_url: str = API_ENDPOINT,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session used for Things Cloud calls."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        """Clean up HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _get(
        self, path: str, password: str, params: dict[str, Any] | None = None
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Password {password}"}
        try:
            async with session.get(url, headers=headers, params=params) as response:
                if response.status in (401, 403):
                    raise BackendAuthError("Things Cloud rejected the credentials")
                if response.status == 404 and path.startswith("/version/1/account/"):
                    # Unknown accounts look the same as wrong passwords
                    raise BackendAuthError("Things Cloud rejected the credentials")
                if response.status >= 400:
                    text = await response.text()
                    raise BackendError(f"Things Cloud returned {response.status}: {text[:200]}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise BackendError(f"Invalid JSON from Things Cloud: {e}") from e
        except aiohttp.ClientError as e:
            raise BackendError(f"Could not reach Things Cloud: {e}") from e
        except asyncio.TimeoutError as e:
            raise BackendError("Timed out talking to Things Cloud") from e

    async def verify(self, email: str, password: str) -> dict[str, Any]:
        """Check credentials and return the account description."""
        data = await self._get(f"/version/1/account/{quote(email)}", password)
        if not isinstance(data, dict):
            raise BackendError("Unexpected account response from Things Cloud")
        return data

    async def history_keys(self, email: str, password: str) -> list[str]:
        data = await self._get(f"/version/1/account/{quote(email)}/own-history-keys", password)
        return [key for key in data or [] if isinstance(key, str)]

    async def history(self, email: str, password: str, history_id: str) -> dict[str, Any]:
        data = await self._get(f"/version/1/history/{quote(history_id)}", password)
        return data if isinstance(data, dict) else {}

    async def items(
        self, email: str, password: str, history_id: str, start_index: int
    ) -> tuple[list[dict[str, Any]], int]:
        data = await self._get(
            f"/version/1/history/{quote(history_id)}/items",
            password,
            params={"start-index": start_index},
        )
        if not isinstance(data, dict):
            raise BackendError("Unexpected items response from Things Cloud")
        items = data.get("items") or []
        current_index = parse_index(data, "current-item-index")
        return items, current_index

    async def best_history(self, email: str, password: str, own_history_key: str | None) -> str:
        """Pick the history with the highest latest server index.

        Accounts used from several devices over the years can have stale
        histories next to the live one.
        """
        try:
            keys = await self.history_keys(email, password)
        except BackendAuthError:
            raise
        except BackendError as e:
            logger.warning(f"History keys unavailable, using own history: {e}")
            keys = []

        best_id: str | None = None
        best_index = -1
        for key in keys:
            try:
                meta = await self.history(email, password, key)
                index = parse_index(meta, "latest-server-index")
            except BackendAuthError:
                raise
            except BackendError as e:
                logger.warning(f"Skipping history {key}: {e}")
                continue
            logger.debug(f"History {key}: latest-server-index={index}")
            if index > best_index:
                best_id, best_index = key, index

        if best_id is None:
            if not own_history_key:
                raise BackendError("Account has no usable history")
            return own_history_key
        return best_id

    async def create(self, email: str, password: str) -> ThingsSession:
        """Log in and hydrate a session for ``email``."""
        logger.info(f"Verifying Things Cloud credentials for {mask_email(email)}...")
        account = await self.verify(email, password)
        history_id = await self.best_history(email, password, account.get("history-key"))
        session = ThingsSession(self, email, password, history_id)
        await session.rebuild()
        logger.info(f"Session ready for {mask_email(email)} (history={history_id})")
        return session


def parse_index(data: dict[str, Any], key: str) -> int:
    """Read a server index from a Things Cloud response. Missing means 0."""
    value = data.get(key) or 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise BackendError(f"Malformed {key} from Things Cloud: {value!r}") from None


def mask_email(email: str) -> str:
    """Mask the local part of an email address for logging."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"
