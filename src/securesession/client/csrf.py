"""
Anti-forgery (CSRF) token handling.

The guard fetches a short-lived token from the server, caches it until it
expires or the server rejects it, and attaches it to state-changing requests.
"""

import json
import logging
import time
from collections.abc import Callable

import httpx

from securesession.client.errors import MalformedResponseError
from securesession.settings import SessionSettings
from securesession.shared.auth import AntiForgeryToken
from securesession.shared.envelope import error_code, normalize_csrf_response
from securesession.shared.singleflight import SingleFlight

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class AntiForgeryGuard:
    """Owns the anti-forgery token; nothing outside the guard ever sees it."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: SessionSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._client = client
        self._clock = clock
        self._enabled = settings.csrf_enabled
        self._token: AntiForgeryToken | None = None
        self._flight: SingleFlight[AntiForgeryToken | None] = SingleFlight()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def header_name(self) -> str:
        return self.settings.csrf_header_name

    def disable(self) -> None:
        """Turn protection off for the rest of the process."""
        self._enabled = False
        self._token = None

    async def initialize(self) -> None:
        """Probe the anti-forgery endpoint; protection is disabled if the backend lacks it."""
        if not self._enabled:
            logger.debug("Anti-forgery protection disabled by configuration")
            return

        try:
            response = await self._client.get(self.settings.csrf_token_path, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.warning(f"Anti-forgery initialization failed ({e}), protection disabled")
            self.disable()
            return

        if not response.is_success:
            logger.warning(f"Anti-forgery endpoint not available (HTTP {response.status_code}), protection disabled")
            self.disable()
            return

        try:
            self._token = normalize_csrf_response(response.json())
            logger.debug("Anti-forgery protection initialized")
        except (MalformedResponseError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable anti-forgery token: {e}")

    async def get_token(self) -> str | None:
        """Return a valid token, fetching one if the cache is empty or expired."""
        if not self._enabled:
            return None

        token = self._token
        if token is not None and not token.is_expired(self._clock()):
            return token.value

        fetched = await self._flight.do(self._fetch)
        return fetched.value if fetched is not None else None

    async def _fetch(self) -> AntiForgeryToken | None:
        try:
            response = await self._client.get(self.settings.csrf_token_path, headers={"Accept": "application/json"})
            response.raise_for_status()
            token = normalize_csrf_response(response.json())
        except (httpx.HTTPError, MalformedResponseError, json.JSONDecodeError) as e:
            logger.error(f"Failed to fetch anti-forgery token: {e}")
            return None

        if not self._enabled:
            return None

        self._token = token
        logger.debug("Fetched new anti-forgery token")
        return token

    async def attach(self, headers: httpx.Headers, method: str) -> None:
        """Set the anti-forgery header for state-changing methods."""
        if not self._enabled or method.upper() in SAFE_METHODS:
            return

        token = await self.get_token()
        if token is not None:
            headers[self.header_name] = token

    def invalidate(self) -> None:
        """Drop the cached token so the next request fetches a new one."""
        self._token = None

    def is_rejection(self, response: httpx.Response) -> bool:
        """Whether the server refused the request because of the anti-forgery token."""
        if not self._enabled or response.status_code != 403:
            return False

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return False

        return error_code(payload) == self.settings.csrf_rejection_code
