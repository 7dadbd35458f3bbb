"""
The session object: one per process, constructed and disposed by the
application entry point.

Typical usage::

    async with Session(SessionSettings()) as session:
        session.events.subscribe(on_session_ended)
        await session.login("admin@example.com", "secret")
        response = await session.request("GET", "/products")
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from http.cookiejar import CookieJar
from types import TracebackType
from typing import Any

import anyio
import httpx
from anyio.abc import TaskGroup

from securesession.client.auth import SessionAuth
from securesession.client.credentials import CredentialStore
from securesession.client.csrf import AntiForgeryGuard
from securesession.client.errors import CredentialExpiredError, MalformedResponseError, SessionError
from securesession.client.events import ReentrancyGuard, SessionEnded, SessionEvents
from securesession.client.migration import LegacyMigrationAdapter
from securesession.client.refresh import RefreshCoordinator
from securesession.client.storage import FileStorage, InMemoryStorage, KeyValueStorage
from securesession.settings import SessionSettings
from securesession.shared._httpx_utils import create_http_client
from securesession.shared.auth import CredentialMode, SessionState
from securesession.shared.envelope import TokenGrant, normalize_token_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStatus:
    """Snapshot of the session for display and diagnostics."""

    state: SessionState
    authenticated: bool
    mode: CredentialMode
    expires_at: datetime | None
    csrf_enabled: bool


class Session:
    """
    Owns the credential store, anti-forgery guard, refresh coordinator and the
    two HTTP clients: a bare one for authorization calls and one whose every
    request passes through :class:`SessionAuth`.
    """

    def __init__(
        self,
        settings: SessionSettings | None = None,
        storage: KeyValueStorage | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or SessionSettings()
        if storage is None:
            if self.settings.storage_path is not None:
                storage = FileStorage(self.settings.storage_path)
            else:
                storage = InMemoryStorage()
        self.storage = storage
        self.events = SessionEvents()

        self._clock = clock
        self._cookies = CookieJar()
        self._ended = False
        self._initialized = False
        self._task_group: TaskGroup | None = None
        self._end_guard = ReentrancyGuard(self.settings.session_end_cooldown)

        # Refresh and anti-forgery calls go through this client only, never through SessionAuth
        self._bare_client = create_http_client(
            base_url=self.settings.base_url,
            timeout=self.settings.http_timeout(),
            cookies=self._cookies,
            transport=transport,
        )

        self.guard = AntiForgeryGuard(self._bare_client, self.settings, clock=clock)
        self.store = CredentialStore(storage, self._bare_client, self.settings, anti_forgery=self.guard, clock=clock)
        self.coordinator = RefreshCoordinator(
            self._bare_client,
            self.store,
            self.guard,
            self.settings,
            on_session_ended=self._on_refresh_failed,
            clock=clock,
        )
        self.migration = LegacyMigrationAdapter(storage, self.store, self.settings, clock=clock)
        self.auth = SessionAuth(self.store, self.guard, self.coordinator, self.settings, cookies=self._cookies)

        self._client = create_http_client(
            base_url=self.settings.base_url,
            timeout=self.settings.http_timeout(),
            auth=self.auth,
            cookies=self._cookies,
            transport=transport,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        """Client whose requests carry session credentials."""
        return self._client

    async def initialize(self) -> None:
        """Probe server capabilities, restore stored credentials and migrate legacy ones."""
        if self._initialized:
            return

        await self.store.detect_mode()
        await self.guard.initialize()
        await self.store.load()

        try:
            await self.migration.run()
        except Exception:
            logger.exception("Legacy credential migration failed")

        self._initialized = True
        logger.debug(f"Session initialized in {self.store.mode.value} mode")

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._bare_client.aclose()

    async def __aenter__(self) -> "Session":
        # Refresh attempts run in this group so no single caller has to stay for them
        self._task_group = anyio.create_task_group()
        await self._task_group.__aenter__()
        self.coordinator.bind(self._task_group)
        try:
            await self.initialize()
        except BaseException as exc:
            await self.__aexit__(type(exc), exc, exc.__traceback__)
            raise
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        task_group, self._task_group = self._task_group, None
        self.coordinator.bind(None)
        try:
            if task_group is not None:
                # An unfinished refresh is abandoned with the session
                task_group.cancel_scope.cancel()
                await task_group.__aexit__(None, None, None)
        finally:
            await self.aclose()

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request with session credentials.

        Responses unrelated to authorization are returned untouched, whatever
        their status.

        Raises:
            CredentialExpiredError: The server still answered 401 after the
                session tried to recover.
            AntiForgeryRejectedError: The anti-forgery token was rejected twice.
        """
        response = await self._client.request(method, url, **kwargs)
        if response.status_code == 401:
            raise CredentialExpiredError(response)
        return response

    async def login(self, email_or_phone: str, password: str) -> bool:
        """Authenticate with the authorization server; returns False when the login is refused."""
        body = {
            "email_or_phone": email_or_phone,
            "password": password,
            "use_secure_tokens": self.store.mode is CredentialMode.SECURE_COOKIE,
        }
        response = await self._client.post(self.settings.login_path, json=body)
        if not response.is_success:
            logger.warning(f"Login rejected: HTTP {response.status_code}")
            return False

        try:
            grant = normalize_token_response(response.json(), self.settings.default_token_ttl, self._clock())
        except (MalformedResponseError, json.JSONDecodeError) as e:
            logger.warning(f"Login response not understood: {e}")
            return False

        if isinstance(grant, TokenGrant):
            await self.store.set_credential(grant.access_token, grant.refresh_token, grant.expires_in)
        else:
            await self.store.mark_cookie_session(grant.expires_in)

        self._ended = False
        logger.info("Login successful")
        return True

    async def logout(self) -> None:
        """Log out; the server call is best effort, local credentials are always erased."""
        try:
            response = await self._client.post(self.settings.logout_path)
            if not response.is_success:
                logger.warning(f"Logout endpoint returned HTTP {response.status_code}")
        except (httpx.HTTPError, SessionError) as e:
            logger.warning(f"Logout endpoint not available or failed: {e}")
        finally:
            await self.store.clear()
            self.guard.invalidate()
            logger.info("Logged out")

    async def refresh(self) -> bool:
        """Extend the session now instead of waiting for a 401."""
        return await self.coordinator.refresh()

    async def end_session(self, reason: str) -> None:
        """Erase credentials and broadcast session-ended, once per burst of calls."""
        await self._signal_end(reason, clear=True)

    async def _on_refresh_failed(self, reason: str) -> None:
        # The coordinator has already cleared the store
        await self._signal_end(reason, clear=False)

    async def _signal_end(self, reason: str, clear: bool) -> None:
        if self._end_guard.busy:
            logger.debug(f"Already handling session end, skipping: {reason}")
            return

        with self._end_guard.hold():
            self._ended = True
            if clear:
                await self.store.clear()
                self.guard.invalidate()
            await self.events.emit(SessionEnded(reason=reason))
            logger.info(f"Session ended: {reason}")

    @property
    def state(self) -> SessionState:
        if self.coordinator.in_flight:
            return SessionState.REFRESH_PENDING
        if self._ended:
            return SessionState.SESSION_ENDED
        if self.store.credential is not None:
            return SessionState.AUTHENTICATED
        return SessionState.UNAUTHENTICATED

    def status(self) -> SessionStatus:
        credential = self.store.credential
        return SessionStatus(
            state=self.state,
            authenticated=self.store.is_authenticated(),
            mode=self.store.mode,
            expires_at=credential.expires_at_datetime if credential else None,
            csrf_enabled=self.guard.enabled,
        )
