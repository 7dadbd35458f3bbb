"""
Token refresh with single-flight semantics.

However many requests discover an expired credential at the same time, only
one refresh call reaches the authorization server; every caller receives the
outcome of that one call.

States::

    Idle -> Refreshing -> Succeeded -> Idle
                       -> Failed    -> Idle  (credentials cleared, session ended)
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable

import httpx
from anyio.abc import TaskGroup

from securesession.client.credentials import CredentialStore
from securesession.client.csrf import AntiForgeryGuard
from securesession.client.errors import RefreshFailedError, SessionError
from securesession.settings import SessionSettings
from securesession.shared.auth import CredentialMode
from securesession.shared.envelope import CookieGrant, TokenGrant, normalize_token_response
from securesession.shared.singleflight import SharedCall, SingleFlight

logger = logging.getLogger(__name__)

# The shared, in-flight unit of work; at most one exists at a time
RefreshAttempt = SharedCall[bool]

TOKEN_EXPIRED = "token_expired"


class RefreshCoordinator:
    """Performs token refresh; at most one refresh call is in flight at any time."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: CredentialStore,
        guard: AntiForgeryGuard,
        settings: SessionSettings,
        on_session_ended: Callable[[str], Awaitable[None]],
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            client: Interceptor-free client; a refresh call must never trigger a refresh.
            store: Credential store updated on success and cleared on failure.
            guard: Anti-forgery guard, for refresh calls in secure cookie mode.
            settings: Endpoint paths and default token lifetime.
            on_session_ended: Called once per failed attempt with the reason.
            clock: Source of the current time as a POSIX timestamp.
        """
        self.store = store
        self.guard = guard
        self.settings = settings
        self._client = client
        self._on_session_ended = on_session_ended
        self._clock = clock
        self._flight: SingleFlight[bool] = SingleFlight()
        self.refresh_count = 0

    @property
    def in_flight(self) -> bool:
        return self._flight.in_flight

    @property
    def attempt(self) -> RefreshAttempt | None:
        return self._flight.current

    def bind(self, task_group: TaskGroup | None) -> None:
        """Run refresh attempts in the given task group instead of in the first caller."""
        self._flight.bind(task_group)

    async def refresh(self) -> bool:
        """Refresh the credential, joining the attempt already in flight if there is one."""
        return await self._flight.do(self._run, after=self._settled)

    async def _run(self) -> bool:
        logger.debug("Refreshing access token")
        self.refresh_count += 1
        try:
            grant = await self._request_refresh()
            if isinstance(grant, TokenGrant):
                await self.store.set_credential(grant.access_token, grant.refresh_token, grant.expires_in)
            else:
                await self.store.mark_cookie_session(grant.expires_in)
        except (SessionError, httpx.HTTPError) as e:
            logger.warning(f"Token refresh failed: {e}")
            await self.store.clear()
            self.guard.invalidate()
            return False

        logger.debug("Token refresh successful")
        return True

    async def _settled(self, attempt: RefreshAttempt) -> None:
        # The attempt is no longer current here, so handlers may refresh or send requests
        if attempt.error is None and attempt.result is False:
            await self._on_session_ended(TOKEN_EXPIRED)

    async def _request_refresh(self) -> TokenGrant | CookieGrant:
        headers = httpx.Headers()
        if self.store.mode is CredentialMode.LOCAL_FALLBACK:
            refresh_token = self.store.get_refresh_token()
            if not refresh_token:
                raise RefreshFailedError("No refresh token available")
            headers["Authorization"] = f"Bearer {refresh_token}"
        # Otherwise the refresh token travels as an httpOnly cookie

        await self.guard.attach(headers, "POST")

        response = await self._client.post(self.settings.refresh_path, headers=headers)
        if response.status_code != 200:
            raise RefreshFailedError(f"Refresh rejected: HTTP {response.status_code}")

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise RefreshFailedError(f"Refresh response is not JSON: {e}")

        return normalize_token_response(payload, self.settings.default_token_ttl, self._clock())
