"""
Request authorization for HTTPX.

Attaches session credentials to every outbound request and recovers locally
from the two credential failures the backend reports:

* 401: refresh the session (shared with any concurrent refresh) and retry once.
* 403 flagged as an anti-forgery rejection: fetch a new token and retry once.

Each recovery path runs at most once per request, so a request is sent at most
three times before its outcome reaches the caller.
"""

import logging
from collections.abc import AsyncGenerator
from http.cookiejar import CookieJar

import httpx

from securesession.client.credentials import CredentialStore
from securesession.client.csrf import AntiForgeryGuard
from securesession.client.errors import AntiForgeryRejectedError
from securesession.client.refresh import RefreshCoordinator
from securesession.settings import SessionSettings

logger = logging.getLogger(__name__)


class SessionAuth(httpx.Auth):
    """
    Authentication for httpx backed by the session's credential store.
    Handles refresh on 401 and anti-forgery token renewal on rejection.
    """

    requires_response_body = True

    def __init__(
        self,
        store: CredentialStore,
        guard: AntiForgeryGuard,
        coordinator: RefreshCoordinator,
        settings: SessionSettings,
        cookies: CookieJar | None = None,
    ):
        self.store = store
        self.guard = guard
        self.coordinator = coordinator
        self.settings = settings
        self._cookies = cookies

    def _is_refresh_excluded(self, request: httpx.Request) -> bool:
        # A 401 from these endpoints must not start a refresh, or logout could loop forever
        path = request.url.path
        return any(
            self.settings.matches(path, endpoint)
            for endpoint in (self.settings.logout_path, self.settings.login_path, self.settings.refresh_path)
        )

    def _attach_bearer(self, request: httpx.Request, replace: bool = False) -> int:
        """Set the bearer header in fallback mode; returns the credential generation it was taken from."""
        token = self.store.get_bearer_token()
        if token and not self.store.is_expired():
            request.headers["Authorization"] = f"Bearer {token}"
        elif replace and "Authorization" in request.headers:
            del request.headers["Authorization"]
        return self.store.generation

    def _sync_cookies(self, request: httpx.Request) -> None:
        """Rebuild the Cookie header from the shared jar before a retry."""
        if self._cookies is None:
            return
        if "Cookie" in request.headers:
            del request.headers["Cookie"]
        httpx.Cookies(self._cookies).set_cookie_header(request)

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        """HTTPX auth flow integration."""
        generation = self._attach_bearer(request)
        await self.guard.attach(request.headers, request.method)

        response = yield request

        anti_forgery_retried = False
        credential_retried = False
        while True:
            # Overriding async_auth_flow skips httpx's own body read
            await response.aread()

            if self.guard.is_rejection(response):
                if anti_forgery_retried:
                    raise AntiForgeryRejectedError(response)

                anti_forgery_retried = True
                logger.warning(f"Anti-forgery token rejected for {request.method} {request.url.path}, retrying")
                self.guard.invalidate()
                await self.guard.attach(request.headers, request.method)
                self._sync_cookies(request)
                response = yield request
                continue

            if response.status_code == 401 and not credential_retried and not self._is_refresh_excluded(request):
                credential_retried = True

                if self.store.generation != generation:
                    if self.store.credential is None:
                        # The session was cleared while this request was in flight
                        return
                    logger.debug("Credential renewed while request was in flight, retrying without refresh")
                elif not await self.coordinator.refresh():
                    return

                generation = self._attach_bearer(request, replace=True)
                self._sync_cookies(request)
                response = yield request
                continue

            return
