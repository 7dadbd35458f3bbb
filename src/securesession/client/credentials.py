"""
Durable credential storage for the session.

Two modes are supported:

* SECURE_COOKIE: the authorization server keeps the access and refresh tokens
  as httpOnly cookies. Client storage only ever holds the expiry, a liveness
  flag and the mode.
* LOCAL_FALLBACK: both tokens are held in client storage and attached to
  requests as bearer headers. They are always written and erased together.

The mode is probed once at startup. If the server cannot take the tokens as
cookies the store degrades to LOCAL_FALLBACK for the rest of the process,
unless that degradation has been disabled in the settings.
"""

import logging
import time
from collections.abc import Callable
from typing import Protocol

import httpx

from securesession.client.errors import SecureModeUnavailableError
from securesession.client.storage import KeyValueStorage
from securesession.settings import SessionSettings
from securesession.shared.auth import Credential, CredentialMode, from_iso, to_iso

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "session_access_token"
REFRESH_TOKEN_KEY = "session_refresh_token"
TOKEN_EXPIRY_KEY = "token_expiry"
AUTH_STATUS_KEY = "auth_status"
AUTH_MODE_KEY = "auth_mode"

AUTHENTICATED = "authenticated"

ALL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TOKEN_EXPIRY_KEY, AUTH_STATUS_KEY, AUTH_MODE_KEY)


class HeaderAttacher(Protocol):
    async def attach(self, headers: httpx.Headers, method: str) -> None: ...


class CredentialStore:
    """Holds the current credential and keeps client storage in sync with it."""

    def __init__(
        self,
        storage: KeyValueStorage,
        client: httpx.AsyncClient,
        settings: SessionSettings,
        anti_forgery: HeaderAttacher | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            storage: Client-readable storage backend.
            client: Interceptor-free client used for the mode probe and cookie hand-off.
            settings: Endpoint paths and policy switches.
            anti_forgery: Optional guard supplying the anti-forgery header on hand-off calls.
            clock: Source of the current time as a POSIX timestamp.
        """
        self.storage = storage
        self.settings = settings
        self.anti_forgery = anti_forgery
        self._client = client
        self._clock = clock
        self._capability = CredentialMode.LOCAL_FALLBACK
        self._mode_detected = False
        self._credential: Credential | None = None
        self._generation = 0

    @property
    def mode(self) -> CredentialMode:
        """Mode of the current credential, or the probed capability when there is none."""
        if self._credential is not None:
            return self._credential.mode
        return self._capability

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def generation(self) -> int:
        """Counter bumped on every credential write or erase."""
        return self._generation

    @property
    def expires_at(self) -> float | None:
        return self._credential.expires_at if self._credential else None

    async def detect_mode(self) -> CredentialMode:
        """Probe the capability-check endpoint once per process."""
        if self._mode_detected:
            return self._capability

        reason: str
        try:
            response = await self._client.get(self.settings.secure_check_path)
            reason = f"HTTP {response.status_code}"
            secure = response.status_code == 200
        except httpx.HTTPError as e:
            reason = f"{type(e).__name__}: {e}"
            secure = False

        if secure:
            self._capability = CredentialMode.SECURE_COOKIE
            logger.info("Secure token management enabled (httpOnly cookies)")
        else:
            if not self.settings.allow_insecure_fallback:
                raise SecureModeUnavailableError(f"Secure cookie mode check failed ({reason})")
            self._capability = CredentialMode.LOCAL_FALLBACK
            logger.warning(f"Secure cookie mode unavailable ({reason}), using local token storage")

        self._mode_detected = True
        return self._capability

    async def load(self) -> Credential | None:
        """Restore the in-memory credential from storage."""
        access_token = await self.storage.get_item(ACCESS_TOKEN_KEY)
        refresh_token = await self.storage.get_item(REFRESH_TOKEN_KEY)
        expiry = await self.storage.get_item(TOKEN_EXPIRY_KEY)
        status = await self.storage.get_item(AUTH_STATUS_KEY)

        if (access_token is None) != (refresh_token is None):
            logger.warning("Discarding stored credential with only one of the two tokens")
            await self._erase_storage()
            return None

        if status != AUTHENTICATED or expiry is None:
            self._credential = None
            return None

        try:
            expires_at = from_iso(expiry)
        except ValueError:
            logger.warning(f"Discarding stored credential with unreadable expiry {expiry!r}")
            await self._erase_storage()
            return None

        if access_token and refresh_token:
            mode = CredentialMode.LOCAL_FALLBACK
        else:
            mode = CredentialMode.SECURE_COOKIE

        self._credential = Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            mode=mode,
        )
        self._generation += 1
        logger.debug(f"Restored {mode.value} credential expiring at {expiry}")
        return self._credential

    async def set_credential(self, access_token: str, refresh_token: str, ttl_seconds: int) -> Credential:
        """
        Persist a freshly issued token pair.

        In SECURE_COOKIE mode the pair is handed to the server to be set as
        httpOnly cookies. If that fails the pair is kept locally instead and
        the store stays in LOCAL_FALLBACK for the rest of the process.
        """
        expires_at = self._clock() + ttl_seconds

        if self._capability is CredentialMode.SECURE_COOKIE:
            try:
                await self._hand_off(access_token, refresh_token, ttl_seconds)
            except httpx.HTTPError as e:
                if not self.settings.allow_insecure_fallback:
                    raise SecureModeUnavailableError(f"Failed to set secure tokens: {e}") from e
                logger.warning(f"Failed to set secure tokens ({e}), falling back to local token storage")
                self._capability = CredentialMode.LOCAL_FALLBACK
            else:
                return await self._store_secure(expires_at)

        return await self.set_local_credential(access_token, refresh_token, expires_at)

    async def set_local_credential(self, access_token: str, refresh_token: str, expires_at: float) -> Credential:
        """Store a token pair in client storage with an absolute expiry."""
        credential = Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            mode=CredentialMode.LOCAL_FALLBACK,
        )
        await self.storage.set_item(ACCESS_TOKEN_KEY, access_token)
        await self.storage.set_item(REFRESH_TOKEN_KEY, refresh_token)
        await self.storage.set_item(TOKEN_EXPIRY_KEY, to_iso(expires_at))
        await self.storage.set_item(AUTH_STATUS_KEY, AUTHENTICATED)
        await self.storage.set_item(AUTH_MODE_KEY, CredentialMode.LOCAL_FALLBACK.value)
        return self._publish(credential)

    async def mark_cookie_session(self, ttl_seconds: int) -> Credential:
        """Record a session whose cookies were set by the server directly."""
        return await self._store_secure(self._clock() + ttl_seconds)

    async def _store_secure(self, expires_at: float) -> Credential:
        credential = Credential(expires_at=expires_at, mode=CredentialMode.SECURE_COOKIE)
        # Tokens must never linger in client storage once cookies hold them
        await self.storage.remove_item(ACCESS_TOKEN_KEY)
        await self.storage.remove_item(REFRESH_TOKEN_KEY)
        await self.storage.set_item(TOKEN_EXPIRY_KEY, to_iso(expires_at))
        await self.storage.set_item(AUTH_STATUS_KEY, AUTHENTICATED)
        await self.storage.set_item(AUTH_MODE_KEY, CredentialMode.SECURE_COOKIE.value)
        return self._publish(credential)

    def _publish(self, credential: Credential) -> Credential:
        self._credential = credential
        self._generation += 1
        logger.debug(f"Stored {credential.mode.value} credential expiring at {to_iso(credential.expires_at)}")
        return credential

    async def _hand_off(self, access_token: str, refresh_token: str, ttl_seconds: int) -> None:
        headers = httpx.Headers({"Content-Type": "application/json"})
        if self.anti_forgery is not None:
            await self.anti_forgery.attach(headers, "POST")

        response = await self._client.post(
            self.settings.set_secure_tokens_path,
            json={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": ttl_seconds,
            },
            headers=headers,
        )
        response.raise_for_status()
        logger.debug("Tokens set as httpOnly cookies")

    def get_bearer_token(self) -> str | None:
        """The access token to send as a bearer header; always None in SECURE_COOKIE mode."""
        if self._credential is None or self._credential.mode is not CredentialMode.LOCAL_FALLBACK:
            return None
        return self._credential.access_token

    def get_refresh_token(self) -> str | None:
        if self._credential is None or self._credential.mode is not CredentialMode.LOCAL_FALLBACK:
            return None
        return self._credential.refresh_token

    def is_expired(self) -> bool:
        if self._credential is None:
            return True
        return self._credential.is_expired(self._clock())

    def is_authenticated(self) -> bool:
        return not self.is_expired()

    async def clear(self) -> None:
        """
        Erase the credential from memory, storage and (in SECURE_COOKIE mode) the
        server's cookies. Safe to call repeatedly; never raises.
        """
        had_cookies = self.mode is CredentialMode.SECURE_COOKIE
        self._credential = None
        self._generation += 1

        if had_cookies:
            try:
                response = await self._client.post(self.settings.clear_secure_tokens_path)
                response.raise_for_status()
                logger.debug("Secure tokens cleared")
            except Exception as e:
                logger.warning(f"Failed to clear secure tokens on the server: {e}")

        self._client.cookies.clear()
        await self._erase_storage()

    async def _erase_storage(self) -> None:
        for key in ALL_KEYS:
            try:
                await self.storage.remove_item(key)
            except Exception:
                logger.exception(f"Failed to remove {key} from credential storage")
