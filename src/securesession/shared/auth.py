from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel


class CredentialMode(str, Enum):
    """Where the session's tokens live."""

    SECURE_COOKIE = "secure_cookie"
    LOCAL_FALLBACK = "local_fallback"


class SessionState(str, Enum):
    """
    Derived view of the session, never stored.
    """

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESH_PENDING = "refresh_pending"
    SESSION_ENDED = "session_ended"


class Credential(BaseModel):
    """
    In-memory mirror of the persisted credential.

    In SECURE_COOKIE mode the tokens are held by the server as httpOnly cookies,
    so access_token and refresh_token are always None; only the expiry and the
    liveness flag are known to the client.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float
    mode: CredentialMode

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


class AntiForgeryToken(BaseModel):
    value: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def from_iso(value: str) -> float:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
