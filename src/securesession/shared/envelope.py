"""
Normalization of authorization server payloads.

The backend answers either with a wrapped envelope::

    {"success": true, "data": {"access_token": "...", ...}, "message": "..."}

or with the bare payload. Token lifetimes arrive either as ``expires_in``
(seconds) or as an absolute ``token_expiry`` timestamp. Everything past this
module sees a single tagged union.
"""

import logging
import math
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from securesession.client.errors import MalformedResponseError, stringify_pydantic_error
from securesession.shared.auth import AntiForgeryToken, from_iso

logger = logging.getLogger(__name__)


class ApiEnvelope(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    message: str | None = None
    error: str | None = None

    model_config = ConfigDict(extra="allow")


class TokenGrant(BaseModel):
    """Tokens handed to the client."""

    kind: Literal["tokens"] = "tokens"
    access_token: str = Field(..., min_length=1)
    refresh_token: str = Field(..., min_length=1)
    expires_in: int = Field(..., ge=0)


class CookieGrant(BaseModel):
    """The server set the tokens as httpOnly cookies; only the lifetime is known."""

    kind: Literal["cookie"] = "cookie"
    expires_in: int = Field(..., ge=0)


AuthGrant = Annotated[TokenGrant | CookieGrant, Field(discriminator="kind")]

_grant_adapter: TypeAdapter[TokenGrant | CookieGrant] = TypeAdapter(AuthGrant)


def is_envelope(payload: Any) -> bool:
    return isinstance(payload, dict) and "success" in payload


def unwrap(payload: Any) -> dict[str, Any]:
    """Return the data part of a payload, wrapped or not."""
    if not isinstance(payload, dict):
        raise MalformedResponseError(f"Expected a JSON object, got {type(payload).__name__}")

    if not is_envelope(payload):
        return payload

    try:
        envelope = ApiEnvelope.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid response envelope: {stringify_pydantic_error(e)}")

    if not envelope.success:
        raise MalformedResponseError(envelope.message or envelope.error or "Server reported failure")

    return envelope.data or {}


def error_code(payload: Any) -> str | None:
    """Extract the machine-readable error code from an error body, if any."""
    if not isinstance(payload, dict):
        return None
    code = payload.get("error")
    if code is None and isinstance(payload.get("data"), dict):
        code = payload["data"].get("error")
    return code if isinstance(code, str) else None


def _expires_in(data: dict[str, Any], default_ttl: int, now: float) -> int:
    if data.get("expires_in") is not None:
        try:
            return max(0, int(data["expires_in"]))
        except (TypeError, ValueError):
            raise MalformedResponseError(f"Invalid expires_in: {data['expires_in']!r}")

    token_expiry = data.get("token_expiry")
    if token_expiry:
        try:
            return max(0, math.floor(from_iso(str(token_expiry)) - now))
        except ValueError:
            logger.warning(f"Failed to parse token_expiry {token_expiry!r}, using default lifetime")

    return default_ttl


def normalize_token_response(payload: Any, default_ttl: int, now: float) -> TokenGrant | CookieGrant:
    """Turn a login or refresh response into a grant."""
    data = unwrap(payload)
    has_tokens = bool(data.get("access_token") or data.get("refresh_token"))

    if not has_tokens and not is_envelope(payload):
        raise MalformedResponseError("Token response carries neither tokens nor a success flag")

    candidate = {
        **data,
        "kind": "tokens" if has_tokens else "cookie",
        "expires_in": _expires_in(data, default_ttl, now),
    }
    try:
        return _grant_adapter.validate_python(candidate)
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid token response: {stringify_pydantic_error(e)}")


class _CsrfPayload(BaseModel):
    csrf_token: str = Field(..., min_length=1)
    expires_at: str


def normalize_csrf_response(payload: Any) -> AntiForgeryToken:
    data = unwrap(payload)
    try:
        parsed = _CsrfPayload.model_validate(data)
        return AntiForgeryToken(value=parsed.csrf_token, expires_at=from_iso(parsed.expires_at))
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid anti-forgery token response: {stringify_pydantic_error(e)}")
    except ValueError:
        raise MalformedResponseError(f"Invalid anti-forgery token expiry: {data.get('expires_at')!r}")
