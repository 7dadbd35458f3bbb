"""Utilities for creating standardized httpx AsyncClient instances."""

from http.cookiejar import CookieJar
from typing import Any, Protocol

import httpx

__all__ = ["create_http_client", "HttpClientFactory"]


class HttpClientFactory(Protocol):
    def __call__(
        self,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
        cookies: CookieJar | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient: ...


def create_http_client(
    base_url: str = "",
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    cookies: CookieJar | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient.

    Every client follows redirects and defaults to a 30 second timeout. Passing
    the same ``CookieJar`` to several clients makes them share cookies, which is
    how the bare transport and the intercepted one see the same httpOnly
    session cookies.

    Args:
        base_url: Origin (and path prefix) that relative request URLs resolve against.
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object.
        auth: Optional authentication handler.
        cookies: Optional cookie jar, shared rather than copied.
        transport: Optional transport, mainly for tests.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {
        "base_url": base_url,
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else httpx.Timeout(30.0),
    }

    if headers is not None:
        kwargs["headers"] = headers

    if auth is not None:
        kwargs["auth"] = auth

    if cookies is not None:
        kwargs["cookies"] = cookies

    if transport is not None:
        kwargs["transport"] = transport

    return httpx.AsyncClient(**kwargs)
