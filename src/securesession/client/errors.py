import httpx
from pydantic import ValidationError


class SessionError(Exception):
    """Base exception for credential-layer errors."""

    pass


class CredentialExpiredError(SessionError):
    """Raised when a 401 could not be recovered by refreshing the session."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"Credentials rejected for {response.request.method} {response.request.url.path}")
        self.response = response


class AntiForgeryRejectedError(SessionError):
    """Raised when the server rejects the anti-forgery token a second time for one request."""

    def __init__(self, response: httpx.Response):
        super().__init__(
            f"Anti-forgery token rejected twice for {response.request.method} {response.request.url.path}"
        )
        self.response = response


class RefreshFailedError(SessionError):
    """Raised when the refresh call fails; fatal for the session."""

    pass


class MalformedResponseError(SessionError):
    """Raised when an authorization server payload has an unexpected shape."""

    pass


class MigrationError(SessionError):
    """Raised when legacy credentials cannot be migrated."""

    pass


class SecureModeUnavailableError(SessionError):
    """
    Raised when secure cookie mode cannot be used and degrading to local
    storage has been disallowed by configuration.
    """

    pass


def stringify_pydantic_error(validation_error: ValidationError) -> str:
    return "\n".join(f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}" for e in validation_error.errors())
