from pathlib import Path

import httpx
from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SessionSettings(BaseSettings):
    """Settings for the session core, read from SECURESESSION_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="SECURESESSION_")

    api_base_url: AnyHttpUrl = Field(
        AnyHttpUrl("http://localhost:8090/api/v1"),
        description="API origin and path prefix that every endpoint path is resolved against.",
    )
    timeout: float = 30.0

    # Authorization server endpoints, relative to api_base_url
    login_path: str = "/auth/login"
    logout_path: str = "/auth/logout"
    refresh_path: str = "/auth/refresh"
    secure_check_path: str = "/auth/secure-check"
    set_secure_tokens_path: str = "/auth/set-secure-tokens"
    clear_secure_tokens_path: str = "/auth/clear-secure-tokens"
    csrf_token_path: str = "/csrf-token"

    # Anti-forgery protection
    csrf_enabled: bool = True
    csrf_header_name: str = "X-CSRF-Token"
    csrf_rejection_code: str = "csrf_token_invalid"

    # Degrade from secure cookies to client-held tokens when the server cannot set cookies
    allow_insecure_fallback: bool = True

    default_token_ttl: int = Field(3600, ge=0, description="Lifetime assumed when a token response carries none.")
    session_end_cooldown: float = Field(
        0.1, ge=0, description="Seconds during which a repeated session end is ignored."
    )

    storage_path: Path | None = None

    # Keys of the deprecated storage scheme
    legacy_access_token_key: str = "legacy_access_token"
    legacy_refresh_token_key: str = "legacy_refresh_token"
    legacy_token_expiry_key: str = "legacy_token_expiry"

    @property
    def base_url(self) -> str:
        return str(self.api_base_url)

    def http_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeout)

    def matches(self, path: str, endpoint: str) -> bool:
        """Check whether a request path targets the given endpoint path under the API base path."""
        prefix = (self.api_base_url.path or "").rstrip("/")
        if not path.startswith(prefix + "/"):
            return False
        return path[len(prefix) :].rstrip("/") == endpoint.rstrip("/")
