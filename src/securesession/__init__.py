from securesession.client.errors import (
    AntiForgeryRejectedError,
    CredentialExpiredError,
    MalformedResponseError,
    SecureModeUnavailableError,
    SessionError,
)
from securesession.client.events import SessionEnded
from securesession.client.session import Session, SessionStatus
from securesession.client.storage import FileStorage, InMemoryStorage, KeyValueStorage
from securesession.settings import SessionSettings
from securesession.shared.auth import CredentialMode, SessionState

__all__ = [
    "AntiForgeryRejectedError",
    "CredentialExpiredError",
    "CredentialMode",
    "FileStorage",
    "InMemoryStorage",
    "KeyValueStorage",
    "MalformedResponseError",
    "SecureModeUnavailableError",
    "Session",
    "SessionEnded",
    "SessionError",
    "SessionSettings",
    "SessionState",
    "SessionStatus",
]
