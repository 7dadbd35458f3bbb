"""One-time migration of credentials written by the deprecated storage scheme."""

import logging
import time
from collections.abc import Callable

from securesession.client.credentials import CredentialStore
from securesession.client.errors import MigrationError
from securesession.client.storage import KeyValueStorage
from securesession.settings import SessionSettings
from securesession.shared.auth import from_iso

logger = logging.getLogger(__name__)


class LegacyMigrationAdapter:
    """
    Moves a token pair found under the deprecated keys into the credential
    store (as a local fallback credential) and erases the deprecated keys.

    Runs at most once per process; later calls are no-ops.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        store: CredentialStore,
        settings: SessionSettings,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.store = store
        self.settings = settings
        self._clock = clock
        self._ran = False
        self.migrated = False

    @property
    def legacy_keys(self) -> tuple[str, str, str]:
        return (
            self.settings.legacy_access_token_key,
            self.settings.legacy_refresh_token_key,
            self.settings.legacy_token_expiry_key,
        )

    async def run(self) -> bool:
        """Migrate legacy credentials; returns True if a credential was carried over."""
        if self._ran:
            return False
        self._ran = True

        access_key, refresh_key, expiry_key = self.legacy_keys
        access_token = await self.storage.get_item(access_key)
        refresh_token = await self.storage.get_item(refresh_key)
        expiry = await self.storage.get_item(expiry_key)

        if access_token is None and refresh_token is None and expiry is None:
            return False

        logger.info("Migrating credentials from legacy token storage")
        try:
            self.migrated = await self._migrate(access_token, refresh_token, expiry)
        except MigrationError as e:
            logger.warning(f"Legacy credential migration failed, re-authentication required: {e}")
        finally:
            for key in self.legacy_keys:
                await self.storage.remove_item(key)

        return self.migrated

    async def _migrate(self, access_token: str | None, refresh_token: str | None, expiry: str | None) -> bool:
        if not (access_token and refresh_token and expiry):
            raise MigrationError("Legacy storage holds an incomplete credential")

        try:
            expires_at = from_iso(expiry)
        except ValueError:
            raise MigrationError(f"Unreadable legacy token expiry {expiry!r}")

        if expires_at <= self._clock():
            logger.info("Legacy credential already expired, discarding it")
            return False

        if self.store.credential is not None and not self.store.is_expired():
            logger.info("A current credential exists, discarding the legacy one")
            return False

        await self.store.set_local_credential(access_token, refresh_token, expires_at)
        logger.info("Legacy credentials migrated successfully")
        return True
