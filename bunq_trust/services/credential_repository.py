"""
Credential Repository — maps credential records onto the key/value store.
=========================================================================

Keys are namespaced per environment (bunq.<environment>.<field>) so sandbox
and production credentials never mix. Installation-level writes always
replace the whole record; session refreshes touch only the session fields.
"""

from __future__ import annotations

import logging
from typing import Optional

from bunq_trust.core.crypto import sha256_hex
from bunq_trust.models.credentials import InstallationRecord, SessionRecord, StoredCredentials
from bunq_trust.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

# Persist order for a full setup. Fields are written as one batch, so a
# failed write never leaves fields of two installations side by side.
FIELDS = (
    "rsa_public_key",
    "rsa_private_key",
    "installation_token",
    "server_public_key",
    "device_id",
    "session_token",
    "user_id",
    "api_key_fingerprint",
)


def api_key_fingerprint(api_key: str) -> str:
    """SHA-256 of the API key; lets us detect rotation without storing the key."""
    if not api_key:
        return ""
    return sha256_hex(api_key)


class CredentialRepository:
    def __init__(self, store: CredentialStore, environment: str):
        self._store = store
        self._environment = environment

    @property
    def environment(self) -> str:
        return self._environment

    def key(self, field: str) -> str:
        return f"bunq.{self._environment}.{field}"

    async def load(self) -> StoredCredentials:
        values = {}
        for field in FIELDS:
            values[field] = await self._store.get_item(self.key(field))
        return StoredCredentials(**values)

    async def save_installation(self, record: InstallationRecord, api_key: str) -> None:
        """Replace the whole installation record, fingerprint included, in one store batch."""
        if record.session is None:
            raise ValueError("Installation record has no session to persist")

        values = {
            "rsa_public_key": record.public_key,
            "rsa_private_key": record.private_key,
            "installation_token": record.installation_token,
            "server_public_key": record.server_public_key,
            "device_id": "" if record.device_id is None else str(record.device_id),
            "session_token": record.session.token,
            "user_id": str(record.session.user_id),
            "api_key_fingerprint": api_key_fingerprint(api_key),
        }
        await self._store.set_items({self.key(field): values[field] for field in FIELDS})
        logger.debug("Installation credentials stored for %s", self._environment)

    async def save_session(self, session: SessionRecord) -> None:
        await self._store.set_items({
            self.key("session_token"): session.token,
            self.key("user_id"): str(session.user_id),
        })
        logger.debug("Session credentials stored for %s", self._environment)

    async def clear(self) -> None:
        await self._store.remove_items([self.key(field) for field in FIELDS])
        logger.info("All %s credentials cleared", self._environment)

    async def credentials_match(self, api_key: Optional[str]) -> bool:
        """
        Check that stored credentials were created with the configured API key.

        Returns False when the key changed, or when an installation exists
        without a fingerprint (state from before fingerprints were stored).
        """
        stored_fingerprint = await self._store.get_item(self.key("api_key_fingerprint"))
        installation_token = await self._store.get_item(self.key("installation_token"))

        if not stored_fingerprint:
            # First run (nothing stored) matches; an unfingerprinted installation does not
            return not installation_token

        return stored_fingerprint == api_key_fingerprint(api_key or "")

    async def key_rotated(self, api_key: Optional[str]) -> bool:
        """True only when a stored fingerprint exists and belongs to a different key."""
        stored_fingerprint = await self._store.get_item(self.key("api_key_fingerprint"))
        if not stored_fingerprint:
            return False
        return stored_fingerprint != api_key_fingerprint(api_key or "")
