"""
Session Orchestrator — lifecycle of the bunq trust handshake.
=============================================================

Decides, for every command invocation, whether stored credentials can be
reused, the session only needs refreshing, or the full handshake has to
run again:

    uninitialized → installed → device_registered → session_active
                                                   ↳ (stale) → refresh → session_active
                                                   ↳ (installation gone) → uninitialized

- perform_full_setup(): keypair → installation → device → session. The only
  path that creates a keypair.
- refresh_session(): new session on the existing installation; falls back
  to a full setup when the installation token or private key is missing
  or the installation was stored under another API key.
- Overlapping refresh/setup calls share one in-flight task, and a lock
  keeps credential writes of different attempts from interleaving.
- Results are committed only after every network call of an attempt has
  succeeded, so a cancelled or failed attempt persists nothing.

API-key rotation (fingerprint mismatch) clears every credential and
starts over from uninitialized. This is an assumed policy: the stored
session cannot be trusted to belong to the new key.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from bunq_trust.config import settings
from bunq_trust.core.crypto import generate_rsa_keypair
from bunq_trust.core.errors import ApiError, ConfigurationError, needs_full_setup
from bunq_trust.models.credentials import InstallationRecord
from bunq_trust.models.envelope import BunqResponse
from bunq_trust.services.bunq_client import BunqClient, RequestOptions
from bunq_trust.services.credential_repository import CredentialRepository
from bunq_trust.services.credential_store import CredentialStore, FileCredentialStore
from bunq_trust.services.installation_service import create_installation
from bunq_trust.services.registration_service import register_device
from bunq_trust.services.session_service import create_session

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Valid states
UNINITIALIZED = "uninitialized"
INSTALLED = "installed"
DEVICE_REGISTERED = "device_registered"
SESSION_ACTIVE = "session_active"


@dataclass(frozen=True)
class SessionCredentials:
    """What a business call needs: token, identity and the keys for signing/verifying."""

    session_token: str
    user_id: int
    private_key: str
    server_public_key: str = ""

    @classmethod
    def from_record(cls, record: InstallationRecord) -> SessionCredentials:
        if record.session is None:
            raise ValueError("Installation record has no session")
        return cls(
            session_token=record.session.token,
            user_id=record.session.user_id,
            private_key=record.private_key,
            server_public_key=record.server_public_key,
        )


class SessionOrchestrator:
    """Owns the credential lifecycle for one API key and environment."""

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        client: Optional[BunqClient] = None,
        *,
        api_key: Optional[str] = None,
        environment: Optional[str] = None,
        min_refresh_interval: Optional[float] = None,
    ):
        self._client = client or BunqClient(environment)
        self._environment = environment or self._client.environment
        self._repository = CredentialRepository(
            store or FileCredentialStore(settings.credential_path, settings.secret_key),
            self._environment,
        )
        self._api_key = api_key if api_key is not None else settings.api_key
        self._min_refresh_interval = (
            min_refresh_interval if min_refresh_interval is not None else settings.min_refresh_interval_s
        )

        self._credentials: Optional[SessionCredentials] = None
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Future] = None
        self._setup_task: Optional[asyncio.Future] = None
        self._last_refresh: Optional[float] = None

    @property
    def environment(self) -> str:
        return self._environment

    @property
    def repository(self) -> CredentialRepository:
        return self._repository

    @property
    def credentials(self) -> Optional[SessionCredentials]:
        return self._credentials

    def _require_api_key(self) -> str:
        if not self._api_key:
            logger.error("API key not configured")
            raise ConfigurationError("API key not configured. Set BUNQ_API_KEY or pass api_key.")
        return self._api_key

    async def _commit(self, write: Awaitable[None]) -> None:
        """Run a credential write to completion even if the caller is cancelled meanwhile."""
        commit = asyncio.ensure_future(write)
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            # Hold the lock until the record is fully written, then propagate
            await commit
            raise

    # -------------------------------------------------------------------------
    # Handshake
    # -------------------------------------------------------------------------

    async def perform_full_setup(self) -> SessionCredentials:
        """
        Run the full three-step handshake with a new keypair and persist
        every resulting field.

        Raises:
            ConfigurationError: no API key, before any network call.
        """
        api_key = self._require_api_key()
        async with self._lock:
            return await self._full_setup_locked(api_key)

    async def _full_setup_locked(self, api_key: str) -> SessionCredentials:
        logger.info("Performing full setup")

        logger.debug("Generating RSA key pair")
        keypair = generate_rsa_keypair(settings.rsa_key_size)

        installation = await create_installation(self._client, keypair.public_key)
        device_id = await register_device(self._client, installation.token, api_key, keypair.private_key)
        session = await create_session(self._client, installation.token, api_key, keypair.private_key)

        record = InstallationRecord(
            installation_token=installation.token,
            private_key=keypair.private_key,
            public_key=keypair.public_key,
            server_public_key=installation.server_public_key,
            device_id=device_id,
            session=session.to_record(),
        )
        await self._commit(self._repository.save_installation(record, api_key))

        self._credentials = SessionCredentials.from_record(record)
        self._last_refresh = time.monotonic()
        logger.info("Full setup completed successfully")
        return self._credentials

    async def refresh_session(self) -> SessionCredentials:
        """
        Open a new session on the stored installation, replacing only the
        session token and user id. Falls back to a full setup when the
        installation token or private key is missing, or when the stored
        installation belongs to a different API key.
        """
        api_key = self._require_api_key()
        async with self._lock:
            if await self._repository.key_rotated(api_key):
                logger.warning("API key changed since the installation was stored, performing full setup")
                self._credentials = None
                self._last_refresh = None
                return await self._full_setup_locked(api_key)

            stored = await self._repository.load()
            record = stored.installation()
            if record is None:
                logger.info("Missing installation credentials, performing full setup")
                return await self._full_setup_locked(api_key)

            logger.info("Refreshing session")
            session = await create_session(self._client, record.installation_token, api_key, record.private_key)
            await self._commit(self._repository.save_session(session.to_record()))

            self._credentials = SessionCredentials.from_record(record.with_session(session.to_record()))
            self._last_refresh = time.monotonic()
            logger.info("Session refreshed successfully")
            return self._credentials

    # -------------------------------------------------------------------------
    # Coalesced entry points
    # -------------------------------------------------------------------------

    async def _coalesce(self, slot: str, operation: Callable[[], Awaitable[SessionCredentials]]) -> SessionCredentials:
        task = getattr(self, slot)
        if task is not None and not task.done():
            logger.debug("%s already in progress, waiting for it", slot.strip("_"))
        else:
            task = asyncio.ensure_future(operation())
            setattr(self, slot, task)
            task.add_done_callback(functools.partial(self._release, slot))
        # A cancelled waiter must not cancel the attempt other callers share
        return await asyncio.shield(task)

    def _release(self, slot: str, task: asyncio.Future) -> None:
        if getattr(self, slot) is task:
            setattr(self, slot, None)
        if not task.cancelled():
            # Consume the exception; every waiter already received it
            task.exception()

    def _recently_refreshed(self) -> bool:
        if self._last_refresh is None:
            return False
        return time.monotonic() - self._last_refresh < self._min_refresh_interval

    async def refresh_session_coalesced(self) -> SessionCredentials:
        """refresh_session() with concurrent callers sharing one attempt."""
        in_flight = self._refresh_task is not None and not self._refresh_task.done()
        if not in_flight and self._recently_refreshed():
            current = await self._stored_session()
            if current is not None:
                logger.debug("Session was recently refreshed, returning current credentials")
                return current
        return await self._coalesce("_refresh_task", self.refresh_session)

    async def perform_full_setup_coalesced(self) -> SessionCredentials:
        """perform_full_setup() with concurrent callers sharing one attempt."""
        self._require_api_key()
        return await self._coalesce("_setup_task", self.perform_full_setup)

    async def refresh_session_with_fallback(self) -> SessionCredentials:
        """Refresh; if bunq rejects the installation itself (401/403/466), set up from scratch."""
        try:
            return await self.refresh_session_coalesced()
        except ApiError as exc:
            if not needs_full_setup(exc):
                raise
            logger.warning("Session refresh failed with %d, attempting full setup", exc.status_code)
            return await self.perform_full_setup_coalesced()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _stored_session(self) -> Optional[SessionCredentials]:
        if self._credentials is not None:
            return self._credentials
        stored = await self._repository.load()
        record = stored.installation()
        if record is None or record.session is None:
            return None
        return SessionCredentials.from_record(record)

    async def _clear_if_key_rotated(self) -> None:
        if await self._repository.credentials_match(self._api_key):
            return
        logger.warning("API key changed since credentials were stored — clearing all credentials")
        async with self._lock:
            await self._commit(self._repository.clear())
            self._reset()

    async def ensure_session(self) -> SessionCredentials:
        """
        Connect: clear credentials of a rotated API key, then refresh the
        existing installation or run the first-time setup.
        """
        self._require_api_key()
        await self._clear_if_key_rotated()

        stored = await self._repository.load()
        if stored.has_completed_setup:
            logger.info("Refreshing session to get fresh token")
            return await self.refresh_session_with_fallback()

        logger.info("Performing first-time setup")
        return await self.perform_full_setup_coalesced()

    async def _session_for_request(self) -> SessionCredentials:
        if self._credentials is not None:
            return self._credentials

        self._require_api_key()
        await self._clear_if_key_rotated()
        current = await self._stored_session()
        if current is not None:
            # Possibly stale; a 401 triggers the refresh
            self._credentials = current
            return current
        return await self.ensure_session()

    def _reset(self) -> None:
        self._credentials = None
        self._last_refresh = None
        self._refresh_task = None
        self._setup_task = None

    async def logout(self) -> None:
        """Clear every stored credential. Does not reconnect."""
        logger.info("Logging out")
        async with self._lock:
            await self._commit(self._repository.clear())
            self._reset()

    async def reconnect(self) -> SessionCredentials:
        """Clear every stored credential and run a fresh full setup."""
        logger.info("Reconnecting")
        await self.logout()
        return await self.perform_full_setup_coalesced()

    async def current_state(self) -> str:
        stored = await self._repository.load()
        if stored.is_configured and stored.installation() is not None:
            return SESSION_ACTIVE
        if stored.has_completed_setup:
            return DEVICE_REGISTERED
        if stored.installation_token:
            return INSTALLED
        return UNINITIALIZED

    # -------------------------------------------------------------------------
    # Business calls
    # -------------------------------------------------------------------------

    def request_options(
        self,
        credentials: Optional[SessionCredentials] = None,
        *,
        sign: bool = False,
        verify_signature: Optional[bool] = None,
    ) -> RequestOptions:
        credentials = credentials or self._credentials
        if credentials is None:
            return RequestOptions(sign=sign, verify_signature=verify_signature)
        return RequestOptions(
            auth_token=credentials.session_token,
            sign=sign,
            private_key=credentials.private_key,
            server_public_key=credentials.server_public_key or None,
            verify_signature=verify_signature,
        )

    async def with_session_refresh(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run `operation`; on a 401 refresh the session once and retry once.
        A second failure propagates unchanged.
        """
        try:
            return await operation()
        except ApiError as exc:
            if not exc.is_authentication_error:
                raise
            logger.info("Operation failed with 401, refreshing session and retrying")
            await self.refresh_session_with_fallback()
            return await operation()

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        sign: bool = False,
        verify_signature: Optional[bool] = None,
    ) -> BunqResponse:
        """Authenticated business call with the current session."""

        async def operation() -> BunqResponse:
            credentials = await self._session_for_request()
            options = self.request_options(credentials, sign=sign, verify_signature=verify_signature)
            return await self._client.request(method, path, body, options)

        return await self.with_session_refresh(operation)

    async def get(self, path: str, **kwargs: Any) -> BunqResponse:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, body: Any, **kwargs: Any) -> BunqResponse:
        return await self.request("POST", path, body, **kwargs)

    async def put(self, path: str, body: Any, **kwargs: Any) -> BunqResponse:
        return await self.request("PUT", path, body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> BunqResponse:
        return await self.request("DELETE", path, **kwargs)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------
_orchestrator: Optional[SessionOrchestrator] = None


def get_session_orchestrator() -> SessionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SessionOrchestrator()
    return _orchestrator
