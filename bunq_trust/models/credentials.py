"""
Credential records for the bunq trust handshake.

A session is always a child of an installation: InstallationRecord holds
the keypair, installation token, server public key and device id, and
nests the short-lived SessionRecord so a refresh can swap only the inner
record while installation-level fields stay untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class SessionRecord:
    token: str
    user_id: int


@dataclass(frozen=True)
class InstallationRecord:
    installation_token: str
    private_key: str
    public_key: str = ""
    # Empty when the installation response omitted it; verification is then skipped
    server_public_key: str = ""
    device_id: Optional[int] = None
    session: Optional[SessionRecord] = None

    def with_session(self, session: SessionRecord) -> InstallationRecord:
        return replace(self, session=session)


@dataclass(frozen=True)
class StoredCredentials:
    """Raw view of what the credential store holds; any field may be missing."""

    rsa_public_key: Optional[str] = None
    rsa_private_key: Optional[str] = None
    installation_token: Optional[str] = None
    server_public_key: Optional[str] = None
    device_id: Optional[str] = None
    session_token: Optional[str] = None
    user_id: Optional[str] = None
    api_key_fingerprint: Optional[str] = None

    @property
    def has_completed_setup(self) -> bool:
        """Installation done and device registered."""
        return bool(self.installation_token and self.device_id)

    @property
    def is_configured(self) -> bool:
        """A session is available for business calls."""
        return bool(self.session_token and self.user_id)

    def installation(self) -> Optional[InstallationRecord]:
        """Rebuild the installation record, or None if it cannot back a session."""
        if not self.installation_token or not self.rsa_private_key:
            return None

        session = None
        if self.session_token and self.user_id and self.user_id.isdigit():
            session = SessionRecord(token=self.session_token, user_id=int(self.user_id))

        return InstallationRecord(
            installation_token=self.installation_token,
            private_key=self.rsa_private_key,
            public_key=self.rsa_public_key or "",
            server_public_key=self.server_public_key or "",
            device_id=int(self.device_id) if self.device_id and self.device_id.isdigit() else None,
            session=session,
        )
