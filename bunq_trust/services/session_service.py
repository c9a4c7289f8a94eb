"""
Session Service — third step of the bunq handshake.
===================================================

Opens a session bound to the user behind the API key. Also used on its
own to refresh an expired session: it only needs an existing
installation token and private key, never a new keypair.

The session-server response carries a `Token` element and exactly one
user variant (UserPerson, UserCompany or UserApiKey). Both are required;
a token without an identity is unusable.
"""

import logging
from dataclasses import dataclass

from pydantic import ValidationError

from bunq_trust.core.errors import ProtocolError
from bunq_trust.models.credentials import SessionRecord
from bunq_trust.models.envelope import TokenPayload, UserIdentity, parse_user_identity
from bunq_trust.services.bunq_client import BunqClient, RequestOptions

logger = logging.getLogger(__name__)

SESSION_SERVER_PATH = "/session-server"


@dataclass(frozen=True)
class SessionResult:
    token: str
    user: UserIdentity

    @property
    def user_id(self) -> int:
        return self.user.id

    def to_record(self) -> SessionRecord:
        return SessionRecord(token=self.token, user_id=self.user.id)


async def create_session(
    client: BunqClient,
    installation_token: str,
    api_key: str,
    private_key: str,
) -> SessionResult:
    """
    POST /session-server, signed, authenticated with the installation token.

    Raises:
        ProtocolError: "Invalid session response" when the token or the
            user identity is missing.
    """
    logger.info("Creating session")

    response = await client.post(
        SESSION_SERVER_PATH,
        {"secret": api_key},
        RequestOptions(auth_token=installation_token, sign=True, private_key=private_key),
    )

    token = ""
    user = None

    for item in response:
        if not isinstance(item, dict):
            continue
        if item.get("Token"):
            try:
                token = TokenPayload.model_validate(item["Token"]).token
            except ValidationError:
                pass
        identity = parse_user_identity(item)
        if identity is not None:
            user = identity

    if not token or user is None:
        logger.error("Invalid session response (has_token=%s, has_user=%s)", bool(token), user is not None)
        raise ProtocolError("Invalid session response")

    logger.info("Session created (user_id=%d, kind=%s)", user.id, user.kind)
    return SessionResult(token=token, user=user)
