"""
Installation — first step of the bunq handshake.
================================================

Registers the client's RSA public key with bunq and receives an
installation token plus the server public key used to verify every
later response. The call is unsigned and unauthenticated: it is the
public-key exchange itself.
"""

import logging
from dataclasses import dataclass

from pydantic import ValidationError

from bunq_trust.core.errors import ProtocolError
from bunq_trust.models.envelope import ServerPublicKeyPayload, TokenPayload
from bunq_trust.services.bunq_client import BunqClient

logger = logging.getLogger(__name__)

INSTALLATION_PATH = "/installation"


@dataclass(frozen=True)
class InstallationResult:
    token: str
    server_public_key: str = ""


async def create_installation(client: BunqClient, public_key: str) -> InstallationResult:
    """
    POST /installation with the client public key (PEM).

    Raises:
        ProtocolError: the response carried no `Token` element.
    """
    logger.info("Creating installation")

    response = await client.post(INSTALLATION_PATH, {"client_public_key": public_key})

    token = ""
    server_public_key = ""

    raw_token = response.find("Token")
    if raw_token:
        try:
            token = TokenPayload.model_validate(raw_token).token
        except ValidationError:
            token = ""

    raw_server_key = response.find("ServerPublicKey")
    if raw_server_key:
        try:
            server_public_key = ServerPublicKeyPayload.model_validate(raw_server_key).server_public_key
        except ValidationError:
            server_public_key = ""

    if not token:
        logger.error("No installation token in response")
        raise ProtocolError("No installation token received")

    if not server_public_key:
        logger.warning("No server public key in installation response — signature verification will be skipped")

    logger.info("Installation created successfully")
    return InstallationResult(token=token, server_public_key=server_public_key)
