"""
bunq Device Registration
========================

PURPOSE:
    Second step of the handshake. Registers this client as a device bound
    to the user's API key. The request is authenticated with the
    installation token and signed with the client private key, which
    proves that whoever installed the public key is also presenting the
    API key.

    `permitted_ips: ["*"]` lets the registration be used from any IP,
    which a desktop client needs since its address changes.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError

from bunq_trust.config import settings
from bunq_trust.core.errors import ProtocolError
from bunq_trust.models.envelope import IdPayload
from bunq_trust.services.bunq_client import BunqClient, RequestOptions

logger = logging.getLogger(__name__)

DEVICE_SERVER_PATH = "/device-server"


async def register_device(
    client: BunqClient,
    installation_token: str,
    api_key: str,
    private_key: str,
    description: Optional[str] = None,
    permitted_ips: Optional[List[str]] = None,
) -> int:
    """
    Register this device with bunq.

    Args:
        client: bunq HTTP client.
        installation_token: Token from create_installation.
        api_key: The user's API key, sent as `secret`.
        private_key: Client RSA private key (PEM) used to sign the request.
        description: Device label shown in the bunq app.
        permitted_ips: IPs allowed to use this registration.

    Returns:
        The device id assigned by bunq.

    Raises:
        ProtocolError: no `Id` element in the response.
    """
    logger.info("Registering device")

    response = await client.post(
        DEVICE_SERVER_PATH,
        {
            "description": description or settings.device_description,
            "secret": api_key,
            "permitted_ips": permitted_ips if permitted_ips is not None else list(settings.permitted_ips),
        },
        RequestOptions(auth_token=installation_token, sign=True, private_key=private_key),
    )

    raw_id = response.find("Id")
    if raw_id:
        try:
            device_id = IdPayload.model_validate(raw_id).id
        except ValidationError:
            device_id = None
        if device_id is not None:
            logger.info("Device registered (device_id=%d)", device_id)
            return device_id

    logger.error("No device ID in response")
    raise ProtocolError("No device ID received")
