"""
Shared fixtures for the bunq-trust test suite.

FakeBunqApi stands in for the bunq API via httpx.MockTransport: it routes
on (method, path without the /v1 prefix), records every request and can
sign its responses with a test server key.
"""

import asyncio
import json
import os
import tempfile
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

# Settings are read at import time; keep tests away from the user's home and .env
os.environ.setdefault("BUNQ_ENVIRONMENT", "sandbox")
os.environ.setdefault("BUNQ_CREDENTIAL_PATH", os.path.join(tempfile.gettempdir(), "bunq-trust-test-credentials.json"))
os.environ.setdefault("BUNQ_MIN_REFRESH_INTERVAL_S", "5")

import httpx
import pytest

from bunq_trust.core.crypto import KeyPair, generate_rsa_keypair, sign_data
from bunq_trust.services.bunq_client import BunqClient

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeBunqApi:
    """Scripted bunq API. Each route serves its responses in order; the last one repeats."""

    def __init__(self, server_keys: KeyPair, delay: float = 0.0):
        self.server_keys = server_keys
        self.delay = delay
        self.calls: List[httpx.Request] = []
        self._routes: Dict[Tuple[str, str], List[Responder]] = {}

    def route(self, method: str, path: str, *responses: Responder) -> None:
        self._routes[(method.upper(), path)] = list(responses)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        queue = self._routes.get((request.method, path))
        if not queue:
            return self.respond({"Error": [{"error_description": f"No route for {path}"}]}, status=404)
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(responder):
            return responder(request)
        # Fresh copy per request; a route's last response may be served many times
        return httpx.Response(responder.status_code, headers=responder.headers, content=responder.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, environment: str = "sandbox") -> BunqClient:
        return BunqClient(environment, transport=self.transport)

    def respond(
        self,
        payload: Any,
        status: int = 200,
        sign: bool = True,
        signature: Optional[str] = None,
    ) -> httpx.Response:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["X-Bunq-Server-Signature"] = signature
        elif sign:
            headers["X-Bunq-Server-Signature"] = sign_data(self.server_keys.private_key, text)
        return httpx.Response(status, content=text.encode("utf-8"), headers=headers)

    def error(self, status: int, description: str = "Error") -> httpx.Response:
        return self.respond(
            {"Error": [{"error_description": description, "error_description_translated": description}]},
            status=status,
        )

    def paths(self) -> List[Tuple[str, str]]:
        return [(r.method, r.url.path.removeprefix("/v1")) for r in self.calls]

    def body(self, index: int) -> Dict[str, Any]:
        return json.loads(self.calls[index].content.decode("utf-8"))

    # -- Canned handshake ---------------------------------------------------

    def installation_payload(self, token: str = "install-token", server_public_key: Optional[str] = None) -> dict:
        server_key = self.server_keys.public_key if server_public_key is None else server_public_key
        return {
            "Response": [
                {"Id": {"id": 1}},
                {"Token": {"id": 2, "token": token}},
                {"ServerPublicKey": {"server_public_key": server_key}},
            ]
        }

    def session_payload(self, token: str = "session-token", user_id: int = 999, kind: str = "UserPerson") -> dict:
        return {
            "Response": [
                {"Id": {"id": 3}},
                {"Token": {"id": 4, "token": token}},
                {kind: {"id": user_id, "display_name": "Test User"}},
            ]
        }

    def install_handshake(
        self,
        installation_token: str = "install-token",
        server_public_key: Optional[str] = None,
        device_id: int = 12345,
        session_token: str = "session-token",
        user_id: int = 999,
    ) -> None:
        self.route("POST", "/installation", self.respond(self.installation_payload(installation_token, server_public_key)))
        self.route("POST", "/device-server", self.respond({"Response": [{"Id": {"id": device_id}}]}))
        self.route("POST", "/session-server", self.respond(self.session_payload(session_token, user_id)))


@pytest.fixture(scope="session")
def client_keys() -> KeyPair:
    return generate_rsa_keypair()


@pytest.fixture(scope="session")
def server_keys() -> KeyPair:
    return generate_rsa_keypair()


@pytest.fixture
def fake_api(server_keys) -> FakeBunqApi:
    return FakeBunqApi(server_keys)
