"""
bunq Client — HTTP client for the bunq public API.
==================================================

Builds and sends every request to bunq:
- fixed locale/geolocation headers and a fresh request id per call
- optional authentication header (installation or session token)
- optional RSA-SHA256 request signing over the exact body bytes
- parsing of the {Response: [...]} / {Error: [...]} envelope
- server signature verification over the exact response text, before
  any parsed data is handed back
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from bunq_trust.config import get_base_url, settings
from bunq_trust.core.crypto import create_request_signature, verify_response_signature
from bunq_trust.core.errors import ApiError, SecurityError, TransportError
from bunq_trust.core.structured_logging import environment_var, request_id_var
from bunq_trust.models.envelope import BunqResponse, ErrorDetail

logger = logging.getLogger(__name__)

CLIENT_REQUEST_ID_HEADER = "X-Bunq-Client-Request-Id"
CLIENT_AUTHENTICATION_HEADER = "X-Bunq-Client-Authentication"
CLIENT_SIGNATURE_HEADER = "X-Bunq-Client-Signature"
SERVER_SIGNATURE_HEADER = "X-Bunq-Server-Signature"


@dataclass
class RequestOptions:
    """Per-request authentication, signing and verification options."""

    # Session token, or installation token during the handshake
    auth_token: Optional[str] = None
    # Sign the request body; requires private_key
    sign: bool = False
    private_key: Optional[str] = None
    # Server public key from the installation step
    server_public_key: Optional[str] = None
    # None means: verify whenever server_public_key is set
    verify_signature: Optional[bool] = None
    # Overrides the client's environment for this call
    environment: Optional[str] = None
    # Overrides the client's timeout for this call (seconds)
    timeout: Optional[float] = None

    @property
    def should_verify(self) -> bool:
        if self.verify_signature is None:
            return bool(self.server_public_key)
        return self.verify_signature


def generate_request_id() -> str:
    return str(uuid.uuid4())


def serialize_body(body: Any) -> str:
    """Compact JSON, or "" for bodyless requests. These are the bytes that get signed."""
    if body is None:
        return ""
    return json.dumps(body, separators=(",", ":"))


class BunqClient:
    """Async HTTP client for the bunq API."""

    def __init__(
        self,
        environment: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._environment = environment or settings.environment
        self._timeout = timeout if timeout is not None else settings.request_timeout_s
        self._transport = transport
        # Fail fast on an unknown environment
        get_base_url(self._environment)

    @property
    def environment(self) -> str:
        return self._environment

    def base_url(self, environment: Optional[str] = None) -> str:
        return get_base_url(environment or self._environment)

    def _build_headers(self, request_id: str, body_string: str, options: RequestOptions) -> dict:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.user_agent,
            "Cache-Control": "no-cache",
            CLIENT_REQUEST_ID_HEADER: request_id,
            "X-Bunq-Geolocation": settings.geolocation,
            "X-Bunq-Language": settings.language,
            "X-Bunq-Region": settings.region,
        }

        if options.auth_token:
            headers[CLIENT_AUTHENTICATION_HEADER] = options.auth_token

        if options.sign:
            if not options.private_key:
                raise RuntimeError("Request signing requested without a private key")
            headers[CLIENT_SIGNATURE_HEADER] = create_request_signature(options.private_key, body_string)

        return headers

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        options: Optional[RequestOptions] = None,
    ) -> BunqResponse:
        """
        Send one request and return the parsed success envelope.

        Raises:
            TransportError: network failure or unparseable body.
            ApiError: non-2xx status or `Error` envelope.
            SecurityError: server signature missing or invalid.
        """
        options = options or RequestOptions()
        method = method.upper()
        url = f"{self.base_url(options.environment)}{path}"
        request_id = generate_request_id()
        body_string = serialize_body(body)
        headers = self._build_headers(request_id, body_string, options)
        timeout = options.timeout if options.timeout is not None else self._timeout

        token = request_id_var.set(request_id)
        env_token = environment_var.set(options.environment or self._environment)
        try:
            logger.debug("API request %s %s (has_body=%s)", method, path, bool(body_string))
            try:
                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    resp = await client.request(
                        method,
                        url,
                        content=body_string.encode("utf-8") if body_string else None,
                        headers=headers,
                    )
            except httpx.TimeoutException as e:
                logger.error("API request timed out: %s %s", method, path)
                raise TransportError(f"Request to {path} timed out", context={"path": path}) from e
            except httpx.HTTPError as e:
                logger.error("API request failed: %s %s: %s", method, path, e)
                raise TransportError(f"Network error: {e}", context={"path": path}) from e

            return self._handle_response(method, path, request_id, resp, options)
        finally:
            environment_var.reset(env_token)
            request_id_var.reset(token)

    def _handle_response(
        self,
        method: str,
        path: str,
        request_id: str,
        resp: httpx.Response,
        options: RequestOptions,
    ) -> BunqResponse:
        # Raw text first: signatures cover the exact bytes, not a re-serialization
        response_text = resp.text
        status_code = resp.status_code

        try:
            data = json.loads(response_text)
        except ValueError:
            logger.error("Invalid JSON response (status=%d) for %s %s", status_code, method, path)
            raise TransportError("Invalid JSON response from API", status_code=status_code) from None

        if not isinstance(data, dict):
            logger.error("Unexpected response shape (status=%d) for %s %s", status_code, method, path)
            raise TransportError("Invalid JSON response from API", status_code=status_code)

        if resp.is_error or "Error" in data:
            raw_errors = data.get("Error")
            raw_errors = raw_errors if isinstance(raw_errors, list) else []
            details = _parse_errors(raw_errors)
            message = details[0].error_description if details and details[0].error_description else "Unknown error"
            # 404s are often expected "feature not available" responses
            log_fn = logger.warning if status_code == 404 else logger.error
            log_fn("API error %d on %s %s: %s", status_code, method, path, message)
            raise ApiError(message, status_code, raw_errors, context={"path": path, "request_id": request_id})

        if options.should_verify:
            self._verify_signature(method, path, resp, response_text, options)

        items = data.get("Response")
        if not isinstance(items, list):
            items = []

        logger.debug("API response %s %s (status=%d)", method, path, status_code)
        return BunqResponse(
            items=items,
            pagination=data.get("Pagination"),
            status_code=status_code,
            request_id=request_id,
            raw_text=response_text,
        )

    def _verify_signature(
        self,
        method: str,
        path: str,
        resp: httpx.Response,
        response_text: str,
        options: RequestOptions,
    ) -> None:
        if not options.server_public_key:
            logger.error("Signature verification requested without server public key: %s %s", method, path)
            raise SecurityError("Server public key required to verify response signature")

        server_signature = resp.headers.get(SERVER_SIGNATURE_HEADER)
        if not server_signature:
            logger.error("Missing server signature in response: %s %s", method, path)
            raise SecurityError("Missing server signature in response")

        if not verify_response_signature(options.server_public_key, response_text, server_signature):
            logger.error("Response signature verification failed: %s %s", method, path)
            raise SecurityError("Response signature verification failed")

        logger.debug("Response signature verified: %s %s", method, path)

    async def get(self, path: str, options: Optional[RequestOptions] = None) -> BunqResponse:
        return await self.request("GET", path, None, options)

    async def post(self, path: str, body: Any, options: Optional[RequestOptions] = None) -> BunqResponse:
        return await self.request("POST", path, body, options)

    async def put(self, path: str, body: Any, options: Optional[RequestOptions] = None) -> BunqResponse:
        return await self.request("PUT", path, body, options)

    async def delete(self, path: str, options: Optional[RequestOptions] = None) -> BunqResponse:
        return await self.request("DELETE", path, None, options)


def _parse_errors(raw: Any) -> List[ErrorDetail]:
    if not isinstance(raw, list):
        return []
    errors = []
    for entry in raw:
        try:
            errors.append(ErrorDetail.model_validate(entry))
        except ValidationError:
            errors.append(ErrorDetail(error_description=str(entry)))
    return errors
