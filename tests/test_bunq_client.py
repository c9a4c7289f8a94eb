"""
Tests for BunqClient: headers, signing, envelope parsing, error mapping
and response signature verification.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from bunq_trust.core.crypto import sign_data, verify_signature
from bunq_trust.core.errors import ApiError, SecurityError, TransportError
from bunq_trust.services.bunq_client import (
    CLIENT_AUTHENTICATION_HEADER,
    CLIENT_REQUEST_ID_HEADER,
    CLIENT_SIGNATURE_HEADER,
    BunqClient,
    RequestOptions,
    serialize_body,
)


class TestRequestBuilding:

    @pytest.mark.asyncio
    async def test_fixed_headers_and_base_url(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        await fake_api.client().get("/user")

        request = fake_api.calls[0]
        assert str(request.url) == "https://public-api.sandbox.bunq.com/v1/user"
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Cache-Control"] == "no-cache"
        assert request.headers["X-Bunq-Language"] == "en_US"
        assert request.headers["X-Bunq-Region"] == "en_US"
        assert request.headers["X-Bunq-Geolocation"] == "0 0 0 0 000"
        assert request.headers[CLIENT_REQUEST_ID_HEADER]
        assert CLIENT_AUTHENTICATION_HEADER not in request.headers
        assert CLIENT_SIGNATURE_HEADER not in request.headers

    @pytest.mark.asyncio
    async def test_production_base_url(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        await fake_api.client("production").get("/user")

        assert fake_api.calls[0].url.host == "api.bunq.com"

    @pytest.mark.asyncio
    async def test_per_request_environment_override(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        await fake_api.client("sandbox").get("/user", RequestOptions(environment="production"))

        assert fake_api.calls[0].url.host == "api.bunq.com"

    def test_unknown_environment_rejected(self):
        with pytest.raises(ValueError, match="Unknown bunq environment"):
            BunqClient("staging")

    @pytest.mark.asyncio
    async def test_request_ids_are_unique(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))
        client = fake_api.client()

        first = await client.get("/user")
        second = await client.get("/user")

        assert first.request_id != second.request_id
        assert fake_api.calls[0].headers[CLIENT_REQUEST_ID_HEADER] == first.request_id

    @pytest.mark.asyncio
    async def test_auth_header(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        await fake_api.client().get("/user", RequestOptions(auth_token="session-token"))

        assert fake_api.calls[0].headers[CLIENT_AUTHENTICATION_HEADER] == "session-token"

    @pytest.mark.asyncio
    async def test_signature_covers_exact_body_bytes(self, fake_api, client_keys):
        fake_api.route("POST", "/payment", fake_api.respond({"Response": [{"Id": {"id": 5}}]}))
        body = {"amount": {"value": "10.00", "currency": "EUR"}, "description": "Lunch"}

        await fake_api.client().post("/payment", body, RequestOptions(sign=True, private_key=client_keys.private_key))

        request = fake_api.calls[0]
        sent = request.content.decode("utf-8")
        assert sent == serialize_body(body)
        assert verify_signature(client_keys.public_key, sent, request.headers[CLIENT_SIGNATURE_HEADER])

    @pytest.mark.asyncio
    async def test_bodyless_request_signs_empty_string(self, fake_api, client_keys):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        await fake_api.client().get("/user", RequestOptions(sign=True, private_key=client_keys.private_key))

        request = fake_api.calls[0]
        assert request.content == b""
        assert verify_signature(client_keys.public_key, "", request.headers[CLIENT_SIGNATURE_HEADER])

    @pytest.mark.asyncio
    async def test_signing_without_private_key_is_rejected(self, fake_api):
        with pytest.raises(RuntimeError, match="without a private key"):
            await fake_api.client().post("/payment", {}, RequestOptions(sign=True))
        assert fake_api.calls == []

    def test_serialize_body_is_compact(self):
        assert serialize_body({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'
        assert serialize_body(None) == ""


class TestEnvelopeParsing:

    @pytest.mark.asyncio
    async def test_success_envelope(self, fake_api):
        fake_api.route("GET", "/user/1/monetary-account", fake_api.respond({
            "Response": [{"MonetaryAccountBank": {"id": 1}}, {"MonetaryAccountBank": {"id": 2}}],
            "Pagination": {"future_url": None},
        }))

        response = await fake_api.client().get("/user/1/monetary-account")

        assert response.status_code == 200
        assert response.find("MonetaryAccountBank") == {"id": 1}
        assert [a["id"] for a in response.find_all("MonetaryAccountBank")] == [1, 2]
        assert response.pagination == {"future_url": None}
        assert response.find("Missing") is None

    @pytest.mark.asyncio
    async def test_error_envelope_raises_api_error(self, fake_api):
        fake_api.route("POST", "/payment", fake_api.error(400, "Insufficient balance"))

        with pytest.raises(ApiError) as exc_info:
            await fake_api.client().post("/payment", {})

        err = exc_info.value
        assert err.status_code == 400
        assert str(err) == "Insufficient balance"
        assert err.errors == [
            {"error_description": "Insufficient balance", "error_description_translated": "Insufficient balance"}
        ]

    @pytest.mark.asyncio
    async def test_error_without_description(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Error": []}, status=500))

        with pytest.raises(ApiError, match="Unknown error") as exc_info:
            await fake_api.client().get("/user")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unexpected_error_entries_kept_raw(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Error": ["Maintenance window"]}, status=503))

        with pytest.raises(ApiError, match="Maintenance window") as exc_info:
            await fake_api.client().get("/user")
        assert exc_info.value.errors == ["Maintenance window"]

    @pytest.mark.asyncio
    async def test_error_envelope_with_2xx_status(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Error": [{"error_description": "Odd"}]}, status=200))

        with pytest.raises(ApiError, match="Odd"):
            await fake_api.client().get("/user")

    @pytest.mark.asyncio
    async def test_404_logged_as_warning(self, fake_api, caplog):
        fake_api.route("GET", "/user/1/feature", fake_api.error(404, "Not available"))

        with caplog.at_level("WARNING", logger="bunq_trust.services.bunq_client"):
            with pytest.raises(ApiError):
                await fake_api.client().get("/user/1/feature")

        records = [r for r in caplog.records if "API error" in r.getMessage()]
        assert records and records[0].levelname == "WARNING"

    @pytest.mark.asyncio
    async def test_500_logged_as_error(self, fake_api, caplog):
        fake_api.route("GET", "/user", fake_api.error(500, "Server error"))

        with caplog.at_level("WARNING", logger="bunq_trust.services.bunq_client"):
            with pytest.raises(ApiError):
                await fake_api.client().get("/user")

        records = [r for r in caplog.records if "API error" in r.getMessage()]
        assert records and records[0].levelname == "ERROR"

    @pytest.mark.asyncio
    async def test_invalid_json_is_transport_error(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond("<html>gateway</html>", status=502))

        with pytest.raises(TransportError, match="Invalid JSON response") as exc_info:
            await fake_api.client().get("/user")
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_non_object_json_is_transport_error(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond("[1, 2]"))

        with pytest.raises(TransportError):
            await fake_api.client().get("/user")

    @pytest.mark.asyncio
    async def test_network_error(self):
        """Connection failures are mapped to TransportError."""
        client = BunqClient("sandbox")
        mock_http = MagicMock()
        mock_http.request = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))
        mock_http.__aenter__ = AsyncMock(return_value=mock_http)
        mock_http.__aexit__ = AsyncMock(return_value=False)

        with patch("httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransportError, match="Network error"):
                await client.get("/user")

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = BunqClient("sandbox")
        mock_http = MagicMock()
        mock_http.request = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))
        mock_http.__aenter__ = AsyncMock(return_value=mock_http)
        mock_http.__aexit__ = AsyncMock(return_value=False)

        with patch("httpx.AsyncClient", return_value=mock_http):
            with pytest.raises(TransportError, match="timed out"):
                await client.get("/user")


class TestSignatureVerification:

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, fake_api, server_keys):
        fake_api.route("GET", "/user", fake_api.respond({"Response": [{"UserPerson": {"id": 1}}]}))

        response = await fake_api.client().get("/user", RequestOptions(server_public_key=server_keys.public_key))

        assert response.find("UserPerson") == {"id": 1}

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, fake_api, server_keys):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}, sign=False))

        with pytest.raises(SecurityError, match="Missing server signature in response"):
            await fake_api.client().get("/user", RequestOptions(server_public_key=server_keys.public_key))

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, fake_api, server_keys, client_keys):
        text = json.dumps({"Response": [{"MonetaryAccountBank": {"balance": "1000000.00"}}]})
        bad_signature = sign_data(client_keys.private_key, text)
        fake_api.route("GET", "/user/1/monetary-account", fake_api.respond(text, signature=bad_signature))

        result = None
        with pytest.raises(SecurityError, match="Response signature verification failed"):
            result = await fake_api.client().get(
                "/user/1/monetary-account",
                RequestOptions(server_public_key=server_keys.public_key),
            )
        assert result is None

    @pytest.mark.asyncio
    async def test_signature_over_reserialized_body_rejected(self, fake_api, server_keys):
        """A signature over a re-serialization of the body does not verify the exact text."""
        text = '{"Response": [{"Id": {"id": 1}}]}'
        signature = sign_data(server_keys.private_key, json.dumps(json.loads(text), separators=(",", ":")))
        fake_api.route("GET", "/user", fake_api.respond(text, signature=signature))

        with pytest.raises(SecurityError, match="verification failed"):
            await fake_api.client().get("/user", RequestOptions(server_public_key=server_keys.public_key))

    @pytest.mark.asyncio
    async def test_no_verification_without_server_key(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}, sign=False))

        response = await fake_api.client().get("/user")

        assert response.items == []

    @pytest.mark.asyncio
    async def test_explicit_verification_without_server_key(self, fake_api):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}))

        with pytest.raises(SecurityError, match="Server public key required"):
            await fake_api.client().get("/user", RequestOptions(verify_signature=True))

    @pytest.mark.asyncio
    async def test_verification_can_be_disabled(self, fake_api, server_keys):
        fake_api.route("GET", "/user", fake_api.respond({"Response": []}, sign=False))

        response = await fake_api.client().get(
            "/user", RequestOptions(server_public_key=server_keys.public_key, verify_signature=False)
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_error_envelope_raised_before_verification(self, fake_api, server_keys):
        fake_api.route("GET", "/user", fake_api.respond(
            {"Error": [{"error_description": "Insufficient authorisation."}]}, status=401, sign=False,
        ))

        with pytest.raises(ApiError) as exc_info:
            await fake_api.client().get("/user", RequestOptions(server_public_key=server_keys.public_key))
        assert exc_info.value.status_code == 401
