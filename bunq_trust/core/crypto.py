"""
bunq Client Cryptography Module
===============================

PURPOSE:
    RSA keypair provisioning, request signing and response verification
    for the bunq trust handshake.

    - Keypairs are RSA (>= 2048 bit), PEM-encoded so they can be kept in a
      string key/value credential store.
    - Requests are signed with RSA PKCS#1 v1.5 over SHA-256; the signature
      covers the exact body bytes sent on the wire and is base64-encoded.
    - Responses are verified the same way against the server public key
      received during installation, over the exact response text.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass
from functools import lru_cache

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from bunq_trust.config import MIN_RSA_KEY_SIZE

logger = logging.getLogger(__name__)

PUBLIC_EXPONENT = 65537


@dataclass(frozen=True)
class KeyPair:
    public_key: str
    private_key: str


# -------------------------------------------------------------------------
# Key Generation
# -------------------------------------------------------------------------

def generate_rsa_keypair(key_size: int = MIN_RSA_KEY_SIZE) -> KeyPair:
    """
    Generate a fresh RSA keypair for request signing.

    Returns PEM text: SubjectPublicKeyInfo ("BEGIN PUBLIC KEY") for the
    public half, which is what bunq expects as client_public_key, and
    traditional OpenSSL ("BEGIN RSA PRIVATE KEY") for the private half.
    Errors from the crypto backend propagate unchanged.
    """
    if key_size < MIN_RSA_KEY_SIZE:
        raise ValueError(f"RSA key size must be at least {MIN_RSA_KEY_SIZE} bits")

    private_key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(public_key=public_pem.decode("ascii"), private_key=private_pem.decode("ascii"))


# -------------------------------------------------------------------------
# Key Loading
# -------------------------------------------------------------------------

@lru_cache(maxsize=8)
def _load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Signing key is not an RSA private key")
    return key


@lru_cache(maxsize=8)
def _load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Verification key is not an RSA public key")
    return key


# -------------------------------------------------------------------------
# Signing / Verification
# -------------------------------------------------------------------------

def sign_data(private_key_pem: str, data: str) -> str:
    """Sign `data` (UTF-8) with RSA-SHA256 and return the base64 signature."""
    key = _load_private_key(private_key_pem)
    signature = key.sign(data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def verify_signature(public_key_pem: str, data: str, signature_b64: str) -> bool:
    """
    Check an RSA-SHA256 signature over `data`.

    Returns False for a wrong signature, malformed base64 or an unusable
    key; callers decide how to fail.
    """
    try:
        key = _load_public_key(public_key_pem)
        signature = base64.b64decode(signature_b64, validate=True)
        key.verify(signature, data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return True
    except InvalidSignature:
        return False
    except ValueError as e:
        logger.warning("Signature could not be checked: %s", e)
        return False


def create_request_signature(private_key_pem: str, body: str) -> str:
    """Signature for the X-Bunq-Client-Signature header ("" for bodyless requests)."""
    return sign_data(private_key_pem, body)


def verify_response_signature(server_public_key_pem: str, response_text: str, signature_b64: str) -> bool:
    """Verify X-Bunq-Server-Signature against the exact response body text."""
    return verify_signature(server_public_key_pem, response_text, signature_b64)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
