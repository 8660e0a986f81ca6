from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwe, jwk
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError


# Beacon messages are always RSA-OAEP-256 key wrap with AES-256-GCM content encryption.
KEY_WRAP_ALG = ALGORITHMS.RSA_OAEP_256
CONTENT_ENC = ALGORITHMS.A256GCM
RSA_KEY_BITS = 2048
JOSE_CONTENT_TYPE = "application/jose"


class MessageFormatError(ValueError):
    """Compact JWE could not be parsed or decrypted."""


@dataclass(frozen=True)
class GeneratedKeyPair:
    kid: str
    public_jwk: dict[str, Any]
    private_pem: str


def generate_key_pair(kid: str) -> GeneratedKeyPair:
    # Fresh RSA key; the exported JWK is pinned to the OAEP-256 wrapping profile.
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_BITS)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    public_jwk = jwk.construct(public_pem, KEY_WRAP_ALG).to_dict()
    public_jwk["kid"] = kid
    public_jwk["use"] = "enc"
    return GeneratedKeyPair(kid=kid, public_jwk=public_jwk, private_pem=private_pem)


def read_protected_header(token: str) -> dict[str, Any]:
    # Header is read unverified; it only selects the key and is authenticated by decryption.
    try:
        header = jwe.get_unverified_header(token)
    except (JOSEError, ValueError, TypeError) as exc:
        raise MessageFormatError("malformed compact JWE header") from exc
    if not isinstance(header, dict):
        raise MessageFormatError("malformed compact JWE header")
    return header


def is_supported_header(header: dict[str, Any]) -> bool:
    return header.get("alg") == KEY_WRAP_ALG and header.get("enc") == CONTENT_ENC


def encrypt_message(plaintext: bytes, public_jwk: dict[str, Any]) -> str:
    token = jwe.encrypt(
        plaintext,
        public_jwk,
        encryption=CONTENT_ENC,
        algorithm=KEY_WRAP_ALG,
        kid=public_jwk.get("kid"),
    )
    return token.decode("ascii") if isinstance(token, bytes) else str(token)


def decrypt_message(token: str, private_pem: str) -> bytes:
    try:
        plaintext = jwe.decrypt(token, private_pem)
    except (JOSEError, ValueError, TypeError) as exc:
        raise MessageFormatError("compact JWE could not be decrypted") from exc
    if plaintext is None:
        raise MessageFormatError("compact JWE could not be decrypted")
    return plaintext


def encrypt_json(payload: dict[str, Any], public_jwk: dict[str, Any]) -> str:
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return encrypt_message(body, public_jwk)
