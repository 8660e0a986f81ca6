from __future__ import annotations

import json

import pytest

from cvrelay.services.crypto.jwe import (
    MessageFormatError,
    decrypt_message,
    encrypt_json,
    generate_key_pair,
    is_supported_header,
    read_protected_header,
)


@pytest.fixture(scope="module")
def key_pair():
    return generate_key_pair("kid-test")


def test_public_jwk_is_tagged_for_oaep_wrapping(key_pair) -> None:
    jwk = key_pair.public_jwk
    assert jwk["kty"] == "RSA"
    assert jwk["kid"] == "kid-test"
    assert jwk["alg"] == "RSA-OAEP-256"
    assert jwk["use"] == "enc"
    assert "d" not in jwk


def test_round_trip_carries_kid_and_algorithms(key_pair) -> None:
    token = encrypt_json({"orderId": "123", "amount": 1000}, key_pair.public_jwk)
    header = read_protected_header(token)
    assert header["kid"] == "kid-test"
    assert is_supported_header(header)
    assert json.loads(decrypt_message(token, key_pair.private_pem)) == {"orderId": "123", "amount": 1000}


def test_decrypt_with_other_key_fails(key_pair) -> None:
    other = generate_key_pair("kid-other")
    token = encrypt_json({"orderId": "1"}, key_pair.public_jwk)
    with pytest.raises(MessageFormatError):
        decrypt_message(token, other.private_pem)


def test_malformed_header_is_reported() -> None:
    with pytest.raises(MessageFormatError):
        read_protected_header("definitely-not-a-jwe")


def test_unsupported_algorithms_are_flagged() -> None:
    assert not is_supported_header({"alg": "RSA1_5", "enc": "A256GCM"})
    assert not is_supported_header({"alg": "RSA-OAEP-256", "enc": "A128CBC-HS256"})
