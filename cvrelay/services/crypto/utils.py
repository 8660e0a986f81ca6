from __future__ import annotations

import base64
import hashlib


def b64encode_str(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def b64decode_str(value: str) -> str:
    return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")


def sha256_digest(value: bytes) -> bytes:
    return hashlib.sha256(value).digest()
