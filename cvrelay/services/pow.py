"""Proof-of-work stamp shared by the beacon and the ingestion gateway.

A stamp is ``base64("{unixMinute}:{salt}:{counter}")`` where the SHA-256 digest of
the decoded string carries at least ``difficulty`` leading zero bits. It is a cost
deterrent for spam, not a cryptographic guarantee.
"""

from __future__ import annotations

import re
import secrets
import time

from cvrelay.services.crypto.utils import b64decode_str, b64encode_str, sha256_digest


POW_HEADER = "X-Pow"
DEFAULT_DIFFICULTY = 10

_MINUTE_RE = re.compile(r"[0-9]+")


def leading_zero_bits(digest: bytes) -> int:
    """Count leading zero bits the way both ends of the protocol do.

    Each all-zero byte adds 8. The first byte that is not zero adds its own
    leading zero count and ends the scan. Bytes after it are never inspected.
    """
    zeros = 0
    for byte in digest:
        byte_zeros = 8 - byte.bit_length()
        zeros += byte_zeros
        if byte_zeros != 8:
            break
    return zeros


def random_salt() -> str:
    # Eight random 16-bit values concatenated as decimal text.
    return "".join(str(secrets.randbelow(65536)) for _ in range(8))


def solve_pow(
    *,
    difficulty: int = DEFAULT_DIFFICULTY,
    now: float | None = None,
    salt: str | None = None,
) -> str:
    # CPU-bound brute force; async callers should run this via asyncio.to_thread.
    unix_minute = int((time.time() if now is None else now) // 60)
    seed = f"{unix_minute}:{salt if salt is not None else random_salt()}:"
    counter = 0
    while True:
        candidate = f"{seed}{counter}"
        if leading_zero_bits(sha256_digest(candidate.encode("utf-8"))) >= difficulty:
            return b64encode_str(candidate)
        counter += 1


def stamp_minute(token: str) -> int | None:
    # Extract the minute timestamp without checking the hash.
    try:
        data = b64decode_str(token)
    except (ValueError, UnicodeDecodeError):
        return None
    minute_part = data.split(":", 1)[0]
    if not _MINUTE_RE.fullmatch(minute_part):
        return None
    return int(minute_part)


def verify_pow(
    token: str | None,
    *,
    difficulty: int = DEFAULT_DIFFICULTY,
    valid_seconds: int = 120,
    now: float | None = None,
) -> bool:
    if not token:
        return False
    try:
        data = b64decode_str(token.strip())
    except (ValueError, UnicodeDecodeError):
        return False
    minute = stamp_minute(token.strip())
    if minute is None:
        return False
    current = time.time() if now is None else now
    # Stale and future-dated stamps are rejected with the same tolerance.
    if abs(current - minute * 60) > valid_seconds:
        return False
    return leading_zero_bits(sha256_digest(data.encode("utf-8"))) >= difficulty
