"""
Codec — mint and decode time-ordered message ids.

Id format (44 characters)
-------------------------
    gx0b3mq7c1s4 9f2c4e0b7a1d48e3b6c0f5a2d9e1b7c4
    └── 12 ──────┘└──────────── 32 ──────────────┘
    timestamp      random suffix

timestamp — server time as ``seconds * 1_000_000 + micros`` (the seconds
            followed by the zero-padded 6-digit microseconds), written in
            lowercase base 36 and left-padded with "0" to 12 characters
suffix    — 16 random bytes from ``secrets``, hex encoded, so concurrent
            sends within the same microsecond still get distinct ids

Because every digit sorts before every lowercase letter and the timestamp is
fixed width, comparing two ids as strings compares their send times.
"""

from __future__ import annotations

import re
import secrets

from zsq.domain.errors import ValidationError

TIMESTAMP_WIDTH = 12
SUFFIX_BYTES = 16
ID_LENGTH = TIMESTAMP_WIDTH + SUFFIX_BYTES * 2
ID_PATTERN = re.compile(r"^[0-9a-z]{12}[0-9a-f]{32}$")

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def encode_timestamp(seconds: int, micros: int) -> str:
    """Fixed-width base-36 form of a (seconds, micros) server time."""
    if seconds < 0 or not 0 <= micros < 1_000_000:
        raise ValueError(f"invalid server time ({seconds}, {micros})")
    encoded = _to_base36(seconds * 1_000_000 + micros)
    if len(encoded) > TIMESTAMP_WIDTH:
        raise ValueError(f"timestamp {seconds} does not fit in {TIMESTAMP_WIDTH} chars")
    return encoded.rjust(TIMESTAMP_WIDTH, "0")


def make_id(seconds: int, micros: int) -> str:
    """Mint a new message id from the store's clock."""
    return encode_timestamp(seconds, micros) + secrets.token_hex(SUFFIX_BYTES)


def is_valid_id(message_id: str) -> bool:
    return isinstance(message_id, str) and ID_PATTERN.match(message_id) is not None


def decode_timestamp(message_id: str) -> int:
    """Microseconds since the epoch at which message_id was minted."""
    if not is_valid_id(message_id):
        raise ValidationError("id", f"Invalid message id {message_id!r}")
    return int(message_id[:TIMESTAMP_WIDTH], 36)


def sent_at(message_id: str) -> int:
    """Epoch milliseconds at which message_id was minted."""
    return decode_timestamp(message_id) // 1000


def to_score(seconds: int, micros: int) -> int:
    """Server time as an epoch-millisecond score."""
    return seconds * 1000 + micros // 1000
