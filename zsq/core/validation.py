"""
Argument checks shared by every public operation.

Each function raises ValidationError and returns nothing; callers run them
before touching the store so a rejected call never mutates anything.
"""

from __future__ import annotations

import re

from zsq.core.codec import ID_PATTERN
from zsq.domain.errors import ValidationError
from zsq.domain.models import UNLIMITED

MAX_DELAY = 9_999_999
QUEUE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,160}$")


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_queue_name(name: object) -> None:
    if not isinstance(name, str) or QUEUE_NAME_PATTERN.match(name) is None:
        raise ValidationError("queue", f"Invalid queue name {name!r}")


def validate_message_id(message_id: object) -> None:
    if not isinstance(message_id, str) or ID_PATTERN.match(message_id) is None:
        raise ValidationError("id", f"Invalid message id {message_id!r}")


def validate_seconds(field: str, value: object) -> None:
    """vt and delay: whole seconds in [0, MAX_DELAY]."""
    if not _is_int(value) or not 0 <= value <= MAX_DELAY:  # type: ignore[operator]
        raise ValidationError(
            field, f"{field} must be an integer between 0 and {MAX_DELAY}, got {value!r}"
        )


def validate_maxsize(value: object) -> None:
    if not _is_int(value) or (value != UNLIMITED and value < 1):  # type: ignore[operator]
        raise ValidationError(
            "maxsize", f"maxsize must be {UNLIMITED} or a positive integer, got {value!r}"
        )
