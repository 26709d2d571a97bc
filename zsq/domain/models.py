"""
Domain models for zsq — backed by Pydantic v2.

All models are frozen (immutable) value types. The store adapters hand back
plain tuples and dicts; the core turns them into these models so callers
never deal with raw Redis replies.
"""

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_VT = 30
DEFAULT_DELAY = 0
UNLIMITED = -1


class QueueConfig(BaseModel):
    """
    Per-queue settings plus the server time they were read at.

    Both halves come from the same store transaction, so ``ts`` is the
    authoritative "now" for any score computed from this config.

    vt      — default visibility timeout in seconds
    delay   — default send delay in seconds
    maxsize — maximum body length in characters, -1 for unlimited
    seconds — server time, whole seconds
    micros  — server time, microsecond part
    """

    model_config = ConfigDict(frozen=True)

    vt: int
    delay: int
    maxsize: int
    seconds: int
    micros: int = Field(ge=0, lt=1_000_000)

    @property
    def ts(self) -> int:
        """Server time as epoch milliseconds."""
        return self.seconds * 1000 + self.micros // 1000

    def unlimited(self) -> bool:
        return self.maxsize == UNLIMITED


class QueueAttributes(BaseModel):
    """
    Snapshot returned by get_queue_attributes / set_queue_attributes.

    msgs and hiddenmsgs are computed from the sorted set at read time and
    are never stored.
    """

    model_config = ConfigDict(frozen=True)

    vt: int
    delay: int
    maxsize: int
    totalrecv: int = 0
    totalsent: int = 0
    created: int
    modified: int
    msgs: int = 0
    hiddenmsgs: int = 0


class Message(BaseModel):
    """
    A claimed message.

    id   — 44-char time-ordered identifier
    body — payload exactly as sent
    rc   — receive count, 1 on the first claim
    fr   — visibility deadline (epoch ms) recorded at the first claim
    sent — epoch ms at which the message was sent, decoded from the id
    """

    model_config = ConfigDict(frozen=True)

    id: str
    body: str
    rc: int
    fr: int
    sent: int
