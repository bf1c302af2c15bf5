"""Chunk handles: UUID identifiers for stored chunks."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_URN_PREFIX = "urn:uuid:"


@dataclass(frozen=True, order=True)
class ChunkHandle:
    """Identifier of a chunk; the default value is the nil UUID."""

    uuid: uuid.UUID = field(default_factory=lambda: uuid.UUID(int=0))

    def __str__(self) -> str:
        return str(self.uuid)


def new_chunk_handle() -> ChunkHandle:
    """Return a fresh random chunk handle."""
    return ChunkHandle(uuid.uuid4())


def parse_chunk_handle(text: str) -> ChunkHandle:
    """Parse a handle in canonical, braced, URN or plain-hex UUID form."""
    s = text
    if len(s) == 36 + len(_URN_PREFIX) and s[: len(_URN_PREFIX)].lower() == _URN_PREFIX:
        s = s[len(_URN_PREFIX):]
    elif len(s) == 38 and s[0] == "{" and s[-1] == "}":
        s = s[1:-1]

    if len(s) == 36:
        if any(s[i] != "-" for i in (8, 13, 18, 23)):
            raise ValueError("invalid UUID format")
        digits = s[:8] + s[9:13] + s[14:18] + s[19:23] + s[24:]
    elif len(s) == 32:
        digits = s
    else:
        raise ValueError(f"invalid UUID length: {len(text)}")

    if not all(c in _HEX_DIGITS for c in digits):
        raise ValueError("invalid UUID format")
    return ChunkHandle(uuid.UUID(hex=digits))