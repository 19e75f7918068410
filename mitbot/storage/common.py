"""Helpers shared by the memory and Redis stores.

Both stores keep the same key layout and expiry semantics so that a user's
keys look identical whichever backend is configured.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Tuple

from mitbot.service.tokens import TokenType

# Keys are treated as expired this long before the provider drops them.
TTL_OFFSET = timedelta(seconds=60)
API_KEYS_PREFIX = "USER_KEYS::"
CONVERSATION_PREFIX = "CONV::"
DEFAULT_CONVERSATION_TTL_SECONDS = 24 * 60 * 60

MEMBER_PREFIX_WEB = "w:"
MEMBER_PREFIX_TCP = "t:"

_MEMBER_PREFIXES = {
    TokenType.WEB: MEMBER_PREFIX_WEB,
    TokenType.TCP: MEMBER_PREFIX_TCP,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_key_member(key_id: str, token_type: TokenType) -> str:
    """Encode a key id with its type, e.g. ``"w:<key_id>"`` or ``"t:<key_id>"``."""
    return _MEMBER_PREFIXES.get(TokenType(token_type), MEMBER_PREFIX_WEB) + key_id


def decode_key_member(member: str) -> Tuple[str, TokenType]:
    """Split a stored member into key id and type.

    Bare members were written before typed tokens existed and are read as web.
    """
    for token_type, prefix in _MEMBER_PREFIXES.items():
        if member.startswith(prefix):
            return member[len(prefix):], token_type
    return member, TokenType.WEB


def legacy_member_candidates(key_id: str) -> Tuple[str, ...]:
    """All encodings a key id may be stored under, newest first."""
    return (
        encode_key_member(key_id, TokenType.WEB),
        encode_key_member(key_id, TokenType.TCP),
        key_id,
    )


def api_keys_key(prefix: str, user_id: str) -> str:
    return f"{prefix}{API_KEYS_PREFIX}{user_id}"


def conversation_key(prefix: str, conversation_id: str) -> str:
    return f"{prefix}{CONVERSATION_PREFIX}{conversation_id}"
