from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

from mitbot.service.errors import KeyNotFoundError

SECONDS_IN_DAY = 24 * 60 * 60
KEY_ID_DISPLAY_LEN = 8  # characters of the key id shown on selection buttons
TOKEN_FIELD_SEP = "|"


class TokenType(str, Enum):
    """Kinds of tunnel a token can open."""

    WEB = "web"
    TCP = "tcp"

    @property
    def label(self) -> str:
        return TOKEN_TYPE_LABELS[self]

    @property
    def quota(self) -> int:
        return TOKEN_QUOTAS[self]


TOKEN_TYPE_LABELS: Dict[TokenType, str] = {
    TokenType.WEB: "Web",
    TokenType.TCP: "TCP",
}

TOKEN_QUOTAS: Dict[TokenType, int] = {
    TokenType.WEB: 3,
    TokenType.TCP: 1,
}

# Button text -> TTL in seconds, in display order
EXPIRATION_CHOICES: Dict[str, int] = {
    "1 day": SECONDS_IN_DAY,
    "7 days": 7 * SECONDS_IN_DAY,
    "30 days": 30 * SECONDS_IN_DAY,
    "90 days": 90 * SECONDS_IN_DAY,
}


@dataclass
class APIToken:
    """A freshly issued token. The secret is only available at issuance."""

    key_id: str
    token: str
    token_type: TokenType
    ttl: int


@dataclass
class KeyInfo:
    """Public metadata of a live key."""

    key_id: str
    token_type: TokenType
    expires_at: datetime


def parse_token_type(label: str) -> Optional[TokenType]:
    """Map a button label ("Web"/"TCP") to its TokenType, or None if unknown."""
    for token_type, text in TOKEN_TYPE_LABELS.items():
        if text == label:
            return token_type
    return None


def parse_expiration(answer: str) -> Optional[int]:
    """Return the TTL in seconds for an expiration button, or None if unknown."""
    return EXPIRATION_CHOICES.get(answer)


def encode_token_field(token_type: TokenType, key_id: str = "") -> str:
    """Encode a token type and key id as ``"<type>|<key_id>"``."""
    return f"{TokenType(token_type).value}{TOKEN_FIELD_SEP}{key_id}"


def decode_token_field(field: str) -> Tuple[TokenType, str]:
    """Split an encoded field on the first separator.

    A field without a separator predates typed tokens and is read as a web
    key id.
    """
    raw_type, sep, key_id = field.partition(TOKEN_FIELD_SEP)
    if not sep:
        return TokenType.WEB, field
    return TokenType(raw_type), key_id


class TokenField(BaseModel):
    """Continuation context carried on a question between dialog legs."""

    model_config = ConfigDict(frozen=True)

    token_type: TokenType = TokenType.WEB
    key_id: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_encoded(cls, value: Any) -> Any:
        # Conversations persisted before the typed payload stored the string form.
        if isinstance(value, str):
            if value in {t.value for t in TokenType}:
                return {"token_type": value, "key_id": ""}
            token_type, key_id = decode_token_field(value)
            return {"token_type": token_type, "key_id": key_id}
        return value

    def encode(self) -> str:
        return encode_token_field(self.token_type, self.key_id)


def filter_keys_by_type(keys: Sequence[KeyInfo], token_type: TokenType) -> List[KeyInfo]:
    return [k for k in keys if k.token_type == token_type]


def key_button_text(key: KeyInfo) -> str:
    return f"{key.key_id[:KEY_ID_DISPLAY_LEN]} (exp: {key.expires_at.strftime('%Y-%m-%d')})"


def resolve_key_id_from_prefix(key_ids: Sequence[str], button_text: str) -> str:
    """Map a selection button back to the full key id it was rendered from.

    The first ``KEY_ID_DISPLAY_LEN`` characters of the button are compared
    with the same prefix of every candidate; the first match in listing
    order wins, so two keys sharing a prefix resolve to whichever the store
    returned first.
    """
    if len(button_text) >= KEY_ID_DISPLAY_LEN:
        selected = button_text[:KEY_ID_DISPLAY_LEN]
        for key_id in key_ids:
            if key_id[:KEY_ID_DISPLAY_LEN] == selected:
                return key_id
    raise KeyNotFoundError(detail={"selection": button_text})
