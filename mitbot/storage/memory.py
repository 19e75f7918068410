from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from mitbot.logging import get_logger
from mitbot.service.conversation import Conversation
from mitbot.service.tokens import KeyInfo, TokenType
from mitbot.storage.common import (
    DEFAULT_CONVERSATION_TTL_SECONDS,
    TTL_OFFSET,
    decode_key_member,
    encode_key_member,
    legacy_member_candidates,
    utcnow,
)
from mitbot.storage.errors import StorageError


class MemoryStore:
    """In-process backing store for tests and single-instance development.

    Mirrors the Redis layout: per-user key members scored by their cut-off
    time, and conversations held as serialized JSON with a TTL. When
    ``fs_root`` is given the state is also written to
    ``<fs_root>/state/memory_store.json`` and reloaded on start.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        conversation_ttl_seconds: int = DEFAULT_CONVERSATION_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.logger = get_logger(__name__)
        self.conversation_ttl = timedelta(seconds=conversation_ttl_seconds)
        self._clock = clock
        # conversation id -> (json payload, expires at)
        self.conversations: Dict[str, Tuple[str, datetime]] = {}
        # user id -> member -> cut-off time (expiry minus TTL_OFFSET)
        self.api_keys: Dict[str, Dict[str, datetime]] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Conversation:
        with self._data_lock:
            entry = self.conversations.get(conversation_id)
            if entry is None:
                return Conversation.new(conversation_id)
            payload, expires_at = entry
            if expires_at <= self._clock():
                self.conversations.pop(conversation_id, None)
                return Conversation.new(conversation_id)
        try:
            return Conversation.model_validate_json(payload)
        except ValueError as exc:
            raise StorageError(
                f"failed to decode conversation: {exc}",
                {"conversation_id": conversation_id},
            ) from exc

    async def save_conversation(self, conversation: Conversation) -> None:
        payload = conversation.model_dump_json()
        with self._data_lock:
            self.conversations[conversation.id] = (
                payload,
                self._clock() + self.conversation_ttl,
            )
            self._persist_state()

    async def delete_conversation(self, conversation_id: str) -> None:
        with self._data_lock:
            self.conversations.pop(conversation_id, None)
            self._persist_state()

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    async def add_api_key(
        self, user_id: str, key_id: str, token_type: TokenType, ttl: int
    ) -> None:
        member = encode_key_member(key_id, token_type)
        cutoff = self._clock() + timedelta(seconds=ttl) - TTL_OFFSET
        with self._data_lock:
            self.api_keys.setdefault(user_id, {})[member] = cutoff
            self._persist_state()

    async def get_api_keys(self, user_id: str) -> List[str]:
        return [decode_key_member(member)[0] for member, _ in self._live_members(user_id)]

    async def get_api_keys_with_expiration(self, user_id: str) -> List[KeyInfo]:
        keys = []
        for member, cutoff in self._live_members(user_id):
            key_id, token_type = decode_key_member(member)
            keys.append(
                KeyInfo(key_id=key_id, token_type=token_type, expires_at=cutoff + TTL_OFFSET)
            )
        return keys

    async def revoke_token(self, user_id: str, key_id: str) -> None:
        with self._data_lock:
            members = self.api_keys.get(user_id, {})
            for candidate in legacy_member_candidates(key_id):
                if members.pop(candidate, None) is not None:
                    self._persist_state()
                    return
        # Already expired or removed; nothing to do.

    def _live_members(self, user_id: str) -> List[Tuple[str, datetime]]:
        """Drop expired members and return the rest ordered by cut-off time."""
        now = self._clock()
        with self._data_lock:
            members = self.api_keys.get(user_id, {})
            expired = [m for m, cutoff in members.items() if cutoff <= now]
            for member in expired:
                del members[member]
            if expired:
                self._persist_state()
            return sorted(members.items(), key=lambda item: item[1])

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "conversations": [
                {"id": cid, "payload": payload, "expires_at": expires_at.isoformat()}
                for cid, (payload, expires_at) in self.conversations.items()
            ],
            "api_keys": {
                user_id: {member: cutoff.isoformat() for member, cutoff in members.items()}
                for user_id, members in self.api_keys.items()
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("memory_store_state_unreadable", path=str(path), error=str(exc))
            return False
        self.conversations = {
            entry["id"]: (entry["payload"], datetime.fromisoformat(entry["expires_at"]))
            for entry in data.get("conversations", [])
        }
        self.api_keys = {
            user_id: {
                member: datetime.fromisoformat(cutoff) for member, cutoff in members.items()
            }
            for user_id, members in data.get("api_keys", {}).items()
        }
        self.logger.info(
            "memory_store_state_loaded",
            conversations=len(self.conversations),
            users=len(self.api_keys),
        )
        return True
