from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from mitbot.logging import get_logger
from mitbot.service.conversation import Conversation
from mitbot.service.tokens import KeyInfo, TokenType
from mitbot.storage.common import (
    DEFAULT_CONVERSATION_TTL_SECONDS,
    TTL_OFFSET,
    api_keys_key,
    conversation_key,
    decode_key_member,
    encode_key_member,
    legacy_member_candidates,
    utcnow,
)
from mitbot.storage.errors import StorageError


class RedisStore:
    """Redis-backed repository for conversations and per-user key sets.

    Keys live in a sorted set per user scored by ``expiry - TTL_OFFSET`` (unix
    seconds), so anything scored at or below "now" is already considered
    expired and is pruned on read.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "",
        conversation_ttl_seconds: int = DEFAULT_CONVERSATION_TTL_SECONDS,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.conversation_ttl_seconds = conversation_ttl_seconds
        self._clock = clock
        self.logger = get_logger(__name__)
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived synchronous client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        except RedisError as exc:
            raise StorageError(f"redis unavailable: {exc}", {"redis_url": self.redis_url}) from exc
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()

    def _now_score(self) -> int:
        return int(self._clock().timestamp())

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    async def add_api_key(
        self, user_id: str, key_id: str, token_type: TokenType, ttl: int
    ) -> None:
        redis_key = api_keys_key(self.key_prefix, user_id)
        member = encode_key_member(key_id, token_type)
        score = int((self._clock() + timedelta(seconds=ttl) - TTL_OFFSET).timestamp())
        try:
            # ZADD returning 0 means the member already existed; its score is updated.
            await self.client.zadd(redis_key, {member: score})
        except RedisError as exc:
            raise StorageError(f"failed to add API key: {exc}", {"key_id": key_id}) from exc

    async def _prune_expired(self, redis_key: str, now: int) -> None:
        try:
            await self.client.zremrangebyscore(redis_key, "-inf", now)
        except RedisError as exc:
            raise StorageError(f"failed to remove expired API keys: {exc}") from exc

    async def get_api_keys(self, user_id: str) -> List[str]:
        redis_key = api_keys_key(self.key_prefix, user_id)
        now = self._now_score()
        await self._prune_expired(redis_key, now)
        try:
            members = await self.client.zrangebyscore(redis_key, now, "+inf")
        except RedisError as exc:
            raise StorageError(f"failed to get API keys: {exc}") from exc
        return [decode_key_member(member)[0] for member in members]

    async def get_api_keys_with_expiration(self, user_id: str) -> List[KeyInfo]:
        redis_key = api_keys_key(self.key_prefix, user_id)
        now = self._now_score()
        await self._prune_expired(redis_key, now)
        try:
            scored = await self.client.zrangebyscore(redis_key, now, "+inf", withscores=True)
        except RedisError as exc:
            raise StorageError(f"failed to get API keys with scores: {exc}") from exc

        keys = []
        for member, score in scored:
            key_id, token_type = decode_key_member(member)
            expires_at = datetime.fromtimestamp(int(score), tz=timezone.utc) + TTL_OFFSET
            keys.append(KeyInfo(key_id=key_id, token_type=token_type, expires_at=expires_at))
        return keys

    async def revoke_token(self, user_id: str, key_id: str) -> None:
        redis_key = api_keys_key(self.key_prefix, user_id)
        for candidate in legacy_member_candidates(key_id):
            try:
                removed = await self.client.zrem(redis_key, candidate)
            except RedisError as exc:
                raise StorageError(f"failed to revoke API key: {exc}", {"key_id": key_id}) from exc
            if removed:
                return
        # Not found: already expired or removed.

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def save_conversation(self, conversation: Conversation) -> None:
        redis_key = conversation_key(self.key_prefix, conversation.id)
        try:
            await self.client.set(
                redis_key, conversation.model_dump_json(), ex=self.conversation_ttl_seconds
            )
        except RedisError as exc:
            raise StorageError(f"failed to save conversation: {exc}") from exc

    async def get_conversation(self, conversation_id: str) -> Conversation:
        redis_key = conversation_key(self.key_prefix, conversation_id)
        try:
            data = await self.client.get(redis_key)
        except RedisError as exc:
            raise StorageError(f"failed to get conversation: {exc}") from exc
        if not data:
            return Conversation.new(conversation_id)
        try:
            return Conversation.model_validate_json(data)
        except ValueError as exc:
            raise StorageError(
                f"failed to decode conversation: {exc}",
                {"conversation_id": conversation_id},
            ) from exc

    async def delete_conversation(self, conversation_id: str) -> None:
        redis_key = conversation_key(self.key_prefix, conversation_id)
        try:
            await self.client.delete(redis_key)
        except RedisError as exc:
            raise StorageError(f"failed to delete conversation: {exc}") from exc
