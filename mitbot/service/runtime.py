from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from mitbot.config import get_settings, reset_settings_cache
from mitbot.logging import configure_logging, get_logger
from mitbot.service.provider import MITProvider
from mitbot.service.sequencer import RequestSequencer
from mitbot.service.workflow import TokenWorkflow
from mitbot.storage.errors import StorageError
from mitbot.storage.memory import MemoryStore
from mitbot.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        configure_logging(log_level=self.settings.log_level, json_output=self.settings.log_json)
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Union[MemoryStore, RedisStore]
        if self.settings.use_memory_store or self.settings.test_mode:
            self.store = MemoryStore(
                fs_root=self.settings.memory_store_root,
                conversation_ttl_seconds=self.settings.conversation_ttl_seconds,
            )
        else:
            store = RedisStore(
                self.settings.redis_url,
                key_prefix=self.settings.redis_key_prefix,
                conversation_ttl_seconds=self.settings.conversation_ttl_seconds,
            )
            try:
                store.verify_connection()
            except StorageError as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for conversation and key storage; start Redis "
                    "or set USE_MEMORY_STORE=true for a single-process setup."
                ) from exc
            self.store = store
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if isinstance(self.store, MemoryStore) else "redis",
        )

        self.provider = MITProvider(
            self.settings.provider_url,
            timeout=self.settings.provider_timeout_seconds,
        )
        self.workflow = TokenWorkflow(self.store, self.provider)
        self.sequencer = RequestSequencer(
            self.settings.max_concurrent_requests,
            timeout_seconds=self.settings.request_timeout_seconds,
        )

        logger.info(
            "runtime_initialized",
            provider_url=self.settings.provider_url,
            redis_url=_mask_url_password(self.settings.redis_url),
            max_concurrent_requests=self.settings.max_concurrent_requests,
        )

    async def close(self) -> None:
        await self.provider.close()
        if isinstance(self.store, RedisStore):
            await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
