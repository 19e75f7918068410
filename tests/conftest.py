import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("MIT_URL", "http://mit.test")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from datetime import datetime, timedelta, timezone  # noqa: E402

from mitbot.service.runtime import reset_runtime_for_tests  # noqa: E402
from mitbot.service.tokens import APIToken, TokenType  # noqa: E402
from mitbot.service.workflow import TokenWorkflow  # noqa: E402
from mitbot.storage.common import TTL_OFFSET, encode_key_member  # noqa: E402
from mitbot.storage.memory import MemoryStore  # noqa: E402

FIXED_NOW = datetime(2026, 3, 10, 9, 30, 0, tzinfo=timezone.utc)


class RecordingStore(MemoryStore):
    """MemoryStore pinned to FIXED_NOW that records key calls and can fail on demand."""

    def __init__(self, **kwargs):
        super().__init__(clock=lambda: FIXED_NOW, **kwargs)
        self.calls = []
        self.fail_on = {}

    def _check(self, name, *args):
        self.calls.append((name, *args))
        exc = self.fail_on.get(name)
        if exc is not None:
            raise exc

    def calls_to(self, name):
        return [call[1:] for call in self.calls if call[0] == name]

    def seed_key(self, user_id, key_id, token_type=TokenType.WEB, days=30):
        member = encode_key_member(key_id, token_type)
        self.api_keys.setdefault(user_id, {})[member] = (
            FIXED_NOW + timedelta(days=days) - TTL_OFFSET
        )

    async def get_conversation(self, conversation_id):
        self._check("get_conversation", conversation_id)
        return await super().get_conversation(conversation_id)

    async def save_conversation(self, conversation):
        self._check("save_conversation", conversation.id, conversation.state)
        await super().save_conversation(conversation)

    async def delete_conversation(self, conversation_id):
        self._check("delete_conversation", conversation_id)
        await super().delete_conversation(conversation_id)

    async def get_api_keys(self, user_id):
        self._check("get_api_keys", user_id)
        return await super().get_api_keys(user_id)

    async def get_api_keys_with_expiration(self, user_id):
        self._check("get_api_keys_with_expiration", user_id)
        return await super().get_api_keys_with_expiration(user_id)

    async def add_api_key(self, user_id, key_id, token_type, ttl):
        self._check("add_api_key", user_id, key_id, token_type, ttl)
        await super().add_api_key(user_id, key_id, token_type, ttl)

    async def revoke_token(self, user_id, key_id):
        self._check("revoke_token", user_id, key_id)
        await super().revoke_token(user_id, key_id)


class FakeProvider:
    """Issues predictable tokens and records every call."""

    def __init__(self):
        self.calls = []
        self.fail_on = {}
        self.issued = 0

    def calls_to(self, name):
        return [call[1:] for call in self.calls if call[0] == name]

    async def generate_token(self, key_id, token_type, ttl):
        self.calls.append(("generate_token", key_id, token_type, ttl))
        if "generate_token" in self.fail_on:
            raise self.fail_on["generate_token"]
        self.issued += 1
        return APIToken(
            key_id=key_id or f"newkey{self.issued:04d}abcdef",
            token=f"secret-token-{self.issued}",
            token_type=token_type,
            ttl=ttl,
        )

    async def revoke_token(self, key_id):
        self.calls.append(("revoke_token", key_id))
        if "revoke_token" in self.fail_on:
            raise self.fail_on["revoke_token"]


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def workflow(store, provider):
    return TokenWorkflow(store, provider, clock=lambda: FIXED_NOW)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
