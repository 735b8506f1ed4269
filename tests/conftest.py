import asyncio
import json

import fakeredis
import pytest

from auth import IdentityVerifier, generate_token
from backend import RedisBackend
from gateway import PresenceGateway

SECRET = "test-secret"

USERS = {
    "alice": {"name": "Alice Kumar", "avatar": "https://cdn.example/alice.png", "role": "alumni", "email": "alice@campus.edu"},
    "bob": {"name": "Bob Mensah", "avatar": "", "role": "student", "email": "bob@campus.edu"},
    "carol": {"name": "Carol Diaz", "avatar": "", "role": "student", "email": "carol@campus.edu"},
}


class FakeWebSocket:
    """Records every frame the gateway sends to it."""

    def __init__(self, broken: bool = False, stalled: bool = False):
        self.frames = []
        self.broken = broken
        self.stalled = stalled
        self.close_code = None

    async def send_text(self, text: str):
        if self.broken:
            raise RuntimeError("socket is closed")
        if self.stalled:
            await asyncio.sleep(60)
        self.frames.append(json.loads(text))

    def events(self, name=None):
        return [f for f in self.frames if name is None or f["event"] == name]

    def last(self, name):
        return self.events(name)[-1]["data"]

    def clear(self):
        self.frames.clear()

    async def close(self, code: int = 1000):
        self.close_code = code


def token_for(user_id: str, secret: str = SECRET, **kwargs) -> str:
    return generate_token(user_id, secret=secret, **kwargs)


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
def seed_users(redis_server):
    client = fakeredis.FakeRedis(server=redis_server, decode_responses=True)
    for user_id, data in USERS.items():
        client.hset(f"user:{user_id}", mapping=data)
    return USERS


@pytest.fixture
def make_backend(redis_server, seed_users):
    def factory():
        return RedisBackend(fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True))
    return factory


@pytest.fixture
def make_gateway(make_backend):
    def factory(store_timeout: float = 5, send_timeout: float = 5):
        backend = make_backend()
        verifier = IdentityVerifier(backend, secret=SECRET)
        return PresenceGateway(backend, verifier, store_timeout=store_timeout, send_timeout=send_timeout)
    return factory
