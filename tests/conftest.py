from unittest.mock import Mock

import pytest


class FakeRedis:
    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.data: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def rpush(self, key: str, value: str):
        self.lists.setdefault(key, []).append(value)
        return len(self.lists[key])

    async def lrange(self, key: str, start: int, end: int):
        stop = None if end == -1 else end + 1
        return list(self.lists.get(key, [])[start:stop])

    async def lrem(self, key: str, count: int, value: str):
        items = self.lists.get(key, [])
        if value in items:
            items.remove(value)
            return 1
        return 0

    async def llen(self, key: str):
        return len(self.lists.get(key, []))

    async def hincrby(self, key: str, field: str, amount: int):
        bucket = self.hashes.setdefault(key, {})
        bucket[field] = str(int(bucket.get(field, "0")) + amount)
        return int(bucket[field])

    async def hgetall(self, key: str):
        return dict(self.hashes.get(key, {}))

    async def set(self, key: str, value: str, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def expire(self, key: str, seconds: int):
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys: str):
        removed = 0
        for key in keys:
            for store in (self.data, self.lists, self.sets):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed

    async def sadd(self, key: str, *members: str):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key: str):
        return set(self.sets.get(key, set()))

    async def srem(self, key: str, *members: str):
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    async def get(self, key: str):
        return self.data.get(key)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("PROVIDER_BASE_URL", "https://provider.test")
    monkeypatch.setenv("SERVICE_TOKEN", "test-service-token")
    monkeypatch.delenv("REDIS_URL", raising=False)
