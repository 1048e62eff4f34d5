from __future__ import annotations

from typing import Protocol

import redis


class RedisClient(Protocol):  # pragma: no cover - typing only
    def publish(self, channel: str, message: str) -> int: ...
    def hset(self, name: str, key: str, value: str) -> int: ...
    def hget(self, name: str, key: str) -> str | bytes | None: ...
    def hgetall(self, name: str) -> dict[str, str] | dict[bytes, bytes]: ...


class RedisFactory(Protocol):  # pragma: no cover - typing only
    def __call__(self, url: str, *, decode_responses: bool = False) -> RedisClient: ...


def redis_from_url(url: str, *, decode_responses: bool = False) -> RedisClient:
    client: RedisClient = redis.Redis.from_url(url, decode_responses=decode_responses)
    return client


# I/O failures of a Redis round-trip; redis-py errors do not derive from OSError
REDIS_ERRORS: tuple[type[Exception], ...] = (OSError, redis.RedisError)
