"""Shared state store backends used by the coordination layer."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from threading import RLock
from typing import TYPE_CHECKING, Protocol

import redis

if TYPE_CHECKING:
    from canary_releaser.settings import Settings


class StoreUnavailableError(RuntimeError):
    """Raised when the shared store cannot be reached or rejects a command."""


class SharedStore(Protocol):
    def ping(self) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_s: float) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def set_with_ttl(self, key: str, value: str, ttl_s: float) -> None: ...

    def delete(self, key: str) -> None: ...

    def set_add(self, key: str, *members: str) -> None: ...

    def set_members(self, key: str) -> set[str]: ...

    def set_remove(self, key: str, *members: str) -> None: ...

    def close(self) -> None: ...


def _ttl_ms(ttl_s: float) -> int:
    return max(1, int(ttl_s * 1000))


@dataclass(slots=True)
class _Entry:
    value: str | set[str]
    expires_at: float | None = None


class InMemoryStore:
    """Process-local store with the same semantics as the Redis backend.

    Expiry is evaluated lazily against ``clock`` so tests can drive time by hand.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = RLock()
        self._entries: dict[str, _Entry] = {}

    def ping(self) -> None:
        return

    def set_if_absent(self, key: str, value: str, ttl_s: float) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = _Entry(value=value, expires_at=self._expiry(ttl_s))
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            if not isinstance(entry.value, str):
                raise TypeError(f"key {key} does not hold a string")
            return entry.value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value)

    def set_with_ttl(self, key: str, value: str, ttl_s: float) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._expiry(ttl_s))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def set_add(self, key: str, *members: str) -> None:
        if not members:
            return
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value=set())
                self._entries[key] = entry
            if not isinstance(entry.value, set):
                raise TypeError(f"key {key} does not hold a set")
            entry.value.update(members)

    def set_members(self, key: str) -> set[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return set()
            if not isinstance(entry.value, set):
                raise TypeError(f"key {key} does not hold a set")
            return set(entry.value)

    def set_remove(self, key: str, *members: str) -> None:
        with self._lock:
            entry = self._live(key)
            if entry is None or not isinstance(entry.value, set):
                return
            entry.value.difference_update(members)
            if not entry.value:
                del self._entries[key]

    def close(self) -> None:
        return

    def _expiry(self, ttl_s: float) -> float:
        return self._clock() + _ttl_ms(ttl_s) / 1000.0

    def _live(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry


class RedisStore:
    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6379,
        password: str | None = None,
        db: int = 0,
        timeout_s: float = 5.0,
    ) -> None:
        self._client = redis.Redis(
            host=host,
            port=port,
            password=password or None,
            db=db,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
            decode_responses=True,
        )

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            raise StoreUnavailableError(f"redis {operation} failed: {exc}") from exc

    def ping(self) -> None:
        with self._guard("PING"):
            self._client.ping()

    def set_if_absent(self, key: str, value: str, ttl_s: float) -> bool:
        # SET NX PX sets the value and its expiry in one command.
        with self._guard("SET NX"):
            return bool(self._client.set(key, value, nx=True, px=_ttl_ms(ttl_s)))

    def get(self, key: str) -> str | None:
        with self._guard("GET"):
            value = self._client.get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        with self._guard("SET"):
            self._client.set(key, value)

    def set_with_ttl(self, key: str, value: str, ttl_s: float) -> None:
        with self._guard("SET PX"):
            self._client.set(key, value, px=_ttl_ms(ttl_s))

    def delete(self, key: str) -> None:
        with self._guard("DEL"):
            self._client.delete(key)

    def set_add(self, key: str, *members: str) -> None:
        if not members:
            return
        with self._guard("SADD"):
            self._client.sadd(key, *members)

    def set_members(self, key: str) -> set[str]:
        with self._guard("SMEMBERS"):
            members = self._client.smembers(key)
        return {str(member) for member in members}

    def set_remove(self, key: str, *members: str) -> None:
        if not members:
            return
        with self._guard("SREM"):
            self._client.srem(key, *members)

    def close(self) -> None:
        self._client.close()


def create_store(settings: Settings) -> SharedStore:
    if settings.store_backend == "inmemory":
        return InMemoryStore()
    if settings.store_backend == "redis":
        store = RedisStore(
            host=settings.redis.host,
            port=settings.redis.port,
            password=settings.redis.password,
            db=settings.redis.db,
            timeout_s=settings.redis.timeout,
        )
        store.ping()
        return store
    raise ValueError(f"unsupported store_backend: {settings.store_backend}")
