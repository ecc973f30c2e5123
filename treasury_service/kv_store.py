"""Pluggable key-value and ledger backends for the treasury intent store."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .schemas import utc_now_iso

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Persistence backend failed to read or write."""


class KeyValueStore(ABC):
    """String key-value surface the intent store persists into."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        """Write value only if the stored value still equals expected.

        expected=None means the key must not exist yet. Returns False when
        another writer got there first.
        """
        pass

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        if self._data.get(key) != expected:
            return False
        self._data[key] = value
        return True


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store; compare-and-set uses WATCH/MULTI.

    Example:
        kv = RedisKeyValueStore("redis://localhost:6379/0", key_prefix="automaton:")
    """

    def __init__(self, redis_url: str, key_prefix: str = ""):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis = None

    async def _ensure_connection(self):
        if self._redis is None:
            try:
                self._redis = aioredis.from_url(self.redis_url)
                await self._redis.ping()
            except RedisError as e:
                self._redis = None
                raise StoreError(f"redis unavailable: {e}") from e
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @staticmethod
    def _decode(value: Any) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode()
        return str(value)

    async def get(self, key: str) -> Optional[str]:
        client = await self._ensure_connection()
        try:
            return self._decode(await client.get(self._key(key)))
        except RedisError as e:
            raise StoreError(str(e)) from e

    async def set(self, key: str, value: str) -> None:
        client = await self._ensure_connection()
        try:
            await client.set(self._key(key), value)
        except RedisError as e:
            raise StoreError(str(e)) from e

    async def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        client = await self._ensure_connection()
        full_key = self._key(key)
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(full_key)
                current = self._decode(await pipe.get(full_key))
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(full_key, value)
                await pipe.execute()
                return True
        except WatchError:
            logger.info("redis compare_and_set lost race on %s", full_key)
            return False
        except RedisError as e:
            raise StoreError(str(e)) from e

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.close()
            finally:
                self._redis = None


@dataclass
class LedgerTransaction:
    amount_cents: int
    description: str
    type: str = "transfer_out"
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransactionLedger(ABC):
    """Append-only record of money that left the treasury."""

    @abstractmethod
    async def insert_transaction(self, txn: LedgerTransaction) -> str:
        pass

    @abstractmethod
    async def recent_transactions(self, limit: int = 50) -> List[LedgerTransaction]:
        pass


class MemoryTransactionLedger(TransactionLedger):
    def __init__(self):
        self.transactions: List[LedgerTransaction] = []

    async def insert_transaction(self, txn: LedgerTransaction) -> str:
        self.transactions.append(txn)
        return txn.id

    async def recent_transactions(self, limit: int = 50) -> List[LedgerTransaction]:
        return list(reversed(self.transactions))[: max(1, limit)]
