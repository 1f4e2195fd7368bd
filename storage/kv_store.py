"""
Storage - Key-Value Store.

============================================================
RESPONSIBILITY
============================================================
Shared key-value store used by every network task for:
- Address profiles (hash per address)
- Dedup cache (keys with a TTL)
- Last-processed-block checkpoints
- Latest block summary and the high-risk transaction index

============================================================
DESIGN PRINCIPLES
============================================================
- Every mutation is atomic on its own (no read-modify-write)
- Compare-and-set for max/min fields runs server side (Lua)
- Wei amounts stay exact decimal strings (big-integer Lua add / max)
- Every call is bounded by a timeout
- Failures surface as StoreTimeoutError (transient)

============================================================
IMPLEMENTATIONS
============================================================
- RedisKeyValueStore: redis.asyncio client (production)
- InMemoryKeyValueStore: single-process store (dry-run, tests)

============================================================
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import RedisSettings
from core.exceptions import StoreTimeoutError


logger = logging.getLogger(__name__)


# Keep the larger numeric value in a hash field.
_HSET_MAX_SCRIPT = """
local current = redis.call('HGET', KEYS[1], ARGV[1])
if (not current) or (tonumber(ARGV[2]) > tonumber(current)) then
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    return 1
end
return 0
"""

# Keep the smaller numeric value in a hash field.
_HSET_MIN_SCRIPT = """
local current = redis.call('HGET', KEYS[1], ARGV[1])
if (not current) or (tonumber(ARGV[2]) < tonumber(current)) then
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    return 1
end
return 0
"""

# Exact decimal-string arithmetic for non-negative integers of any size
# (wei amounts overflow both int64 and doubles).
_BIGINT_LIB = """
local function big_add(a, b)
    local out = {}
    local carry = 0
    local i, j = #a, #b
    while i > 0 or j > 0 or carry > 0 do
        local da = i > 0 and string.byte(a, i) - 48 or 0
        local db = j > 0 and string.byte(b, j) - 48 or 0
        local sum = da + db + carry
        out[#out + 1] = string.char(48 + sum % 10)
        carry = math.floor(sum / 10)
        i = i - 1
        j = j - 1
    end
    return string.reverse(table.concat(out))
end

local function big_gt(a, b)
    if #a ~= #b then
        return #a > #b
    end
    return a > b
end
"""

# Add to a decimal-string hash field, returning the new value.
_HINCRBY_BIG_SCRIPT = _BIGINT_LIB + """
local current = redis.call('HGET', KEYS[1], ARGV[1]) or '0'
local value = big_add(current, ARGV[2])
redis.call('HSET', KEYS[1], ARGV[1], value)
return value
"""

# Keep the larger decimal-string value in a hash field.
_HSET_MAX_BIG_SCRIPT = _BIGINT_LIB + """
local current = redis.call('HGET', KEYS[1], ARGV[1])
if (not current) or big_gt(ARGV[2], current) then
    redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
    return 1
end
return 0
"""


def _decimal(value: int) -> str:
    if value < 0:
        raise ValueError(f"Expected a non-negative integer, got {value}")
    return str(int(value))


class KeyValueStore(ABC):
    """Async key-value store contract."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """Set a value. With nx=True returns False if the key existed."""

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        pass

    @abstractmethod
    async def hincrby_big(self, key: str, field: str, amount: int) -> int:
        """Exact add of a non-negative integer of any size (stored as a decimal string)."""

    @abstractmethod
    async def hset_max_big(self, key: str, field: str, value: int) -> bool:
        """hset_max for non-negative integers of any size."""

    @abstractmethod
    async def hset_max(self, key: str, field: str, value: float) -> bool:
        """Atomically store value if larger than the current one."""

    @abstractmethod
    async def hset_min(self, key: str, field: str, value: float) -> bool:
        """Atomically store value if smaller than the current one."""

    @abstractmethod
    async def zadd(self, key: str, member: str, score: float) -> None:
        pass

    @abstractmethod
    async def ztrim(self, key: str, keep: int) -> None:
        """Keep only the `keep` highest-scored members."""

    @abstractmethod
    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        pass

    @abstractmethod
    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        """Members with min_score <= score <= max_score, lowest score first."""

    @abstractmethod
    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def close(self) -> None:
        return None


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Usage:
        store = RedisKeyValueStore(RedisSettings(host="localhost"))
        await store.hincrby("address_stats:ethereum:0xabc", "sent_count")
    """

    def __init__(
        self,
        settings: Optional[RedisSettings] = None,
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._settings = settings or RedisSettings()
        self._timeout = self._settings.timeout
        self._client = client or redis.Redis(
            host=self._settings.host,
            port=self._settings.port,
            password=self._settings.password or None,
            db=self._settings.db,
            decode_responses=True,
            socket_timeout=self._timeout,
        )
        self._hset_max = self._client.register_script(_HSET_MAX_SCRIPT)
        self._hset_min = self._client.register_script(_HSET_MIN_SCRIPT)
        self._hincrby_big = self._client.register_script(_HINCRBY_BIG_SCRIPT)
        self._hset_max_big = self._client.register_script(_HSET_MAX_BIG_SCRIPT)

    async def _run(self, op: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(
                f"Redis {op} timed out after {self._timeout}s",
                original_error=e,
                context={"op": op},
            ) from e
        except RedisError as e:
            raise StoreTimeoutError(
                f"Redis {op} failed: {e}",
                original_error=e,
                context={"op": op},
            ) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._run("GET", self._client.get(key))

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        result = await self._run("SET", self._client.set(key, value, ex=ttl_seconds, nx=nx))
        return bool(result)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._run("HGETALL", self._client.hgetall(key)) or {}

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        await self._run("HSET", self._client.hset(key, mapping={k: str(v) for k, v in mapping.items()}))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._run("HINCRBY", self._client.hincrby(key, field, amount)))

    async def hincrby_big(self, key: str, field: str, amount: int) -> int:
        result = await self._run(
            "HINCRBYBIG",
            self._hincrby_big(keys=[key], args=[field, _decimal(amount)]),
        )
        return int(result)

    async def hset_max_big(self, key: str, field: str, value: int) -> bool:
        return bool(await self._run(
            "HSETMAXBIG",
            self._hset_max_big(keys=[key], args=[field, _decimal(value)]),
        ))

    async def hset_max(self, key: str, field: str, value: float) -> bool:
        return bool(await self._run("HSETMAX", self._hset_max(keys=[key], args=[field, value])))

    async def hset_min(self, key: str, field: str, value: float) -> bool:
        return bool(await self._run("HSETMIN", self._hset_min(keys=[key], args=[field, value])))

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self._run("ZADD", self._client.zadd(key, {member: score}))

    async def ztrim(self, key: str, keep: int) -> None:
        await self._run("ZREMRANGEBYRANK", self._client.zremrangebyrank(key, 0, -(keep + 1)))

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        return await self._run("ZREVRANGE", self._client.zrevrange(key, start, stop))

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        return await self._run("ZRANGEBYSCORE", self._client.zrangebyscore(key, min_score, max_score))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self._run(
            "ZREMRANGEBYSCORE",
            self._client.zremrangebyscore(key, min_score, max_score),
        ))

    async def ping(self) -> bool:
        try:
            return bool(await self._run("PING", self._client.ping()))
        except StoreTimeoutError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store with the same semantics as RedisKeyValueStore.

    Each operation completes without yielding to the event loop,
    so it is atomic with respect to other tasks.
    """

    def __init__(self) -> None:
        self._strings: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._strings.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._strings[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        if nx and self._live(key) is not None:
            return False
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._strings[key] = (str(value), expires_at)
        return True

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hset(self, key: str, mapping: Dict[str, Any]) -> None:
        self._hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        bucket = self._hashes.setdefault(key, {})
        value = int(bucket.get(field, "0")) + amount
        bucket[field] = str(value)
        return value

    async def hincrby_big(self, key: str, field: str, amount: int) -> int:
        bucket = self._hashes.setdefault(key, {})
        value = int(bucket.get(field, "0")) + int(_decimal(amount))
        bucket[field] = str(value)
        return value

    async def hset_max_big(self, key: str, field: str, value: int) -> bool:
        bucket = self._hashes.setdefault(key, {})
        current = bucket.get(field)
        if current is None or int(_decimal(value)) > int(current):
            bucket[field] = str(value)
            return True
        return False

    async def hset_max(self, key: str, field: str, value: float) -> bool:
        bucket = self._hashes.setdefault(key, {})
        current = bucket.get(field)
        if current is None or float(value) > float(current):
            bucket[field] = str(value)
            return True
        return False

    async def hset_min(self, key: str, field: str, value: float) -> bool:
        bucket = self._hashes.setdefault(key, {})
        current = bucket.get(field)
        if current is None or float(value) < float(current):
            bucket[field] = str(value)
            return True
        return False

    async def zadd(self, key: str, member: str, score: float) -> None:
        self._zsets.setdefault(key, {})[member] = float(score)

    async def ztrim(self, key: str, keep: int) -> None:
        members = self._zsets.get(key)
        if not members or len(members) <= keep:
            return
        ranked = sorted(members.items(), key=lambda item: item[1], reverse=True)
        self._zsets[key] = dict(ranked[:keep])

    async def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        ranked = sorted(self._zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        end = None if stop == -1 else stop + 1
        return [member for member, _ in ranked[start:end]]

    async def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        ranked = sorted(self._zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in ranked if min_score <= score <= max_score]

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        members = self._zsets.get(key, {})
        doomed = [m for m, score in members.items() if min_score <= score <= max_score]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def ping(self) -> bool:
        return True
