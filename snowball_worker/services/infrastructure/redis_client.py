# snowball_worker/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from snowball_worker.config import Settings, settings as default_settings
from snowball_worker.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisOperationError(Exception):
    """Raised when a queue-critical Redis command fails."""


# KEYS: source set, target set, pause flag. ARGV: target score.
POP_TO_SCRIPT = """
if redis.call("EXISTS", KEYS[3]) == 1 then
    return false
end
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
    return false
end
redis.call("ZADD", KEYS[2], ARGV[1], popped[1])
return popped[1]
"""

# KEYS: record, target set, source sets... ARGV: member, target score, record, require source.
MOVE_MEMBER_SCRIPT = """
local in_first = 0
local removed = 0
for i = 3, #KEYS do
    local n = redis.call("ZREM", KEYS[i], ARGV[1])
    if i == 3 then
        in_first = n
    end
    removed = removed + n
end
if removed == 0 and ARGV[4] == "1" then
    return {0, 0}
end
redis.call("SET", KEYS[1], ARGV[3])
redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
return {1, in_first}
"""


class FastRedisClient:
    """
    Pooled Redis client shared by the job queue and the caches.

    Cache helpers (get/set_with_ttl) degrade to a miss on failure.
    Sorted-set helpers back the durable queue, so they log and raise instead.
    """

    def __init__(self, app_settings: Settings | None = None):
        self.settings = app_settings or default_settings
        self.pool = None
        self.client = None
        self._pop_to = None
        self._move_member = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            logger.info("Attempting Redis connection", url_preview=self.settings.REDIS_URL[:30])

            self.pool = ConnectionPool.from_url(
                self.settings.REDIS_URL,
                max_connections=self.settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)
            self._pop_to = self.client.register_script(POP_TO_SCRIPT)
            self._move_member = self.client.register_script(MOVE_MEMBER_SCRIPT)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Redis client initialized successfully",
                max_connections=self.settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Cache helpers (fail soft)
    # ------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:60], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:60], error=str(e))
            return False

    # ------------------------------------------------------------------
    # Queue helpers (raise on failure)
    # ------------------------------------------------------------------

    async def store(self, key: str, value: str) -> None:
        """Write a value without expiry; used for job records."""
        try:
            await self._ensure_initialized()
            await self.client.set(key, value)
        except Exception as e:
            logger.error("Redis STORE failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"SET {key} failed: {e}") from e

    async def load(self, key: str) -> str | None:
        """Read a value that must not be confused with a cache miss."""
        try:
            await self._ensure_initialized()
            return await self.client.get(key)
        except Exception as e:
            logger.error("Redis LOAD failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"GET {key} failed: {e}") from e

    async def remove(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            await self._ensure_initialized()
            return int(await self.client.delete(*keys))
        except Exception as e:
            logger.error("Redis REMOVE failed", key_count=len(keys), error=str(e))
            raise RedisOperationError(f"DEL failed: {e}") from e

    async def zadd(self, key: str, member: str, score: float, *, only_existing: bool = False) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zadd(key, {member: score}, xx=only_existing, ch=True))
        except Exception as e:
            logger.error("Redis ZADD failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZADD {key} failed: {e}") from e

    async def pop_to(
        self, source: str, target: str, score: float, *, unless_key: str
    ) -> str | None:
        """
        Pop the lowest-scored member of ``source`` into ``target`` in one step.

        Returns None when ``source`` is empty or ``unless_key`` exists.
        """
        try:
            await self._ensure_initialized()
            member = await self._pop_to(keys=[source, target, unless_key], args=[score])
            return str(member) if member else None
        except Exception as e:
            logger.error("Redis POP_TO failed", key=source[:60], error=str(e))
            raise RedisOperationError(f"POP_TO {source} failed: {e}") from e

    async def move_member(
        self,
        record_key: str,
        record: str,
        member: str,
        target: str,
        score: float,
        *,
        sources: tuple[str, ...] = (),
        require_source: bool = False,
    ) -> tuple[bool, bool]:
        """
        Atomically take ``member`` out of ``sources``, rewrite its record and
        add it to ``target``.

        With ``require_source`` nothing is written unless the member was in
        one of the sources. Returns ``(applied, was_in_first_source)``.
        """
        try:
            await self._ensure_initialized()
            applied, in_first = await self._move_member(
                keys=[record_key, target, *sources],
                args=[member, score, record, 1 if require_source else 0],
            )
            return bool(applied), bool(in_first)
        except Exception as e:
            logger.error("Redis MOVE_MEMBER failed", key=target[:60], error=str(e))
            raise RedisOperationError(f"MOVE_MEMBER {target} failed: {e}") from e

    async def zscore(self, key: str, member: str) -> float | None:
        try:
            await self._ensure_initialized()
            score = await self.client.zscore(key, member)
            return None if score is None else float(score)
        except Exception as e:
            logger.error("Redis ZSCORE failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZSCORE {key} failed: {e}") from e

    async def zrem(self, key: str, member: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zrem(key, member))
        except Exception as e:
            logger.error("Redis ZREM failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZREM {key} failed: {e}") from e

    async def zrangebyscore(
        self, key: str, min_score: float, max_score: float, limit: int | None = None
    ) -> list[str]:
        try:
            await self._ensure_initialized()
            if limit is not None:
                result = await self.client.zrangebyscore(
                    key, min_score, max_score, start=0, num=limit
                )
            else:
                result = await self.client.zrangebyscore(key, min_score, max_score)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis ZRANGEBYSCORE failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZRANGEBYSCORE {key} failed: {e}") from e

    async def zrange(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        """Members by rank, lowest score first."""
        try:
            await self._ensure_initialized()
            result = await self.client.zrange(key, start, end)
            return [str(item) for item in result] if result else []
        except Exception as e:
            logger.error("Redis ZRANGE failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZRANGE {key} failed: {e}") from e

    async def zcard(self, key: str) -> int:
        try:
            await self._ensure_initialized()
            return int(await self.client.zcard(key))
        except Exception as e:
            logger.error("Redis ZCARD failed", key=key[:60], error=str(e))
            raise RedisOperationError(f"ZCARD {key} failed: {e}") from e
