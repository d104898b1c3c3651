"""基于 Redis 的分布式锁服务"""
import logging
import time

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# 未配置 Redis 时锁退回进程内存
_memory_cache: dict[str, tuple[str, float]] = {}

_REFRESH_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_LOCK_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _memory_get(key: str) -> str | None:
    item = _memory_cache.get(key)
    if item is None:
        return None
    value, expires_at = item
    if time.time() < expires_at:
        return value
    del _memory_cache[key]
    return None


class CacheService:
    """缓存服务类（这里只用到锁）"""

    def __init__(self):
        self._redis: redis.Redis | None = None
        self._connected = False

    async def connect(self, redis_url: str) -> bool:
        """连接Redis"""
        try:
            self._redis = redis.from_url(redis_url, decode_responses=True)
            await self._redis.ping()
            self._connected = True
            logger.info("Redis connected successfully")
            return True
        except (redis.RedisError, OSError, ValueError) as e:
            logger.warning(f"Redis connection failed: {e}, using memory cache")
            self._redis = None
            return False

    async def disconnect(self) -> None:
        """断开Redis连接"""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def acquire_lock(self, key: str, value: str, expire: int) -> bool:
        """获取锁（SET NX EX），成功返回 True"""
        if self._connected and self._redis:
            try:
                return bool(await self._redis.set(key, value, nx=True, ex=int(expire)))
            except redis.RedisError as e:
                logger.error(f"Redis acquire lock error: {e}")
                return False
        if _memory_get(key) is not None:
            return False
        _memory_cache[key] = (value, time.time() + int(expire))
        return True

    async def refresh_lock(self, key: str, value: str, expire: int) -> bool:
        """续租，仅当锁仍归自己所有"""
        if self._connected and self._redis:
            try:
                return bool(await self._redis.eval(_REFRESH_LOCK_SCRIPT, 1, key, value, int(expire)))
            except redis.RedisError as e:
                logger.error(f"Redis refresh lock error: {e}")
                return False
        if _memory_get(key) != value:
            return False
        _memory_cache[key] = (value, time.time() + int(expire))
        return True

    async def release_lock(self, key: str, value: str) -> bool:
        if self._connected and self._redis:
            try:
                return bool(await self._redis.eval(_RELEASE_LOCK_SCRIPT, 1, key, value))
            except redis.RedisError as e:
                logger.error(f"Redis release lock error: {e}")
                return False
        if _memory_get(key) != value:
            return False
        del _memory_cache[key]
        return True


# 单例实例
cache_service = CacheService()
