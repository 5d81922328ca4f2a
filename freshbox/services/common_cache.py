"""
通用缓存工具
为订单读取与订单追踪提供简单的Redis缓存功能
"""

import json
import logging
from typing import Optional, Any, List
import redis.asyncio as redis

from freshbox.core.redis import get_redis_client

logger = logging.getLogger(__name__)


class SimpleCache:
    """简单缓存管理器

    未显式传入客户端时使用全局 redis_manager 的连接池
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, key_prefix: str = ""):
        self._redis_client = redis_client
        self.key_prefix = key_prefix

    @property
    def redis_client(self) -> redis.Redis:
        client = self._redis_client or get_redis_client()
        if client is None:
            raise RuntimeError("Redis未初始化")
        return client

    def _get_key(self, key: str) -> str:
        """获取完整的缓存key"""
        return f"{self.key_prefix}{key}" if self.key_prefix else key

    def _strip_prefix(self, full_key: str) -> str:
        if self.key_prefix and full_key.startswith(self.key_prefix):
            return full_key[len(self.key_prefix):]
        return full_key

    async def get(self, key: str) -> Optional[Any]:
        """获取缓存值"""
        try:
            full_key = self._get_key(key)
            data = await self.redis_client.get(full_key)

            if data:
                return json.loads(data)

            return None

        except Exception as e:
            logger.error(f"获取缓存失败 {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """设置缓存值"""
        try:
            full_key = self._get_key(key)
            data = json.dumps(value, default=str, ensure_ascii=False)

            await self.redis_client.setex(full_key, ttl, data)
            return True

        except Exception as e:
            logger.error(f"设置缓存失败 {key}: {e}")
            return False

    async def set_if_absent(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """key不存在时才写入"""
        try:
            full_key = self._get_key(key)
            data = json.dumps(value, default=str, ensure_ascii=False)
            return bool(await self.redis_client.set(full_key, data, ex=ttl, nx=True))
        except Exception as e:
            logger.error(f"写入缓存失败 {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """删除缓存"""
        try:
            full_key = self._get_key(key)
            result = await self.redis_client.delete(full_key)
            return result > 0

        except Exception as e:
            logger.error(f"删除缓存失败 {key}: {e}")
            return False

    async def scan_keys(self, pattern: str) -> List[str]:
        """列出匹配模式的key（不含前缀）"""
        try:
            full_pattern = self._get_key(pattern)
            return [
                self._strip_prefix(key)
                async for key in self.redis_client.scan_iter(match=full_pattern)
            ]
        except Exception as e:
            logger.error(f"扫描缓存失败 {pattern}: {e}")
            return []

    async def exists(self, key: str) -> bool:
        """检查缓存是否存在"""
        try:
            full_key = self._get_key(key)
            return await self.redis_client.exists(full_key) > 0
        except Exception as e:
            logger.error(f"检查缓存存在失败 {key}: {e}")
            return False

    async def incr(self, key: str, ttl: int = 3600) -> int:
        """计数器自增并刷新过期时间"""
        try:
            full_key = self._get_key(key)
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.expire(full_key, ttl)
                count, _ = await pipe.execute()
            return int(count)
        except Exception as e:
            logger.error(f"缓存计数失败 {key}: {e}")
            return 0


# 各个模块的缓存实例
order_cache = SimpleCache(key_prefix="order:")
tracking_cache = SimpleCache(key_prefix="tracking:")
