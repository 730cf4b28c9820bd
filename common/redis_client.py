"""
Redis connection shared by the job queues, dedupe keys and health checks
"""
import redis
from typing import Optional, Dict, Any
import logging
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client: Optional[redis.Redis] = None):
        # Bounded socket timeouts so a stalled Redis can't wedge a worker
        if client is None:
            client = redis.Redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_connect_timeout,
                health_check_interval=30,
            )
        self.client = client

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    # Delivery dedupe
    def mark_once(self, key: str, ttl_seconds: int = 7 * 24 * 3600) -> bool:
        """Returns True the first time a key is marked, False if it was already set"""
        return bool(self.client.set(f"once:{key}", 1, nx=True, ex=ttl_seconds))

    def is_marked(self, key: str) -> bool:
        return bool(self.client.exists(f"once:{key}"))

    # Statistics
    def get_cache_stats(self) -> Dict[str, Any]:
        """Get Redis server statistics"""
        try:
            info = self.client.info()
            return {
                "connected": True,
                "used_memory": info.get("used_memory_human", "0B"),
                "connected_clients": info.get("connected_clients", 0),
                "total_commands_processed": info.get("total_commands_processed", 0),
                "aof_enabled": bool(info.get("aof_enabled", 0)),
            }
        except redis.RedisError as e:
            logger.warning(f"Failed to get redis stats: {e}")
            return {"connected": False, "error": str(e)}

# Global Redis client instance
redis_client = RedisClient()
