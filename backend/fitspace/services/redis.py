"""Redis client used for the dead-letter stream.

Connection pooling and reconnection are delegated to redis-py; this wrapper
only owns lazy initialisation and a small set of stream helpers.
"""

import threading
from typing import Any, Dict, List, Optional

from redis.asyncio import ConnectionPool, Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError as RedisConnectionError
from redis.retry import Retry

from fitspace.utils.logger import logger


class RedisClient:
    """Lazily connected Redis client.

    Initialisation is guarded by a threading.Lock so the client is not bound
    to whichever event loop happened to create it.
    """

    def __init__(self, url: str, max_connections: int = 20):
        self._url = url
        self._max_connections = max_connections
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._init_lock = threading.Lock()
        self._initialized = False

    async def get_client(self) -> Redis:
        if self._client is not None and self._initialized:
            return self._client

        with self._init_lock:
            if self._client is not None and self._initialized:
                return self._client

            logger.info(f"Initializing Redis with max {self._max_connections} connections")
            self._pool = ConnectionPool.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=10.0,
                socket_connect_timeout=5.0,
                socket_keepalive=True,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=self._max_connections,
            )
            self._client = Redis(
                connection_pool=self._pool,
                retry=Retry(ExponentialBackoff(), 3),
                retry_on_error=[BusyLoadingError, RedisConnectionError],
            )
            await self._client.ping()
            self._initialized = True
            logger.info("Successfully connected to Redis")
            return self._client

    async def close(self) -> None:
        with self._init_lock:
            if self._client:
                try:
                    await self._client.aclose()
                except Exception as e:
                    logger.warning(f"Error closing Redis client: {e}")
                finally:
                    self._client = None
            if self._pool:
                try:
                    await self._pool.aclose()
                except Exception as e:
                    logger.warning(f"Error closing Redis pool: {e}")
                finally:
                    self._pool = None
            self._initialized = False
            logger.info("Redis connection and pool closed")

    async def stream_add(self, stream_key: str, fields: Dict[str, str], maxlen: Optional[int] = None,
                         approximate: bool = True) -> str:
        client = await self.get_client()
        kwargs: Dict[str, Any] = {}
        if maxlen is not None:
            kwargs["maxlen"] = maxlen
            kwargs["approximate"] = approximate
        return await client.xadd(stream_key, fields, **kwargs)

    async def stream_range(self, stream_key: str, start: str = "-", end: str = "+",
                           count: Optional[int] = None) -> List[tuple]:
        """Return ``(entry_id, fields)`` tuples between two stream IDs."""
        client = await self.get_client()
        result = await client.xrange(stream_key, start, end, count=count)
        return [(entry_id, fields) for entry_id, fields in result]

    async def stream_delete(self, stream_key: str, *entry_ids: str) -> int:
        if not entry_ids:
            return 0
        client = await self.get_client()
        return await client.xdel(stream_key, *entry_ids)

    async def stream_len(self, stream_key: str) -> int:
        client = await self.get_client()
        return await client.xlen(stream_key)
