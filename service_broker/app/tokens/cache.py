"""
Token caching tiers for the Broker Service.

Two tiers are consulted in order:

- ``TokenSlot``: a single in-process slot owned by the token manager.
- ``TokenCache``: an optional external store shared between instances.
  Any failure of the external store reads as a miss.
"""

from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import urlparse

import redis.asyncio as redis
from redis.exceptions import RedisError
from pydantic import ValidationError

from shared.config import BaseConfig
from shared.logging import get_logger
from .models import TokenRecord


class TokenSlot:
    """Single mutable slot holding the current token record."""

    def __init__(self):
        self._record: Optional[TokenRecord] = None

    def get(self) -> Optional[TokenRecord]:
        return self._record

    def put(self, record: TokenRecord) -> None:
        self._record = record

    def clear(self) -> None:
        self._record = None


class TokenCache(ABC):
    """External token cache capability."""

    @abstractmethod
    async def get(self) -> Optional[TokenRecord]:
        """Return the shared token record, or ``None`` on miss or failure."""

    @abstractmethod
    async def set(self, record: TokenRecord, ttl_seconds: Optional[int] = None) -> bool:
        """Store the record; returns whether the write went through."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class NullTokenCache(TokenCache):
    """Used when no external cache is configured."""

    async def get(self) -> Optional[TokenRecord]:
        return None

    async def set(self, record: TokenRecord, ttl_seconds: Optional[int] = None) -> bool:
        return False


class RedisTokenCache(TokenCache):
    """Redis-backed token cache addressed by a fixed key per authority."""

    def __init__(self, redis_url: str, key: str, default_ttl: int = 45 * 60,
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key = key
        self.default_ttl = default_ttl
        self.logger = get_logger("broker.token_cache.redis")
        self.redis = client or redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    async def get(self) -> Optional[TokenRecord]:
        try:
            cached_data = await self.redis.get(self.key)
        except (RedisError, OSError) as e:
            self.logger.warning("Token cache read failed", key=self.key, error=str(e))
            return None

        if not cached_data:
            return None

        try:
            record = TokenRecord.model_validate_json(cached_data)
        except ValidationError as e:
            self.logger.warning("Discarding unreadable cached token", key=self.key, error=str(e))
            return None

        self.logger.debug("Token cache hit", key=self.key)
        return record

    async def set(self, record: TokenRecord, ttl_seconds: Optional[int] = None) -> bool:
        ttl = ttl_seconds or self.default_ttl
        try:
            await self.redis.set(self.key, record.model_dump_json(), ex=ttl)
        except (RedisError, OSError) as e:
            self.logger.warning("Token cache write failed", key=self.key, error=str(e))
            return False

        self.logger.debug("Cached token", key=self.key, ttl=ttl)
        return True

    async def ping(self) -> bool:
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self.redis.aclose()
        self.logger.info("Token cache connection closed")


def default_cache_key(config: BaseConfig) -> str:
    """Key under which the token for the configured authority is shared."""
    if config.token_cache_key:
        return config.token_cache_key
    host = config.resolved_token_host
    return f"broker:client_credentials:{urlparse(host).netloc or host}"


def build_token_cache(config: BaseConfig) -> TokenCache:
    """Redis cache when ``redis_url`` is configured, otherwise a no-op."""
    if not config.redis_url:
        return NullTokenCache()
    return RedisTokenCache(
        config.redis_url,
        default_cache_key(config),
        default_ttl=config.token_cache_ttl_seconds
    )
