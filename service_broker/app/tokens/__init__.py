"""
Token lifecycle for the Broker Service.

- models: Credential and TokenRecord.
- cache: in-process slot and the optional external cache.
- manager: acquisition, retry and refresh.
"""

from .models import Credential, TokenRecord
from .cache import TokenSlot, TokenCache, NullTokenCache, RedisTokenCache, build_token_cache
from .manager import TokenManager, TransientAuthorityError

__all__ = [
    "Credential",
    "TokenRecord",
    "TokenSlot",
    "TokenCache",
    "NullTokenCache",
    "RedisTokenCache",
    "build_token_cache",
    "TokenManager",
    "TransientAuthorityError",
]
