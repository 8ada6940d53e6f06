#!/usr/bin/env python3
"""
Prime the shared token cache before a broker fleet starts taking traffic.

Runs one client-credentials exchange with the broker settings (BROKER_*
environment or .env) and stores the result in Redis so that cold instances
pick it up instead of hitting the authority together.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from service_broker.app.tokens.cache import NullTokenCache, RedisTokenCache, default_cache_key  # noqa: E402
from service_broker.app.tokens.manager import TokenManager  # noqa: E402
from shared.config import get_config  # noqa: E402
from shared.logging import configure_logging  # noqa: E402


async def warm(*, redis_url: Optional[str], key: Optional[str], dry_run: bool) -> dict:
    """Acquire a token, store it in the shared cache and return the summary."""
    overrides = {}
    if redis_url:
        overrides["redis_url"] = redis_url
    if key:
        overrides["token_cache_key"] = key
    config = get_config("broker", 8000, **overrides)

    if dry_run or not config.redis_url:
        cache = NullTokenCache()
    else:
        cache = RedisTokenCache(config.redis_url, default_cache_key(config), config.token_cache_ttl_seconds)

    manager = TokenManager.from_config(config, cache=cache)
    try:
        record = await manager.acquire()
        stored = await cache.get()
    finally:
        await cache.close()

    return {
        "token_url": manager.credential.token_url,
        "cache_key": default_cache_key(config),
        "cached": stored is not None and stored.access_token == record.access_token,
        "instance_url": record.instance_url,
        "expires_at": record.expires_at,
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prime the shared broker token cache.")
    parser.add_argument("--redis-url", default=os.getenv("BROKER_REDIS_URL"), help="Redis connection URL")
    parser.add_argument("--key", default=None, help="Override the shared cache key")
    parser.add_argument("--dry-run", action="store_true", help="Exchange credentials without writing to Redis")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    configure_logging("token-warm", os.getenv("BROKER_LOG_LEVEL", "info"))
    try:
        summary = asyncio.run(warm(redis_url=args.redis_url, key=args.key, dry_run=args.dry_run))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[token-warm] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[token-warm] DRY RUN - no Redis writes executed")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
