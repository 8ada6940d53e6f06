"""
Test helper functions and factory methods for the Broker Service.
"""

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from shared.config import ServiceConfig, get_config
from service_broker.app.tokens.cache import TokenCache
from service_broker.app.tokens.models import Credential, TokenRecord


ORG_URL = "https://org.example.test"
TOKEN_URL = f"{ORG_URL}/services/oauth2/token"
CHECK_PATH = "/checkAccess"


def create_test_config(**overrides) -> ServiceConfig:
    """Broker configuration pointing at the test org."""
    values: Dict[str, Any] = {
        "org_url": ORG_URL,
        "client_id": "broker-client",
        "client_secret": "broker-secret",
        "redis_url": None,
        "reauth_delay_seconds": 0.0,
        "token_backoff_min": 0.0,
        "token_backoff_max": 0.0,
    }
    values.update(overrides)
    return get_config("broker", 8000, **values)


def create_test_credential(token_url: str = TOKEN_URL) -> Credential:
    """Credential for the test authority."""
    return Credential(client_id="broker-client", client_secret="broker-secret", token_url=token_url)


def create_token_record(access_token: str = "cached-token", **kwargs) -> TokenRecord:
    """Token record as if acquired just now."""
    kwargs.setdefault("fetched_at", time.time())
    return TokenRecord(access_token=access_token, **kwargs)


def token_payload(access_token: str = "token-1", **extra) -> Dict[str, Any]:
    """Successful token endpoint payload."""
    payload = {"access_token": access_token, "instance_url": ORG_URL, "token_type": "Bearer"}
    payload.update(extra)
    return payload


class ScriptedRoutes:
    """Serves queued responses per route and records every request.

    Each route holds a queue of response factories; the last one keeps
    being served once the queue is down to a single entry.
    """

    def __init__(self):
        self.routes: List[Tuple[str, str, List[Callable[[httpx.Request], httpx.Response]]]] = []
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path_prefix: str, *responses) -> "ScriptedRoutes":
        """Queue responses; each is a (status, kwargs) tuple or an exception to raise."""
        factories = []
        for response in responses:
            if isinstance(response, Exception):
                factories.append(_raiser(response))
            else:
                status, kwargs = response
                factories.append(_responder(status, kwargs))
        self.routes.append((method.upper(), path_prefix, factories))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, prefix, factories in self.routes:
            if request.method == method and request.url.path.startswith(prefix):
                factory = factories.pop(0) if len(factories) > 1 else factories[0]
                return factory(request)
        return httpx.Response(404, json={"error": "no scripted route"})

    def calls(self, method: str, path_prefix: str) -> List[httpx.Request]:
        """Requests recorded for a route."""
        return [
            request for request in self.requests
            if request.method == method.upper() and request.url.path.startswith(path_prefix)
        ]

    def client(self) -> httpx.AsyncClient:
        """Async client served by this script."""
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def _responder(status: int, kwargs: Dict[str, Any]) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, request=request, **kwargs)
    return respond


def _raiser(error: Exception) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        raise error
    return respond


class FakeTokenCache(TokenCache):
    """In-memory stand-in for the shared token cache."""

    def __init__(self, record: Optional[TokenRecord] = None, fail: bool = False):
        self.record = record
        self.fail = fail
        self.reads = 0
        self.writes: List[Tuple[TokenRecord, Optional[int]]] = []
        self.closed = False

    async def get(self) -> Optional[TokenRecord]:
        self.reads += 1
        if self.fail:
            raise ConnectionError("cache unavailable")
        return self.record

    async def set(self, record: TokenRecord, ttl_seconds: Optional[int] = None) -> bool:
        if self.fail:
            raise ConnectionError("cache unavailable")
        self.writes.append((record, ttl_seconds))
        self.record = record
        return True

    async def ping(self) -> bool:
        return not self.fail

    async def close(self) -> None:
        self.closed = True
