"""
Broker service for the Credential Broker.

Fronts the public page: answers whether an integration identity may use the
protected capability by querying the downstream org with an app-level token.
"""

from typing import Dict, Optional

import httpx
from fastapi import Query
from fastapi.responses import JSONResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import DownstreamError, TokenAcquisitionError
from shared.logging import set_integration_context
from .adapters.access_client import AccessClient
from .tokens.cache import NullTokenCache, TokenCache, build_token_cache
from .tokens.manager import TokenManager


class BrokerService(BaseService):
    """Broker service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 token_cache: Optional[TokenCache] = None):
        super().__init__("broker", 8000, config=config)

        self.http_client = client or httpx.AsyncClient(timeout=self.config.http_timeout)
        self.token_cache = token_cache if token_cache is not None else build_token_cache(self.config)
        self.token_manager = TokenManager.from_config(
            self.config,
            client=self.http_client,
            cache=self.token_cache,
            metrics=self.metrics
        )
        self.access_client = AccessClient.from_config(
            self.config,
            self.token_manager,
            client=self.http_client,
            metrics=self.metrics
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            self.token_manager.invalidate()
            await self.token_cache.close()
            await self.http_client.aclose()

        self._setup_broker_routes()

    def _setup_broker_routes(self):
        """Set up broker-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "broker",
                "message": "Credential Broker - Access Check Service",
                "version": "1.0.0"
            }

        @self.app.get("/check-access")
        async def check_access(integration_id: Optional[str] = Query(default=None, alias="integrationId")):
            """Answer whether an integration identity is permitted."""
            identity = (integration_id or "").strip()
            if not identity:
                return JSONResponse(status_code=400, content={"error": "missing_integrationId"})

            set_integration_context(identity)

            try:
                decision = await self.access_client.check_access(identity)
            except DownstreamError as e:
                return JSONResponse(
                    status_code=502,
                    content={"error": "downstream_error", "status": e.status, "detail": e.body}
                )
            except TokenAcquisitionError as e:
                return JSONResponse(
                    status_code=502,
                    content={"error": "token_error", "status": e.status, "detail": e.body}
                )
            except Exception as e:
                self.logger.error("Access check crashed", error=str(e), exc_info=True)
                self.metrics.record_error("SERVER_ERROR")
                return JSONResponse(
                    status_code=500,
                    content={"error": "server_error", "detail": str(e)}
                )

            return JSONResponse(
                status_code=200,
                content={"allowed": decision.allowed, "userId": decision.subject_id, "status": 200},
                headers={"Cache-Control": self.config.edge_cache_control}
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Report external token cache reachability."""
        if isinstance(self.token_cache, NullTokenCache):
            return {"token_cache": "disabled"}
        return {"token_cache": "ok" if await self.token_cache.ping() else "unavailable"}


def create_app(config: Optional[ServiceConfig] = None,
               client: Optional[httpx.AsyncClient] = None,
               token_cache: Optional[TokenCache] = None):
    """Create FastAPI application."""
    service = BrokerService(config=config, client=client, token_cache=token_cache)
    return service.app


if __name__ == "__main__":
    service = BrokerService(get_config("broker", 8000))
    service.run()
