"""
Mock org server providing the token endpoint and the access-check query.
"""

import uuid
from typing import Dict, Optional, List, Set, Tuple
from urllib.parse import parse_qs

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from shared.logging import get_logger


class MockOrgServer:
    """Mock org acting as both the authority and the downstream query host."""

    def __init__(self, port: int = 8090,
                 token_path: str = "/services/oauth2/token",
                 check_path: str = "/checkAccess"):
        self.port = port
        self.token_path = token_path
        self.check_path = check_path.rstrip("/")
        self.logger = get_logger("mock.org")
        self.app = FastAPI(title="Mock Org", version="1.0.0")

        self.client_id = "broker-client"
        self.client_secret = "broker-secret"
        self.instance_url = f"http://localhost:{port}"

        # integration id -> subject id; absent means not authorized
        self.users: Dict[str, Optional[str]] = {
            "int-001": "005xx000001",
            "int-002": "005xx000002",
        }

        self.valid_tokens: Set[str] = set()
        # (status, body) served by the token endpoint before any real grant
        self.scripted_token_failures: List[Tuple[int, str]] = []
        self.token_requests = 0
        self.check_requests = 0

        self._setup_routes()

    def fail_next_token_requests(self, status: int, body: str, times: int = 1):
        """Queue token endpoint failures."""
        self.scripted_token_failures.extend([(status, body)] * times)

    def expire_sessions(self):
        """Invalidate every issued token, as a session timeout would."""
        self.valid_tokens.clear()

    def _setup_routes(self):
        """Set up mock org routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-org",
                "message": "Mock org for the Credential Broker",
                "version": "1.0.0"
            }

        @self.app.post(self.token_path)
        async def token_endpoint(request: Request):
            """Client-credentials token endpoint."""
            self.token_requests += 1
            if self.scripted_token_failures:
                status, body = self.scripted_token_failures.pop(0)
                return PlainTextResponse(body, status_code=status)

            form = parse_qs((await request.body()).decode("utf-8"))
            return self._handle_client_credentials(
                grant_type=_first(form, "grant_type"),
                client_id=_first(form, "client_id"),
                client_secret=_first(form, "client_secret")
            )

        @self.app.get(self.check_path + "/{integration_id}")
        async def check_access(integration_id: str, request: Request):
            """Downstream authorization query."""
            self.check_requests += 1
            authorization = request.headers.get("authorization", "")
            token = authorization[len("Bearer "):] if authorization.startswith("Bearer ") else ""
            if token not in self.valid_tokens:
                return JSONResponse(
                    status_code=401,
                    content=[{"message": "Session expired or invalid", "errorCode": "INVALID_SESSION_ID"}]
                )

            subject_id = self.users.get(integration_id)
            return {
                "isAuthorized": integration_id in self.users,
                "subjectId": subject_id
            }

    def _handle_client_credentials(self, grant_type: Optional[str], client_id: Optional[str],
                                   client_secret: Optional[str]):
        """Handle client credentials grant type."""
        if grant_type != "client_credentials":
            return JSONResponse(
                status_code=400,
                content={"error": "unsupported_grant_type", "error_description": "grant type not supported"}
            )

        if client_id != self.client_id or client_secret != self.client_secret:
            return JSONResponse(
                status_code=400,
                content={"error": "invalid_client", "error_description": "invalid client credentials"}
            )

        access_token = f"00Dxx!{uuid.uuid4().hex}"
        self.valid_tokens.add(access_token)
        self.logger.info("Issued mock token", client_id=client_id)

        return {
            "access_token": access_token,
            "instance_url": self.instance_url,
            "token_type": "Bearer",
            "issued_at": "0"
        }

    def run(self):
        """Run the mock server."""
        import uvicorn
        uvicorn.run(self.app, host="0.0.0.0", port=self.port)


def _first(form: Dict[str, List[str]], name: str) -> Optional[str]:
    values = form.get(name)
    return values[0] if values else None


def create_app() -> FastAPI:
    """Create FastAPI application."""
    return MockOrgServer().app


if __name__ == "__main__":
    server = MockOrgServer()
    server.run()
