"""
Unit tests for Broker Access Client.
"""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_broker.app.adapters.access_client import AccessClient
from service_broker.app.domain.models import AccessDecision
from service_broker.app.tokens.manager import TokenManager
from service_broker.tests.helpers import (
    ORG_URL,
    ScriptedRoutes,
    create_test_config,
    create_test_credential,
    token_payload,
)
from shared.errors import ConfigurationError, DownstreamError, TokenAcquisitionError

TOKEN_PATH = "/services/oauth2/token"
CHECK_PATH = "/checkAccess"


@pytest.fixture
def no_sleep():
    """Skip the re-authentication pause."""
    with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture
def routes():
    return ScriptedRoutes()


def make_client(routes, **kwargs) -> AccessClient:
    http_client = routes.client()
    manager = TokenManager(create_test_credential(), client=http_client)
    return AccessClient(ORG_URL, manager, check_path=CHECK_PATH, client=http_client, **kwargs)


class TestCheckAccess:
    """Downstream authorization query."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identity", ["int-001", "a", "0HNxx000000001", "user@example.com"])
    async def test_authorized_identity(self, routes, identity):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAuthorized": True, "subjectId": "u1"}}))
        client = make_client(routes)

        decision = await client.check_access(identity)

        assert decision == AccessDecision(allowed=True, subject_id="u1")

    @pytest.mark.asyncio
    async def test_request_shape(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAuthorized": False, "subjectId": None}}))
        client = make_client(routes)

        await client.check_access("int-001")

        request = routes.calls("GET", CHECK_PATH)[0]
        assert str(request.url) == f"{ORG_URL}/checkAccess/int-001"
        assert request.headers["authorization"] == "Bearer tok-1"
        assert request.headers["accept"] == "application/json"
        assert request.headers["content-type"] == "application/json"

    def test_identity_is_one_encoded_path_segment(self, routes):
        client = make_client(routes)

        url = client.build_url("a/b c?d#e")

        assert url == f"{ORG_URL}/checkAccess/a%2Fb%20c%3Fd%23e"

    @pytest.mark.asyncio
    async def test_denied_identity(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAuthorized": False, "subjectId": None}}))
        client = make_client(routes)

        decision = await client.check_access("int-404")

        assert decision == AccessDecision(allowed=False, subject_id=None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"subjectId": "u1"},
        {"isAuthorized": "true", "subjectId": "u1"},
        {"isAuthorized": 1},
        {"isAuthorized": None},
        [{"isAuthorized": True}],
        "true",
        None,
    ])
    async def test_shape_drift_denies(self, routes, payload):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": payload}))
        client = make_client(routes)

        decision = await client.check_access("int-001")

        assert decision.allowed is False

    @pytest.mark.asyncio
    async def test_non_json_success_denies(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"text": "<html>ok</html>"}))
        client = make_client(routes)

        decision = await client.check_access("int-001")

        assert decision == AccessDecision(allowed=False, subject_id=None)

    @pytest.mark.asyncio
    async def test_custom_field_names(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAgentforceUser": True, "userId": "005xx"}}))
        client = make_client(routes, authorized_field="isAgentforceUser", subject_field="userId")

        decision = await client.check_access("int-001")

        assert decision == AccessDecision(allowed=True, subject_id="005xx")

    @pytest.mark.asyncio
    async def test_second_call_reuses_token(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAuthorized": True, "subjectId": "u1"}}))
        client = make_client(routes)

        await client.check_access("int-001")
        await client.check_access("int-002")

        assert len(routes.calls("POST", TOKEN_PATH)) == 1
        assert len(routes.calls("GET", CHECK_PATH)) == 2


class TestSessionExpiry:
    """Single forced re-authentication on 401."""

    @pytest.mark.asyncio
    async def test_one_401_forces_one_refresh(self, routes, no_sleep):
        routes.add(
            "POST", TOKEN_PATH,
            (200, {"json": token_payload("expired")}),
            (200, {"json": token_payload("renewed")}),
        )
        routes.add(
            "GET", CHECK_PATH,
            (401, {"json": [{"errorCode": "INVALID_SESSION_ID"}]}),
            (200, {"json": {"isAuthorized": True}}),
        )
        client = make_client(routes)

        decision = await client.check_access("int-001")

        assert decision == AccessDecision(allowed=True, subject_id=None)
        assert len(routes.calls("POST", TOKEN_PATH)) == 2
        downstream = routes.calls("GET", CHECK_PATH)
        assert [r.headers["authorization"] for r in downstream] == ["Bearer expired", "Bearer renewed"]
        no_sleep.assert_awaited_once_with(0.15)

    @pytest.mark.asyncio
    async def test_two_401s_fail_without_third_attempt(self, routes, no_sleep):
        routes.add(
            "POST", TOKEN_PATH,
            (200, {"json": token_payload("expired")}),
            (200, {"json": token_payload("renewed")}),
        )
        routes.add("GET", CHECK_PATH, (401, {"text": "INVALID_SESSION_ID"}))
        client = make_client(routes)

        with pytest.raises(DownstreamError) as exc_info:
            await client.check_access("int-001")

        assert exc_info.value.status == 401
        assert exc_info.value.body == "INVALID_SESSION_ID"
        assert len(routes.calls("GET", CHECK_PATH)) == 2
        assert len(routes.calls("POST", TOKEN_PATH)) == 2

    @pytest.mark.asyncio
    async def test_refresh_failure_surfaces_token_error(self, routes, no_sleep):
        routes.add(
            "POST", TOKEN_PATH,
            (200, {"json": token_payload("expired")}),
            (400, {"text": "invalid_client_id"}),
        )
        routes.add("GET", CHECK_PATH, (401, {"text": "INVALID_SESSION_ID"}))
        client = make_client(routes)

        with pytest.raises(TokenAcquisitionError):
            await client.check_access("int-001")

        assert len(routes.calls("GET", CHECK_PATH)) == 1

    @pytest.mark.asyncio
    async def test_403_is_not_a_session_expiry(self, routes, no_sleep):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (403, {"text": "insufficient access"}))
        client = make_client(routes)

        with pytest.raises(DownstreamError) as exc_info:
            await client.check_access("int-001")

        assert exc_info.value.status == 403
        assert len(routes.calls("POST", TOKEN_PATH)) == 1
        assert len(routes.calls("GET", CHECK_PATH)) == 1
        no_sleep.assert_not_awaited()


class TestFailures:
    """Failures that end in FAILED."""

    @pytest.mark.asyncio
    async def test_server_error_is_downstream_error(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, (500, {"text": "apex blew up"}))
        client = make_client(routes)

        with pytest.raises(DownstreamError) as exc_info:
            await client.check_access("int-001")

        assert exc_info.value.status == 500
        assert exc_info.value.body == "apex blew up"

    @pytest.mark.asyncio
    async def test_network_failure_is_downstream_error(self, routes):
        routes.add("POST", TOKEN_PATH, (200, {"json": token_payload("tok-1")}))
        routes.add("GET", CHECK_PATH, httpx.ReadTimeout("timed out"))
        client = make_client(routes)

        with pytest.raises(DownstreamError) as exc_info:
            await client.check_access("int-001")

        assert exc_info.value.status is None
        assert "timed out" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_token_failure_never_reaches_downstream(self, routes):
        routes.add("POST", TOKEN_PATH, (400, {"text": "invalid_client"}))
        routes.add("GET", CHECK_PATH, (200, {"json": {"isAuthorized": True}}))
        client = make_client(routes)

        with pytest.raises(TokenAcquisitionError):
            await client.check_access("int-001")

        assert routes.calls("GET", CHECK_PATH) == []


class TestFromConfig:
    """Construction from settings."""

    def test_uses_configured_paths_and_delay(self):
        config = create_test_config(check_path="services/apexrest/CheckAccess/", reauth_delay_seconds=0.25)
        manager = TokenManager.from_config(config)

        client = AccessClient.from_config(config, manager)

        assert client.build_url("x") == f"{ORG_URL}/services/apexrest/CheckAccess/x"
        assert client.reauth_config.max_attempts == 2
        assert client.reauth_config.base_delay == 0.25

    def test_missing_org_url_is_fatal(self):
        config = create_test_config(org_url="", token_host="https://login.example.test")
        manager = TokenManager.from_config(config)

        with pytest.raises(ConfigurationError):
            AccessClient.from_config(config, manager)
