"""
Downstream authorization client for the Broker Service.
"""

from typing import Optional
from urllib.parse import quote

import httpx

from shared.config import BaseConfig
from shared.errors import ConfigurationError, DownstreamError, TokenAcquisitionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_async
from ..domain.models import AccessDecision, CallState, interpret_decision
from ..tokens.manager import TokenManager


class SessionExpiredError(Exception):
    """Downstream answered 401: the token in hand is no longer accepted."""

    def __init__(self, response: httpx.Response):
        super().__init__("Downstream session invalid")
        self.response = response


class AccessClient:
    """Answers "is this identity permitted" against the downstream org.

    A 401 from the downstream query triggers exactly one forced token
    refresh and one reissue of the request.
    """

    def __init__(self,
                 org_url: str,
                 token_manager: TokenManager,
                 check_path: str = "/checkAccess",
                 reauth_config: Optional[RetryConfig] = None,
                 authorized_field: str = "isAuthorized",
                 subject_field: str = "subjectId",
                 timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.org_url = org_url.rstrip("/")
        self.check_path = "/" + check_path.strip("/")
        self.token_manager = token_manager
        self.reauth_config = reauth_config or RetryConfig(
            max_attempts=2,
            base_delay=0.15,
            jitter=False,
            backoff_strategy="fixed"
        )
        self.authorized_field = authorized_field
        self.subject_field = subject_field
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("broker.access_client")
        self._client = client

    @classmethod
    def from_config(cls, config: BaseConfig, token_manager: TokenManager,
                    client: Optional[httpx.AsyncClient] = None,
                    metrics: Optional[MetricsCollector] = None) -> "AccessClient":
        if not config.org_url.strip():
            raise ConfigurationError("Missing downstream configuration: org_url", details={"missing": ["org_url"]})
        return cls(
            config.org_url,
            token_manager,
            check_path=config.check_path,
            reauth_config=RetryConfig(
                max_attempts=2,
                base_delay=config.reauth_delay_seconds,
                jitter=False,
                backoff_strategy="fixed"
            ),
            authorized_field=config.authorized_field,
            subject_field=config.subject_field,
            timeout=config.http_timeout,
            client=client,
            metrics=metrics
        )

    def build_url(self, identity: str) -> str:
        """Downstream query URL with the identity as one encoded path segment."""
        return f"{self.org_url}{self.check_path}/{quote(identity, safe='')}"

    async def check_access(self, identity: str) -> AccessDecision:
        """Ask the downstream org whether ``identity`` is permitted."""
        url = self.build_url(identity)
        self._enter(CallState.START, identity)
        reissued = False

        async def call_downstream() -> httpx.Response:
            token = await self.token_manager.get_token()
            self._enter(CallState.TOKEN_READY, identity)
            response = await self._get(url, token)
            self._enter(CallState.RECALLED if reissued else CallState.CALLED, identity,
                        status_code=response.status_code)
            if response.status_code == 401:
                raise SessionExpiredError(response)
            return response

        async def reauthenticate(attempt: int, error: Exception) -> None:
            nonlocal reissued
            self._enter(CallState.REFRESHING, identity)
            self._count("downstream_reauth_total")
            await self.token_manager.force_refresh()
            reissued = True

        try:
            if self.metrics is not None:
                with self.metrics.time_operation("access_check_duration_seconds"):
                    response = await self._call_with_reauth(call_downstream, reauthenticate)
            else:
                response = await self._call_with_reauth(call_downstream, reauthenticate)
        except RetryError as e:
            expired = e.last_exception.response
            self._fail(identity, "unauthorized", status_code=expired.status_code)
            raise DownstreamError(expired.status_code, expired.text) from e
        except httpx.HTTPError as e:
            self._fail(identity, "unreachable", error=str(e))
            raise DownstreamError(None, str(e)) from e
        except TokenAcquisitionError as e:
            self._fail(identity, "token_error", error=e.message)
            raise

        if not response.is_success:
            self._fail(identity, "downstream_error", status_code=response.status_code)
            raise DownstreamError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError:
            self.logger.warning("Downstream returned non-JSON body, denying", identity=identity)
            payload = None

        decision = interpret_decision(payload, self.authorized_field, self.subject_field)
        self._enter(CallState.DECIDED, identity, allowed=decision.allowed)
        self._count("access_checks_total", outcome="allowed" if decision.allowed else "denied")
        return decision

    async def _call_with_reauth(self, call_downstream, reauthenticate) -> httpx.Response:
        return await retry_async(
            call_downstream,
            exceptions=(SessionExpiredError,),
            config=self.reauth_config,
            before_retry=reauthenticate
        )

    async def _get(self, url: str, token: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json"
        }
        if self._client is not None:
            return await self._client.get(url, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=headers)

    def _enter(self, state: CallState, identity: str, **fields) -> None:
        self.logger.debug("Access check state", state=state.value, identity=identity, **fields)

    def _fail(self, identity: str, reason: str, **fields) -> None:
        self._enter(CallState.FAILED, identity, reason=reason, **fields)
        self._count("access_checks_total", outcome=reason)
        self.logger.error("Access check failed", identity=identity, reason=reason, **fields)

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)
