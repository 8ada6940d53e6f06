"""
Token manager for the Broker Service.

Produces a usable access token for the configured authority while keeping
live client-credentials exchanges to a minimum.
"""

import re
import time
from typing import Optional, Pattern, Union

import httpx

from shared.config import BaseConfig
from shared.errors import TokenAcquisitionError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_async
from .cache import NullTokenCache, TokenCache, TokenSlot, build_token_cache
from .models import Credential, TokenRecord


# Authority rejections that usually clear up on their own: login rate
# limiting, grant hiccups and My Domain routing that has not propagated yet.
TRANSIENT_ERROR_PATTERN = re.compile(
    r"invalid_grant|login rate exceeded|request not supported on this domain",
    re.IGNORECASE
)
TRANSIENT_STATUS_CODE = 400


class TransientAuthorityError(Exception):
    """A token endpoint rejection that is worth retrying."""

    def __init__(self, status: int, body: str):
        super().__init__(f"Transient authority error {status}: {body}")
        self.status = status
        self.body = body


class TokenManager:
    """Acquires, caches and refreshes the app-level access token."""

    def __init__(self,
                 credential: Credential,
                 slot: Optional[TokenSlot] = None,
                 cache: Optional[TokenCache] = None,
                 retry_config: Optional[RetryConfig] = None,
                 transient_pattern: Union[str, Pattern[str]] = TRANSIENT_ERROR_PATTERN,
                 cache_ttl_seconds: int = 45 * 60,
                 expiry_skew_seconds: float = 30.0,
                 timeout: float = 10.0,
                 user_agent: str = "credential-broker/1.0",
                 client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.credential = credential
        self.slot = slot or TokenSlot()
        self.cache = cache or NullTokenCache()
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            base_delay=0.3,
            max_delay=0.7,
            backoff_strategy="window"
        )
        if isinstance(transient_pattern, str):
            transient_pattern = re.compile(transient_pattern, re.IGNORECASE)
        self.transient_pattern = transient_pattern
        self.cache_ttl_seconds = cache_ttl_seconds
        self.expiry_skew_seconds = expiry_skew_seconds
        self.timeout = timeout
        self.user_agent = user_agent
        self.metrics = metrics
        self.logger = get_logger("broker.token_manager")
        self._client = client

    @classmethod
    def from_config(cls, config: BaseConfig,
                    client: Optional[httpx.AsyncClient] = None,
                    cache: Optional[TokenCache] = None,
                    metrics: Optional[MetricsCollector] = None) -> "TokenManager":
        """Build a manager from settings. Raises ``ConfigurationError`` on gaps."""
        credential = Credential.from_config(config)
        return cls(
            credential,
            cache=cache if cache is not None else build_token_cache(config),
            retry_config=RetryConfig(
                max_attempts=config.token_max_attempts,
                base_delay=config.token_backoff_min,
                max_delay=config.token_backoff_max,
                backoff_strategy="window"
            ),
            cache_ttl_seconds=config.token_cache_ttl_seconds,
            expiry_skew_seconds=config.token_expiry_skew_seconds,
            timeout=config.http_timeout,
            user_agent=config.user_agent,
            client=client,
            metrics=metrics
        )

    @property
    def current(self) -> Optional[TokenRecord]:
        """The record held in the in-process slot, if any."""
        return self.slot.get()

    async def get_token(self) -> str:
        """Return a cached token, acquiring a new one on a miss."""
        record = self.slot.get()
        if record is not None and not record.is_expired(self.expiry_skew_seconds):
            self._count("token_cache_lookups_total", tier="in_process", result="hit")
            return record.access_token
        self._count("token_cache_lookups_total", tier="in_process", result="miss")

        shared = await self._read_shared()
        if shared is not None and not shared.is_expired(self.expiry_skew_seconds):
            self._count("token_cache_lookups_total", tier="external", result="hit")
            self.slot.put(shared)
            return shared.access_token
        self._count("token_cache_lookups_total", tier="external", result="miss")

        record = await self.acquire()
        return record.access_token

    async def force_refresh(self) -> TokenRecord:
        """Acquire a new token regardless of what is cached."""
        self.logger.info("Forcing token refresh", token_url=self.credential.token_url)
        return await self.acquire()

    def invalidate(self) -> None:
        """Drop the in-process token."""
        self.slot.clear()

    async def acquire(self) -> TokenRecord:
        """Exchange the client credentials for a new token.

        Transient rejections are retried per ``retry_config``; anything else
        fails on the spot with ``TokenAcquisitionError``.
        """
        attempts = 0

        async def exchange() -> TokenRecord:
            nonlocal attempts
            attempts += 1
            return await self._exchange_once(attempts)

        try:
            record = await retry_async(
                exchange,
                exceptions=(TransientAuthorityError,),
                config=self.retry_config
            )
        except RetryError as e:
            last = e.last_exception
            self._count("token_acquisitions_total", outcome="exhausted")
            raise TokenAcquisitionError(
                f"Token endpoint still rejecting after {e.attempts} attempts",
                status=getattr(last, "status", None),
                body=getattr(last, "body", str(last)),
                attempts=e.attempts
            ) from e
        except TokenAcquisitionError:
            self._count("token_acquisitions_total", outcome="failed")
            raise

        self.slot.put(record)
        await self._write_shared(record)
        self._count("token_acquisitions_total", outcome="success")
        self.logger.info(
            "Acquired access token",
            attempts=attempts,
            instance_url=record.instance_url,
            expires_at=record.expires_at
        )
        return record

    def is_transient(self, status_code: int, body: str) -> bool:
        """Whether a token endpoint rejection is worth retrying."""
        return status_code == TRANSIENT_STATUS_CODE and bool(self.transient_pattern.search(body or ""))

    async def _exchange_once(self, attempt: int) -> TokenRecord:
        try:
            response = await self._post_grant()
        except httpx.HTTPError as e:
            self._count("token_acquisition_attempts_total", result="unreachable")
            self.logger.error("Token endpoint unreachable", attempt=attempt, error=str(e))
            raise TokenAcquisitionError(
                "Token endpoint unreachable",
                body=str(e),
                attempts=attempt
            ) from e

        if response.is_success:
            try:
                record = TokenRecord.from_token_response(response.json())
            except ValueError as e:
                self._count("token_acquisition_attempts_total", result="malformed")
                raise TokenAcquisitionError(
                    "Token endpoint returned an unusable payload",
                    status=response.status_code,
                    body=response.text,
                    attempts=attempt
                ) from e
            self._count("token_acquisition_attempts_total", result="success")
            return record

        body = response.text
        if self.is_transient(response.status_code, body):
            self._count("token_acquisition_attempts_total", result="transient")
            raise TransientAuthorityError(response.status_code, body)

        self._count("token_acquisition_attempts_total", result="rejected")
        self.logger.error(
            "Token endpoint rejected credentials",
            attempt=attempt,
            status_code=response.status_code,
            response=body
        )
        raise TokenAcquisitionError(
            f"Token endpoint error: {response.status_code}",
            status=response.status_code,
            body=body,
            attempts=attempt
        )

    async def _post_grant(self) -> httpx.Response:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "User-Agent": self.user_agent
        }
        if self._client is not None:
            return await self._client.post(
                self.credential.token_url,
                data=self.credential.grant_form(),
                headers=headers
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                self.credential.token_url,
                data=self.credential.grant_form(),
                headers=headers
            )

    async def _read_shared(self) -> Optional[TokenRecord]:
        try:
            return await self.cache.get()
        except Exception as e:
            self.logger.warning("Shared token cache unavailable", error=str(e))
            return None

    async def _write_shared(self, record: TokenRecord) -> None:
        ttl = self.cache_ttl_seconds
        if record.expires_at is not None:
            # Never let the shared copy outlive the token itself
            remaining = int(record.expires_at - time.time() - record.effective_skew(self.expiry_skew_seconds))
            ttl = max(1, min(ttl, remaining))
        try:
            await self.cache.set(record, ttl)
        except Exception as e:
            self.logger.warning("Shared token cache write failed", error=str(e))

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)
