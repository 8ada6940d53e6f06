"""
Credential and token data models for the Broker Service.
"""

import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, SecretStr

from shared.config import BaseConfig
from shared.errors import ConfigurationError


class Credential(BaseModel):
    """App-level client credential for the authority."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: SecretStr
    token_url: str

    @classmethod
    def from_config(cls, config: BaseConfig) -> "Credential":
        """Build the credential from configuration, failing fast on gaps."""
        host = config.resolved_token_host
        missing = []
        if not host:
            missing.append("token_host/org_url")
        if not config.client_id.strip():
            missing.append("client_id")
        if not config.client_secret.strip():
            missing.append("client_secret")
        if missing:
            raise ConfigurationError(
                f"Missing authority configuration: {', '.join(missing)}",
                details={"missing": missing}
            )

        path = "/" + config.token_path.lstrip("/")
        return cls(
            client_id=config.client_id.strip(),
            client_secret=SecretStr(config.client_secret.strip()),
            token_url=f"{host}{path}"
        )

    def grant_form(self) -> Dict[str, str]:
        """Form fields for the client-credentials exchange."""
        return {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret.get_secret_value(),
        }


class TokenRecord(BaseModel):
    """An acquired access token. Replaced on refresh, never updated."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    instance_url: Optional[str] = None
    fetched_at: float
    expires_at: Optional[float] = None

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any], now: Optional[float] = None) -> "TokenRecord":
        """Build a record from the authority's JSON response.

        Raises ``ValueError`` when ``access_token`` is missing or not a string.
        """
        if now is None:
            now = time.time()

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("access_token missing from token response")

        instance_url = payload.get("instance_url")
        expires_at = None
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool) and expires_in > 0:
            expires_at = now + float(expires_in)
        elif isinstance(expires_in, str) and expires_in.isdigit() and int(expires_in) > 0:
            expires_at = now + float(expires_in)

        return cls(
            access_token=access_token,
            instance_url=instance_url if isinstance(instance_url, str) else None,
            fetched_at=now,
            expires_at=expires_at
        )

    def is_expired(self, skew_seconds: float = 0.0, now: Optional[float] = None) -> bool:
        """Whether the authority-declared lifetime (minus skew) has passed.

        Records without a declared lifetime never expire locally. The skew is
        capped at half the declared lifetime.
        """
        if self.expires_at is None:
            return False
        if now is None:
            now = time.time()
        return now >= self.expires_at - self.effective_skew(skew_seconds)

    def effective_skew(self, skew_seconds: float) -> float:
        """Skew buffer usable for this record."""
        if self.expires_at is None:
            return skew_seconds
        return min(skew_seconds, (self.expires_at - self.fetched_at) / 2)
