"""
Access decision models for the Broker Service.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class CallState(str, Enum):
    """Progress of a single access check."""
    START = "start"
    TOKEN_READY = "token_ready"
    CALLED = "called"
    REFRESHING = "refreshing"
    RECALLED = "recalled"
    DECIDED = "decided"
    FAILED = "failed"


class AccessDecision(BaseModel):
    """Whether an external identity may use the protected capability."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    subject_id: Optional[str] = None


def interpret_decision(payload: Any,
                       authorized_field: str = "isAuthorized",
                       subject_field: str = "subjectId") -> AccessDecision:
    """Read a downstream payload, denying on any shape drift.

    Only a real boolean flag can grant access; a missing or mistyped flag,
    or a body that is not an object at all, yields ``allowed=False``.
    """
    if not isinstance(payload, dict):
        return AccessDecision(allowed=False)

    flag = payload.get(authorized_field)
    subject = payload.get(subject_field)
    return AccessDecision(
        allowed=flag if isinstance(flag, bool) else False,
        subject_id=subject if isinstance(subject, str) else None
    )
