"""
Adapters package for the Broker Service.

Contains the HTTP client for the downstream authorization query. The
adapter encapsulates:

- URL construction and request headers
- The single re-authentication retry on a 401
- Mapping of downstream failures to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .access_client import AccessClient, SessionExpiredError

__all__ = [
    "AccessClient",
    "SessionExpiredError",
]
