"""
Broker Service package for the Credential Broker.

The broker answers "is this identity permitted" for a public page, using
an app-level token obtained through the client-credentials grant:
- Token lifecycle: acquisition, transient-error retry, tiered caching
- Downstream query: one forced re-authentication on a 401
- Conservative decisions: malformed payloads resolve to deny

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.tokens: Credential/TokenRecord models, caches, TokenManager.
- app.adapters: HTTP client for the downstream authorization query.
- app.domain: AccessDecision and payload interpretation.
"""
