"""Authentication.

Learn: Dashboard clients and backend services both present a JWT signed
with the shared secret (COMPLIANCE_RT_JWT_SECRET):
1. WebSocket clients → ?token= query param; `sub` becomes the connection's user id
2. HTTP callers (REST layer, CLI) → Authorization: Bearer <token>
"""
