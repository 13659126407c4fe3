"""Real-time infrastructure — change feeds → WebSocket fan-out.

Learn: Events flow through two inputs into one delivery path:
1. PG NOTIFY change feeds (metrics, issues, notifications) → ChangeWatcher
2. Side-channel broadcasts (HTTP API, Redis relay) → RealTimeGateway
Both end in the Broadcaster, which writes to every connection scoped to
the event's project.
"""
