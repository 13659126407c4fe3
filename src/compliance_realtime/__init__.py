"""Compliance real-time — live compliance updates for the project dashboard.

Watches the compliance store (metrics, issues, notifications) for changes
and pushes them over WebSockets to every dashboard client subscribed to
the affected project.
"""

__version__ = "0.1.0"
