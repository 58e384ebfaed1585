"""
Read-only monitoring API.

HTTP endpoints for observing catalog state: per-status counts, item lists
and item detail with stored errors. Does NOT trigger processing or change
any item.
"""

from .server import create_app, router, run_monitor_server

__all__ = ["create_app", "router", "run_monitor_server"]
