"""Simulated Windows host for integration testing.

This package provides an in-memory SystemContext so the provisioner can be
driven end to end without IIS, the service manager or SQL Server.

Key Features:
- IIS sites, bindings and app pools with realistic collision behavior
- Services that can lag or refuse to start
- A SQL Server instance with per-connection accounting
- Fault injection (transient, conflict, unavailable, failed-but-applied)
- A log of every mutating call

Usage:
    from system_mock import MockSystemContext

    ctx = MockSystemContext.fresh()
    result = Orchestrator(plan, ctx).run()

    assert result.success
    assert ctx.db.max_open_sessions == 1
"""

from .context import DEFAULT_APP_POOL, DEFAULT_SITE, MockSystemContext
from .state import MockAppPool, MockDatabaseServer, MockSession, MockSite, MockTable

__all__ = [
    "DEFAULT_APP_POOL",
    "DEFAULT_SITE",
    "MockAppPool",
    "MockDatabaseServer",
    "MockSession",
    "MockSite",
    "MockSystemContext",
    "MockTable",
]
