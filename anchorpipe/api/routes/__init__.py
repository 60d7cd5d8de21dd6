"""
API route modules. Every router is mounted under ``/api``.
"""

from . import (
    audit,
    auth,
    cron,
    dsr,
    health,
    hmac_secrets,
    ingestion,
    repos,
    security_alerts,
    siem,
)

ROUTERS = [
    health.router,
    auth.router,
    repos.router,
    audit.router,
    dsr.router,
    hmac_secrets.router,
    siem.router,
    security_alerts.router,
    ingestion.router,
    cron.router,
]

__all__ = [
    "ROUTERS",
    "audit",
    "auth",
    "cron",
    "dsr",
    "health",
    "hmac_secrets",
    "ingestion",
    "repos",
    "security_alerts",
    "siem",
]
