"""API router modules for the metering API."""

from __future__ import annotations

from api.routers import (
    billing,
    exports,
    health,
    limits,
    plans,
    usage,
)

__all__ = [
    "billing",
    "exports",
    "health",
    "limits",
    "plans",
    "usage",
]
