"""Routers package."""

from . import (
    health,
    account,
    uploads,
    transcriptions,
    billing,
    cron,
    chapters,
)
