"""Account notifications (currently: low credit balance)."""

from __future__ import annotations

import logging
from decimal import Decimal

import httpx

from config import settings

logger = logging.getLogger(__name__)


async def notify_low_balance(user_id: str, balance: Decimal) -> bool:
    """Tell the account owner their balance dropped under the threshold.

    Delivery goes to ``LOW_BALANCE_WEBHOOK_URL`` when configured; otherwise
    the event is only logged. Returns True when a webhook accepted it.
    """
    logger.warning(
        "User %s balance %s is below the %s credit threshold",
        user_id,
        balance,
        settings.LOW_BALANCE_THRESHOLD,
    )
    if not settings.LOW_BALANCE_WEBHOOK_URL:
        return False

    payload = {
        "event": "low_balance",
        "user_id": user_id,
        "balance": float(balance),
        "threshold": float(settings.LOW_BALANCE_THRESHOLD),
        "purchase_url": f"{settings.APP_URL.rstrip('/')}/credits",
    }
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(settings.LOW_BALANCE_WEBHOOK_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error("Low balance notification for %s failed: %s", user_id, exc)
        return False
    return True
