"""Payment settlement: idempotent credit grants keyed by external payment id.

The Stripe webhook and the client-side verify call both end up in
``apply_payment_event``; the unique constraint on
``credit_purchases.external_payment_id`` is what makes them converge.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import stripe
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_purchase import CreditPurchase
from models.user import User
from services.credits import credit, to_credits

logger = logging.getLogger(__name__)

APPLIED = "applied"
ALREADY_APPLIED = "already_applied"

PURCHASE_SUCCEEDED = "succeeded"
PURCHASE_FAILED = "failed"


class PaymentEventError(ValueError):
    """A payment event is missing or carries malformed metadata."""


class PaymentUserNotFound(LookupError):
    """Payment metadata references an unknown user."""


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def parse_payment_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Extract ``user_id``, ``credits`` and ``amount_paid`` from checkout metadata."""
    metadata = metadata or {}
    user_id = str(metadata.get("user_id") or metadata.get("userId") or "").strip()
    raw_credits = metadata.get("credits")
    raw_paid = metadata.get("amount_paid", metadata.get("amountPaid", 0))

    if not user_id or raw_credits in (None, ""):
        raise PaymentEventError("Missing metadata: user_id and credits are required.")
    try:
        amount_credits = to_credits(raw_credits)
        amount_paid = to_credits(raw_paid or 0)
    except (InvalidOperation, ValueError) as exc:
        raise PaymentEventError(f"Malformed payment metadata: {exc}") from exc
    if amount_credits <= 0:
        raise PaymentEventError("Payment metadata credits must be positive.")

    return {"user_id": user_id, "amount_credits": amount_credits, "amount_paid": amount_paid}


async def apply_payment_event(
    db: AsyncSession,
    *,
    external_payment_id: str,
    user_id: str,
    amount_credits: Decimal,
    amount_paid: Decimal = Decimal("0"),
    provider: str = "stripe",
) -> str:
    """Grant credits for a settled payment exactly once.

    Returns ``"applied"`` when this call granted the credits and
    ``"already_applied"`` when the payment id was seen before.
    """
    if not external_payment_id:
        raise PaymentEventError("external_payment_id is required")

    user_result = await db.execute(select(User.id).where(User.id == user_id))
    if user_result.scalar_one_or_none() is None:
        raise PaymentUserNotFound(user_id)

    existing_result = await db.execute(
        select(CreditPurchase).where(CreditPurchase.external_payment_id == external_payment_id)
    )
    existing = existing_result.scalar_one_or_none()
    if existing is not None:
        if existing.status != PURCHASE_FAILED:
            return ALREADY_APPLIED
        # A delayed payment that failed earlier has now succeeded.
        promoted = await db.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.id == existing.id,
                CreditPurchase.status == PURCHASE_FAILED,
            )
            .values(status=PURCHASE_SUCCEEDED, amount_credits=to_credits(amount_credits))
            .execution_options(synchronize_session=False)
        )
        if promoted.rowcount != 1:
            await db.rollback()
            return ALREADY_APPLIED
        await credit(existing.user_id, amount_credits, db, commit=False)
        await db.commit()
        logger.info("Promoted failed purchase %s to succeeded", external_payment_id)
        return APPLIED

    purchase = CreditPurchase(
        user_id=user_id,
        external_payment_id=external_payment_id,
        amount_credits=to_credits(amount_credits),
        amount_paid=to_credits(amount_paid),
        status=PURCHASE_SUCCEEDED,
        provider=provider,
    )
    try:
        db.add(purchase)
        await db.flush()
        balance = await credit(user_id, amount_credits, db, commit=False)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Payment %s was applied concurrently", external_payment_id)
        return ALREADY_APPLIED

    logger.info(
        "Applied payment %s: +%s credits for user %s (balance %s)",
        external_payment_id,
        to_credits(amount_credits),
        user_id,
        balance,
    )
    return APPLIED


async def record_failed_payment(
    db: AsyncSession,
    *,
    external_payment_id: str,
    user_id: str,
    amount_credits: Decimal,
    amount_paid: Decimal = Decimal("0"),
    provider: str = "stripe",
) -> bool:
    """Record a failed payment without crediting. Never downgrades a succeeded purchase."""
    existing_result = await db.execute(
        select(CreditPurchase).where(CreditPurchase.external_payment_id == external_payment_id)
    )
    if existing_result.scalar_one_or_none() is not None:
        return False

    db.add(
        CreditPurchase(
            user_id=user_id,
            external_payment_id=external_payment_id,
            amount_credits=to_credits(amount_credits),
            amount_paid=to_credits(amount_paid),
            status=PURCHASE_FAILED,
            provider=provider,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return False
    logger.warning("Recorded failed payment %s for user %s", external_payment_id, user_id)
    return True


def _configure_stripe() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise RuntimeError("Stripe is not configured.")
    stripe.api_key = settings.STRIPE_SECRET_KEY


def construct_webhook_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe signature and return the event as plain dicts."""
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise RuntimeError("Stripe webhook secret not configured")
    stripe.Webhook.construct_event(
        payload=payload,
        sig_header=signature,
        secret=settings.STRIPE_WEBHOOK_SECRET,
    )
    return json.loads(payload)


async def retrieve_checkout_session(session_id: str) -> Dict[str, Any]:
    _configure_stripe()
    session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id)
    return _as_dict(session)


async def create_checkout_session(*, user_id: str, email: Optional[str], credits: int) -> Dict[str, Any]:
    """Create a hosted checkout for a credit pack priced at ``CREDIT_PRICE_CENTS`` per credit."""
    _configure_stripe()
    unit_amount = int(settings.CREDIT_PRICE_CENTS) * int(credits)
    amount_paid = Decimal(unit_amount) / Decimal(100)
    app_url = settings.APP_URL.rstrip("/")
    session = await asyncio.to_thread(
        stripe.checkout.Session.create,
        mode="payment",
        customer_email=email or None,
        line_items=[
            {
                "price_data": {
                    "currency": settings.STRIPE_CURRENCY,
                    "unit_amount": unit_amount,
                    "product_data": {"name": f"{credits} PodBrief credits"},
                },
                "quantity": 1,
            }
        ],
        metadata={
            "user_id": user_id,
            "credits": str(credits),
            "amount_paid": str(amount_paid),
        },
        success_url=f"{app_url}/credits?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{app_url}/credits?canceled=1",
    )
    data = _as_dict(session)
    return {"session_id": data.get("id"), "checkout_url": data.get("url"), "credits": credits}
