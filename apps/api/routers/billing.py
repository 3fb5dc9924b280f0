"""Billing and credits router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary
from services.payments import (
    ALREADY_APPLIED,
    PaymentEventError,
    PaymentUserNotFound,
    apply_payment_event,
    construct_webhook_event,
    create_checkout_session,
    parse_payment_metadata,
    record_failed_payment,
    retrieve_checkout_session,
)

router = APIRouter()
logger = logging.getLogger(__name__)

SUCCESS_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
FAILED_EVENTS = ("checkout.session.async_payment_failed",)


class CheckoutRequest(BaseModel):
    credits: int = Field(default=100, ge=10, le=10000)


class VerifyRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


@router.get("/credits")
async def credits_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(user.id, db)


@router.post("/checkout")
async def checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
):
    try:
        return await create_checkout_session(user_id=user.id, email=user.email, credits=request.credits)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Stripe webhook: settle completed checkouts, record failed async payments."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = construct_webhook_event(payload, signature)
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except Exception as exc:
        logger.warning("Rejected Stripe webhook: %s", exc)
        raise HTTPException(status_code=400, detail=f"Webhook error: {exc}") from exc

    kind = event.get("type", "")
    if kind not in SUCCESS_EVENTS + FAILED_EVENTS:
        return {"received": True, "handled": False}

    session = (event.get("data") or {}).get("object") or {}
    session_id = session.get("id")
    try:
        if not session_id:
            raise PaymentEventError("Checkout session id missing from event.")
        metadata = parse_payment_metadata(session.get("metadata"))
    except PaymentEventError as exc:
        logger.error("Stripe event %s has bad metadata: %s", event.get("id"), exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if kind in FAILED_EVENTS:
        await record_failed_payment(db, external_payment_id=session_id, **metadata)
        return {"received": True, "handled": True, "result": "failed_recorded"}

    if kind == "checkout.session.completed" and session.get("payment_status") not in (None, "paid", "no_payment_required"):
        # Delayed payment methods settle through async_payment_succeeded.
        return {"received": True, "handled": False, "result": "awaiting_payment"}

    try:
        result = await apply_payment_event(db, external_payment_id=session_id, **metadata)
    except PaymentUserNotFound as exc:
        logger.error("Stripe session %s references unknown user %s", session_id, exc)
        raise HTTPException(status_code=404, detail="User not found") from exc

    return {"received": True, "handled": True, "result": result}


@router.post("/verify")
async def verify_checkout(
    request: VerifyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Client-side confirmation after the checkout redirect. Converges with the webhook."""
    try:
        session = await retrieve_checkout_session(request.session_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except Exception as exc:
        logger.warning("Could not retrieve checkout session %s: %s", request.session_id, exc)
        raise HTTPException(status_code=404, detail="Checkout session not found") from exc

    if session.get("payment_status") != "paid":
        raise HTTPException(status_code=400, detail="Payment not completed")

    try:
        metadata = parse_payment_metadata(session.get("metadata"))
    except PaymentEventError as exc:
        logger.error("Checkout session %s has bad metadata: %s", request.session_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if metadata["user_id"] != user.id:
        raise HTTPException(status_code=403, detail="Checkout session belongs to another user")

    result = await apply_payment_event(
        db,
        external_payment_id=session.get("id") or request.session_id,
        **metadata,
    )
    summary = await get_credit_summary(user.id, db)
    return {
        "result": result,
        "already_processed": result == ALREADY_APPLIED,
        "credits_added": float(metadata["amount_credits"]),
        "balance": summary["balance"],
    }
