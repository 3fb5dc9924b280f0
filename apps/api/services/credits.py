"""Credit ledger and usage accounting helpers."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.audio_file import AudioFile
from models.credit_purchase import CreditPurchase
from models.transcription import Transcription
from models.user import User


CENT = Decimal("0.01")
MINIMUM_CHARGE = Decimal("0.01")
BYTES_PER_MIB = 1024 * 1024

Number = Union[Decimal, float, int, str]


class InsufficientCreditsError(Exception):
    """Debit rejected because the balance does not cover the amount."""

    def __init__(self, required: Number, available: Number):
        self.required = to_credits(required)
        self.available = to_credits(available)
        super().__init__(
            f"Insufficient credits. Required: {self.required}, available: {self.available}."
        )

    @property
    def shortfall(self) -> Decimal:
        return max(self.required - self.available, Decimal("0.00"))


class CreditAccountNotFound(LookupError):
    """No user row exists for the requested ledger operation."""


def to_credits(value: Optional[Number]) -> Decimal:
    """Quantize any numeric input to the two-decimal credit unit (half-up)."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def credits_for_minutes(minutes: Optional[float]) -> Decimal:
    """Charge for a duration in minutes: half-up to the cent, never below the floor."""
    amount = to_credits(max(float(minutes or 0.0), 0.0))
    return max(amount, MINIMUM_CHARGE)


def estimate_minutes_for_size(size_bytes: Optional[int]) -> float:
    mib_per_minute = float(settings.MIB_PER_MINUTE_ESTIMATE) or 1.0
    return max(int(size_bytes or 0), 0) / BYTES_PER_MIB / mib_per_minute


def estimate_credits_for_size(size_bytes: Optional[int]) -> Decimal:
    return credits_for_minutes(estimate_minutes_for_size(size_bytes))


async def get_credit_balance(user_id: str, db: AsyncSession) -> Decimal:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise CreditAccountNotFound(user_id)
    return to_credits(balance)


async def debit(user_id: str, amount: Number, db: AsyncSession, *, commit: bool = True) -> Decimal:
    """Atomically subtract ``amount`` if and only if the balance covers it.

    The check and the write are one conditional UPDATE, so two concurrent
    debits can never both pass against the same balance. Returns the balance
    after the debit.
    """
    charge = to_credits(amount)
    if charge <= 0:
        raise ValueError("debit amount must be greater than 0")

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.credits >= charge)
        .values(credits=User.credits - charge)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = await get_credit_balance(user_id, db)
        raise InsufficientCreditsError(required=charge, available=available)

    if commit:
        await db.commit()
    return await get_credit_balance(user_id, db)


async def credit(user_id: str, amount: Number, db: AsyncSession, *, commit: bool = True) -> Decimal:
    """Atomically add ``amount`` to the balance. Returns the balance after."""
    grant = to_credits(amount)
    if grant <= 0:
        raise ValueError("credit amount must be greater than 0")

    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=User.credits + grant)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CreditAccountNotFound(user_id)

    if commit:
        await db.commit()
    return await get_credit_balance(user_id, db)


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)

    purchases_result = await db.execute(
        select(CreditPurchase)
        .where(CreditPurchase.user_id == user_id)
        .order_by(CreditPurchase.created_at.desc())
        .limit(20)
    )
    charges_result = await db.execute(
        select(Transcription, AudioFile.original_filename)
        .join(AudioFile, AudioFile.id == Transcription.audio_file_id)
        .where(Transcription.user_id == user_id)
        .order_by(Transcription.created_at.desc())
        .limit(20)
    )

    return {
        "balance": float(balance),
        "low_balance": balance < to_credits(settings.LOW_BALANCE_THRESHOLD),
        "low_balance_threshold": float(to_credits(settings.LOW_BALANCE_THRESHOLD)),
        "credits_per_minute": 1.0,
        "recent_purchases": [
            {
                "id": purchase.id,
                "external_payment_id": purchase.external_payment_id,
                "amount_credits": float(purchase.amount_credits),
                "amount_paid": float(purchase.amount_paid or 0),
                "status": purchase.status,
                "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
            }
            for purchase in purchases_result.scalars().all()
        ],
        "recent_charges": [
            {
                "transcription_id": row.id,
                "audio_file_id": row.audio_file_id,
                "filename": filename,
                "cost_credits": float(row.cost_credits),
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row, filename in charges_result.all()
        ],
    }
