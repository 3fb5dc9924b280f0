import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.future import select

from models.user import User
from services.credits import (
    InsufficientCreditsError,
    credit,
    credits_for_minutes,
    debit,
    estimate_credits_for_size,
    get_credit_balance,
    to_credits,
)


def test_credits_for_minutes_rounds_half_up_with_floor():
    assert credits_for_minutes(0) == Decimal("0.01")
    assert credits_for_minutes(0.001) == Decimal("0.01")
    assert credits_for_minutes(3.456) == Decimal("3.46")
    assert credits_for_minutes(2.345) == Decimal("2.35")
    assert credits_for_minutes(10) == Decimal("10.00")


def test_estimate_credits_for_size_uses_one_mib_per_minute():
    assert estimate_credits_for_size(5 * 1024 * 1024) == Decimal("5.00")
    assert estimate_credits_for_size(0) == Decimal("0.01")
    assert estimate_credits_for_size(1536 * 1024) == Decimal("1.50")


def test_insufficient_credits_error_reports_shortfall():
    exc = InsufficientCreditsError(required="4", available="1.5")
    assert exc.shortfall == Decimal("2.50")
    assert "Required: 4.00" in str(exc)


@pytest.mark.asyncio
async def test_debit_and_credit_round_trip(session_maker, make_user):
    await make_user("ledger-user", credits="10")
    async with session_maker() as db:
        assert await debit("ledger-user", Decimal("3.25"), db) == Decimal("6.75")
        assert await credit("ledger-user", 5, db) == Decimal("11.75")
        assert await get_credit_balance("ledger-user", db) == Decimal("11.75")


@pytest.mark.asyncio
async def test_debit_rejects_without_side_effect(session_maker, make_user):
    await make_user("poor-user", credits="1")
    async with session_maker() as db:
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await debit("poor-user", Decimal("1.01"), db)
        assert exc_info.value.available == Decimal("1.00")
        assert exc_info.value.shortfall == Decimal("0.01")

    async with session_maker() as db:
        balance = (await db.execute(select(User.credits).where(User.id == "poor-user"))).scalar_one()
        assert to_credits(balance) == Decimal("1.00")


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_maker, make_user):
    await make_user("race-user", credits="5")

    async def attempt() -> bool:
        async with session_maker() as db:
            try:
                await debit("race-user", Decimal("1"), db)
                return True
            except InsufficientCreditsError:
                return False

    outcomes = await asyncio.gather(*(attempt() for _ in range(12)))

    assert outcomes.count(True) == 5
    async with session_maker() as db:
        assert await get_credit_balance("race-user", db) == Decimal("0.00")


@pytest.mark.asyncio
async def test_credit_summary_endpoint_reports_balance(client, make_user, auth_for):
    await make_user("summary-user", credits="7.5")

    response = await client.get("/billing/credits", headers=auth_for("summary-user"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["balance"] == 7.5
    assert payload["low_balance"] is True
    assert payload["recent_purchases"] == []
