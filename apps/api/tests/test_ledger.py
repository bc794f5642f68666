import pytest

from conftest import create_user
from models.transaction import Transaction
from services import ledger
from services.errors import InsufficientCreditsError, NotFoundError


LEDGER_USER_ID = "ledger-user"


@pytest.mark.asyncio
async def test_spend_that_would_overdraw_is_rejected_and_balance_unchanged(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=5)

    async with session_maker() as session:
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.apply_delta(LEDGER_USER_ID, session, delta=-6)
        assert exc_info.value.context == {"required": 6, "available": 5}

    async with session_maker() as session:
        assert await ledger.get_balance(LEDGER_USER_ID, session) == 5


@pytest.mark.asyncio
async def test_balance_never_goes_negative_over_a_sequence_of_deltas(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=3)

    expected = 3
    for delta in [-1, -1, -2, 5, -4, -4, 10, -7, -3, -1]:
        async with session_maker() as session:
            try:
                balance = await ledger.apply_delta(LEDGER_USER_ID, session, delta=delta)
            except InsufficientCreditsError:
                assert expected + delta < 0
                balance = await ledger.get_balance(LEDGER_USER_ID, session)
            else:
                expected += delta
            assert balance == expected
            assert balance >= 0

    async with session_maker() as session:
        assert await ledger.get_balance(LEDGER_USER_ID, session) == expected


@pytest.mark.asyncio
async def test_spend_down_to_exactly_zero_is_allowed(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=2)

    async with session_maker() as session:
        assert await ledger.apply_delta(LEDGER_USER_ID, session, delta=-2) == 0


@pytest.mark.asyncio
async def test_unknown_user_raises_not_found(session_maker):
    async with session_maker() as session:
        with pytest.raises(NotFoundError):
            await ledger.apply_delta("missing-user", session, delta=10)
        with pytest.raises(NotFoundError):
            await ledger.apply_delta("missing-user", session, delta=-1)


@pytest.mark.asyncio
async def test_existing_idempotency_key_makes_delta_a_noop(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=10)
    async with session_maker() as session:
        session.add(
            Transaction(
                stripe_id="cs_seen",
                amount=40,
                plan="Pro Package",
                credits=120,
                buyer_id=LEDGER_USER_ID,
            )
        )
        await session.commit()

    async with session_maker() as session:
        balance = await ledger.apply_delta(LEDGER_USER_ID, session, delta=120, idempotency_key="cs_seen")
        assert balance == 10

    async with session_maker() as session:
        balance = await ledger.apply_delta(LEDGER_USER_ID, session, delta=120, idempotency_key="cs_new")
        assert balance == 130


@pytest.mark.asyncio
async def test_uncommitted_delta_is_discarded_on_rollback(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=10)

    async with session_maker() as session:
        assert await ledger.apply_delta(LEDGER_USER_ID, session, delta=50, commit=False) == 60
        await session.rollback()

    async with session_maker() as session:
        assert await ledger.get_balance(LEDGER_USER_ID, session) == 10


@pytest.mark.asyncio
async def test_refund_adds_back_the_absolute_amount(session_maker):
    await create_user(session_maker, user_id=LEDGER_USER_ID, external_id="ext-ledger", balance=4)

    async with session_maker() as session:
        assert await ledger.refund(LEDGER_USER_ID, session, amount=-3) == 7
