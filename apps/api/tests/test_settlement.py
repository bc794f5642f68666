import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from conftest import create_user
from models.transaction import Transaction
from services import ledger
from services.errors import InvalidPurchaseEventError
from services.settlement import PurchaseEvent, parse_purchase_event, settle_purchase


WEBHOOK_SECRET = "whsec_test_secret"
BUYER_ID = "buyer-user"


def _checkout_event(session_id="cs_test_1", *, buyer_id=BUYER_ID, credits="100", amount_total=4000, event_type="checkout.session.completed"):
    return {
        "id": f"evt_{session_id}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "object": "checkout.session",
                "amount_total": amount_total,
                "metadata": {"plan": "Pro Package", "credits": credits, "buyerId": buyer_id},
            }
        },
    }


def _signed(event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event)
    timestamp = int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return payload.encode("utf-8"), f"t={timestamp},v1={digest}"


async def _post_webhook(client, event, *, secret=WEBHOOK_SECRET):
    body, signature = _signed(event, secret=secret)
    with patch("services.payments.settings.STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
        return await client.post(
            "/billing/webhook",
            content=body,
            headers={"stripe-signature": signature, "content-type": "application/json"},
        )


async def _transaction_count(session_maker):
    async with session_maker() as session:
        result = await session.execute(select(func.count(Transaction.id)))
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_webhook_credits_buyer_and_records_transaction(api_client):
    client, session_maker = api_client
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=5)

    response = await _post_webhook(client, _checkout_event())

    assert response.status_code == 200
    payload = response.json()
    assert payload["handled"] is True
    assert payload["duplicate"] is False
    assert payload["balance_after"] == 105
    assert payload["transaction"]["stripe_id"] == "cs_test_1"
    assert payload["transaction"]["amount"] == 40.0
    assert payload["transaction"]["credits"] == 100
    assert payload["transaction"]["buyer_id"] == BUYER_ID


@pytest.mark.asyncio
async def test_duplicate_delivery_credits_exactly_once(api_client):
    client, session_maker = api_client
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=0)
    event = _checkout_event("cs_dup")

    first = await _post_webhook(client, event)
    second = await _post_webhook(client, event)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["transaction"]["id"] == first.json()["transaction"]["id"]
    assert await _transaction_count(session_maker) == 1
    async with session_maker() as session:
        assert await ledger.get_balance(BUYER_ID, session) == 100


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_writes(api_client):
    client, session_maker = api_client
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=5)

    response = await _post_webhook(client, _checkout_event("cs_forged"), secret="whsec_wrong")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "invalid_signature"
    assert await _transaction_count(session_maker) == 0
    async with session_maker() as session:
        assert await ledger.get_balance(BUYER_ID, session) == 5


@pytest.mark.asyncio
async def test_missing_signature_header_is_rejected(api_client):
    client, _ = api_client
    with patch("services.payments.settings.STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET):
        response = await client.post("/billing/webhook", content=json.dumps(_checkout_event()).encode("utf-8"))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_non_positive_credits_are_rejected(api_client):
    client, session_maker = api_client
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=5)

    response = await _post_webhook(client, _checkout_event("cs_zero", credits="0"))

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "invalid_purchase_event"
    assert await _transaction_count(session_maker) == 0


@pytest.mark.asyncio
async def test_unknown_buyer_is_rejected(api_client):
    client, session_maker = api_client

    response = await _post_webhook(client, _checkout_event("cs_ghost", buyer_id="ghost-user"))

    assert response.status_code == 422
    assert response.json()["detail"]["buyer_id"] == "ghost-user"
    assert await _transaction_count(session_maker) == 0


@pytest.mark.asyncio
async def test_unrelated_event_types_are_acknowledged_and_ignored(api_client):
    client, session_maker = api_client
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=5)

    response = await _post_webhook(client, _checkout_event("cs_other", event_type="payment_intent.created"))

    assert response.status_code == 200
    assert response.json() == {"received": True, "handled": False}
    assert await _transaction_count(session_maker) == 0


def test_parse_purchase_event_converts_minor_units_and_metadata():
    purchase = parse_purchase_event(_checkout_event("cs_parse", credits="2000", amount_total=19900))

    assert purchase.session_id == "cs_parse"
    assert str(purchase.amount) == "199"
    assert purchase.credits == 2000
    assert purchase.plan == "Pro Package"
    assert purchase.buyer_id == BUYER_ID


@pytest.mark.parametrize(
    "event",
    [
        {"type": "checkout.session.completed", "data": {}},
        _checkout_event("cs_nobuyer", buyer_id=""),
        _checkout_event("cs_badcredits", credits="lots"),
        _checkout_event("cs_negative", credits="-5"),
    ],
)
def test_parse_purchase_event_rejects_malformed_sessions(event):
    with pytest.raises(InvalidPurchaseEventError):
        parse_purchase_event(event)


@pytest.mark.asyncio
async def test_settle_purchase_replays_existing_session(session_maker):
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=1)
    purchase = PurchaseEvent(session_id="cs_direct", amount=40, plan="Pro Package", credits=120, buyer_id=BUYER_ID)

    async with session_maker() as session:
        first = await settle_purchase(purchase, session)
    async with session_maker() as session:
        second = await settle_purchase(purchase, session)

    assert first.duplicate is False
    assert first.balance_after == 121
    assert second.duplicate is True
    assert second.balance_after == 121
    assert second.transaction.id == first.transaction.id


@pytest.mark.asyncio
async def test_losing_concurrent_delivery_rolls_back_its_credit(session_maker):
    await create_user(session_maker, user_id=BUYER_ID, external_id="ext-buyer", balance=0)
    purchase = PurchaseEvent(session_id="cs_race", amount=40, plan="Pro Package", credits=100, buyer_id=BUYER_ID)

    async with session_maker() as session:
        winner = await settle_purchase(purchase, session)

    real_lookup = ledger.find_transaction_by_key
    lookups = []

    async def _stale_lookup(idempotency_key, db):
        # The first two reads miss the winner, as they would mid-race.
        lookups.append(idempotency_key)
        if len(lookups) <= 2:
            return None
        return await real_lookup(idempotency_key, db)

    with patch("services.ledger.find_transaction_by_key", new=_stale_lookup):
        async with session_maker() as session:
            loser = await settle_purchase(purchase, session)

    assert len(lookups) == 3
    assert loser.duplicate is True
    assert loser.transaction.id == winner.transaction.id
    assert loser.balance_after == 100
    assert await _transaction_count(session_maker) == 1
    async with session_maker() as session:
        assert await ledger.get_balance(BUYER_ID, session) == 100
