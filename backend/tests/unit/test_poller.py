"""
Unit Tests for the settlement poller
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import TRON_DEPOSIT_ADDRESS, TestingSessionLocal, tx_hash
from luna_deposits.chains.assets import Asset, Network
from luna_deposits.db.models import IntentStatus, PaymentIntent, utcnow
from luna_deposits.services.intents import PaymentIntentStore
from luna_deposits.services.poller import SettlementPoller
from luna_deposits.services.wallet import WalletLedger


def make_intent(db, amount_minor=50_000_000, age_minutes=0, reference=None):
    store = PaymentIntentStore(db)
    intent = store.create(
        user_id=1,
        asset=Asset.USDT_TRC20,
        amount_minor=amount_minor,
        destination_address=TRON_DEPOSIT_ADDRESS,
    )
    intent_id = intent.id
    if age_minutes:
        intent.created_at = utcnow() - timedelta(minutes=age_minutes)
    db.commit()
    if reference:
        store.attach_reference(intent_id, reference)
        db.commit()
    return intent_id


@pytest.fixture
def poller(chain_clients, rate_provider, test_settings):
    settings = test_settings.model_copy(update={
        "INTENT_TTL_MINUTES": 60,
        "POLLING_INTERVAL_SECONDS": 0,
    })
    return SettlementPoller(TestingSessionLocal, chain_clients, rate_provider, settings)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_once_settles_fails_and_expires(poller, chain_clients, test_db_session):
    settled_id = make_intent(test_db_session, reference=tx_hash(1))
    underpaid_id = make_intent(test_db_session, reference=tx_hash(2))
    waiting_id = make_intent(test_db_session, reference=tx_hash(3))
    stale_id = make_intent(test_db_session, age_minutes=120)
    fresh_id = make_intent(test_db_session, age_minutes=5)

    tron = chain_clients[Network.TRON]
    tron.finalize(tx_hash(1), 50_000_000, TRON_DEPOSIT_ADDRESS)
    tron.finalize(tx_hash(2), 10_000_000, TRON_DEPOSIT_ADDRESS)

    stats = await poller.run_once()

    assert stats == {"expired": 1, "checked": 3, "settled": 1, "failed": 1, "pending": 1, "errors": 0}

    test_db_session.expire_all()
    statuses = {
        intent_id: test_db_session.get(PaymentIntent, intent_id).status
        for intent_id in (settled_id, underpaid_id, waiting_id, stale_id, fresh_id)
    }
    assert statuses == {
        settled_id: IntentStatus.SETTLED.value,
        underpaid_id: IntentStatus.FAILED.value,
        waiting_id: IntentStatus.PENDING.value,
        stale_id: IntentStatus.FAILED.value,
        fresh_id: IntentStatus.PENDING.value,
    }
    stale = test_db_session.get(PaymentIntent, stale_id)
    assert stale.failure_reason == "expired: no transaction submitted"
    assert WalletLedger(test_db_session).get_balance(1, Asset.USDT_TRC20) == 50_000_000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stale_intent_with_reference_is_not_expired(poller, test_db_session):
    intent_id = make_intent(test_db_session, age_minutes=600, reference=tx_hash(4))

    stats = await poller.run_once()

    assert stats["expired"] == 0
    assert stats["pending"] == 1
    test_db_session.expire_all()
    assert test_db_session.get(PaymentIntent, intent_id).status == IntentStatus.PENDING.value


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_pass_does_not_credit_again(poller, chain_clients, test_db_session):
    make_intent(test_db_session, reference=tx_hash(5))
    chain_clients[Network.TRON].finalize(tx_hash(5), 50_000_000, TRON_DEPOSIT_ADDRESS)

    first = await poller.run_once()
    second = await poller.run_once()

    assert first["settled"] == 1
    assert second["checked"] == 0
    test_db_session.expire_all()
    assert WalletLedger(test_db_session).get_balance(1, Asset.USDT_TRC20) == 50_000_000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_and_stop(poller):
    await poller.start()
    assert poller.running

    await poller.start()  # second start is a no-op
    await asyncio.sleep(0.05)

    await poller.stop()
    assert not poller.running


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unresolvable_references_do_not_starve_newer_intents(
    chain_clients, rate_provider, test_settings, test_db_session
):
    settings = test_settings.model_copy(update={"POLLER_BATCH_SIZE": 3})
    small_batches = SettlementPoller(TestingSessionLocal, chain_clients, rate_provider, settings)

    for seed in (11, 12, 13):
        make_intent(test_db_session, reference=tx_hash(seed))  # never found on chain
    paid_id = make_intent(test_db_session, reference=tx_hash(14))
    chain_clients[Network.TRON].finalize(tx_hash(14), 50_000_000, TRON_DEPOSIT_ADDRESS)

    for _ in range(5):
        await small_batches.run_once()

    test_db_session.expire_all()
    assert test_db_session.get(PaymentIntent, paid_id).status == IntentStatus.SETTLED.value
    assert WalletLedger(test_db_session).get_balance(1, Asset.USDT_TRC20) == 50_000_000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reference_never_seen_on_chain_fails_after_ttl(poller, test_db_session):
    lost_id = make_intent(test_db_session, reference=tx_hash(15))
    recent_id = make_intent(test_db_session, reference=tx_hash(16))
    test_db_session.query(PaymentIntent).filter_by(id=lost_id).update(
        {"reference_attached_at": utcnow() - timedelta(days=2)}
    )
    test_db_session.commit()

    stats = await poller.run_once()

    assert stats["failed"] == 1
    assert stats["pending"] == 1
    test_db_session.expire_all()
    lost = test_db_session.get(PaymentIntent, lost_id)
    assert lost.status == IntentStatus.FAILED.value
    assert lost.failure_reason.startswith("expired: transaction not found")
    assert test_db_session.get(PaymentIntent, recent_id).status == IntentStatus.PENDING.value
