"""Tests for the bridge completion reconciler."""
import asyncio
from unittest.mock import patch

import pytest

from app.clients.bridge_client import BridgeMessageState
from app.clients.chain_client import TransactionStatus
from app.core.chains import TokenType
from app.core.exceptions import BridgeStatusQueryFailed
from app.models.debt import DIRECT_TRANSFER, AttemptStatus, DebtStatus
from app.services.reconciler import CEILING_EXCEEDED, SUPERSEDED
from conftest import REMOTE_CHAIN, SETTLEMENT_CHAIN, message_id, tx_hash

PENDING = BridgeMessageState.PENDING
DELIVERED = BridgeMessageState.DELIVERED
FAILED = BridgeMessageState.FAILED


async def submit_cross_chain(coordinator, builder, debt, ower, n, resolved=True, chain_client=None):
    if resolved:
        chain_client.message_ids[tx_hash(n)] = message_id(n)
    intent = builder.build_intent(debt, ower, REMOTE_CHAIN, TokenType.USDC)
    debt = await coordinator.submit(debt.id, ower, intent, tx_hash(n))
    return debt, debt.attempt_for_transaction(tx_hash(n))


@pytest.mark.asyncio
async def test_pending_three_times_then_delivered(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, clock, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.script(message_id(1), PENDING, PENDING, PENDING, DELIVERED)

    with patch.object(ledger, "record_confirmation", wraps=ledger.record_confirmation) as spy:
        report = await reconciler.run_once()
        assert report.pending == 1

        # not due yet: backoff holds the next poll
        report = await reconciler.run_once()
        assert report.skipped == 1
        assert bridge_client.calls[message_id(1)] == 1

        clock.advance(30)
        assert (await reconciler.run_once()).pending == 1
        clock.advance(60)
        assert (await reconciler.run_once()).pending == 1
        clock.advance(120)
        report = await reconciler.run_once()
        assert report.confirmed == 1

        spy.assert_awaited_once()

        stored = await ledger.require_debt(debt.id)
        assert stored.status == DebtStatus.COMPLETED
        confirmed = stored.find_attempt(attempt.id)
        assert confirmed.destination_transaction_hash == tx_hash(0xdead)
        assert confirmed.block_number == 1234

        # a redundant delivery notification changes nothing
        again = await reconciler.handle_delivery(message_id(1), DELIVERED)
        assert again.version == stored.version
        spy.assert_awaited_once()

    assert bridge_client.calls[message_id(1)] == 4
    assert (await reconciler.run_once()).checked == 0


@pytest.mark.asyncio
async def test_backoff_is_capped(reconciler, coordinator, builder, ledger, chain_client, clock, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    _, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)

    delays = []
    for _ in range(5):
        await reconciler.run_once()
        state = reconciler._schedule[attempt.id]
        delays.append(state.delay)
        clock.advance(state.delay)

    assert delays == [30, 60, 120, 120, 120]


@pytest.mark.asyncio
async def test_bridge_failure_fails_attempt(reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.script(message_id(1), FAILED)

    report = await reconciler.run_once()

    assert report.failed == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).status == AttemptStatus.FAILED
    assert stored.status == DebtStatus.PENDING


@pytest.mark.asyncio
async def test_ceiling_exceeded_fails_attempt(reconciler, coordinator, builder, ledger, chain_client, clock, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    clock.advance(25 * 3600)

    report = await reconciler.run_once()

    assert report.failed == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).failure_reason == CEILING_EXCEEDED


@pytest.mark.asyncio
async def test_query_errors_only_postpone(reconciler, coordinator, builder, ledger, bridge_client, chain_client, clock, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.fail_queries = True

    report = await reconciler.run_once()

    assert report.errors == 1
    assert (await reconciler.run_once()).skipped == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).status == AttemptStatus.SUBMITTED

    bridge_client.fail_queries = False
    bridge_client.script(message_id(1), DELIVERED)
    clock.advance(30)
    assert (await reconciler.run_once()).confirmed == 1


@pytest.mark.asyncio
async def test_missing_message_id_resolved_from_receipt(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, resolved=False, chain_client=chain_client)
    assert attempt.bridge_message_id is None

    chain_client.transactions[tx_hash(1)] = TransactionStatus(found=True, succeeded=True, block_number=5, confirmations=3)
    chain_client.message_ids[tx_hash(1)] = message_id(1)
    bridge_client.script(message_id(1), DELIVERED)

    report = await reconciler.run_once()

    assert report.confirmed == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).bridge_message_id == message_id(1)
    assert stored.status == DebtStatus.COMPLETED


@pytest.mark.asyncio
async def test_unmined_source_transaction_stays_pending(reconciler, coordinator, builder, ledger, chain_client, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    await submit_cross_chain(coordinator, builder, debt, ower, 1, resolved=False, chain_client=chain_client)

    report = await reconciler.run_once()

    assert report.pending == 1


@pytest.mark.asyncio
async def test_reverted_source_transaction_fails_attempt(reconciler, coordinator, builder, ledger, chain_client, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, resolved=False, chain_client=chain_client)
    chain_client.transactions[tx_hash(1)] = TransactionStatus(found=True, succeeded=False, block_number=5, confirmations=3)

    report = await reconciler.run_once()

    assert report.failed == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).failure_reason == "source transaction reverted"


@pytest.mark.asyncio
async def test_abandoned_same_chain_attempt_confirmed_by_sweep(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    intent = builder.build_intent(debt, ower, SETTLEMENT_CHAIN, TokenType.USDC)
    await coordinator.submit(debt.id, ower, intent, tx_hash(1))
    chain_client.transactions[tx_hash(1)] = TransactionStatus(found=True, succeeded=True, block_number=5, confirmations=4)

    report = await reconciler.run_once()

    assert report.confirmed == 1
    assert bridge_client.calls == {}
    assert (await ledger.require_debt(debt.id)).status == DebtStatus.COMPLETED


@pytest.mark.asyncio
async def test_second_delivered_payment_is_superseded(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    debt, _ = await submit_cross_chain(coordinator, builder, debt, ower, 2, chain_client=chain_client)
    bridge_client.script(message_id(1), DELIVERED)
    bridge_client.script(message_id(2), DELIVERED)

    report = await reconciler.run_once()

    assert report.confirmed == 1
    assert report.failed == 1
    stored = await ledger.require_debt(debt.id)
    assert stored.status == DebtStatus.COMPLETED
    statuses = sorted(a.status for a in stored.settlement_records)
    assert statuses == ["confirmed", "failed"]
    failed = [a for a in stored.settlement_records if a.status == AttemptStatus.FAILED][0]
    assert failed.failure_reason == SUPERSEDED


@pytest.mark.asyncio
async def test_handle_delivery_unknown_message(reconciler):
    assert await reconciler.handle_delivery(message_id(99), DELIVERED) is None


@pytest.mark.asyncio
async def test_handle_delivery_failure_event(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.script(message_id(1), FAILED)

    updated = await reconciler.handle_delivery(message_id(1).upper().replace("0X", "0x"), FAILED, reason="execution reverted")

    assert updated.find_attempt(attempt.id).status == AttemptStatus.FAILED
    assert updated.find_attempt(attempt.id).failure_reason == "execution reverted"
    # pending notifications are ignored
    assert (await reconciler.handle_delivery(message_id(1), PENDING)).version == updated.version


@pytest.mark.asyncio
async def test_handle_delivery_confirms_when_bridge_agrees(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.script(message_id(1), DELIVERED)

    updated = await reconciler.handle_delivery(message_id(1), DELIVERED)

    assert bridge_client.calls[message_id(1)] == 1
    assert updated.status == DebtStatus.COMPLETED
    assert updated.find_attempt(attempt.id).destination_transaction_hash == tx_hash(0xdead)


@pytest.mark.asyncio
async def test_delivered_event_contradicted_by_bridge(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)

    # bridge still reports the message in flight
    unchanged = await reconciler.handle_delivery(message_id(1), DELIVERED)
    assert unchanged.status == DebtStatus.PENDING
    assert unchanged.find_attempt(attempt.id).status == AttemptStatus.SUBMITTED

    bridge_client.script(message_id(1), FAILED)
    updated = await reconciler.handle_delivery(message_id(1), DELIVERED)

    assert updated.status == DebtStatus.PENDING
    assert updated.find_attempt(attempt.id).status == AttemptStatus.FAILED
    assert updated.find_attempt(attempt.id).failure_reason == "bridge message failed (state failed)"


@pytest.mark.asyncio
async def test_handle_delivery_bridge_unavailable(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    debt, attempt = await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.fail_queries = True

    with pytest.raises(BridgeStatusQueryFailed):
        await reconciler.handle_delivery(message_id(1), DELIVERED)

    stored = await ledger.require_debt(debt.id)
    assert stored.find_attempt(attempt.id).status == AttemptStatus.SUBMITTED


@pytest.mark.asyncio
async def test_delivery_event_never_confirms_same_chain_attempt(
    reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower
):
    debt = await ledger.create_debt(make_debt())
    intent = builder.build_intent(debt, ower, SETTLEMENT_CHAIN, TokenType.USDC)
    debt = await coordinator.submit(debt.id, ower, intent, tx_hash(1))
    attempt = debt.attempt_for_transaction(tx_hash(1))
    bridge_client.script(DIRECT_TRANSFER, DELIVERED)

    assert await reconciler.handle_delivery(DIRECT_TRANSFER, DELIVERED) is None

    stored = await ledger.require_debt(debt.id)
    assert stored.status == DebtStatus.PENDING
    assert stored.find_attempt(attempt.id).status == AttemptStatus.SUBMITTED
    assert bridge_client.calls == {}


@pytest.mark.asyncio
async def test_background_task_starts_and_stops(reconciler, coordinator, builder, ledger, bridge_client, chain_client, make_debt, ower):
    debt = await ledger.create_debt(make_debt())
    await submit_cross_chain(coordinator, builder, debt, ower, 1, chain_client=chain_client)
    bridge_client.script(message_id(1), DELIVERED)

    reconciler.start()
    for _ in range(100):
        if (await ledger.require_debt(debt.id)).status == DebtStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)
    await reconciler.stop()

    assert (await ledger.require_debt(debt.id)).status == DebtStatus.COMPLETED
    assert reconciler._task is None
