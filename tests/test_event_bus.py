"""Tests for the single-registration event bus"""

import asyncio

import pytest

from shielded_transfer.event_bus import EventBusAdapter
from shielded_transfer.models import BalanceBucket, BalanceEvent, EventKind, parse_amount

from conftest import TOKEN_A, balance_payload


@pytest.mark.asyncio
async def test_many_subscribers_share_one_engine_registration(engine):
    bus = EventBusAdapter(engine)

    first = bus.subscribe(EventKind.BALANCE_UPDATE)
    second = bus.subscribe(EventKind.BALANCE_UPDATE)

    assert engine.registrations[EventKind.BALANCE_UPDATE] == 1
    assert bus.subscriber_count(EventKind.BALANCE_UPDATE) == 2

    engine.emit(EventKind.BALANCE_UPDATE, balance_payload("Spendable", [(TOKEN_A, 5)]))

    event_1 = await asyncio.wait_for(first.__anext__(), 1)
    event_2 = await asyncio.wait_for(second.__anext__(), 1)
    assert isinstance(event_1, BalanceEvent)
    assert event_1 == event_2
    assert event_1.bucket is BalanceBucket.SPENDABLE
    assert event_1.tokens[0].amount == 5


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving(engine):
    bus = EventBusAdapter(engine)
    keep = bus.subscribe(EventKind.BALANCE_UPDATE)
    drop = bus.subscribe(EventKind.BALANCE_UPDATE)

    drop.close()
    engine.emit(EventKind.BALANCE_UPDATE, balance_payload("Spendable", [(TOKEN_A, 1)]))

    assert await asyncio.wait_for(keep.__anext__(), 1)
    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(drop.__anext__(), 1)
    # Not restartable
    with pytest.raises(StopAsyncIteration):
        await drop.__anext__()
    assert bus.subscriber_count(EventKind.BALANCE_UPDATE) == 1


@pytest.mark.asyncio
async def test_unsubscribe_all_releases_engine_callbacks(engine):
    bus = EventBusAdapter(engine)
    sub = bus.subscribe(EventKind.BALANCE_UPDATE)
    bus.subscribe(EventKind.POI_PROOF_PROGRESS)

    bus.unsubscribe_all()

    assert engine.callbacks == {}
    received = [event async for event in sub]
    assert received == []

    # A fresh subscription re-registers exactly once
    bus.subscribe(EventKind.BALANCE_UPDATE)
    assert engine.registrations[EventKind.BALANCE_UPDATE] == 2


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_event(engine):
    bus = EventBusAdapter(engine, queue_size=2)
    sub = bus.subscribe(EventKind.BALANCE_UPDATE)

    for amount in (1, 2, 3):
        engine.emit(EventKind.BALANCE_UPDATE, balance_payload("Spendable", [(TOKEN_A, amount)]))

    assert sub.dropped == 1
    first = await sub.__anext__()
    second = await sub.__anext__()
    assert [first.tokens[0].amount, second.tokens[0].amount] == [2, 3]


@pytest.mark.asyncio
async def test_undecodable_payload_is_dropped(engine):
    bus = EventBusAdapter(engine)
    sub = bus.subscribe(EventKind.BALANCE_UPDATE)

    engine.emit(EventKind.BALANCE_UPDATE, balance_payload("NotABucket", [(TOKEN_A, 1)]))
    engine.emit(EventKind.BALANCE_UPDATE, balance_payload("ShieldPending", [(TOKEN_A, 1)]))

    event = await asyncio.wait_for(sub.__anext__(), 1)
    assert event.bucket is BalanceBucket.SHIELD_PENDING


@pytest.mark.asyncio
async def test_amount_spellings_decode_instead_of_dropping_event(engine):
    bus = EventBusAdapter(engine)
    sub = bus.subscribe(EventKind.BALANCE_UPDATE)
    payload = balance_payload("Spendable", [])
    payload['erc20Amounts'] = [
        {'tokenAddress': TOKEN_A, 'amount': "007"},
        {'tokenAddress': TOKEN_A, 'amount': "0x1f"},
        {'tokenAddress': TOKEN_A, 'amount': "1e18"},
        {'tokenAddress': TOKEN_A, 'amount': "5.0"},
    ]

    engine.emit(EventKind.BALANCE_UPDATE, payload)

    event = await asyncio.wait_for(sub.__anext__(), 1)
    assert [t.amount for t in event.tokens] == [7, 31, 10 ** 18, 5]
    assert sub.dropped == 0


@pytest.mark.parametrize("raw", ["2.5", "abc", "", "NaN", "0xzz"])
def test_non_integral_amounts_are_rejected(raw):
    with pytest.raises(ValueError):
        parse_amount(raw)


@pytest.mark.asyncio
async def test_callback_from_engine_thread_reaches_loop(engine):
    bus = EventBusAdapter(engine)
    sub = bus.subscribe(EventKind.BALANCE_UPDATE)
    loop = asyncio.get_running_loop()

    await loop.run_in_executor(
        None,
        engine.emit,
        EventKind.BALANCE_UPDATE,
        balance_payload("Spendable", [(TOKEN_A, 7)]),
    )

    event = await asyncio.wait_for(sub.__anext__(), 1)
    assert event.tokens[0].amount == 7


@pytest.mark.asyncio
async def test_non_balance_events_pass_through_raw(engine):
    bus = EventBusAdapter(engine)
    sub = bus.subscribe(EventKind.POI_PROOF_PROGRESS)

    engine.emit(EventKind.POI_PROOF_PROGRESS, {'progress': 0.5})

    assert await asyncio.wait_for(sub.__anext__(), 1) == {'progress': 0.5}
