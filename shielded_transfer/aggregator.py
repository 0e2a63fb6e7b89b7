"""
Balance Aggregator

Balance updates arrive in bursts after a refresh. Each event carries the
complete token list of one bucket, so the newest event per bucket wins.
The burst is considered settled once no matching event has arrived for a
quiescence window; an overall ceiling keeps a silent engine from blocking
the caller forever.
"""

import asyncio
from typing import Dict, Optional, Tuple

from loguru import logger

from .config import AggregationSettings
from .errors import AggregationError
from .models import BalanceBucket, BalanceEvent, BalanceSnapshot, EventKind, TokenAmount


class BalanceAggregator:
    """
    Collect balance events for one wallet into a final snapshot

    At most one aggregation runs per wallet. A concurrent caller for the same
    wallet and chain shares the in-flight result; a caller for another chain
    waits for it to finish and then runs its own.
    """

    def __init__(self, session, settings: Optional[AggregationSettings] = None):
        """
        Args:
            session: EngineSession (engine, bus)
            settings: Timer defaults
        """
        self.session = session
        self.settings = settings or AggregationSettings()
        # wallet_id -> (chain_id, task)
        self._in_flight: Dict[str, Tuple[int, asyncio.Task]] = {}

    async def aggregate(
        self,
        wallet_id: str,
        chain_id: int,
        quiescence_window: Optional[float] = None,
        ceiling_timeout: Optional[float] = None,
    ) -> BalanceSnapshot:
        """
        Refresh balances and wait for the event burst to settle

        Args:
            wallet_id: Wallet to aggregate
            chain_id: Chain the events must belong to
            quiescence_window: Silence needed before finalizing (seconds)
            ceiling_timeout: Hard upper bound (seconds), must exceed the window

        Returns:
            BalanceSnapshot, possibly empty

        Raises:
            AggregationError: the refresh call failed before any event arrived
        """
        window = quiescence_window if quiescence_window is not None else self.settings.quiescence_window
        ceiling = ceiling_timeout if ceiling_timeout is not None else self.settings.ceiling_timeout
        if ceiling <= window:
            raise ValueError(f"ceiling_timeout ({ceiling}) must exceed quiescence_window ({window})")

        while True:
            entry = self._in_flight.get(wallet_id)
            if entry is None or entry[1].done():
                break
            in_flight_chain, task = entry
            if in_flight_chain == chain_id:
                logger.debug(f"Joining in-flight aggregation for wallet {wallet_id[:10]} on chain {chain_id}")
                # A cancelled joiner must not cancel the shared aggregation
                return await asyncio.shield(task)
            logger.debug(
                f"Wallet {wallet_id[:10]} is aggregating chain {in_flight_chain}, "
                f"chain {chain_id} waits for it"
            )
            # Its outcome belongs to its own caller
            await asyncio.wait({task})

        task = asyncio.ensure_future(self._aggregate(wallet_id, chain_id, window, ceiling))
        self._in_flight[wallet_id] = (chain_id, task)
        self.session.track(task)
        task.add_done_callback(lambda t, w=wallet_id: self._forget(w, t))

        return await asyncio.shield(task)

    def _forget(self, wallet_id: str, task: asyncio.Task):
        entry = self._in_flight.get(wallet_id)
        if entry is not None and entry[1] is task:
            del self._in_flight[wallet_id]

    async def _aggregate(
        self,
        wallet_id: str,
        chain_id: int,
        window: float,
        ceiling: float,
    ) -> BalanceSnapshot:
        loop = asyncio.get_running_loop()
        buckets: Dict[BalanceBucket, Tuple[TokenAmount, ...]] = {}
        accepted = 0

        # Subscribe before refreshing so no early event is missed
        subscription = self.session.bus.subscribe(EventKind.BALANCE_UPDATE)
        refresh = asyncio.ensure_future(self.session.engine.refresh_balances(chain_id, [wallet_id]))
        next_event = asyncio.ensure_future(subscription.__anext__())

        started = loop.time()
        ceiling_at = started + ceiling
        quiet_at: Optional[float] = None

        logger.info(f"Aggregating balances for wallet {wallet_id[:10]} (quiescence {window}s, ceiling {ceiling}s)")

        try:
            while True:
                now = loop.time()
                deadline = ceiling_at if quiet_at is None else min(quiet_at, ceiling_at)
                if now >= deadline:
                    reason = "ceiling reached" if deadline == ceiling_at else "quiescent"
                    break

                waiters = {next_event}
                if not refresh.done():
                    waiters.add(refresh)
                done, _ = await asyncio.wait(waiters, timeout=deadline - now, return_when=asyncio.FIRST_COMPLETED)

                # Events first: one that lands together with a refresh failure still counts
                if next_event in done:
                    try:
                        event = next_event.result()
                    except StopAsyncIteration:
                        reason = "event stream closed"
                        break
                    next_event = asyncio.ensure_future(subscription.__anext__())

                    if self._accept(event, wallet_id, chain_id, buckets):
                        accepted += 1
                        quiet_at = loop.time() + window

                if refresh in done:
                    error = refresh.exception()
                    if error is not None:
                        if accepted == 0:
                            raise AggregationError(f"Balance refresh failed: {error}") from error
                        logger.warning(f"⚠ Balance refresh failed after {accepted} events: {error}")
                    else:
                        logger.debug("Balance refresh call returned")
        finally:
            next_event.cancel()
            subscription.close()
            if not refresh.done():
                refresh.cancel()
            elif not refresh.cancelled():
                # Already reported above or irrelevant once finished
                refresh.exception()

        snapshot = BalanceSnapshot(buckets)
        elapsed = loop.time() - started
        logger.info(f"✓ Balances settled ({reason}) after {elapsed:.1f}s: {len(snapshot)} buckets from {accepted} events")
        return snapshot

    @staticmethod
    def _accept(
        event: BalanceEvent,
        wallet_id: str,
        chain_id: int,
        buckets: Dict[BalanceBucket, Tuple[TokenAmount, ...]],
    ) -> bool:
        """Replace the event's bucket if it matches and carries positive amounts"""
        if event.chain_id != chain_id or event.wallet_id != wallet_id:
            return False
        positive = event.positive_tokens()
        if not positive:
            logger.debug(f"Ignoring {event.bucket.value} event with no positive balances")
            return False
        buckets[event.bucket] = positive
        logger.debug(f"Accepted {event.bucket.value} event ({len(positive)} tokens), quiescence timer reset")
        return True
