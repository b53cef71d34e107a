"""
Settlement Poller

Background task that keeps pending intents moving without the user having
to come back:
- re-verifies pending intents that already carry a transaction reference,
  least recently checked first
- expires intents that never received one within INTENT_TTL_MINUTES
"""

import asyncio
import logging
from datetime import timedelta
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from luna_deposits.chains.assets import Network
from luna_deposits.chains.base import ChainClient
from luna_deposits.core.config import Settings
from luna_deposits.db.models import IntentStatus, utcnow
from luna_deposits.services.errors import SettlementError
from luna_deposits.services.intents import PaymentIntentStore
from luna_deposits.services.rates import ExchangeRateProvider
from luna_deposits.services.settlement import SettlementEngine, SettlementListener

logger = logging.getLogger(__name__)


class SettlementPoller:
    """
    Periodic settlement of pending intents

    Each pass opens its own session from db_session_factory.
    """

    def __init__(
        self,
        db_session_factory: Callable[[], Session],
        chain_clients: Mapping[Network, ChainClient],
        rate_provider: ExchangeRateProvider,
        settings: Settings,
        listeners: Iterable[SettlementListener] = (),
    ):
        self.db_session_factory = db_session_factory
        self.chain_clients = chain_clients
        self.rate_provider = rate_provider
        self.settings = settings
        self.listeners = list(listeners)
        self.polling_interval = settings.POLLING_INTERVAL_SECONDS
        self.batch_size = settings.POLLER_BATCH_SIZE

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the poller background task"""
        if self._running:
            logger.warning("Settlement poller already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Settlement poller started (interval=%ds, batch=%d)", self.polling_interval, self.batch_size)

    async def stop(self):
        """Stop the poller"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Settlement poller stopped")

    async def _run_loop(self):
        """Main polling loop"""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("Error in settlement polling: %s", e, exc_info=True)

            await asyncio.sleep(self.polling_interval)

    async def run_once(self) -> dict:
        """
        One polling pass

        Returns:
            Counts of expired intents and of verification outcomes
        """
        stats = {"expired": 0, "checked": 0, "settled": 0, "failed": 0, "pending": 0, "errors": 0}

        with self.db_session_factory() as db:
            store = PaymentIntentStore(db)
            cutoff = utcnow() - timedelta(minutes=self.settings.INTENT_TTL_MINUTES)
            stats["expired"] = store.expire_stale(cutoff, reason="expired: no transaction submitted")
            db.commit()

            awaiting = [
                (intent.id, intent.transaction_reference)
                for intent in store.list_awaiting_confirmation(limit=self.batch_size)
            ]
            # Checked intents go to the back of the queue, whatever the outcome
            store.mark_checked([intent_id for intent_id, _ in awaiting])
            db.commit()

            engine = SettlementEngine(db, self.chain_clients, self.rate_provider, self.settings, self.listeners)
            for intent_id, reference in awaiting:
                stats["checked"] += 1
                try:
                    result = await engine.verify_and_settle(intent_id, reference)
                except SettlementError as e:
                    stats["errors"] += 1
                    logger.error("Settlement check failed: %s", e, extra={"intent_id": intent_id})
                    continue

                if result.status is IntentStatus.SETTLED:
                    stats["settled"] += 1
                elif result.status is IntentStatus.FAILED:
                    stats["failed"] += 1
                else:
                    stats["pending"] += 1

        if stats["checked"] or stats["expired"]:
            logger.info("Settlement poll complete", extra=stats)
        return stats
