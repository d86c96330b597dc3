"""
ledger_sync/services/event_subscriber.py
Live subscription to the contract's vote-cast events.

RECONNECT POLICY:
- Transport drop after a successful subscription: retry after the
  reconnect backoff, forever
- Failure before the first successful subscription: retry after the
  initial backoff, forever, or raise StartupFault under the exit policy
- A failing ingestion never ends the subscription
"""
import asyncio
import logging
from typing import Optional

from ledger_sync.config.settings import StartupFailurePolicy
from ledger_sync.exceptions import StartupFault, TransientTransportFault
from ledger_sync.ledger.base import EventFilter, LedgerClient, LedgerSubscription, VoteCastEvent
from ledger_sync.services.vote_ingester import IngestResult, VoteIngester
from ledger_sync.tasks.context import ServiceContext
from ledger_sync.tasks.periodic import Backoff, wait_or_stop

logger = logging.getLogger(__name__)


class EventSubscriber:

    def __init__(
        self,
        ledger: LedgerClient,
        ingester: VoteIngester,
        context: ServiceContext,
        event_filter: EventFilter,
        reconnect_backoff: Backoff = Backoff(30.0),
        initial_backoff: Backoff = Backoff(60.0),
        startup_policy: StartupFailurePolicy = StartupFailurePolicy.retry,
        ingest_timeout: Optional[float] = None,
    ):
        self._ledger = ledger
        self._ingester = ingester
        self._context = context
        self._filter = event_filter
        self._reconnect_backoff = reconnect_backoff
        self._initial_backoff = initial_backoff
        self._startup_policy = startup_policy
        self._ingest_timeout = ingest_timeout
        self._stopping = asyncio.Event()
        self._subscription: Optional[LedgerSubscription] = None
        self._last_block: Optional[int] = None
        self.connected_once = False

    @property
    def subscription_id(self) -> Optional[str]:
        return self._subscription.id if self._subscription is not None else None

    async def run(self) -> None:
        """
        Keep a subscription open until stop() is called.

        Raises:
            StartupFault: first subscription failed and the policy is exit
        """
        attempt = 0
        while not self._stopping.is_set():
            attempt += 1
            try:
                subscription = await self._ledger.subscribe(self._filter.resume_from(self._last_block))
            except Exception as e:
                if not self.connected_once:
                    if self._startup_policy == StartupFailurePolicy.exit:
                        raise StartupFault(f"Error setting up contract listener: {e}") from e
                    delay = self._initial_backoff.delay(attempt)
                    logger.error(f"Error setting up contract listener: {e}; retrying in {delay}s")
                else:
                    delay = self._reconnect_backoff.delay(attempt)
                    logger.warning(f"Ledger resubscribe failed: {e}; retrying in {delay}s")
                self._context.last_error = str(e)
                await wait_or_stop(self._stopping, delay)
                continue

            attempt = 0
            self._subscription = subscription
            self.connected_once = True
            self._context.subscription_opened(subscription.id)
            logger.info(f"Listener set up successfully (subscription {subscription.id})")

            try:
                await self._consume(subscription)
            except TransientTransportFault as e:
                self._context.last_error = str(e)
                if not self._stopping.is_set():
                    logger.warning(
                        f"Ledger connection lost: {e}; reconnecting in {self._reconnect_backoff.delay(1)}s"
                    )
            except Exception as e:
                self._context.last_error = str(e)
                logger.exception(f"Subscription {subscription.id} failed: {e}")
            finally:
                await self._close_subscription()

            if self._stopping.is_set():
                break
            self._context.reconnects += 1
            await wait_or_stop(self._stopping, self._reconnect_backoff.delay(1))

        logger.info("Event subscriber stopped")

    async def _consume(self, subscription: LedgerSubscription) -> None:
        async for event in subscription.events():
            if self._stopping.is_set():
                return
            await self.handle_event(event)
        if not self._stopping.is_set():
            raise TransientTransportFault(f"Subscription {subscription.id} ended")

    async def handle_event(self, event: VoteCastEvent) -> Optional[IngestResult]:
        """Ingest one event; any failure is logged and contained here."""
        self._context.events_received += 1
        if event.block_number is not None:
            self._last_block = max(self._last_block or 0, event.block_number)
        logger.info(f"Vote detected from {event.voter_address} for election {event.election_id}")

        try:
            if self._ingest_timeout:
                result = await asyncio.wait_for(self._ingester.ingest(event), timeout=self._ingest_timeout)
            else:
                result = await self._ingester.ingest(event)
        except Exception as e:
            self._context.events_failed += 1
            logger.exception(f"Error processing vote event {event.event_key}: {e}")
            return None

        self._context.record_ingest(result)
        return result

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        self._context.subscription_closed(subscription.id)
        try:
            await subscription.close()
        except Exception as e:
            logger.warning(f"Error closing subscription {subscription.id}: {e}")

    async def stop(self) -> None:
        """Stop accepting events and release the subscription."""
        self._stopping.set()
        await self._close_subscription()
