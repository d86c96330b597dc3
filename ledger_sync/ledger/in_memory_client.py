"""
In-Memory Ledger Client (Development Mode)

Local-only ledger fake using asyncio.Queue.
Lets tests publish events, drop connections and stage tallies without a node.
"""
import asyncio
import itertools
import logging
from typing import Dict, List, Optional, Set, Tuple

from ledger_sync.exceptions import TransientTransportFault, UnknownEntityFault
from .base import (
    CandidateTally,
    ElectionSnapshot,
    EventFilter,
    LedgerClient,
    LedgerSubscription,
    PositionTally,
    VoteCastEvent,
)

logger = logging.getLogger(__name__)

_DISCONNECT = object()


class InMemorySubscription(LedgerSubscription):

    def __init__(self, client: "InMemoryLedgerClient", subscription_id: str, event_filter: EventFilter):
        self.id = subscription_id
        self._client = client
        self._filter = event_filter
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._dropped = False

    def _deliver(self, item) -> None:
        if not self.closed and not self._dropped:
            self._queue.put_nowait(item)

    def _drop(self) -> None:
        self._deliver(_DISCONNECT)
        self._dropped = True

    async def events(self):
        try:
            while not self.closed:
                item = await self._queue.get()
                if item is _DISCONNECT:
                    if self.closed:
                        return
                    raise TransientTransportFault(f"Subscription {self.id} dropped")
                if self._filter.matches(item):
                    yield item
        finally:
            self._client._detach(self)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Unblock a reader waiting on the queue
        self._queue.put_nowait(_DISCONNECT)
        self._client._detach(self)


class InMemoryLedgerClient(LedgerClient):
    """
    In-memory ledger for development and tests.

    Published events are kept as history so a subscription opened with
    from_block replays what it missed, like the web3 backfill.
    """

    def __init__(self):
        self._subscriptions: Set[InMemorySubscription] = set()
        self._history: List[VoteCastEvent] = []
        self._snapshots: Dict[str, ElectionSnapshot] = {}
        self._ids = itertools.count(1)
        self._block = itertools.count(1)
        self._failures_remaining = 0
        self.subscribe_attempts = 0
        self.snapshot_calls = 0
        self.closed = False

    # ----------------------------------------------------------------------
    # Test controls
    # ----------------------------------------------------------------------

    def fail_next_subscribes(self, count: int) -> None:
        """Make the next `count` subscribe() calls raise a transport fault."""
        self._failures_remaining = count

    def publish(self, event: VoteCastEvent) -> VoteCastEvent:
        """Emit an event to every live subscription, stamping a block number."""
        if event.block_number is None:
            event = VoteCastEvent(
                voter_address=event.voter_address,
                election_id=event.election_id,
                position_ids=event.position_ids,
                candidate_id=event.candidate_id,
                protocol_version=event.protocol_version,
                tx_hash=event.tx_hash,
                block_number=next(self._block),
                log_index=event.log_index if event.log_index is not None else 0,
            )
        self._history.append(event)
        for subscription in list(self._subscriptions):
            subscription._deliver(event)
        return event

    def drop_connections(self) -> int:
        """Simulate a transport drop on every open subscription."""
        dropped = list(self._subscriptions)
        for subscription in dropped:
            subscription._drop()
            self._detach(subscription)
        return len(dropped)

    def set_snapshot(self, election_id: str, tallies: Dict[str, Dict[str, int]]) -> None:
        """
        Stage the ledger tallies for an election.

        Args:
            tallies: {position_id: {candidate_id: vote_count}}
        """
        positions: List[PositionTally] = []
        for position_id, candidates in tallies.items():
            positions.append(PositionTally(
                id=position_id,
                candidates=tuple(CandidateTally(id=cid, vote_count=count) for cid, count in candidates.items()),
            ))
        self._snapshots[election_id] = ElectionSnapshot(election_id=election_id, positions=tuple(positions))

    @property
    def active_subscription_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(s.id for s in self._subscriptions))

    def _detach(self, subscription: InMemorySubscription) -> None:
        self._subscriptions.discard(subscription)

    # ----------------------------------------------------------------------
    # LedgerClient
    # ----------------------------------------------------------------------

    async def connect(self) -> None:
        self.closed = False

    async def subscribe(self, event_filter: EventFilter) -> LedgerSubscription:
        self.subscribe_attempts += 1
        if self.closed:
            raise TransientTransportFault("Ledger client is closed")
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise TransientTransportFault("Simulated subscribe failure")

        subscription = InMemorySubscription(self, f"memory-{next(self._ids)}", event_filter)
        if event_filter.from_block is not None:
            for event in self._history:
                if event.block_number is not None and event.block_number >= event_filter.from_block:
                    subscription._deliver(event)
        self._subscriptions.add(subscription)
        return subscription

    async def get_election_snapshot(self, election_id: str) -> ElectionSnapshot:
        self.snapshot_calls += 1
        snapshot = self._snapshots.get(election_id)
        if snapshot is None:
            raise UnknownEntityFault("election", election_id)
        return snapshot

    async def get_candidate_vote_count(
        self,
        election_id: str,
        position_id: str,
        candidate_id: str,
    ) -> int:
        snapshot = await self.get_election_snapshot(election_id)
        position = snapshot.position(position_id)
        if position is None:
            return 0
        for candidate in position.candidates:
            if candidate.id == candidate_id:
                return candidate.vote_count
        return 0

    async def close(self) -> None:
        self.closed = True
        for subscription in list(self._subscriptions):
            await subscription.close()
