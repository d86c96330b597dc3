"""
ledger_sync/ledger/base.py
Read-only ledger interface and the decoded types it exchanges.

The ledger is the source of truth for whether a vote happened. Nothing
in this package writes to it.
"""
import abc
from dataclasses import dataclass
from enum import IntEnum
from typing import AsyncIterator, FrozenSet, Optional, Tuple


class ProtocolVersion(IntEnum):
    """
    Shape of the vote-cast event emitted by the contract.

    v1 carries positions only; v2 also carries the chosen candidate.
    """
    v1 = 1
    v2 = 2


@dataclass(frozen=True)
class VoteCastEvent:
    """One decoded vote-cast notification"""
    voter_address: str
    election_id: str
    position_ids: Tuple[str, ...]
    candidate_id: Optional[str] = None
    protocol_version: ProtocolVersion = ProtocolVersion.v1
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.position_ids, tuple):
            object.__setattr__(self, "position_ids", tuple(self.position_ids))
        if self.protocol_version == ProtocolVersion.v2 and not self.candidate_id:
            raise ValueError("v2 vote-cast events must carry a candidate id")
        if self.protocol_version == ProtocolVersion.v1 and self.candidate_id is not None:
            raise ValueError("v1 vote-cast events do not carry a candidate id")

    @property
    def normalized_voter(self) -> str:
        return normalize_address(self.voter_address)

    @property
    def carries_candidate(self) -> bool:
        return self.candidate_id is not None

    @property
    def event_key(self) -> str:
        """Stable identifier for log lines"""
        if self.tx_hash is not None:
            return f"{self.tx_hash}:{self.log_index}"
        return f"{self.normalized_voter}:{self.election_id}"


@dataclass(frozen=True)
class CandidateTally:
    id: str
    vote_count: int


@dataclass(frozen=True)
class PositionTally:
    id: str
    candidates: Tuple[CandidateTally, ...] = ()

    def leading_candidate(self) -> Optional[CandidateTally]:
        """Highest ledger count; ties go to the first listed candidate."""
        leader = None
        for candidate in self.candidates:
            if leader is None or candidate.vote_count > leader.vote_count:
                leader = candidate
        return leader


@dataclass(frozen=True)
class ElectionSnapshot:
    """Ledger-reported tallies for one election"""
    election_id: str
    positions: Tuple[PositionTally, ...] = ()

    def position(self, position_id: str) -> Optional[PositionTally]:
        for position in self.positions:
            if position.id == position_id:
                return position
        return None


@dataclass(frozen=True)
class EventFilter:
    """
    Subscription filter.

    contract_address pins the stream to one contract instance.
    from_block asks the client to replay logs from that block first.
    """
    contract_address: Optional[str] = None
    election_ids: Optional[FrozenSet[str]] = None
    from_block: Optional[int] = None

    def matches(self, event: VoteCastEvent) -> bool:
        if self.election_ids is not None and event.election_id not in self.election_ids:
            return False
        return True

    def resume_from(self, block_number: Optional[int]) -> "EventFilter":
        if block_number is None:
            return self
        return EventFilter(
            contract_address=self.contract_address,
            election_ids=self.election_ids,
            from_block=block_number,
        )


def normalize_address(address: str) -> str:
    """Ledger addresses compare case-insensitively."""
    return (address or "").strip().lower()


class LedgerSubscription(abc.ABC):
    """A live vote-cast stream opened by LedgerClient.subscribe()."""

    id: str = ""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[VoteCastEvent]:
        """
        Yield decoded events in delivery order.

        Transport faults surface as TransientTransportFault.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


class LedgerClient(abc.ABC):
    """
    Read-only, subscribe-capable view of the election contract.

    Implementations:
    - Web3LedgerClient: JSON-RPC + WebSocket via web3.py
    - InMemoryLedgerClient: deterministic fake for development and tests
    """

    async def connect(self) -> None:
        """Open shared transports. Optional for implementations."""
        return None

    @abc.abstractmethod
    async def subscribe(self, event_filter: EventFilter) -> LedgerSubscription:
        """
        Open a vote-cast subscription.

        Raises:
            TransientTransportFault: the stream could not be established
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def get_election_snapshot(self, election_id: str) -> ElectionSnapshot:
        raise NotImplementedError

    @abc.abstractmethod
    async def get_candidate_vote_count(
        self,
        election_id: str,
        position_id: str,
        candidate_id: str,
    ) -> int:
        """Single tally lookup for contracts without snapshot support."""
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError
