"""
ledger_sync/services/vote_ingester.py
Turns one decoded vote-cast event into at most one Vote row per position.

IDEMPOTENT BEHAVIOR:
- Existing (student, candidate) pair: no-op
- Concurrent insert of the same pair: the unique constraint rejects the
  loser, which is reported as a duplicate rather than an error

FAILURE ISOLATION:
- Unknown voter or election: whole event dropped with a warning, not retried
- Failure on one position id never stops the remaining position ids
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_sync.config.settings import CandidateResolution
from ledger_sync.exceptions import ConstraintViolationFault, UnknownEntityFault
from ledger_sync.ledger.base import ElectionSnapshot, LedgerClient, VoteCastEvent
from ledger_sync.orm import Candidate, Position, Student, VoteSource
from ledger_sync.services import vote_store

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Outcome of ingesting one event"""
    event_key: str
    student_id: Optional[str] = None
    dropped: Optional[str] = None
    created: List[Tuple[str, str]] = field(default_factory=list)
    duplicates: List[Tuple[str, str]] = field(default_factory=list)
    approximate: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def votes_created(self) -> int:
        return len(self.created)


class VoteIngester:
    """
    Materializes ledger vote facts as Vote rows.

    Candidate resolution order:
    1. candidate id carried by the event (protocol v2)
    2. ledger-side approximation for v1 events: the position's current
       leader, from the full snapshot or from per-candidate tallies.
       Attribution made this way is a guess and is logged as such.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: LedgerClient,
        contract_address: Optional[str] = None,
        candidate_resolution: CandidateResolution = CandidateResolution.snapshot,
        update_counter: bool = False,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._contract_address = contract_address
        self._candidate_resolution = candidate_resolution
        self._update_counter = update_counter

    async def ingest(self, event: VoteCastEvent) -> IngestResult:
        result = IngestResult(event_key=event.event_key)

        async with self._session_factory() as db:
            try:
                student = await self._resolve_voter(event, db)
                await self._check_election(event, db)
            except UnknownEntityFault as e:
                logger.warning(f"Dropping vote event {event.event_key}: {e.message}")
                result.dropped = e.message
                return result

            # Rollbacks expire ORM state, so only plain ids cross positions
            result.student_id = student_id = student.id
            snapshots: Dict[str, ElectionSnapshot] = {}

            for position_id in event.position_ids:
                try:
                    await self._ingest_position(event, student_id, position_id, db, result, snapshots)
                except UnknownEntityFault as e:
                    logger.warning(
                        f"Skipping position {position_id} of event {event.event_key}: {e.message}"
                    )
                    result.skipped.append((position_id, e.message))
                except Exception as e:
                    logger.exception(
                        f"Failed to ingest position {position_id} of event {event.event_key}: {e}"
                    )
                    await db.rollback()
                    result.failed.append((position_id, str(e)))

        return result

    async def _resolve_voter(self, event: VoteCastEvent, db: AsyncSession) -> Student:
        student = await vote_store.get_student_by_wallet(event.voter_address, db)
        if student is None:
            raise UnknownEntityFault("voter", event.normalized_voter)
        return student

    async def _check_election(self, event: VoteCastEvent, db: AsyncSession) -> None:
        election = await vote_store.get_election(event.election_id, db)
        if election is None:
            raise UnknownEntityFault("election", event.election_id)
        if (
            election.contract_address
            and self._contract_address
            and election.contract_address.lower() != self._contract_address.lower()
        ):
            raise UnknownEntityFault(
                "election on this contract",
                f"{event.election_id} (bound to {election.contract_address})",
            )

    async def _ingest_position(
        self,
        event: VoteCastEvent,
        student_id: str,
        position_id: str,
        db: AsyncSession,
        result: IngestResult,
        snapshots: Dict[str, ElectionSnapshot],
    ) -> None:
        position = await vote_store.get_position(position_id, db)
        if position is None or position.election_id != event.election_id:
            raise UnknownEntityFault("position", position_id)

        candidate, approximate = await self._resolve_candidate(event, position, db, snapshots)
        candidate_id = candidate.id
        pair = (position_id, candidate_id)
        if approximate:
            result.approximate.append(pair)

        if await vote_store.vote_exists(student_id, candidate_id, db):
            logger.debug(f"Vote {student_id} -> {candidate_id} already recorded")
            result.duplicates.append(pair)
            return

        try:
            await vote_store.insert_vote(
                student_id,
                candidate_id,
                db,
                source=VoteSource.ledger_event,
                tx_hash=event.tx_hash,
                bump_counter=self._update_counter,
            )
        except ConstraintViolationFault:
            logger.info(f"Vote {student_id} -> {candidate_id} inserted concurrently; treated as no-op")
            result.duplicates.append(pair)
            return

        result.created.append(pair)
        logger.info(
            f"✓ Recorded vote: student {student_id} -> candidate {candidate_id} "
            f"(position {position_id}, election {event.election_id})"
        )

    async def _resolve_candidate(
        self,
        event: VoteCastEvent,
        position: Position,
        db: AsyncSession,
        snapshots: Dict[str, ElectionSnapshot],
    ) -> Tuple[Candidate, bool]:
        """
        Returns:
            (candidate, approximate) where approximate marks heuristic attribution
        """
        if event.carries_candidate:
            for candidate in position.candidates:
                if candidate.id == event.candidate_id:
                    return candidate, False
            # In a multi-position event the carried candidate belongs to one
            # position only; the rest fall back to the approximation. A
            # candidate outside every listed position is never guessed around.
            carried = await vote_store.get_candidate(event.candidate_id, db)
            if carried is None or carried.position_id not in event.position_ids:
                raise UnknownEntityFault("candidate", event.candidate_id)

        if not position.candidates:
            raise UnknownEntityFault("candidates for position", position.id)

        if self._candidate_resolution == CandidateResolution.snapshot:
            candidate_id = await self._leader_from_snapshot(event.election_id, position, snapshots)
        else:
            candidate_id = await self._leader_from_tallies(event.election_id, position)

        for candidate in position.candidates:
            if candidate.id == candidate_id:
                logger.warning(
                    f"Approximate attribution for event {event.event_key}: no candidate id on event, "
                    f"using ledger leader {candidate_id} of position {position.id}"
                )
                return candidate, True
        raise UnknownEntityFault("candidate", candidate_id)

    async def _leader_from_snapshot(
        self,
        election_id: str,
        position: Position,
        snapshots: Dict[str, ElectionSnapshot],
    ) -> str:
        snapshot = snapshots.get(election_id)
        if snapshot is None:
            snapshot = await self._ledger.get_election_snapshot(election_id)
            snapshots[election_id] = snapshot

        tally = snapshot.position(position.id)
        if tally is None:
            raise UnknownEntityFault("position on ledger", position.id)
        leader = tally.leading_candidate()
        if leader is None:
            raise UnknownEntityFault("candidates on ledger for position", position.id)
        return leader.id

    async def _leader_from_tallies(self, election_id: str, position: Position) -> str:
        leader_id = None
        leader_count = -1
        for candidate in position.candidates:
            count = await self._ledger.get_candidate_vote_count(election_id, position.id, candidate.id)
            if count > leader_count:
                leader_id, leader_count = candidate.id, count
        return leader_id
