"""
ledger_sync/services/vote_store.py
Store operations used by ingestion and reconciliation.

The relational store is a passive sink. The only invariant enforced
here is the one the schema carries: at most one Vote per
(student, candidate), surfaced as ConstraintViolationFault.
"""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger_sync.exceptions import ConstraintViolationFault
from ledger_sync.ledger.base import normalize_address
from ledger_sync.orm import (
    Candidate,
    Election,
    Position,
    ReconciliationAudit,
    Student,
    Vote,
    VoteSource,
)

logger = logging.getLogger(__name__)

UNIQUE_VOTE_CONSTRAINT = "uq_vote_student_candidate"


def _is_duplicate_vote(error: IntegrityError) -> bool:
    message = str(error.orig) if error.orig is not None else str(error)
    if UNIQUE_VOTE_CONSTRAINT in message:
        return True
    # SQLite reports the columns rather than the constraint name
    return "UNIQUE constraint failed: votes." in message


async def get_student_by_wallet(wallet_address: str, db: AsyncSession) -> Optional[Student]:
    """
    Resolve a ledger address to a student, case-insensitively.
    """
    normalized = normalize_address(wallet_address)
    if not normalized:
        return None
    result = await db.execute(
        select(Student)
        .where(func.lower(Student.wallet_address) == normalized)
        .order_by(Student.id)
    )
    matches = result.scalars().all()
    if len(matches) > 1:
        logger.warning(
            f"Wallet {normalized} is linked to {len(matches)} students; using {matches[0].id}"
        )
    return matches[0] if matches else None


async def get_election(election_id: str, db: AsyncSession) -> Optional[Election]:
    return await db.get(Election, election_id)


async def get_position(position_id: str, db: AsyncSession) -> Optional[Position]:
    result = await db.execute(
        select(Position)
        .options(selectinload(Position.candidates))
        .where(Position.id == position_id)
    )
    return result.scalars().first()


async def get_candidate(candidate_id: str, db: AsyncSession) -> Optional[Candidate]:
    return await db.get(Candidate, candidate_id)


async def vote_exists(student_id: str, candidate_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(Vote.id).where(
            Vote.student_id == student_id,
            Vote.candidate_id == candidate_id,
        ).limit(1)
    )
    return result.first() is not None


async def insert_vote(
    student_id: str,
    candidate_id: str,
    db: AsyncSession,
    source: VoteSource = VoteSource.ledger_event,
    tx_hash: Optional[str] = None,
    bump_counter: bool = False,
) -> Vote:
    """
    Insert and commit one Vote row.

    CONCURRENCY SAFETY:
    - No locks are taken
    - UNIQUE(student_id, candidate_id) decides races between the live
      path and reconciliation repair

    Raises:
        ConstraintViolationFault: the pair already has a Vote row
    """
    vote = Vote(
        student_id=student_id,
        candidate_id=candidate_id,
        source=source,
        tx_hash=tx_hash,
    )
    db.add(vote)
    try:
        await db.flush()
        if bump_counter:
            # Best-effort convenience counter, not the tally
            await db.execute(
                update(Candidate)
                .where(Candidate.id == candidate_id)
                .values(vote_count=Candidate.vote_count + 1)
            )
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if _is_duplicate_vote(e):
            raise ConstraintViolationFault(student_id, candidate_id) from e
        raise
    return vote


async def count_votes_for_candidate(candidate_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.count(Vote.id)).where(Vote.candidate_id == candidate_id)
    )
    return int(result.scalar() or 0)


async def count_votes_by_candidate(candidate_ids: Iterable[str], db: AsyncSession) -> Dict[str, int]:
    """Vote-row counts for several candidates in one query; missing ids count 0."""
    ids = list(candidate_ids)
    if not ids:
        return {}
    result = await db.execute(
        select(Vote.candidate_id, func.count(Vote.id))
        .where(Vote.candidate_id.in_(ids))
        .group_by(Vote.candidate_id)
    )
    counts = {candidate_id: 0 for candidate_id in ids}
    for candidate_id, count in result.all():
        counts[candidate_id] = int(count)
    return counts


async def list_live_elections(db: AsyncSession) -> List[Election]:
    """Live elections with positions and candidates loaded."""
    result = await db.execute(
        select(Election)
        .options(selectinload(Election.positions).selectinload(Position.candidates))
        .where(Election.is_live.is_(True))
        .order_by(Election.id)
    )
    return list(result.scalars().all())


async def find_students_without_vote(
    candidate_id: str,
    limit: int,
    db: AsyncSession,
) -> List[Student]:
    """Eligible students with no Vote row for the candidate, in id order."""
    if limit <= 0:
        return []
    already_voted = exists().where(
        Vote.student_id == Student.id,
        Vote.candidate_id == candidate_id,
    )
    result = await db.execute(
        select(Student)
        .where(Student.is_eligible.is_(True), ~already_voted)
        .order_by(Student.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def set_candidate_vote_count(candidate_id: str, value: int, db: AsyncSession) -> bool:
    """
    Overwrite the denormalized counter. Does not commit.

    Returns:
        True when the stored value changed
    """
    result = await db.execute(
        update(Candidate)
        .where(Candidate.id == candidate_id, Candidate.vote_count != value)
        .values(vote_count=value)
    )
    return (result.rowcount or 0) > 0


def add_reconciliation_audit(
    db: AsyncSession,
    election_id: str,
    position_id: str,
    candidate_id: str,
    policy: str,
    ledger_count: int,
    local_count: int,
    rows_written: int,
) -> ReconciliationAudit:
    """Stage an audit row for a repair. Does not commit."""
    audit = ReconciliationAudit(
        election_id=election_id,
        position_id=position_id,
        candidate_id=candidate_id,
        policy=policy,
        ledger_count=ledger_count,
        local_count=local_count,
        delta=ledger_count - local_count,
        rows_written=rows_written,
    )
    db.add(audit)
    return audit
