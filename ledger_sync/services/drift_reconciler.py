"""
ledger_sync/services/drift_reconciler.py
Periodic comparison of ledger tallies against local Vote-row counts.

REPAIR POLICIES:
- report-only: log the delta, write nothing (default)
- counter-overwrite: set Candidate.vote_count to the ledger value. Vote
  rows are untouched, so the counter and the Vote-row count can disagree
  afterwards. That disagreement is expected.
- synthetic-attribution: create up to `delta` Vote rows for eligible
  students who have not voted for the candidate. This invents
  attribution the ledger never reported. Opt-in only.

IDEMPOTENCE:
- The delta is recomputed from current state on every pass, so a second
  pass over unchanged ledger data writes nothing.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from ledger_sync.config.settings import RepairPolicy
from ledger_sync.exceptions import ConfigurationError, ConstraintViolationFault
from ledger_sync.ledger.base import LedgerClient, PositionTally
from ledger_sync.orm import VoteSource
from ledger_sync.services import vote_store

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("ledger_sync.audit")


@dataclass
class CandidateDrift:
    election_id: str
    position_id: str
    candidate_id: str
    ledger_count: int
    local_count: int
    action: str = "reported"
    rows_written: int = 0

    @property
    def delta(self) -> int:
        return self.ledger_count - self.local_count

    def to_dict(self) -> dict:
        return {
            "election_id": self.election_id,
            "position_id": self.position_id,
            "candidate_id": self.candidate_id,
            "ledger_count": self.ledger_count,
            "local_count": self.local_count,
            "delta": self.delta,
            "action": self.action,
            "rows_written": self.rows_written,
        }


@dataclass
class ReconciliationReport:
    policy: RepairPolicy
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    elections_checked: int = 0
    elections_failed: List[Tuple[str, str]] = field(default_factory=list)
    drifts: List[CandidateDrift] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    writes: int = 0

    @property
    def in_sync(self) -> bool:
        return not self.drifts and not self.elections_failed

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elections_checked": self.elections_checked,
            "elections_failed": [{"election_id": e, "error": msg} for e, msg in self.elections_failed],
            "drifts": [d.to_dict() for d in self.drifts],
            "missing": list(self.missing),
            "writes": self.writes,
        }


@dataclass
class _LiveElection:
    """Plain copy of the store's view so no ORM state outlives its session"""
    id: str
    positions: Dict[str, Tuple[str, ...]]


class DriftReconciler:
    """
    Compares ledger-reported tallies with local Vote-row counts.

    One failing election is logged and skipped; the pass continues.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: LedgerClient,
        policy: RepairPolicy = RepairPolicy.report_only,
        contract_address: Optional[str] = None,
        allow_synthetic: bool = False,
        election_timeout: Optional[float] = None,
    ):
        if policy == RepairPolicy.synthetic_attribution and not allow_synthetic:
            raise ConfigurationError(
                "synthetic-attribution must be enabled explicitly (ALLOW_SYNTHETIC_ATTRIBUTION=true)"
            )
        self._session_factory = session_factory
        self._ledger = ledger
        self.policy = policy
        self._contract_address = contract_address
        self._election_timeout = election_timeout

    async def run_pass(self, election_ids: Optional[Iterable[str]] = None) -> ReconciliationReport:
        """
        Run one reconciliation pass over every live, bound election.

        Args:
            election_ids: Restrict the pass to these elections
        """
        report = ReconciliationReport(policy=self.policy)
        wanted = set(election_ids) if election_ids is not None else None
        logger.info(f"Syncing vote counts from ledger (policy={self.policy.value})...")

        elections = await self._load_live_elections(wanted)
        for election in elections:
            report.elections_checked += 1
            try:
                if self._election_timeout:
                    await asyncio.wait_for(self._sync_election(election, report), self._election_timeout)
                else:
                    await self._sync_election(election, report)
            except Exception as e:
                logger.exception(f"Error syncing election {election.id}: {e}")
                report.elections_failed.append((election.id, str(e)))

        report.finished_at = datetime.utcnow()
        logger.info(
            f"Reconciliation pass complete: {report.elections_checked} elections, "
            f"{len(report.drifts)} drifts, {report.writes} writes, "
            f"{len(report.elections_failed)} failures"
        )
        return report

    async def _load_live_elections(self, wanted: Optional[set]) -> List[_LiveElection]:
        async with self._session_factory() as db:
            rows = await vote_store.list_live_elections(db)
            elections = []
            for election in rows:
                if wanted is not None and election.id not in wanted:
                    continue
                if self._contract_address and not election.is_bound_to(self._contract_address):
                    logger.debug(f"Election {election.id} is bound to another contract; skipping")
                    continue
                elections.append(_LiveElection(
                    id=election.id,
                    positions={
                        position.id: tuple(c.id for c in position.candidates)
                        for position in election.positions
                    },
                ))
        return elections

    async def _sync_election(self, election: _LiveElection, report: ReconciliationReport) -> None:
        snapshot = await self._ledger.get_election_snapshot(election.id)
        for tally in snapshot.positions:
            local_candidates = election.positions.get(tally.id)
            if local_candidates is None:
                logger.warning(f"Ledger position {tally.id} of election {election.id} not in store; skipping")
                report.missing.append(f"position:{tally.id}")
                continue
            await self._sync_position(election.id, tally, local_candidates, report)

    async def _sync_position(
        self,
        election_id: str,
        tally: PositionTally,
        local_candidates: Tuple[str, ...],
        report: ReconciliationReport,
    ) -> None:
        known = [c.id for c in tally.candidates if c.id in local_candidates]
        async with self._session_factory() as db:
            local_counts = await vote_store.count_votes_by_candidate(known, db)

        for candidate in tally.candidates:
            if candidate.id not in local_candidates:
                logger.warning(
                    f"Ledger candidate {candidate.id} (position {tally.id}) not in store; skipping"
                )
                report.missing.append(f"candidate:{candidate.id}")
                continue

            drift = CandidateDrift(
                election_id=election_id,
                position_id=tally.id,
                candidate_id=candidate.id,
                ledger_count=candidate.vote_count,
                local_count=local_counts.get(candidate.id, 0),
            )
            if drift.delta == 0:
                continue

            if drift.delta < 0:
                # Vote rows are never deleted, so local surplus is only reported
                drift.action = "local-ahead"
                audit_logger.warning(
                    f"Local count exceeds ledger for candidate {drift.candidate_id} "
                    f"(election {election_id}, position {tally.id}): "
                    f"ledger={drift.ledger_count} local={drift.local_count} delta={drift.delta}"
                )
            else:
                await self._repair(drift, report)
            report.drifts.append(drift)

    async def _repair(self, drift: CandidateDrift, report: ReconciliationReport) -> None:
        if self.policy == RepairPolicy.report_only:
            drift.action = "reported"
            audit_logger.warning(
                f"Drift on candidate {drift.candidate_id} (election {drift.election_id}, "
                f"position {drift.position_id}): ledger={drift.ledger_count} "
                f"local={drift.local_count} delta={drift.delta}; report-only, no write"
            )
        elif self.policy == RepairPolicy.counter_overwrite:
            await self._overwrite_counter(drift, report)
        elif self.policy == RepairPolicy.synthetic_attribution:
            await self._synthesize_votes(drift, report)

    async def _overwrite_counter(self, drift: CandidateDrift, report: ReconciliationReport) -> None:
        async with self._session_factory() as db:
            changed = await vote_store.set_candidate_vote_count(drift.candidate_id, drift.ledger_count, db)
            if not changed:
                drift.action = "counter-current"
                await db.rollback()
                return

            audit_logger.warning(
                f"Overwriting vote_count of candidate {drift.candidate_id} to {drift.ledger_count} "
                f"(election {drift.election_id}, local Vote rows={drift.local_count}, delta={drift.delta})"
            )
            vote_store.add_reconciliation_audit(
                db,
                election_id=drift.election_id,
                position_id=drift.position_id,
                candidate_id=drift.candidate_id,
                policy=self.policy.value,
                ledger_count=drift.ledger_count,
                local_count=drift.local_count,
                rows_written=0,
            )
            await db.commit()

        drift.action = "counter-overwritten"
        report.writes += 1

    async def _synthesize_votes(self, drift: CandidateDrift, report: ReconciliationReport) -> None:
        async with self._session_factory() as db:
            students = await vote_store.find_students_without_vote(drift.candidate_id, drift.delta, db)
            student_ids = [s.id for s in students]

        if not student_ids:
            drift.action = "synthetic-exhausted"
            logger.warning(
                f"No eligible students left to attribute {drift.delta} votes to candidate {drift.candidate_id}"
            )
            return

        audit_logger.warning(
            f"SYNTHETIC ATTRIBUTION for candidate {drift.candidate_id} (election {drift.election_id}, "
            f"position {drift.position_id}): delta={drift.delta}, placing {len(student_ids)} placeholder "
            f"votes not observed on the ledger"
        )

        created = 0
        async with self._session_factory() as db:
            for student_id in student_ids:
                try:
                    await vote_store.insert_vote(
                        student_id,
                        drift.candidate_id,
                        db,
                        source=VoteSource.reconciliation_synthetic,
                    )
                    created += 1
                except ConstraintViolationFault:
                    # Live ingestion won the race for this pair
                    continue

            if created:
                vote_store.add_reconciliation_audit(
                    db,
                    election_id=drift.election_id,
                    position_id=drift.position_id,
                    candidate_id=drift.candidate_id,
                    policy=self.policy.value,
                    ledger_count=drift.ledger_count,
                    local_count=drift.local_count,
                    rows_written=created,
                )
                await db.commit()

        if created < drift.delta:
            logger.warning(
                f"Only {created} of {drift.delta} synthetic votes placed for candidate {drift.candidate_id}"
            )
        drift.action = "synthetic-attributed"
        drift.rows_written = created
        report.writes += created
