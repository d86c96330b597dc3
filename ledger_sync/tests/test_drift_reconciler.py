"""
Drift Reconciler Tests

Repair policies, idempotent passes, schema lag and per-election isolation.
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from ledger_sync.config.settings import RepairPolicy
from ledger_sync.exceptions import ConfigurationError
from ledger_sync.ledger import ProtocolVersion, VoteCastEvent
from ledger_sync.orm import Candidate, Election, ReconciliationAudit, Student, Vote, VoteSource
from ledger_sync.services.drift_reconciler import DriftReconciler
from ledger_sync.services.vote_ingester import VoteIngester
from ledger_sync.tests.conftest import CONTRACT, WALLETS, add_votes, count_votes


EMPTY_P2 = {"c3": 0, "c4": 0}


async def add_students(session_factory, count: int, prefix: str = "x", eligible: bool = True):
    ids = [f"{prefix}{i:02d}" for i in range(1, count + 1)]
    async with session_factory() as db:
        for student_id in ids:
            db.add(Student(id=student_id, name=student_id, is_eligible=eligible))
        await db.commit()
    return ids


async def audit_rows(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(ReconciliationAudit).order_by(ReconciliationAudit.id))
        return list(result.scalars().all())


@pytest_asyncio.fixture
async def drifted(seeded, ledger):
    """Ledger reports 10 votes for c1; the store holds 7."""
    voters = await add_students(seeded, 12)
    await add_votes(seeded, "c1", voters[:7])
    ledger.set_snapshot("e1", {"p1": {"c1": 10, "c2": 0}, "p2": EMPTY_P2})
    return voters


class TestReportOnly:

    @pytest.mark.asyncio
    async def test_logs_delta_and_writes_nothing(self, seeded, ledger, drifted, caplog):
        reconciler = DriftReconciler(seeded, ledger, policy=RepairPolicy.report_only)

        with caplog.at_level("WARNING", logger="ledger_sync.audit"):
            report = await reconciler.run_pass()

        assert report.elections_checked == 1
        assert len(report.drifts) == 1
        drift = report.drifts[0]
        assert (drift.candidate_id, drift.ledger_count, drift.local_count, drift.delta) == ("c1", 10, 7, 3)
        assert drift.action == "reported"
        assert report.writes == 0
        assert await count_votes(seeded, "c1") == 7
        assert await audit_rows(seeded) == []
        assert any("delta=3" in r.message and "c1" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_matching_counts_need_no_action(self, seeded, ledger):
        await add_votes(seeded, "c2", ["s1", "s2"])
        ledger.set_snapshot("e1", {"p1": {"c1": 0, "c2": 2}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(seeded, ledger)

        report = await reconciler.run_pass()

        assert report.in_sync
        assert report.drifts == []

    @pytest.mark.asyncio
    async def test_local_surplus_is_reported_not_deleted(self, seeded, ledger):
        await add_votes(seeded, "c2", ["s1", "s2"])
        ledger.set_snapshot("e1", {"p1": {"c1": 0, "c2": 1}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(seeded, ledger, policy=RepairPolicy.counter_overwrite)

        report = await reconciler.run_pass()

        assert [d.action for d in report.drifts] == ["local-ahead"]
        assert report.drifts[0].delta == -1
        assert report.writes == 0
        assert await count_votes(seeded, "c2") == 2


class TestCounterOverwrite:

    @pytest.mark.asyncio
    async def test_overwrites_counter_without_creating_votes(self, seeded, ledger, drifted):
        reconciler = DriftReconciler(seeded, ledger, policy=RepairPolicy.counter_overwrite)

        report = await reconciler.run_pass()

        assert report.writes == 1
        assert report.drifts[0].action == "counter-overwritten"
        async with seeded() as db:
            candidate = await db.get(Candidate, "c1")
        assert candidate.vote_count == 10
        # Known inconsistency: counter says 10, Vote rows say 7
        assert await count_votes(seeded, "c1") == 7

        audits = await audit_rows(seeded)
        assert len(audits) == 1
        assert (audits[0].candidate_id, audits[0].delta, audits[0].policy) == ("c1", 3, "counter-overwrite")

    @pytest.mark.asyncio
    async def test_second_pass_writes_nothing(self, seeded, ledger, drifted):
        reconciler = DriftReconciler(seeded, ledger, policy=RepairPolicy.counter_overwrite)

        await reconciler.run_pass()
        second = await reconciler.run_pass()

        assert second.writes == 0
        assert second.drifts[0].action == "counter-current"
        assert len(await audit_rows(seeded)) == 1


class TestSyntheticAttribution:

    @pytest.mark.asyncio
    async def test_requires_explicit_opt_in(self, seeded, ledger):
        with pytest.raises(ConfigurationError):
            DriftReconciler(seeded, ledger, policy=RepairPolicy.synthetic_attribution)

    @pytest.mark.asyncio
    async def test_creates_at_most_delta_rows_for_distinct_students(self, seeded, ledger, drifted):
        reconciler = DriftReconciler(
            seeded, ledger, policy=RepairPolicy.synthetic_attribution, allow_synthetic=True
        )

        report = await reconciler.run_pass()

        assert report.writes == 3
        assert report.drifts[0].rows_written == 3
        assert await count_votes(seeded, "c1") == 10

        async with seeded() as db:
            result = await db.execute(
                select(Vote).where(Vote.source == VoteSource.reconciliation_synthetic)
            )
            synthetic = list(result.scalars().all())
        voters = [v.student_id for v in synthetic]
        assert len(voters) == 3
        assert len(set(voters)) == 3
        assert not set(voters) & set(drifted[:7])
        assert all(v.candidate_id == "c1" for v in synthetic)

        audits = await audit_rows(seeded)
        assert [(a.candidate_id, a.delta, a.rows_written) for a in audits] == [("c1", 3, 3)]

    @pytest.mark.asyncio
    async def test_second_pass_over_unchanged_ledger_writes_nothing(self, seeded, ledger, drifted):
        reconciler = DriftReconciler(
            seeded, ledger, policy=RepairPolicy.synthetic_attribution, allow_synthetic=True
        )

        await reconciler.run_pass()
        second = await reconciler.run_pass()

        assert second.writes == 0
        assert second.drifts == []
        assert await count_votes(seeded, "c1") == 10
        assert len(await audit_rows(seeded)) == 1

    @pytest.mark.asyncio
    async def test_ineligible_students_are_never_attributed(self, seeded, ledger):
        ledger.set_snapshot("e1", {"p1": {"c1": 50, "c2": 0}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(
            seeded, ledger, policy=RepairPolicy.synthetic_attribution, allow_synthetic=True
        )

        first = await reconciler.run_pass()
        second = await reconciler.run_pass()

        # Only the five eligible seeded students are available
        assert first.writes == 5
        assert second.writes == 0
        assert second.drifts[0].action == "synthetic-exhausted"
        async with seeded() as db:
            result = await db.execute(select(func.count(Vote.id)).where(Vote.student_id == "s9"))
            assert result.scalar() == 0


class TestSyntheticRacesLiveIngestion:

    async def pair_rows(self, session_factory, student_id: str, candidate_id: str) -> int:
        async with session_factory() as db:
            result = await db.execute(
                select(func.count(Vote.id)).where(
                    Vote.student_id == student_id, Vote.candidate_id == candidate_id
                )
            )
            return int(result.scalar() or 0)

    @pytest.mark.asyncio
    async def test_concurrent_paths_leave_one_row_per_pair(self, seeded, ledger):
        ledger.set_snapshot("e1", {"p1": {"c1": 1, "c2": 0}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(
            seeded, ledger, policy=RepairPolicy.synthetic_attribution, allow_synthetic=True
        )
        ingester = VoteIngester(seeded, ledger)
        # s1 is both the live voter and the first synthetic pick
        event = VoteCastEvent(
            voter_address=WALLETS["s1"],
            election_id="e1",
            position_ids=("p1",),
            candidate_id="c1",
            protocol_version=ProtocolVersion.v2,
        )

        report, result = await asyncio.gather(reconciler.run_pass(), ingester.ingest(event))

        assert report.elections_failed == []
        assert result.failed == []
        assert await self.pair_rows(seeded, "s1", "c1") == 1

    @pytest.mark.asyncio
    async def test_stale_candidate_list_hits_unique_constraint(self, seeded, ledger):
        ledger.set_snapshot("e1", {"p1": {"c1": 2, "c2": 0}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(
            seeded, ledger, policy=RepairPolicy.synthetic_attribution, allow_synthetic=True
        )
        # Live ingestion lands after the reconciler picked its students
        await add_votes(seeded, "c1", ["s1"])
        stale = AsyncMock(return_value=[SimpleNamespace(id="s1")])

        with patch("ledger_sync.services.drift_reconciler.vote_store.find_students_without_vote", stale):
            report = await reconciler.run_pass()

        assert report.elections_failed == []
        assert report.writes == 0
        assert report.drifts[0].rows_written == 0
        assert await self.pair_rows(seeded, "s1", "c1") == 1
        assert await audit_rows(seeded) == []


class TestPassIsolation:

    @pytest.mark.asyncio
    async def test_failing_election_does_not_abort_pass(self, seeded, ledger, drifted):
        async with seeded() as db:
            db.add(Election(id="e0", title="Broken", is_live=True))
            await db.commit()
        reconciler = DriftReconciler(seeded, ledger)

        report = await reconciler.run_pass()

        assert report.elections_checked == 2
        assert [e for e, _ in report.elections_failed] == ["e0"]
        assert [d.candidate_id for d in report.drifts] == ["c1"]

    @pytest.mark.asyncio
    async def test_only_live_bound_elections_are_checked(self, seeded, ledger):
        async with seeded() as db:
            db.add(Election(id="e5", title="Draft", is_live=False))
            db.add(Election(
                id="e6",
                title="Other contract",
                is_live=True,
                contract_address="0x3333333333333333333333333333333333333333",
            ))
            await db.commit()
        ledger.set_snapshot("e1", {"p1": {"c1": 0, "c2": 0}, "p2": EMPTY_P2})
        reconciler = DriftReconciler(seeded, ledger, contract_address=CONTRACT)

        report = await reconciler.run_pass()

        assert report.elections_checked == 1
        assert report.in_sync

    @pytest.mark.asyncio
    async def test_schema_lag_is_skipped(self, seeded, ledger):
        ledger.set_snapshot("e1", {
            "p1": {"c1": 0, "c2": 0, "c99": 4},
            "p2": EMPTY_P2,
            "p9": {"c42": 1},
        })
        reconciler = DriftReconciler(seeded, ledger)

        report = await reconciler.run_pass()

        assert sorted(report.missing) == ["candidate:c99", "position:p9"]
        assert report.elections_failed == []
        assert report.drifts == []

    @pytest.mark.asyncio
    async def test_restrict_to_election_ids(self, seeded, ledger, drifted):
        reconciler = DriftReconciler(seeded, ledger)

        report = await reconciler.run_pass(election_ids=["nope"])

        assert report.elections_checked == 0
        assert ledger.snapshot_calls == 0
