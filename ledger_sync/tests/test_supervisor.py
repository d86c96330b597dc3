"""
Service Supervisor Tests

Startup, periodic work, fatal startup policy and shutdown, wired against
the in-memory ledger and a file-backed SQLite store.
"""
import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

from ledger_sync.config.settings import (
    LedgerBackend,
    RepairPolicy,
    Settings,
    StartupFailurePolicy,
)
from ledger_sync.database import Database
from ledger_sync.exceptions import StartupFault, TransientTransportFault
from ledger_sync.ledger import ProtocolVersion, VoteCastEvent
from ledger_sync.orm import Candidate
from ledger_sync.tasks.context import ServiceStatus
from ledger_sync.tasks.supervisor import ServiceSupervisor
from ledger_sync.tests.conftest import CONTRACT, WALLETS, count_votes, wait_until


@pytest.fixture
def settings(tmp_path) -> Settings:
    # Same file the seeded fixture writes to
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'store.db'}",
        ledger_backend=LedgerBackend.memory,
        contract_address=CONTRACT,
        reconcile_interval=0.05,
        heartbeat_interval=0.05,
        reconnect_backoff=0.01,
        initial_connect_backoff=0.01,
        startup_retry_delay=0.01,
        ledger_call_timeout=2.0,
        store_call_timeout=2.0,
    )


@pytest_asyncio.fixture
async def supervisor(settings, seeded, ledger):
    ledger.set_snapshot("e1", {"p1": {"c1": 0, "c2": 0}, "p2": {"c3": 0, "c4": 0}})
    service = ServiceSupervisor(settings, ledger=ledger, database=Database(settings.database_url))
    yield service
    await service.stop(timeout=2)


async def running(service) -> bool:
    return await wait_until(
        lambda: service.context.status == ServiceStatus.running and service.context.active_subscriptions
    )


class TestStartup:

    @pytest.mark.asyncio
    async def test_runs_immediate_reconciliation(self, supervisor):
        supervisor.start()

        assert await running(supervisor)
        assert await wait_until(lambda: supervisor.context.last_sync_at is not None)
        assert supervisor.context.last_reconciliation["elections_checked"] == 1
        assert supervisor.context.startup_attempts == 1

    @pytest.mark.asyncio
    async def test_live_event_reaches_store(self, supervisor, seeded, ledger):
        supervisor.start()
        assert await running(supervisor)

        ledger.publish(VoteCastEvent(
            voter_address=WALLETS["s3"],
            election_id="e1",
            position_ids=("p2",),
            candidate_id="c4",
            protocol_version=ProtocolVersion.v2,
        ))

        assert await wait_until(lambda: supervisor.context.votes_ingested == 1)
        assert await count_votes(seeded, "c4") == 1

    @pytest.mark.asyncio
    async def test_heartbeat_is_emitted(self, supervisor):
        supervisor.start()

        assert await wait_until(lambda: supervisor.context.last_heartbeat_at is not None)

    @pytest.mark.asyncio
    async def test_failed_startup_is_retried(self, supervisor):
        real_init = supervisor.database.init_db
        calls = []

        async def flaky_init(create_tables=True):
            calls.append(create_tables)
            if len(calls) == 1:
                raise OSError("database unavailable")
            await real_init(create_tables=create_tables)

        supervisor.database.init_db = flaky_init
        supervisor.start()

        assert await running(supervisor)
        assert supervisor.context.startup_attempts == 2
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exit_policy_marks_service_failed(self, settings, seeded, ledger):
        on_fatal = Mock()
        ledger.fail_next_subscribes(1)
        service = ServiceSupervisor(
            settings.with_overrides(startup_failure_policy=StartupFailurePolicy.exit),
            ledger=ledger,
            database=Database(settings.database_url),
            on_fatal=on_fatal,
        )
        service.start()

        assert await wait_until(lambda: service.context.status == ServiceStatus.failed)
        assert await wait_until(lambda: on_fatal.called)
        assert isinstance(on_fatal.call_args[0][0], StartupFault)
        assert not service.context.is_healthy

        await service.stop(timeout=2)
        assert service.context.status == ServiceStatus.failed

    @pytest.mark.asyncio
    async def test_exit_policy_covers_failed_ledger_connect(self, settings, seeded, ledger):
        on_fatal = Mock()
        ledger.connect = AsyncMock(side_effect=TransientTransportFault("node unreachable"))
        service = ServiceSupervisor(
            settings.with_overrides(startup_failure_policy=StartupFailurePolicy.exit),
            ledger=ledger,
            database=Database(settings.database_url),
            on_fatal=on_fatal,
        )
        service.start()

        assert await wait_until(lambda: on_fatal.called)
        assert service.context.status == ServiceStatus.failed
        assert service.context.startup_attempts == 1
        assert isinstance(on_fatal.call_args[0][0], StartupFault)
        assert ledger.subscribe_attempts == 0
        await service.stop(timeout=2)


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_reconcile_once_applies_configured_policy(self, settings, seeded, ledger):
        ledger.set_snapshot("e1", {"p1": {"c1": 4, "c2": 0}, "p2": {"c3": 0, "c4": 0}})
        service = ServiceSupervisor(
            settings.with_overrides(repair_policy=RepairPolicy.counter_overwrite, reconcile_interval=60.0),
            ledger=ledger,
            database=Database(settings.database_url),
        )
        service.start()
        assert await running(service)

        report = await service.reconcile_once(["e1"])

        assert report.policy == RepairPolicy.counter_overwrite
        assert [d.candidate_id for d in report.drifts] == ["c1"]
        async with seeded() as db:
            candidate = await db.get(Candidate, "c1")
        assert candidate.vote_count == 4
        assert service.context.last_reconciliation["policy"] == "counter-overwrite"
        await service.stop(timeout=2)


class TestShutdown:

    @pytest.mark.asyncio
    async def test_stop_releases_everything(self, supervisor, ledger):
        supervisor.start()
        assert await running(supervisor)

        await supervisor.stop(timeout=2)

        assert supervisor.context.status == ServiceStatus.stopped
        assert supervisor.context.active_subscriptions == {}
        assert ledger.active_subscription_ids == ()
        assert ledger.closed
        assert supervisor.database.engine is None

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, supervisor):
        supervisor.start()
        assert await running(supervisor)

        await supervisor.stop(timeout=2)
        await supervisor.stop(timeout=2)

        assert supervisor.context.status == ServiceStatus.stopped

    @pytest.mark.asyncio
    async def test_stop_during_slow_connect_starts_no_tasks(self, supervisor, ledger):
        gate = asyncio.Event()
        entered = asyncio.Event()
        real_connect = ledger.connect

        async def slow_connect():
            entered.set()
            await gate.wait()
            await real_connect()

        ledger.connect = slow_connect
        supervisor.start()
        await asyncio.wait_for(entered.wait(), timeout=2)

        stopping = asyncio.create_task(supervisor.stop(timeout=2))
        await asyncio.sleep(0.05)
        gate.set()
        await stopping

        assert supervisor.context.status == ServiceStatus.stopped
        assert supervisor._subscriber_task is None
        assert supervisor._reconcile_task is None
        assert supervisor._heartbeat_task is None
        names = {task.get_name() for task in asyncio.all_tasks()}
        assert not names & {"ledger-sync-subscriber", "reconciliation", "heartbeat"}
        assert ledger.active_subscription_ids == ()
        assert supervisor.database.engine is None
