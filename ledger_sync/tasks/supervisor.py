"""
ledger_sync/tasks/supervisor.py
Process lifecycle for the sync service.

STARTUP:
1. Initialize the store and connect the ledger client (retried on failure,
   or fatal under STARTUP_FAILURE_POLICY=exit)
2. Start the event subscriber
3. Run one reconciliation pass immediately, then on the fixed interval
4. Emit a heartbeat on its own interval

SHUTDOWN (cooperative, best-effort):
- stop accepting subscription callbacks
- stop periodic tasks
- release the ledger connection, then the store connection
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from ledger_sync.config.settings import Settings, StartupFailurePolicy
from ledger_sync.database import Database
from ledger_sync.exceptions import StartupFault
from ledger_sync.ledger import EventFilter, LedgerClient, create_ledger_client
from ledger_sync.services.drift_reconciler import DriftReconciler, ReconciliationReport
from ledger_sync.services.event_subscriber import EventSubscriber
from ledger_sync.services.vote_ingester import VoteIngester
from ledger_sync.tasks.context import ServiceContext, ServiceStatus
from ledger_sync.tasks.periodic import Backoff, PeriodicTask, wait_or_stop

logger = logging.getLogger(__name__)


class ServiceSupervisor:
    """
    Wires ledger client, store, subscriber and reconciler together.

    Owns the ServiceContext reported by the liveness surface.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: Optional[LedgerClient] = None,
        database: Optional[Database] = None,
        context: Optional[ServiceContext] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
    ):
        self.settings = settings
        self.ledger = ledger or create_ledger_client(settings)
        self.database = database or Database(settings.database_url)
        self.context = context or ServiceContext()
        self._on_fatal = on_fatal

        self.ingester: Optional[VoteIngester] = None
        self.reconciler: Optional[DriftReconciler] = None
        self.subscriber: Optional[EventSubscriber] = None

        self._stopping = asyncio.Event()
        self._main_task: Optional[asyncio.Task] = None
        self._subscriber_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[PeriodicTask] = None
        self._heartbeat_task: Optional[PeriodicTask] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Run the supervisor in the background."""
        if self._main_task is None or self._main_task.done():
            self._main_task = asyncio.create_task(self.run(), name="ledger-sync-supervisor")
        return self._main_task

    async def run(self) -> None:
        logger.info("Starting blockchain event listener...")
        startup_backoff = Backoff(self.settings.startup_retry_delay)

        while not self._stopping.is_set():
            self.context.startup_attempts += 1
            try:
                await self._startup()
                break
            except Exception as e:
                self.context.last_error = str(e)
                await self._release_connections()
                if self.settings.startup_failure_policy == StartupFailurePolicy.exit:
                    self._fail(StartupFault(f"Startup failed: {e}"))
                    return
                delay = startup_backoff.delay(self.context.startup_attempts)
                logger.exception(
                    f"Startup attempt {self.context.startup_attempts} failed: {e}; retrying in {delay}s"
                )
                if await wait_or_stop(self._stopping, delay):
                    return

        # stop() may have been called while _startup() was still connecting
        if self._stopping.is_set():
            logger.info("Shutdown requested during startup; not starting background tasks")
            await self._release_connections()
            return

        self.context.status = ServiceStatus.running

        self._subscriber_task = asyncio.create_task(self._run_subscriber(), name="ledger-sync-subscriber")

        self._reconcile_task = PeriodicTask(
            "reconciliation",
            self.reconcile_once,
            interval=self.settings.reconcile_interval,
            run_immediately=True,
        )
        self._reconcile_task.start()

        if self.settings.heartbeat_interval > 0:
            self._heartbeat_task = PeriodicTask(
                "heartbeat",
                self.heartbeat,
                interval=self.settings.heartbeat_interval,
                run_immediately=False,
            )
            self._heartbeat_task.start()

        logger.info("Listener manager running")

    async def _startup(self) -> None:
        settings = self.settings
        await self.database.init_db(create_tables=settings.create_tables)
        session_factory = self.database.session_factory
        await self.ledger.connect()

        self.ingester = VoteIngester(
            session_factory,
            self.ledger,
            contract_address=settings.contract_address,
            candidate_resolution=settings.candidate_resolution,
            update_counter=settings.update_counter_on_ingest,
        )
        self.reconciler = DriftReconciler(
            session_factory,
            self.ledger,
            policy=settings.repair_policy,
            contract_address=settings.contract_address,
            allow_synthetic=settings.allow_synthetic_attribution,
            election_timeout=settings.store_call_timeout + settings.ledger_call_timeout,
        )
        self.subscriber = EventSubscriber(
            self.ledger,
            self.ingester,
            self.context,
            EventFilter(contract_address=settings.contract_address),
            reconnect_backoff=Backoff(settings.reconnect_backoff),
            initial_backoff=Backoff(settings.initial_connect_backoff),
            startup_policy=settings.startup_failure_policy,
            ingest_timeout=settings.store_call_timeout + settings.ledger_call_timeout,
        )

    def _fail(self, fault: StartupFault) -> None:
        """Exit policy: mark the service failed and hand off to on_fatal."""
        self.context.status = ServiceStatus.failed
        self.context.last_error = fault.message
        logger.critical(f"{fault.message}; exiting for external supervision")
        if self._on_fatal is not None:
            self._on_fatal(fault)

    async def _run_subscriber(self) -> None:
        try:
            await self.subscriber.run()
        except StartupFault as e:
            self._fail(e)
        except Exception as e:
            self.context.last_error = str(e)
            logger.exception(f"Event subscriber crashed: {e}")

    async def reconcile_once(self, election_ids: Optional[Iterable[str]] = None) -> ReconciliationReport:
        report = await self.reconciler.run_pass(election_ids)
        self.context.record_reconciliation(report)
        return report

    async def heartbeat(self) -> None:
        self.context.last_heartbeat_at = datetime.utcnow()
        logger.info(
            f"Heartbeat: status={self.context.status.value} "
            f"subscriptions={sorted(self.context.active_subscriptions)} "
            f"last_sync={self.context.last_sync_at.isoformat() if self.context.last_sync_at else None} "
            f"votes_ingested={self.context.votes_ingested}"
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Best-effort shutdown; in-flight operations are not awaited past timeout."""
        if self.context.status == ServiceStatus.stopped:
            return
        logger.info("Shutting down listener...")
        if self.context.status != ServiceStatus.failed:
            self.context.status = ServiceStatus.stopping
        self._stopping.set()

        if self.subscriber is not None:
            await self.subscriber.stop()

        for task in (self._reconcile_task, self._heartbeat_task):
            if task is not None:
                await task.stop(timeout=timeout)

        for task in (self._subscriber_task, self._main_task):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                task.cancel()
            except Exception as e:
                logger.warning(f"Background task ended with error during shutdown: {e}")

        await self._release_connections()
        if self.context.status != ServiceStatus.failed:
            self.context.status = ServiceStatus.stopped
        logger.info("Shutdown complete")

    async def _release_connections(self) -> None:
        try:
            await self.ledger.close()
        except Exception as e:
            logger.warning(f"Error closing ledger client: {e}")
        try:
            await self.database.close_db()
        except Exception as e:
            logger.warning(f"Error closing database connection: {e}")
