"""
Reconcile CLI Command

One-off reconciliation pass outside the long-running service.
"""
import asyncio
import json
import logging

from ledger_sync.config.settings import RepairPolicy, Settings
from ledger_sync.database import Database
from ledger_sync.exceptions import LedgerSyncError
from ledger_sync.ledger import create_ledger_client
from ledger_sync.services.drift_reconciler import DriftReconciler

logger = logging.getLogger(__name__)


class ReconcileCommand:
    """Reconcile CLI command handler."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        try:
            settings = self._settings(args)
        except LedgerSyncError as e:
            print(f"Error: {e.message}")
            return 2
        return asyncio.run(self._run(settings, args.elections))

    def _settings(self, args) -> Settings:
        settings = Settings.from_env()
        changes = {}
        if args.policy:
            changes["repair_policy"] = RepairPolicy(args.policy)
        if args.allow_synthetic:
            changes["allow_synthetic_attribution"] = True
        if self.dry_run:
            changes["repair_policy"] = RepairPolicy.report_only
        return settings.with_overrides(**changes) if changes else settings

    async def _run(self, settings: Settings, election_ids) -> int:
        database = Database(settings.database_url)
        ledger = create_ledger_client(settings)
        try:
            await database.init_db(create_tables=settings.create_tables)
            await ledger.connect()
            reconciler = DriftReconciler(
                database.session_factory,
                ledger,
                policy=settings.repair_policy,
                contract_address=settings.contract_address,
                allow_synthetic=settings.allow_synthetic_attribution,
            )
            report = await reconciler.run_pass(election_ids)
        except LedgerSyncError as e:
            print(f"Error: {e.message}")
            return 1
        finally:
            await ledger.close()
            await database.close_db()

        print(json.dumps(report.to_dict(), indent=2))
        return 0 if not report.elections_failed else 1
