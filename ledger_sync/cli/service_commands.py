"""
Service CLI Commands

serve, init-db and status.
"""
import asyncio
import json
import os

import requests
import uvicorn
from dotenv import load_dotenv

from ledger_sync.config.settings import ENV_FILE, Settings
from ledger_sync.database import Database
from ledger_sync.exceptions import LedgerSyncError


class ServeCommand:
    """Run the FastAPI app (and with it the supervisor) under uvicorn."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        try:
            settings = Settings.from_env()
        except LedgerSyncError as e:
            print(f"Error: {e.message}")
            return 2

        if self.dry_run:
            print(f"Would serve on {args.host or settings.host}:{args.port or settings.port}")
            print(f"Repair policy: {settings.repair_policy.value}")
            return 0

        uvicorn.run(
            "ledger_sync.main:app",
            host=args.host or settings.host,
            port=args.port or settings.port,
            log_level=settings.log_level.lower(),
            workers=1,
        )
        return 0


class InitDbCommand:

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        # Only the store is needed here, so ledger settings are not validated
        load_dotenv(dotenv_path=ENV_FILE)
        database_url = os.getenv("DATABASE_URL", Settings.database_url)
        if self.dry_run:
            print(f"Would create tables on {database_url}")
            return 0
        asyncio.run(self._run(database_url))
        print("✓ Tables created")
        return 0

    async def _run(self, database_url: str) -> None:
        database = Database(database_url)
        try:
            await database.init_db(create_tables=True)
        finally:
            await database.close_db()


class StatusCommand:
    """Print /status of a running instance."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        endpoint = args.url.rstrip("/") + "/status"
        try:
            response = requests.get(endpoint, timeout=10)
        except requests.RequestException as e:
            print(f"✗ Cannot reach {endpoint}: {e}")
            return 1

        if response.status_code != 200:
            print(f"✗ {endpoint} returned HTTP {response.status_code}")
            return 1

        print(json.dumps(response.json(), indent=2))
        return 0
