"""
ledger_sync/tasks/context.py
Service context shared by the supervisor and the components it owns.

Holds what the liveness surface reports: active subscriptions,
last sync time, counters. Owned by one ServiceSupervisor, never global.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ServiceStatus(str, Enum):
    starting = "starting"
    running = "running"
    stopping = "stopping"
    stopped = "stopped"
    failed = "failed"


@dataclass
class ServiceContext:
    status: ServiceStatus = ServiceStatus.starting
    started_at: datetime = field(default_factory=datetime.utcnow)
    last_sync_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    active_subscriptions: Dict[str, datetime] = field(default_factory=dict)
    last_reconciliation: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    startup_attempts: int = 0

    events_received: int = 0
    events_dropped: int = 0
    events_failed: int = 0
    votes_ingested: int = 0
    duplicate_votes: int = 0
    reconnects: int = 0

    def subscription_opened(self, subscription_id: str) -> None:
        self.active_subscriptions[subscription_id] = datetime.utcnow()

    def subscription_closed(self, subscription_id: str) -> None:
        self.active_subscriptions.pop(subscription_id, None)

    def record_ingest(self, result) -> None:
        """Fold an IngestResult into the counters."""
        if result.dropped:
            self.events_dropped += 1
        self.votes_ingested += result.votes_created
        self.duplicate_votes += len(result.duplicates)
        if result.failed:
            self.events_failed += 1

    def record_reconciliation(self, report) -> None:
        self.last_sync_at = report.finished_at or datetime.utcnow()
        self.last_reconciliation = report.to_dict()

    @property
    def is_healthy(self) -> bool:
        return self.status in (ServiceStatus.starting, ServiceStatus.running)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "last_sync": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_heartbeat": self.last_heartbeat_at.isoformat() if self.last_heartbeat_at else None,
            "active_subscriptions": sorted(self.active_subscriptions),
            "events_received": self.events_received,
            "events_dropped": self.events_dropped,
            "events_failed": self.events_failed,
            "votes_ingested": self.votes_ingested,
            "duplicate_votes": self.duplicate_votes,
            "reconnects": self.reconnects,
            "startup_attempts": self.startup_attempts,
            "last_error": self.last_error,
            "last_reconciliation": self.last_reconciliation,
        }
