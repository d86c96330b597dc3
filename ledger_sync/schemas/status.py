"""
Pydantic Schemas for the liveness surface

Response models for /, /health and /status.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RootResponse(BaseModel):
    status: str = "up"
    message: str = "Blockchain listener is running"
    timestamp: datetime


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy, starting, stopping or unhealthy")
    service_status: str
    version: str


class StatusResponse(BaseModel):
    """Process status reported to operators."""
    status: str
    started_at: datetime
    last_sync: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    active_subscriptions: List[str] = Field(default_factory=list)
    events_received: int = 0
    events_dropped: int = 0
    events_failed: int = 0
    votes_ingested: int = 0
    duplicate_votes: int = 0
    reconnects: int = 0
    startup_attempts: int = 0
    last_error: Optional[str] = None
    last_reconciliation: Optional[Dict[str, Any]] = None
