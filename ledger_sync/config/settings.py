"""
Service Settings

Centralized configuration for the ledger sync service.
All values are loaded from environment variables (optionally via .env).
"""
import os
from dataclasses import dataclass, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional, Type, TypeVar

from dotenv import load_dotenv

from ledger_sync.exceptions import ConfigurationError

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

E = TypeVar("E", bound=Enum)


class RepairPolicy(str, Enum):
    """What the reconciler does when the local Vote count trails the ledger"""
    report_only = "report-only"
    counter_overwrite = "counter-overwrite"
    synthetic_attribution = "synthetic-attribution"


class CandidateResolution(str, Enum):
    """How to pick a candidate for events that do not carry one"""
    snapshot = "snapshot"
    per_candidate = "per-candidate"


class StartupFailurePolicy(str, Enum):
    retry = "retry"
    exit = "exit"


class LedgerBackend(str, Enum):
    web3 = "web3"
    memory = "memory"


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def get_float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


def get_enum_env(key: str, enum_cls: Type[E], default: E) -> E:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower().replace("_", "-")
    for member in enum_cls:
        if member.value == value:
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise ConfigurationError(f"{key} must be one of: {allowed} (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Build with Settings.from_env() in the service; tests construct it
    directly and use with_overrides() for variations.
    """
    database_url: str = "sqlite+aiosqlite:///./ledger_sync.db"
    ledger_backend: LedgerBackend = LedgerBackend.web3
    rpc_url: Optional[str] = None
    ws_url: Optional[str] = None
    contract_address: Optional[str] = None

    reconcile_interval: float = 300.0
    heartbeat_interval: float = 60.0
    reconnect_backoff: float = 30.0
    initial_connect_backoff: float = 60.0
    startup_retry_delay: float = 60.0
    startup_failure_policy: StartupFailurePolicy = StartupFailurePolicy.retry

    repair_policy: RepairPolicy = RepairPolicy.report_only
    allow_synthetic_attribution: bool = False
    candidate_resolution: CandidateResolution = CandidateResolution.snapshot
    update_counter_on_ingest: bool = False

    ledger_call_timeout: float = 30.0
    store_call_timeout: float = 30.0

    create_tables: bool = True
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    def __post_init__(self):
        if (
            self.repair_policy == RepairPolicy.synthetic_attribution
            and not self.allow_synthetic_attribution
        ):
            raise ConfigurationError(
                "REPAIR_POLICY=synthetic-attribution fabricates voter attribution; "
                "set ALLOW_SYNTHETIC_ATTRIBUTION=true to opt in explicitly"
            )
        if self.ledger_backend == LedgerBackend.web3 and not self.contract_address:
            raise ConfigurationError("ELECTION_CONTRACT_ADDRESS is required for the web3 ledger backend")
        if self.ledger_backend == LedgerBackend.web3 and not (self.rpc_url or self.ws_url):
            raise ConfigurationError("POLYGON_RPC_URL or POLYGON_WS_URL is required for the web3 ledger backend")

    @property
    def subscription_url(self) -> Optional[str]:
        """WebSocket endpoint, derived from the RPC URL when not set."""
        if self.ws_url:
            return self.ws_url
        if self.rpc_url and self.rpc_url.startswith("http"):
            return "ws" + self.rpc_url[len("http"):]
        return self.rpc_url

    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.database_url.lower()

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = ENV_FILE) -> "Settings":
        if env_file is not None:
            load_dotenv(dotenv_path=env_file)

        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            ledger_backend=get_enum_env("LEDGER_BACKEND", LedgerBackend, LedgerBackend.web3),
            rpc_url=os.getenv("POLYGON_RPC_URL") or None,
            ws_url=os.getenv("POLYGON_WS_URL") or None,
            contract_address=os.getenv("ELECTION_CONTRACT_ADDRESS") or None,
            reconcile_interval=get_float_env("RECONCILE_INTERVAL_SECONDS", 300.0),
            heartbeat_interval=get_float_env("HEARTBEAT_INTERVAL_SECONDS", 60.0),
            reconnect_backoff=get_float_env("RECONNECT_BACKOFF_SECONDS", 30.0),
            initial_connect_backoff=get_float_env("INITIAL_CONNECT_BACKOFF_SECONDS", 60.0),
            startup_retry_delay=get_float_env("STARTUP_RETRY_SECONDS", 60.0),
            startup_failure_policy=get_enum_env(
                "STARTUP_FAILURE_POLICY", StartupFailurePolicy, StartupFailurePolicy.retry
            ),
            repair_policy=get_enum_env("REPAIR_POLICY", RepairPolicy, RepairPolicy.report_only),
            allow_synthetic_attribution=get_bool_env("ALLOW_SYNTHETIC_ATTRIBUTION", False),
            candidate_resolution=get_enum_env(
                "CANDIDATE_RESOLUTION", CandidateResolution, CandidateResolution.snapshot
            ),
            update_counter_on_ingest=get_bool_env("UPDATE_CANDIDATE_COUNTER_ON_INGEST", False),
            ledger_call_timeout=get_float_env("LEDGER_CALL_TIMEOUT_SECONDS", 30.0),
            store_call_timeout=get_float_env("STORE_CALL_TIMEOUT_SECONDS", 30.0),
            create_tables=get_bool_env("CREATE_TABLES", True),
            host=os.getenv("HOST", "0.0.0.0"),
            port=get_int_env("PORT", 3000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return Settings.from_env()
