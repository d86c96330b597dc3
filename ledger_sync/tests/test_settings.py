"""
Settings Tests

Environment parsing and the guards on unsafe or incomplete configuration.
"""
import pytest

from ledger_sync.config.settings import (
    CandidateResolution,
    LedgerBackend,
    RepairPolicy,
    Settings,
    StartupFailurePolicy,
)
from ledger_sync.exceptions import ConfigurationError

ENV_KEYS = [
    "DATABASE_URL",
    "LEDGER_BACKEND",
    "POLYGON_RPC_URL",
    "POLYGON_WS_URL",
    "ELECTION_CONTRACT_ADDRESS",
    "RECONCILE_INTERVAL_SECONDS",
    "HEARTBEAT_INTERVAL_SECONDS",
    "STARTUP_FAILURE_POLICY",
    "REPAIR_POLICY",
    "ALLOW_SYNTHETIC_ATTRIBUTION",
    "CANDIDATE_RESOLUTION",
    "PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_from_env(monkeypatch):
    monkeypatch.setenv("POLYGON_RPC_URL", "https://polygon-amoy.example/rpc")
    monkeypatch.setenv("ELECTION_CONTRACT_ADDRESS", "0xabc")

    settings = Settings.from_env(env_file=None)

    assert settings.ledger_backend == LedgerBackend.web3
    assert settings.reconcile_interval == 300.0
    assert settings.heartbeat_interval == 60.0
    assert settings.reconnect_backoff == 30.0
    assert settings.initial_connect_backoff == 60.0
    assert settings.repair_policy == RepairPolicy.report_only
    assert settings.startup_failure_policy == StartupFailurePolicy.retry
    assert settings.port == 3000


def test_enum_values_accept_either_separator(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("REPAIR_POLICY", "COUNTER_OVERWRITE")
    monkeypatch.setenv("CANDIDATE_RESOLUTION", "per-candidate")
    monkeypatch.setenv("STARTUP_FAILURE_POLICY", "exit")

    settings = Settings.from_env(env_file=None)

    assert settings.repair_policy == RepairPolicy.counter_overwrite
    assert settings.candidate_resolution == CandidateResolution.per_candidate
    assert settings.startup_failure_policy == StartupFailurePolicy.exit


def test_unknown_enum_value_is_rejected(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("REPAIR_POLICY", "delete-everything")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file=None)


def test_bad_number_is_rejected(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("RECONCILE_INTERVAL_SECONDS", "often")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file=None)


def test_synthetic_attribution_needs_second_opt_in(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("REPAIR_POLICY", "synthetic-attribution")

    with pytest.raises(ConfigurationError):
        Settings.from_env(env_file=None)

    monkeypatch.setenv("ALLOW_SYNTHETIC_ATTRIBUTION", "true")
    assert Settings.from_env(env_file=None).repair_policy == RepairPolicy.synthetic_attribution


def test_web3_backend_requires_contract_and_endpoint():
    with pytest.raises(ConfigurationError):
        Settings(ledger_backend=LedgerBackend.web3, rpc_url="https://rpc.example")
    with pytest.raises(ConfigurationError):
        Settings(ledger_backend=LedgerBackend.web3, contract_address="0xabc")


def test_subscription_url_derived_from_rpc_url():
    settings = Settings(contract_address="0xabc", rpc_url="https://rpc.example/v1")
    assert settings.subscription_url == "wss://rpc.example/v1"

    explicit = settings.with_overrides(ws_url="wss://ws.example")
    assert explicit.subscription_url == "wss://ws.example"


def test_with_overrides_revalidates():
    settings = Settings(ledger_backend=LedgerBackend.memory)

    with pytest.raises(ConfigurationError):
        settings.with_overrides(repair_policy=RepairPolicy.synthetic_attribution)
