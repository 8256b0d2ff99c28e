import sqlite3

import pytest

from spend_gateway.clock import FixedClock
from spend_gateway.crypto import Ed25519KeyPair
from spend_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker, StorageLockdownError
from spend_gateway.manager import PermissionManager
from spend_gateway.permissions import Permission, PermissionDomain
from spend_gateway.store import PermissionStore


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    db_path = tmp_path / "spg.db"

    monkeypatch.setenv("SPG_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("SPG_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("SPG_DB_LOCKDOWN_SECONDS", "60")

    store = PermissionStore(db_path=str(db_path))

    import spend_gateway.store as store_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        store.events()

    with pytest.raises(StorageLockdownError):
        store.events()
    assert store.circuit.trips == 1
    assert store.health()["ok"] is False


def test_lockdown_blocks_engine_operations(tmp_path):
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=0, failure_threshold=2, lockdown_seconds=60))
    store = PermissionStore(str(tmp_path / "spg.db"), circuit=circuit)
    account = Ed25519KeyPair.generate("account")
    manager = PermissionManager(store, domain=PermissionDomain(1, "test-engine"), clock=FixedClock(1000))
    p = Permission(
        account=account.identity,
        spender=Ed25519KeyPair.generate("spender").identity,
        resource="native",
        start=1000,
        end=100_000,
        period=86400,
        cap=10,
    )

    assert manager.approve(p, account.identity) is True

    circuit.record_failure()
    assert circuit.is_lockdown_active() is False
    circuit.record_failure()
    assert circuit.is_lockdown_active() is True
    with pytest.raises(StorageLockdownError):
        manager.revoke(p, account.identity)
    with pytest.raises(StorageLockdownError):
        manager.is_authorized(p)


def test_slow_operations_trip_the_breaker():
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=50, failure_threshold=5, lockdown_seconds=60))
    circuit.record_latency(10)
    assert circuit.is_lockdown_active() is False
    circuit.record_latency(75)
    assert circuit.is_lockdown_active() is True
    assert circuit.state()["trips"] == 1


def test_non_strict_mode_ignores_unrelated_operational_errors():
    circuit = DbCircuitBreaker(CircuitBreakerConfig(error_strict=False))
    assert circuit.should_treat_operational_error_as_failure("database is locked") is True
    assert circuit.should_treat_operational_error_as_failure("no such table: x") is False


def test_circuit_config_from_env_clamps(monkeypatch):
    monkeypatch.setenv("SPG_DB_FAILURE_THRESHOLD", "0")
    monkeypatch.setenv("SPG_DB_LOCKDOWN_SECONDS", "-5")
    monkeypatch.setenv("SPG_DB_ERROR_STRICT", "0")
    config = CircuitBreakerConfig.from_env()
    assert config.failure_threshold == 1
    assert config.lockdown_seconds == 1
    assert config.error_strict is False
