from fastapi.testclient import TestClient

from spend_gateway.auth import ApiKeyAuth
from spend_gateway.clock import FixedClock
from spend_gateway.crypto import Ed25519KeyPair
from spend_gateway.dispatch import Call, InMemoryLedgerDispatcher
from spend_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from spend_gateway.manager import PermissionManager
from spend_gateway.permissions import Permission, PermissionDomain
from spend_gateway.server import create_app
from spend_gateway.store import PermissionStore


def _gateway(tmp_path, monkeypatch, store=None):
    monkeypatch.delenv("SPG_METRICS_TOKEN", raising=False)
    account = Ed25519KeyPair.generate("account")
    spender = Ed25519KeyPair.generate("spender")
    manager = PermissionManager(
        store or PermissionStore(str(tmp_path / "spg.db")),
        domain=PermissionDomain(1, "test-engine"),
        clock=FixedClock(1000),
    )
    ledger = InMemoryLedgerDispatcher({account.identity.hex(): 1_000_000})
    manager.register_dispatcher("native", ledger)
    auth = ApiKeyAuth.from_mapping({"acct-key": account.identity.hex(), "spender-key": spender.identity.hex()})
    p = Permission(
        account=account.identity,
        spender=spender.identity,
        resource="native",
        start=1000,
        end=100_000,
        period=86400,
        cap=1_000,
    )
    client = TestClient(create_app(manager, auth))
    return client, manager, ledger, account, spender, p


ACCOUNT = {"X-API-Key": "acct-key"}
SPENDER = {"X-API-Key": "spender-key"}


def test_hash_and_status(tmp_path, monkeypatch):
    client, manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)

    r = client.post("/v1/permissions/hash", json={"permission": p.to_dict()})
    assert r.status_code == 200
    assert r.json() == {"permission_hash": manager.get_hash(p).hex()}

    r = client.post("/v1/permissions/status", json={"permission": p.to_dict()})
    assert r.json()["authorized"] is False


def test_approve_requires_account_identity(tmp_path, monkeypatch):
    client, _manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)
    body = {"permission": p.to_dict()}

    r = client.post("/v1/permissions/approve", json=body)
    assert r.status_code == 401
    assert r.json()["code"] == "SPG_E_AUTH_REQUIRED"

    r = client.post("/v1/permissions/approve", json=body, headers={"X-API-Key": "bogus"})
    assert r.status_code == 401

    r = client.post("/v1/permissions/approve", json=body, headers=SPENDER)
    assert r.status_code == 403
    assert r.json()["code"] == "SPG_E_INVALID_SENDER"
    assert r.json()["kind"] == "authorization"

    r = client.post("/v1/permissions/approve", json=body, headers=ACCOUNT)
    assert r.status_code == 200
    assert r.json()["approved"] is True

    r = client.post("/v1/permissions/status", json=body)
    assert r.json()["authorized"] is True


def test_spend_flow_over_http(tmp_path, monkeypatch):
    client, _manager, ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)
    client.post("/v1/permissions/approve", json={"permission": p.to_dict()}, headers=ACCOUNT)

    body = {"permission": p.to_dict(), "calls": [{"target": "shop", "value": "600"}]}
    r = client.post("/v1/spend", json=body, headers=SPENDER)
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == "600"
    assert r.json()["cycle"] == {"start": "1000", "end": str(1000 + 86400), "spent": "600"}
    assert ledger.balance("shop") == 600

    r = client.post("/v1/spend", json=body, headers=SPENDER)
    assert r.status_code == 409
    err = r.json()
    assert err["code"] == "SPG_E_EXCEEDED_ALLOWANCE"
    assert err["kind"] == "accounting"
    assert err["details"]["attempted"] == "1200"

    r = client.post("/v1/permissions/cycle", json={"permission": p.to_dict()})
    assert r.json()["spent"] == "600"


def test_spend_requires_spender_key(tmp_path, monkeypatch):
    client, _manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)
    client.post("/v1/permissions/approve", json={"permission": p.to_dict()}, headers=ACCOUNT)
    body = {"permission": p.to_dict(), "calls": [{"target": "shop", "value": "1"}]}

    assert client.post("/v1/spend", json=body).status_code == 401
    r = client.post("/v1/spend", json=body, headers=ACCOUNT)
    assert r.json()["code"] == "SPG_E_INVALID_SENDER"


def test_signed_endpoints(tmp_path, monkeypatch):
    client, manager, ledger, account, spender, p = _gateway(tmp_path, monkeypatch)

    approval = account.sign(manager.get_hash(p)).hex()
    r = client.post("/v1/permissions/approve-signed", json={"permission": p.to_dict(), "signature": approval})
    assert r.status_code == 200
    assert r.json()["approved"] is True

    request = manager.build_request(p, [Call("shop", 25)], nonce="n-1")
    sig = spender.sign(manager.request_hash(request)).hex()
    body = {
        "permission": p.to_dict(),
        "calls": [{"target": "shop", "value": "25"}],
        "nonce": "n-1",
        "signature": sig,
    }
    r = client.post("/v1/spend-signed", json=body)
    assert r.status_code == 200, r.text
    assert ledger.balance("shop") == 25

    r = client.post("/v1/spend-signed", json=body)
    assert r.status_code == 403
    assert r.json()["code"] == "SPG_E_NONCE_REUSED"

    body["signature"] = "zz"
    r = client.post("/v1/spend-signed", json=body)
    assert r.status_code == 400
    assert r.json()["code"] == "SPG_E_REQUEST_MALFORMED"


def test_revoke_then_spend(tmp_path, monkeypatch):
    client, _manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)
    perm = {"permission": p.to_dict()}
    client.post("/v1/permissions/approve", json=perm, headers=ACCOUNT)
    body = {"permission": p.to_dict(), "calls": [{"target": "shop", "value": "100"}]}
    assert client.post("/v1/spend", json=body, headers=SPENDER).status_code == 200

    r = client.post("/v1/permissions/revoke", json=perm, headers=ACCOUNT)
    assert r.json()["revoked"] is True

    r = client.post("/v1/spend", json=body, headers=SPENDER)
    assert r.status_code == 403
    assert r.json()["code"] == "SPG_E_UNAUTHORIZED_PERMISSION"
    assert r.json()["details"]["reason"] == "revoked"

    r = client.get("/v1/events", headers=ACCOUNT)
    assert [e["kind"] for e in r.json()["events"]] == ["Approved", "Used", "Revoked"]
    assert client.get("/v1/events").status_code == 401


def test_malformed_permission(tmp_path, monkeypatch):
    client, _manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch)
    bad = p.to_dict()
    bad["account"] = "abcd"
    r = client.post("/v1/permissions/hash", json={"permission": bad})
    assert r.status_code == 400
    assert r.json()["code"] == "SPG_E_PERMISSION_MALFORMED"
    assert r.json()["kind"] == "shape"


def test_health_and_metrics(tmp_path, monkeypatch):
    client, _manager, _ledger, _account, _spender, _p = _gateway(tmp_path, monkeypatch)
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["engine_id"] == "test-engine"

    r = client.get("/metrics")
    assert r.status_code == 200
    assert "spg_http_requests_total" in r.text


def test_metrics_token(tmp_path, monkeypatch):
    _client, manager, _ledger, _account, _spender, _p = _gateway(tmp_path, monkeypatch)
    monkeypatch.setenv("SPG_METRICS_TOKEN", "scrape-me")
    client = TestClient(create_app(manager, ApiKeyAuth()))

    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers={"Authorization": "Bearer wrong"}).status_code == 403
    r = client.get("/metrics", headers={"Authorization": "Bearer scrape-me"})
    assert r.status_code == 200
    assert "spg_lockdown_active" in r.text
    assert client.get("/metrics", headers={"X-Metrics-Token": "scrape-me"}).status_code == 200


def test_storage_lockdown_maps_to_503(tmp_path, monkeypatch):
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=0, failure_threshold=1, lockdown_seconds=60))
    store = PermissionStore(str(tmp_path / "spg.db"), circuit=circuit)
    client, _manager, _ledger, _account, _spender, p = _gateway(tmp_path, monkeypatch, store=store)

    circuit.record_failure(RuntimeError("disk gone"))
    r = client.post("/v1/permissions/status", json={"permission": p.to_dict()})
    assert r.status_code == 503
    assert r.json()["code"] == "SPG_E_STORAGE_LOCKDOWN"
    assert r.json()["retryable"] is True

    r = client.get("/v1/health")
    assert r.json()["status"] == "degraded"
