import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from chainlog.access import CallerRegistry, ServiceKeyAuth
from chainlog.binding import bind
from chainlog.config import GatewaySettings
from chainlog.engine import AuditEngine
from chainlog.identity import DirectExtractor, ProxiedExtractor
from chainlog.ops_stats import OpsStats
from chainlog.server import create_app, peer_request

from conftest import CONTROLLER_FP, SERVICE_FP, STRANGER_FP

SUBJECT = "7a1e2b3c-4d5e-4f60-8a9b-0c1d2e3f4a5b"


def _headers(fp: str, **extra: str) -> dict:
    h = {"X-SSL-Client-Verify": "SUCCESS", "X-SSL-Client-Fingerprint": fp}
    h.update(extra)
    return h


def _client(engine, **settings) -> TestClient:
    return TestClient(create_app(engine=engine, settings=GatewaySettings(db_path=engine.store.db_path, **settings)))


@pytest.fixture
def client(engine) -> TestClient:
    return _client(engine)


def test_health_needs_no_certificate(client):
    r = client.get("/api/system/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["certMode"] == "proxied"
    assert body["environment"] == "dev"


def test_missing_proxy_verification_is_401(client):
    r = client.post("/api/logs", json={"uuid": SUBJECT, "action": "create"})
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["kind"] == "ProxyVerificationFailed"
    assert body["details"]["status"] == "NONE"


def test_unregistered_caller_is_401_unauthorized(client):
    r = client.get("/api/logs", headers=_headers(STRANGER_FP))
    assert r.status_code == 401
    assert r.json()["kind"] == "Unauthorized"
    assert r.json()["message"] == "Unauthorized access!"


def test_create_duplicate_and_verify(client):
    r = client.post(
        "/api/logs",
        json={"uuid": SUBJECT, "action": "Create", "data": {"order": 1}},
        headers=_headers(CONTROLLER_FP),
    )
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["action"] == "create"
    assert data["digest"] == bind(SUBJECT, "create", CONTROLLER_FP)
    assert data["callerFingerprint"] == CONTROLLER_FP
    assert data["payload"] == {"order": 1}

    r = client.post("/api/logs", json={"uuid": SUBJECT, "action": "create"}, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 409
    assert r.json()["kind"] == "Conflict"

    r = client.post("/api/logs/verify", json={"uuid": SUBJECT, "action": "create"}, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 200
    v = r.json()["data"]
    assert v["verified"] is True
    assert v["hash"] == data["digest"]
    assert v["uuid"] == SUBJECT
    assert v["userFingerprint"] == CONTROLLER_FP

    r = client.post("/api/logs/verify", json={"uuid": SUBJECT, "action": "delete"}, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 404
    assert r.json()["message"] == "Log entry not found"


@pytest.mark.parametrize(
    "body",
    [
        {"uuid": "not-a-uuid", "action": "create"},
        {"uuid": SUBJECT},
        {"uuid": SUBJECT, "action": "read"},
    ],
)
def test_invalid_create_body_is_400(client, body):
    r = client.post("/api/logs", json=body, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"


@pytest.mark.parametrize("query", ["limit=0", "limit=101", "offset=-1", "limit=abc"])
def test_invalid_pagination_is_400(client, query):
    r = client.get(f"/api/logs?{query}", headers=_headers(CONTROLLER_FP))
    assert r.status_code == 400


def test_list_endpoints(client):
    other = "0f0e0d0c-0b0a-4909-8807-060504030201"
    for subject, action in ((SUBJECT, "create"), (SUBJECT, "update"), (other, "create")):
        r = client.post("/api/logs", json={"uuid": subject, "action": action}, headers=_headers(CONTROLLER_FP))
        assert r.status_code == 201

    h = _headers(CONTROLLER_FP)
    r = client.get(f"/api/logs/uuid/{SUBJECT}", headers=h)
    assert r.status_code == 200
    assert [d["action"] for d in r.json()["data"]] == ["create", "update"]

    r = client.get("/api/logs/action/CREATE", headers=h)
    assert [d["subjectId"] for d in r.json()["data"]] == [SUBJECT, other]

    r = client.get(f"/api/logs/fingerprint/{CONTROLLER_FP}", headers=h)
    assert r.json()["count"] == 3

    r = client.get("/api/logs?limit=2&offset=1", headers=h)
    body = r.json()
    assert body["count"] == 2
    assert body["limit"] == 2
    assert body["offset"] == 1

    assert client.get("/api/logs/uuid/not-a-uuid", headers=h).status_code == 400
    assert client.get("/api/logs/action/read", headers=h).status_code == 400


def test_register_service_flow(client):
    r = client.post("/api/services", json={"serviceId": SERVICE_FP}, headers=_headers(SERVICE_FP))
    assert r.status_code == 401

    r = client.post("/api/services", json={"serviceId": SERVICE_FP}, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 201
    assert r.json()["data"]["id"] == SERVICE_FP

    r = client.post("/api/services", json={"serviceId": SERVICE_FP}, headers=_headers(CONTROLLER_FP))
    assert r.status_code == 409
    assert r.json()["message"] == "Service already authorized!"

    # The new caller can now use the trail.
    r = client.post("/api/logs", json={"uuid": SUBJECT, "action": "create"}, headers=_headers(SERVICE_FP))
    assert r.status_code == 201


def test_service_key_flow_with_uuid_ids(store):
    ctrl_id = "123e4567-e89b-12d3-a456-426614174000"
    svc_id = "9f1c2d3e-4b5a-4c6d-8e7f-0a1b2c3d4e5f"
    boot_id = "2c9a7f10-5d3e-4e8b-9a6c-1f0e2d3c4b5a"
    keys = ServiceKeyAuth(
        key_to_service={"ctrl-key": ctrl_id, "svc-key": svc_id, "boot-key": boot_id},
        configured=True,
    )
    registry = CallerRegistry(store, controller_id=ctrl_id)
    registry.bootstrap([boot_id])
    engine = AuditEngine(ProxiedExtractor(), registry, store, service_keys=keys, stats=OpsStats())
    client = _client(engine)

    r = client.post("/api/services", json={"serviceId": svc_id}, headers=_headers(SERVICE_FP, **{"X-Api-Key": "svc-key"}))
    assert r.status_code == 401

    r = client.post("/api/services", json={"serviceId": svc_id}, headers=_headers(CONTROLLER_FP, **{"X-Api-Key": "ctrl-key"}))
    assert r.status_code == 201
    assert r.json()["data"]["id"] == svc_id

    r = client.post(
        "/api/logs",
        json={"uuid": SUBJECT, "action": "create"},
        headers=_headers(SERVICE_FP, **{"X-Api-Key": "svc-key"}),
    )
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["authorId"] == svc_id
    assert data["callerFingerprint"] == SERVICE_FP

    r = client.get("/api/logs", headers=_headers(STRANGER_FP, **{"X-Api-Key": "boot-key"}))
    assert r.status_code == 200

    # The certificate alone is not enough once service keys are on.
    r = client.get("/api/logs", headers=_headers(SERVICE_FP))
    assert r.status_code == 401


def test_certificate_info_for_any_verified_client(client):
    h = _headers(
        STRANGER_FP,
        **{
            "X-SSL-Client-Subject": "CN=svc-z,O=Acme",
            "X-SSL-Client-Not-After": "Dec 31 23:59:59 2099 GMT",
            "X-SSL-Client-Not-Before": "Jan  1 00:00:00 2020 GMT",
        },
    )
    r = client.get("/api/certificates/info", headers=h)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["fingerprint"] == STRANGER_FP
    assert data["subject"] == {"CN": "svc-z", "O": "Acme"}
    assert data["validityChecked"] is True


def test_certificate_debug_hidden_unless_enabled(engine):
    assert _client(engine).get("/api/certificates/debug").status_code == 404

    r = _client(engine, cert_debug=True).get(
        "/api/certificates/debug",
        headers=_headers(STRANGER_FP, **{"X-SSL-Client-Cert": "MIIB..."}),
    )
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["certMode"] == "proxied"
    assert "x-ssl-client-fingerprint" in data["forwardedHeaders"]
    assert "x-ssl-client-cert" not in data["forwardedHeaders"]


def test_request_size_limit(engine):
    client = _client(engine, max_request_bytes=1024)
    r = client.post(
        "/api/logs",
        json={"uuid": SUBJECT, "action": "create", "data": "x" * 4096},
        headers=_headers(CONTROLLER_FP),
    )
    assert r.status_code == 413


def test_stats_open_in_dev(client):
    r = client.get("/api/system/stats")
    assert r.status_code == 200
    assert r.json()["lockdown_active"] is False


def test_metrics_endpoint(engine):
    client = _client(engine)
    client.get("/api/system/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "chainlog_http_requests_total" in r.text

    guarded = _client(engine, metrics_token="m-secret")
    assert guarded.get("/metrics").status_code == 403
    assert guarded.get("/metrics", headers={"Authorization": "Bearer m-secret"}).status_code == 200


def _asgi_request(scheme: str, chain=None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": scheme,
        "server": ("testserver", 443),
        "path": "/api/logs",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"x-custom", b"1")],
    }
    if chain is not None:
        scope["extensions"] = {"tls": {"client_cert_chain": chain}}
    return Request(scope)


def test_peer_request_reads_tls_extension(certs):
    cert = certs.issue("svc-direct")
    peer = peer_request(_asgi_request("https", [certs.pem(cert).decode("ascii")]))
    assert peer.encrypted is True
    assert peer.header("X-Custom") == "1"
    assert peer.path == "/api/logs"

    identity = DirectExtractor().extract(peer)
    assert identity.subject["CN"] == "svc-direct"


def test_peer_request_plain_http_has_no_certificate():
    peer = peer_request(_asgi_request("http"))
    assert peer.encrypted is False
    assert peer.peer_certificate is None
