import pytest

from chainlog.config import GatewaySettings
from chainlog.identity import DEFAULT_PROXY_HEADER_PREFIX

from conftest import SERVICE_FP

_VARS = (
    "CHAINLOG_ENV",
    "ENV",
    "CHAINLOG_CERT_MODE",
    "CHAINLOG_CONTROLLER_ID",
    "CHAINLOG_BOOTSTRAP_CALLERS",
    "CHAINLOG_DB_PATH",
    "CHAINLOG_PROXY_HEADER_PREFIX",
    "CHAINLOG_PROXY_REQUIRE_VALIDITY",
    "CHAINLOG_MAX_REQUEST_BYTES",
    "CHAINLOG_MAX_PAYLOAD_BYTES",
    "CHAINLOG_READ_RETRY_ATTEMPTS",
    "CHAINLOG_READ_RETRY_BACKOFF_SECONDS",
    "CHAINLOG_STATS_REQUIRE_AUTH",
    "CHAINLOG_STATS_TOKEN",
    "CHAINLOG_CERT_DEBUG",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = GatewaySettings.from_env()
    assert s.env == "dev"
    assert s.production is False
    assert s.cert_mode == "proxied"
    assert s.controller_id is None
    assert s.bootstrap_callers == ()
    assert s.db_path == "chainlog.db"
    assert s.proxy_header_prefix == DEFAULT_PROXY_HEADER_PREFIX
    assert s.stats_require_auth is False


def test_unknown_cert_mode_fails_at_startup(monkeypatch):
    monkeypatch.setenv("CHAINLOG_CERT_MODE", "insecure")
    with pytest.raises(ValueError):
        GatewaySettings.from_env()


def test_controller_and_bootstrap_ids_are_normalized(monkeypatch):
    colon_form = ":".join(SERVICE_FP[i : i + 2] for i in range(0, len(SERVICE_FP), 2)).upper()
    monkeypatch.setenv("CHAINLOG_CONTROLLER_ID", f"  {colon_form} ")
    monkeypatch.setenv("CHAINLOG_BOOTSTRAP_CALLERS", "svc-a, ,svc-b")
    s = GatewaySettings.from_env()
    assert s.controller_id == SERVICE_FP
    assert s.bootstrap_callers == ("svc-a", "svc-b")


def test_uuid_controller_and_bootstrap_ids_are_kept_verbatim(monkeypatch):
    ctrl = "123e4567-e89b-12d3-a456-426614174000"
    svc = "9f1c2d3e-4b5a-4c6d-8e7f-0a1b2c3d4e5f"
    monkeypatch.setenv("CHAINLOG_CONTROLLER_ID", ctrl)
    monkeypatch.setenv("CHAINLOG_BOOTSTRAP_CALLERS", f"{svc},svc-a")
    s = GatewaySettings.from_env()
    assert s.controller_id == ctrl
    assert s.bootstrap_callers == (svc, "svc-a")


def test_numeric_values_are_clamped(monkeypatch):
    monkeypatch.setenv("CHAINLOG_MAX_REQUEST_BYTES", "10")
    monkeypatch.setenv("CHAINLOG_MAX_PAYLOAD_BYTES", "999999")
    monkeypatch.setenv("CHAINLOG_READ_RETRY_ATTEMPTS", "50")
    monkeypatch.setenv("CHAINLOG_READ_RETRY_BACKOFF_SECONDS", "nope")
    s = GatewaySettings.from_env()
    assert s.max_request_bytes == 1024
    assert s.max_payload_bytes == 1024
    assert s.read_retry_attempts == 10
    assert s.read_retry_backoff_s == 0.05


def test_production_defaults(monkeypatch):
    monkeypatch.setenv("CHAINLOG_ENV", "Production")
    monkeypatch.setenv("CHAINLOG_CERT_DEBUG", "1")
    s = GatewaySettings.from_env()
    assert s.production is True
    assert s.stats_require_auth is True
    assert s.cert_debug is False


def test_cert_debug_allowed_outside_production(monkeypatch):
    monkeypatch.setenv("CHAINLOG_CERT_DEBUG", "true")
    assert GatewaySettings.from_env().cert_debug is True
