from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from chainlog.access import CallerRegistry
from chainlog.engine import AuditEngine
from chainlog.identity import PeerRequest, ProxiedExtractor
from chainlog.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from chainlog.hotpath import DigestCacheConfig, DigestHotPath
from chainlog.ops_stats import OpsStats
from chainlog.store import AuditTrailStore

CONTROLLER_FP = "c0" * 32
SERVICE_FP = "5e" * 32
STRANGER_FP = "ee" * 32


def _name(cn: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Chainlog Test"),
        ]
    )


class CertFactory:
    """Issues throwaway certificates for identity tests."""

    def __init__(self):
        now = datetime.now(timezone.utc)
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = (
            x509.CertificateBuilder()
            .subject_name(_name("Chainlog Test CA"))
            .issuer_name(_name("Chainlog Test CA"))
            .public_key(self.ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.ca_key, hashes.SHA256())
        )

    def _window(self, not_before, not_after):
        now = datetime.now(timezone.utc).replace(microsecond=0)
        return not_before or now - timedelta(hours=1), not_after or now + timedelta(days=30)

    def issue(self, cn: str = "client", not_before=None, not_after=None, serial=None) -> x509.Certificate:
        """Client certificate signed by the test CA."""
        key = ec.generate_private_key(ec.SECP256R1())
        nb, na = self._window(not_before, not_after)
        return (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(self.ca_cert.subject)
            .public_key(key.public_key())
            .serial_number(serial or x509.random_serial_number())
            .not_valid_before(nb)
            .not_valid_after(na)
            .sign(self.ca_key, hashes.SHA256())
        )

    def self_signed(self, cn: str = "self-signed", not_before=None, not_after=None) -> x509.Certificate:
        key = ec.generate_private_key(ec.SECP256R1())
        nb, na = self._window(not_before, not_after)
        return (
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(_name(cn))
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(nb)
            .not_valid_after(na)
            .sign(key, hashes.SHA256())
        )

    @staticmethod
    def pem(cert: x509.Certificate) -> bytes:
        return cert.public_bytes(serialization.Encoding.PEM)

    @staticmethod
    def der(cert: x509.Certificate) -> bytes:
        return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def certs() -> CertFactory:
    return CertFactory()


def proxied(fingerprint: str, **extra_headers: str) -> PeerRequest:
    """A request as a verifying proxy would forward it."""
    headers = {"x-ssl-client-verify": "SUCCESS", "x-ssl-client-fingerprint": fingerprint}
    headers.update({k.replace("_", "-"): v for k, v in extra_headers.items()})
    return PeerRequest(headers=headers)


@pytest.fixture
def store(tmp_path) -> AuditTrailStore:
    # Generous latency threshold: tests must not trip lockdown on a slow CI disk.
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=60_000))
    return AuditTrailStore(
        str(tmp_path / "chainlog.db"),
        circuit=circuit,
        hotpath=DigestHotPath(DigestCacheConfig(max_items=1000)),
        max_payload_bytes=4096,
    )


@pytest.fixture
def engine(store) -> AuditEngine:
    registry = CallerRegistry(store, controller_id=CONTROLLER_FP)
    return AuditEngine(
        ProxiedExtractor(),
        registry,
        store,
        read_retry_attempts=2,
        read_retry_backoff_s=0.0,
        stats=OpsStats(),
    )
