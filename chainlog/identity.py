"""Client identity extraction from mutual-TLS certificates.

Two strategies implement one `extract(request)` contract and are selected once at
startup:

- `DirectExtractor` reads the peer certificate of a TLS connection that this
  process terminated itself.
- `ProxiedExtractor` reads headers set by a terminating reverse proxy (nginx
  style ``X-SSL-Client-*``) after the proxy verified the handshake.

Trust boundary (proxied mode)
-----------------------------
In proxied mode the gateway believes whatever the proxy asserts. The proxy MUST
strip any client-supplied ``X-SSL-Client-*`` headers before setting its own, and
the gateway MUST NOT be reachable except through that proxy.

Validity headers are optional in proxied mode. When they are absent (and no
certificate body is forwarded to read them from), the gateway performs no expiry
check of its own and relies on the proxy having done it. The resulting identity
carries ``validity_checked=False`` so callers can see that this happened. Set
``CHAINLOG_PROXY_REQUIRE_VALIDITY=1`` to reject such requests instead.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import unquote

from cryptography import x509

from .crypto import (
    _now_utc,
    _parse_iso_utc,
    _sha256_hex,
    certificate_der,
    is_self_signed,
    load_certificate,
    name_to_dict,
)
from .errors import ErrorKind, chainlog_error

logger = logging.getLogger("chainlog.identity")

DEFAULT_PROXY_HEADER_PREFIX = "x-ssl-client-"
PROXY_VERIFY_SUCCESS = "SUCCESS"

_FINGERPRINT_SEPARATORS = re.compile(r"[:\-\s]")
_HEX_RE = re.compile(r"^[0-9a-f]+$")
_PEM_MARKERS = re.compile(r"-----(BEGIN|END) CERTIFICATE-----")
_DN_COMMA_SPLIT = re.compile(r"(?<!\\),")


class ExtractionMode(str, Enum):
    DIRECT = "direct"
    PROXIED = "proxied"


@dataclass(frozen=True)
class PeerRequest:
    """What the identity layer sees of one inbound request.

    `peer_certificate` is the leaf certificate of the TLS peer (PEM or DER),
    only meaningful when this process terminated TLS itself.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    encrypted: bool = False
    peer_certificate: Optional[bytes] = None
    path: str = "/"

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for k, v in self.headers.items():
            if k.lower() == wanted:
                return v
        return None


@dataclass(frozen=True)
class ClientIdentity:
    """A verified client identity. Derived per request and never persisted as-is."""

    fingerprint: str
    mode: ExtractionMode
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    subject: Dict[str, str] = field(default_factory=dict)
    issuer: Dict[str, str] = field(default_factory=dict)
    serial_number: Optional[str] = None
    validity_checked: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "mode": self.mode.value,
            "validFrom": self.valid_from.isoformat() if self.valid_from else None,
            "validTo": self.valid_to.isoformat() if self.valid_to else None,
            "subject": dict(self.subject),
            "issuer": dict(self.issuer),
            "serialNumber": self.serial_number,
            "validityChecked": self.validity_checked,
        }


class IdentityExtractor(Protocol):
    mode: ExtractionMode

    def extract(self, request: PeerRequest) -> ClientIdentity:
        """Return a verified identity or raise a ChainlogError of an identity kind."""
        ...


# ---------------------------
# Shared helpers
# ---------------------------

def normalize_fingerprint(value: str) -> str:
    """Strip separators and lower-case a hex fingerprint.

    ``AB:12:...`` and ``ab12...`` compare equal after normalization. Raises
    FingerprintExtractionFailed if what remains is not plain hex.
    """
    fp = _FINGERPRINT_SEPARATORS.sub("", value or "").lower()
    if not fp or not _HEX_RE.match(fp) or len(fp) % 2 or not 32 <= len(fp) <= 128:
        raise chainlog_error(
            ErrorKind.FINGERPRINT_EXTRACTION_FAILED,
            "Unable to extract certificate fingerprint",
        )
    return fp


def fingerprint_certificate(cert: x509.Certificate) -> str:
    """SHA-256 over the full DER encoding, lowercase hex, no separators."""
    return _sha256_hex(certificate_der(cert))


def check_validity_window(
    valid_from: Optional[datetime],
    valid_to: Optional[datetime],
    now: Optional[datetime] = None,
) -> None:
    """Raise unless valid_from <= now <= valid_to. Missing bounds are not checked."""
    now = now or _now_utc()
    if valid_from is not None and now < valid_from:
        raise chainlog_error(
            ErrorKind.PREMATURE_CERTIFICATE,
            "Client certificate is not yet valid",
            validFrom=valid_from.isoformat(),
            currentTime=now.isoformat(),
        )
    if valid_to is not None and now > valid_to:
        raise chainlog_error(
            ErrorKind.EXPIRED_CERTIFICATE,
            "Client certificate has expired",
            expiredOn=valid_to.isoformat(),
            currentTime=now.isoformat(),
        )


def decode_forwarded_certificate(value: str) -> x509.Certificate:
    """Decode a proxy-forwarded certificate.

    Accepts URL-encoded PEM (nginx ``$ssl_client_escaped_cert``), plain PEM with
    folded whitespace, or bare base64 DER. Raises ValueError otherwise.
    """
    text = unquote(value) if "%" in value else value
    body = re.sub(r"\s", "", _PEM_MARKERS.sub("", text))
    try:
        der = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"certificate is not valid base64: {e}") from e
    return load_certificate(der)


def parse_proxy_timestamp(value: str) -> Optional[datetime]:
    """Parse a proxy validity header.

    nginx emits ``Jan  1 00:00:00 2025 GMT``; ISO 8601 and RFC 2822 are also
    accepted. Returns None when nothing matches.
    """
    s = " ".join((value or "").split())
    if not s:
        return None
    try:
        return datetime.strptime(s, "%b %d %H:%M:%S %Y GMT").replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    iso = _parse_iso_utc(s)
    if iso is not None:
        return iso
    try:
        dt = parsedate_to_datetime(s)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_distinguished_name(value: Optional[str]) -> Dict[str, str]:
    """Best-effort parse of a forwarded DN into {attribute: value}.

    Handles RFC 2253 (``CN=a,O=b``) and the legacy slash form (``/CN=a/O=b``).
    A value without any ``=`` is treated as a bare common name.
    """
    if not value:
        return {}
    if "=" not in value:
        return {"CN": value}
    out: Dict[str, str] = {}
    parts = value.strip("/").split("/") if value.startswith("/") else _DN_COMMA_SPLIT.split(value)
    for part in parts:
        if "=" not in part:
            continue
        k, v = part.split("=", 1)
        k = k.strip()
        v = v.strip().replace("\\,", ",")
        if k:
            out[k] = f"{out[k]}, {v}" if k in out else v
    return out


# ---------------------------
# Strategies
# ---------------------------

class DirectExtractor:
    """Extract identity from a locally terminated TLS connection."""

    mode = ExtractionMode.DIRECT

    def __init__(self, allow_self_signed: bool = False):
        self.allow_self_signed = allow_self_signed

    def extract(self, request: PeerRequest) -> ClientIdentity:
        if not request.encrypted:
            raise chainlog_error(ErrorKind.TRANSPORT_REQUIRED, "TLS connection required")

        raw = request.peer_certificate
        if not raw:
            raise chainlog_error(ErrorKind.CERTIFICATE_REQUIRED, "Client certificate required")

        try:
            cert = load_certificate(raw)
        except ValueError as e:
            raise chainlog_error(
                ErrorKind.FINGERPRINT_EXTRACTION_FAILED,
                "Unable to extract certificate fingerprint",
                reason=str(e),
            ) from e

        if not self.allow_self_signed and is_self_signed(cert):
            raise chainlog_error(
                ErrorKind.UNTRUSTED_CERTIFICATE,
                "Self-signed certificates not allowed in production",
            )

        valid_from = cert.not_valid_before_utc
        valid_to = cert.not_valid_after_utc
        check_validity_window(valid_from, valid_to)

        return ClientIdentity(
            fingerprint=fingerprint_certificate(cert),
            mode=self.mode,
            valid_from=valid_from,
            valid_to=valid_to,
            subject=name_to_dict(cert.subject),
            issuer=name_to_dict(cert.issuer),
            serial_number=format(cert.serial_number, "X"),
            validity_checked=True,
        )


class ProxiedExtractor:
    """Extract identity from headers injected by a terminating proxy."""

    mode = ExtractionMode.PROXIED

    def __init__(self, header_prefix: str = DEFAULT_PROXY_HEADER_PREFIX, require_validity: bool = False):
        self.header_prefix = header_prefix.lower()
        self.require_validity = require_validity

    def _h(self, request: PeerRequest, suffix: str) -> Optional[str]:
        v = request.header(self.header_prefix + suffix)
        if v is None:
            return None
        v = v.strip()
        # nginx sends "" or "-" for unset variables.
        return v if v and v != "-" else None

    def _timestamp(self, request: PeerRequest, suffix: str) -> Optional[datetime]:
        raw = self._h(request, suffix)
        if raw is None:
            return None
        parsed = parse_proxy_timestamp(raw)
        if parsed is None:
            raise chainlog_error(
                ErrorKind.PROXY_VERIFICATION_FAILED,
                "Unparseable certificate validity header from proxy",
                header=self.header_prefix + suffix,
            )
        return parsed

    def extract(self, request: PeerRequest) -> ClientIdentity:
        raw_status = request.header(self.header_prefix + "verify")
        if raw_status is None or raw_status.strip() != PROXY_VERIFY_SUCCESS:
            # Echo what the proxy sent; NONE only when the header is absent.
            shown = "NONE" if raw_status is None else raw_status
            raise chainlog_error(
                ErrorKind.PROXY_VERIFICATION_FAILED,
                "Client certificate verification failed",
                status=shown,
                reason=f"proxy verification status: {shown}",
            )

        fp_header = self._h(request, "fingerprint")
        cert_header = self._h(request, "cert")
        if not fp_header and not cert_header:
            raise chainlog_error(ErrorKind.CERTIFICATE_REQUIRED, "Client certificate information missing")

        cert: Optional[x509.Certificate] = None
        if cert_header:
            try:
                cert = decode_forwarded_certificate(cert_header)
            except ValueError as e:
                if not fp_header:
                    raise chainlog_error(
                        ErrorKind.FINGERPRINT_EXTRACTION_FAILED,
                        "Unable to extract certificate fingerprint",
                        reason=str(e),
                    ) from e
                logger.debug("Ignoring undecodable forwarded certificate; fingerprint header present")

        if fp_header:
            fingerprint = normalize_fingerprint(fp_header)
        elif cert is not None:
            fingerprint = fingerprint_certificate(cert)
        else:
            raise chainlog_error(ErrorKind.CERTIFICATE_REQUIRED, "Client certificate information missing")

        valid_from = self._timestamp(request, "not-before")
        valid_to = self._timestamp(request, "not-after")
        if cert is not None:
            valid_from = valid_from or cert.not_valid_before_utc
            valid_to = valid_to or cert.not_valid_after_utc

        validity_checked = valid_from is not None and valid_to is not None
        if not validity_checked:
            if self.require_validity:
                raise chainlog_error(
                    ErrorKind.PROXY_VERIFICATION_FAILED,
                    "Proxy did not forward certificate validity",
                    reason="validity headers required",
                )
            logger.debug("Proxy omitted validity headers; expiry enforcement delegated to proxy")
        check_validity_window(valid_from, valid_to)

        subject = parse_distinguished_name(self._h(request, "subject"))
        issuer = parse_distinguished_name(self._h(request, "issuer"))
        if cert is not None:
            subject = subject or name_to_dict(cert.subject)
            issuer = issuer or name_to_dict(cert.issuer)

        serial = self._h(request, "serial")
        if serial is None and cert is not None:
            serial = format(cert.serial_number, "X")

        return ClientIdentity(
            fingerprint=fingerprint,
            mode=self.mode,
            valid_from=valid_from,
            valid_to=valid_to,
            subject=subject,
            issuer=issuer,
            serial_number=serial,
            validity_checked=validity_checked,
        )


def build_extractor(
    cert_mode: str,
    *,
    production: bool = False,
    header_prefix: str = DEFAULT_PROXY_HEADER_PREFIX,
    require_validity: bool = False,
) -> IdentityExtractor:
    """Select the extraction strategy once, at startup."""
    mode = (cert_mode or "").strip().lower()
    if mode == ExtractionMode.DIRECT.value:
        return DirectExtractor(allow_self_signed=not production)
    if mode in (ExtractionMode.PROXIED.value, "nginx", "proxy"):
        return ProxiedExtractor(header_prefix=header_prefix, require_validity=require_validity)
    raise ValueError(f"Unknown certificate mode: {cert_mode!r} (expected 'direct' or 'proxied')")
