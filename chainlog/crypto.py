"""
chainlog cryptography helpers.

Hashing, time, canonical JSON and X.509 utilities shared by the identity
extractor, the hash binder and the audit trail store.

X.509 handling uses the `cryptography` package; no certificate is ever trusted
because of anything in this module. Trust decisions live in `identity.py`.
"""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import Encoding

from .errors import validation_error


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# Canonical JSON for record payloads
# - Enforce max depth to avoid pathological recursion/DoS inputs
# - Enforce bounded integers to preserve cross-language determinism
# - Normalize unicode to NFC to prevent visually-identical but byte-distinct strings
_CANON_JSON_MAX_DEPTH = 64
_CANON_JSON_MAX_INT_DIGITS = 128
_CANON_JSON_UNICODE_NORM = "NFC"


def _canonicalize_json(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_JSON_MAX_DEPTH:
        raise validation_error("Payload exceeds max nesting depth", path=_path, max_depth=_CANON_JSON_MAX_DEPTH)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_JSON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        digits = len(str(abs(obj)))
        if digits > _CANON_JSON_MAX_INT_DIGITS:
            raise validation_error("Payload integer has too many digits", path=_path, digits=digits)
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise validation_error("Payload contains a non-finite number", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise validation_error("Payload object keys must be strings", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize(_CANON_JSON_UNICODE_NORM, k)
            if nk in out:
                # Normalization can collapse distinct keys into the same NFC form.
                raise validation_error("Duplicate payload key after unicode normalization", path=_path)
            out[nk] = _canonicalize_json(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize_json(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise validation_error("Payload contains a non-JSON value", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON: sorted keys, no whitespace, NFC strings, no NaN."""
    normalized = _canonicalize_json(obj)
    return json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


# ---------------------------
# X.509
# ---------------------------

def load_certificate(data: bytes) -> x509.Certificate:
    """Load a certificate from PEM or DER bytes.

    Raises ValueError if the bytes are neither.
    """
    if not data:
        raise ValueError("empty certificate")
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def certificate_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(Encoding.DER)


def is_self_signed(cert: x509.Certificate) -> bool:
    """True when the certificate names itself as issuer and its own key signs it."""
    if cert.issuer != cert.subject:
        return False
    try:
        cert.verify_directly_issued_by(cert)
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False
    return True


def name_to_dict(name: x509.Name) -> Dict[str, str]:
    """Flatten a distinguished name into {short_name: value}.

    Multi-valued attributes are joined with ", " in DN order.
    """
    out: Dict[str, str] = {}
    for attr in name:
        key = attr.rfc4514_attribute_name
        value = attr.value if isinstance(attr.value, str) else attr.value.hex()
        out[key] = f"{out[key]}, {value}" if key in out else value
    return out