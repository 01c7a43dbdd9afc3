"""Stable error taxonomy for chainlog.

Every failure that can leave the core is one of a closed set of kinds. Each kind
carries a stable machine-readable code, a default HTTP status and a retryable flag,
and is raised as the single exception type `ChainlogError`.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Identity and authorization failures keep their specific kind all the way to the
  caller; they are never collapsed into a generic internal error.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class ErrorKind(Enum):
    # Identity layer
    TRANSPORT_REQUIRED = "TransportRequired"
    CERTIFICATE_REQUIRED = "CertificateRequired"
    PREMATURE_CERTIFICATE = "PrematureCertificate"
    EXPIRED_CERTIFICATE = "ExpiredCertificate"
    UNTRUSTED_CERTIFICATE = "UntrustedCertificate"
    PROXY_VERIFICATION_FAILED = "ProxyVerificationFailed"
    FINGERPRINT_EXTRACTION_FAILED = "FingerprintExtractionFailed"

    # Authorization layer
    UNAUTHORIZED = "Unauthorized"

    # Trail
    VALIDATION_ERROR = "ValidationError"
    CONFLICT = "Conflict"
    NOT_FOUND = "NotFound"
    INTERNAL_ERROR = "InternalError"

    @property
    def code(self) -> str:
        return _CODES[self]

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]

    @property
    def is_identity_failure(self) -> bool:
        return self in _IDENTITY_KINDS


_CODES: Dict[ErrorKind, str] = {
    ErrorKind.TRANSPORT_REQUIRED: "CHAINLOG_E_TLS_REQUIRED",
    ErrorKind.CERTIFICATE_REQUIRED: "CHAINLOG_E_CLIENT_CERTIFICATE_REQUIRED",
    ErrorKind.PREMATURE_CERTIFICATE: "CHAINLOG_E_PREMATURE_CERTIFICATE",
    ErrorKind.EXPIRED_CERTIFICATE: "CHAINLOG_E_EXPIRED_CERTIFICATE",
    ErrorKind.UNTRUSTED_CERTIFICATE: "CHAINLOG_E_UNTRUSTED_CERTIFICATE",
    ErrorKind.PROXY_VERIFICATION_FAILED: "CHAINLOG_E_CERTIFICATE_VERIFICATION_FAILED",
    ErrorKind.FINGERPRINT_EXTRACTION_FAILED: "CHAINLOG_E_FINGERPRINT_EXTRACTION_FAILED",
    ErrorKind.UNAUTHORIZED: "CHAINLOG_E_UNAUTHORIZED",
    ErrorKind.VALIDATION_ERROR: "CHAINLOG_E_VALIDATION",
    ErrorKind.CONFLICT: "CHAINLOG_E_CONFLICT",
    ErrorKind.NOT_FOUND: "CHAINLOG_E_NOT_FOUND",
    ErrorKind.INTERNAL_ERROR: "CHAINLOG_E_INTERNAL",
}

_HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.TRANSPORT_REQUIRED: 401,
    ErrorKind.CERTIFICATE_REQUIRED: 401,
    ErrorKind.PREMATURE_CERTIFICATE: 401,
    ErrorKind.EXPIRED_CERTIFICATE: 401,
    ErrorKind.UNTRUSTED_CERTIFICATE: 401,
    ErrorKind.PROXY_VERIFICATION_FAILED: 401,
    ErrorKind.FINGERPRINT_EXTRACTION_FAILED: 401,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INTERNAL_ERROR: 500,
}

_IDENTITY_KINDS = frozenset(
    {
        ErrorKind.TRANSPORT_REQUIRED,
        ErrorKind.CERTIFICATE_REQUIRED,
        ErrorKind.PREMATURE_CERTIFICATE,
        ErrorKind.EXPIRED_CERTIFICATE,
        ErrorKind.UNTRUSTED_CERTIFICATE,
        ErrorKind.PROXY_VERIFICATION_FAILED,
        ErrorKind.FINGERPRINT_EXTRACTION_FAILED,
    }
)


@dataclass
class ChainlogError(Exception):
    """Base chainlog exception with a closed error kind."""

    kind: ErrorKind
    message: str
    retryable: bool = False
    http_status: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.http_status:
            self.http_status = self.kind.http_status

    @property
    def code(self) -> str:
        return self.kind.code

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def chainlog_error(
    kind: ErrorKind,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 0,
    **details: Any,
) -> ChainlogError:
    return ChainlogError(kind=kind, message=message, retryable=retryable, http_status=http_status, details=details)


def unauthorized(message: str = "Unauthorized access!") -> ChainlogError:
    return chainlog_error(ErrorKind.UNAUTHORIZED, message)


def validation_error(message: str, **details: Any) -> ChainlogError:
    return chainlog_error(ErrorKind.VALIDATION_ERROR, message, **details)


def conflict(message: str, **details: Any) -> ChainlogError:
    return chainlog_error(ErrorKind.CONFLICT, message, **details)


def not_found(message: str, **details: Any) -> ChainlogError:
    return chainlog_error(ErrorKind.NOT_FOUND, message, **details)


def internal_error(message: str, *, retryable: bool = False, http_status: int = 0, **details: Any) -> ChainlogError:
    return chainlog_error(
        ErrorKind.INTERNAL_ERROR, message, retryable=retryable, http_status=http_status, **details
    )
