"""Hash binding for audit records.

A record's digest binds three values together:

    digest = sha256_hex(subject_id || lower(action) || fingerprint)

The concatenation is plain (no separators, no length prefixes) so that any
implementation can recompute a digest from the stored fields alone. The
subject id and fingerprint are used verbatim; their producers normalize them.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional, Protocol

from .crypto import _sha256_hex
from .errors import validation_error

DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")
UUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

MAX_SUBJECT_ID_LENGTH = 128
MAX_FINGERPRINT_LENGTH = 256


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


ACTIONS = tuple(a.value for a in Action)


class BoundRecord(Protocol):
    subject_id: str
    action: str
    caller_fingerprint: str
    digest: str


def bind(subject_id: str, action: str, fingerprint: str) -> str:
    """Compute the digest binding (subject_id, action, fingerprint)."""
    return _sha256_hex((subject_id + action.lower() + fingerprint).encode("utf-8"))


def verify(
    record: BoundRecord,
    expected_subject_id: str,
    expected_action: str,
    expected_fingerprint: str,
) -> bool:
    """Check a stored record against the values a caller claims produced it.

    All four checks must hold: the recomputed digest equals the stored digest,
    and each stored field equals its expected counterpart.
    """
    expected_digest = bind(expected_subject_id, expected_action, expected_fingerprint)
    return (
        record.digest == expected_digest
        and record.subject_id == expected_subject_id
        and record.action == expected_action.lower()
        and record.caller_fingerprint == expected_fingerprint
    )


# ---------------------------
# Shape validation
# ---------------------------

def is_digest(value: Any) -> bool:
    return isinstance(value, str) and DIGEST_RE.match(value) is not None


def validate_digest(value: Any) -> str:
    """Return the digest unchanged if it is exactly 64 lowercase hex chars.

    Anything else is rejected; digests are never trimmed, padded or re-cased.
    """
    if not isinstance(value, str) or not value:
        raise validation_error("Hash is required and must be a string")
    if not DIGEST_RE.match(value):
        raise validation_error("Hash must be a 64-character lowercase hexadecimal string")
    return value


def validate_action(value: Any) -> str:
    """Return the lower-cased action, or raise if it is not create/update/delete."""
    if not isinstance(value, str) or not value:
        raise validation_error("Action is required")
    action = value.lower()
    if action not in ACTIONS:
        raise validation_error("Action must be one of: create, update, delete", action=value)
    return action


def validate_subject_id(value: Any) -> str:
    """Validate a subject identifier.

    The core only needs a bounded, printable, whitespace-free token. UUID form
    (`UUID_PATTERN`) is enforced by the HTTP request schemas.
    """
    if not isinstance(value, str) or not value:
        raise validation_error("Subject id is required")
    if len(value) > MAX_SUBJECT_ID_LENGTH:
        raise validation_error("Subject id is too long", max_length=MAX_SUBJECT_ID_LENGTH)
    if not value.isprintable() or any(ch.isspace() for ch in value):
        raise validation_error("Subject id must not contain whitespace or control characters")
    return value


def validate_fingerprint(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value:
        raise validation_error("Fingerprint is required")
    if len(value) > MAX_FINGERPRINT_LENGTH:
        raise validation_error("Fingerprint is too long", max_length=MAX_FINGERPRINT_LENGTH)
    if not value.isprintable() or any(ch.isspace() for ch in value):
        raise validation_error("Fingerprint must not contain whitespace or control characters")
    return value
