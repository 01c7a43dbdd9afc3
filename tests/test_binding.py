import hashlib
from types import SimpleNamespace

import pytest

from chainlog.binding import bind, is_digest, validate_action, validate_digest, validate_subject_id, verify
from chainlog.errors import ChainlogError, ErrorKind

SUBJECT = "123e4567-e89b-12d3-a456-426614174000"
FP = "ab12" * 16


def _record(subject_id, action, fingerprint):
    return SimpleNamespace(
        subject_id=subject_id,
        action=action.lower(),
        caller_fingerprint=fingerprint,
        digest=bind(subject_id, action, fingerprint),
    )


def test_bind_is_sha256_of_plain_concatenation():
    expected = hashlib.sha256(f"{SUBJECT}create{FP}".encode("utf-8")).hexdigest()
    assert bind(SUBJECT, "create", FP) == expected


def test_bind_lowercases_action_only():
    assert bind(SUBJECT, "CREATE", FP) == bind(SUBJECT, "create", FP)
    # Subject and fingerprint are used verbatim.
    assert bind(SUBJECT.upper(), "create", FP) != bind(SUBJECT, "create", FP)
    assert bind(SUBJECT, "create", FP.upper()) != bind(SUBJECT, "create", FP)


def test_bind_is_deterministic_and_sensitive_to_each_input():
    base = bind(SUBJECT, "update", FP)
    assert bind(SUBJECT, "update", FP) == base
    assert bind(SUBJECT[:-1] + "1", "update", FP) != base
    assert bind(SUBJECT, "delete", FP) != base
    assert bind(SUBJECT, "update", "cd34" * 16) != base
    assert is_digest(base)


def test_verify_round_trip():
    rec = _record(SUBJECT, "Update", FP)
    assert verify(rec, SUBJECT, "update", FP) is True
    assert verify(rec, SUBJECT, "UPDATE", FP) is True


@pytest.mark.parametrize(
    "subject_id,action,fingerprint",
    [
        ("123e4567-e89b-12d3-a456-426614174001", "update", FP),
        (SUBJECT, "create", FP),
        (SUBJECT, "update", "cd34" * 16),
    ],
)
def test_verify_detects_any_single_field_change(subject_id, action, fingerprint):
    rec = _record(SUBJECT, "update", FP)
    assert verify(rec, subject_id, action, fingerprint) is False


def test_verify_detects_tampered_stored_field():
    rec = _record(SUBJECT, "update", FP)
    # Stored digest intact but stored action altered.
    tampered = SimpleNamespace(**{**vars(rec), "action": "delete"})
    assert verify(tampered, SUBJECT, "update", FP) is False


@pytest.mark.parametrize(
    "value",
    ["", "A" * 64, "a" * 63, "a" * 65, " " + "a" * 63, "g" * 64, None, 123],
)
def test_validate_digest_rejects_malformed(value):
    with pytest.raises(ChainlogError) as ei:
        validate_digest(value)
    assert ei.value.kind is ErrorKind.VALIDATION_ERROR


def test_validate_digest_returns_value_unchanged():
    d = bind(SUBJECT, "create", FP)
    assert validate_digest(d) is d


def test_validate_action():
    assert validate_action("Update") == "update"
    assert validate_action("DELETE") == "delete"
    for bad in ("", "read", "creat", None):
        with pytest.raises(ChainlogError) as ei:
            validate_action(bad)
        assert ei.value.kind is ErrorKind.VALIDATION_ERROR


def test_validate_subject_id():
    assert validate_subject_id("U1") == "U1"
    assert validate_subject_id(SUBJECT) == SUBJECT
    for bad in ("", "has space", "x" * 129, "tab\there", None):
        with pytest.raises(ChainlogError):
            validate_subject_id(bad)
