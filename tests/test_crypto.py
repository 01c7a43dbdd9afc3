import pytest

from chainlog.crypto import canonical_json_dumps, is_self_signed, load_certificate, name_to_dict
from chainlog.errors import ChainlogError, ErrorKind


def test_canonical_json_sorts_keys_and_strips_whitespace():
    assert canonical_json_dumps({"b": 1, "a": [1, 2, {"d": None, "c": True}]}) == (
        '{"a":[1,2,{"c":true,"d":null}],"b":1}'
    )


def test_canonical_json_normalizes_unicode_nfc():
    # "e" + combining acute accent should normalize to a single composed "é"
    assert canonical_json_dumps({"s": "e\u0301"}) == '{"s":"\u00e9"}'


def test_canonical_json_rejects_pathological_bignums_by_digit_length():
    with pytest.raises(ChainlogError) as ei:
        canonical_json_dumps({"n": int("9" * 200)})
    assert ei.value.kind is ErrorKind.VALIDATION_ERROR


def test_canonical_json_rejects_excessive_nesting():
    x = "leaf"
    for _ in range(70):
        x = [x]
    with pytest.raises(ChainlogError):
        canonical_json_dumps(x)


def test_canonical_json_rejects_nan_and_key_collisions():
    with pytest.raises(ChainlogError):
        canonical_json_dumps({"x": float("nan")})
    with pytest.raises(ChainlogError):
        canonical_json_dumps({"\u00e9": 1, "e\u0301": 2})


def test_load_certificate_accepts_pem_and_der(certs):
    cert = certs.issue("svc")
    assert load_certificate(certs.pem(cert)) == cert
    assert load_certificate(certs.der(cert)) == cert


def test_load_certificate_rejects_garbage():
    with pytest.raises(ValueError):
        load_certificate(b"")
    with pytest.raises(ValueError):
        load_certificate(b"not a certificate")


def test_is_self_signed(certs):
    assert is_self_signed(certs.self_signed()) is True
    assert is_self_signed(certs.issue()) is False
    # The CA is self-signed too; only the chain position differs.
    assert is_self_signed(certs.ca_cert) is True


def test_name_to_dict(certs):
    cert = certs.issue("svc-a")
    assert name_to_dict(cert.subject) == {"CN": "svc-a", "O": "Chainlog Test"}
