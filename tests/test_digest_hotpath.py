from contextlib import contextmanager

import pytest

from chainlog.errors import ChainlogError, ErrorKind
from chainlog.hotpath import DigestCacheConfig, DigestHotPath
from chainlog.store import AuditRecord, AuditTrailStore


def test_duplicate_digest_denies_fast_without_db(tmp_path):
    store = AuditTrailStore(db_path=str(tmp_path / "trail.db"))
    store.insert(AuditRecord.new("U1", "create", "F1", author_id="svc"))

    @contextmanager
    def boom(*args, **kwargs):
        raise AssertionError("DB should not be called on fast duplicate deny")
        yield  # pragma: no cover

    # Replace _db with a boom context manager; the second call should deny-fast.
    store._db = boom  # type: ignore

    with pytest.raises(ChainlogError) as ei:
        store.insert(AuditRecord.new("U1", "CREATE", "F1", author_id="svc"))
    assert ei.value.kind is ErrorKind.CONFLICT


def test_failed_insert_is_not_cached(tmp_path):
    store = AuditTrailStore(db_path=str(tmp_path / "trail.db"), max_payload_bytes=10)
    rec = AuditRecord.new("U1", "create", "F1", author_id="svc", payload={"too": "large" * 10})
    with pytest.raises(ChainlogError):
        store.insert(rec)
    assert store.hotpath.seen(rec.digest) is False


def test_lru_eviction():
    hp = DigestHotPath(DigestCacheConfig(max_items=2))
    hp.record("a")
    hp.record("b")
    assert hp.seen("a")  # refresh a
    hp.record("c")
    assert hp.seen("a") and hp.seen("c")
    assert not hp.seen("b")
    assert len(hp) == 2


def test_zero_disables_cache(monkeypatch):
    monkeypatch.setenv("CHAINLOG_DIGEST_CACHE_MAX_ITEMS", "0")
    hp = DigestHotPath()
    hp.record("a")
    assert not hp.seen("a")
    assert len(hp) == 0
