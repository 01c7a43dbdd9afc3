"""
Append-only audit trail store.

Two logical tables:

- ``audit_records``: one row per record, keyed by a generated 128-bit id, with
  non-unique indexes on subject id, action and caller fingerprint and a UNIQUE
  index on digest.
- ``registered_callers``: the authorization registry, keyed by caller id.

Storage properties:
- The UNIQUE index on digest is the compare-and-insert primitive. Inserts run in
  a ``BEGIN IMMEDIATE`` transaction, so concurrent inserts racing on one digest
  produce exactly one success and the rest fail with Conflict.
- Rows are never updated or deleted; no such code path exists.
- Reads return insertion order (oldest first).
- The store has no notion of caller identity. Authorization happens upstream.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .binding import (
    bind,
    validate_action,
    validate_digest,
    validate_fingerprint,
    validate_subject_id,
)
from .crypto import _now_utc, _parse_iso_utc, canonical_json_dumps
from .errors import ChainlogError, conflict, internal_error, validation_error
from .hotpath import DigestHotPath
from .lockdown import DbCircuitBreaker, StorageLockdownError

logger = logging.getLogger("chainlog.store")

_RECORD_COLUMNS = "id, subject_id, action, caller_fingerprint, digest, payload_json, author_id, created_at_utc"


def new_record_id() -> str:
    return uuid.uuid4().hex


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


@dataclass(frozen=True)
class AuditRecord:
    """One immutable, hash-verifiable entry in the trail."""

    id: str
    subject_id: str
    action: str
    caller_fingerprint: str
    digest: str
    author_id: str
    payload: Any = None
    created_at: str = ""

    @classmethod
    def new(
        cls,
        subject_id: str,
        action: str,
        caller_fingerprint: str,
        author_id: str,
        payload: Any = None,
    ) -> "AuditRecord":
        """Build an unsaved record with a fresh id and its bound digest."""
        action = action.lower()
        return cls(
            id=new_record_id(),
            subject_id=subject_id,
            action=action,
            caller_fingerprint=caller_fingerprint,
            digest=bind(subject_id, action, caller_fingerprint),
            author_id=author_id,
            payload=payload,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectId": self.subject_id,
            "action": self.action,
            "callerFingerprint": self.caller_fingerprint,
            "digest": self.digest,
            "payload": self.payload,
            "authorId": self.author_id,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class RegisteredCaller:
    id: str
    registered_at: str
    registered_by: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "registeredAt": self.registered_at, "registeredBy": self.registered_by}


class AuditTrailStore:
    """
    SQLite-backed audit trail.

    Every operation opens its own connection through `_db`, which routes storage
    failures through the circuit breaker so that a degraded database trips
    LOCKDOWN instead of producing inconsistent results.
    """

    def __init__(
        self,
        db_path: str = "chainlog.db",
        *,
        circuit: Optional[DbCircuitBreaker] = None,
        hotpath: Optional[DigestHotPath] = None,
        max_payload_bytes: Optional[int] = None,
    ):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        self.hotpath = hotpath or DigestHotPath()
        self.max_payload_bytes = max_payload_bytes
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _db(self, op_name: str, isolation_level: Optional[str] = None) -> Iterator[sqlite3.Connection]:
        """DB connection wrapper with circuit breaker (fail-closed).

        Integrity violations pass through untouched; they are answers, not
        storage failures. Every other sqlite error becomes InternalError.
        """
        try:
            self.circuit.check(op_name)
        except StorageLockdownError as e:
            details: Dict[str, Any] = {
                "reason": "LOCKDOWN_ACTIVE",
                "op": op_name,
                "retryAfterSeconds": round(e.retry_after_s, 3),
            }
            if e.tripped_by is not None:
                details["trippedBy"] = e.tripped_by.op_name
            raise internal_error("Storage unavailable", retryable=True, http_status=503, **details) from e

        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            self.circuit.record_failure(op_name, e)
            logger.error("Storage failure during %s: %s", op_name, e)
            raise internal_error("Storage failure", retryable=True, op=op_name) from e

        self.circuit.observe(op_name, (time.monotonic() - start) * 1000.0)

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            # seq gives a total insertion order independent of clock resolution.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                subject_id TEXT NOT NULL,
                action TEXT NOT NULL,
                caller_fingerprint TEXT NOT NULL,
                digest TEXT NOT NULL,
                payload_json TEXT,
                author_id TEXT NOT NULL,
                created_at_utc TEXT NOT NULL
            )
            """)
            conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS ux_audit_records_digest ON audit_records (digest)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_audit_records_subject ON audit_records (subject_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_audit_records_action ON audit_records (action, seq)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_audit_records_fingerprint ON audit_records (caller_fingerprint, seq)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS registered_callers (
                id TEXT PRIMARY KEY,
                registered_at_utc TEXT NOT NULL,
                registered_by TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Records
    # ---------------------------

    def _check_record(self, record: AuditRecord) -> Tuple[AuditRecord, Optional[str]]:
        """Validate shapes and the digest binding before touching storage."""
        subject_id = validate_subject_id(record.subject_id)
        action = validate_action(record.action)
        fingerprint = validate_fingerprint(record.caller_fingerprint)
        digest = validate_digest(record.digest)
        if not record.author_id:
            raise validation_error("Author id is required")
        if not record.id or len(record.id) > 64:
            raise validation_error("Record id is required")
        if digest != bind(subject_id, action, fingerprint):
            raise validation_error("Hash does not bind subject id, action and fingerprint")

        payload_json: Optional[str] = None
        if record.payload is not None:
            payload_json = canonical_json_dumps(record.payload)
            if self.max_payload_bytes is not None and len(payload_json.encode("utf-8")) > self.max_payload_bytes:
                raise validation_error("Payload too large", max_bytes=self.max_payload_bytes)
        return replace(record, action=action), payload_json

    def insert(self, record: AuditRecord) -> AuditRecord:
        """Append a record. Returns the stored record with `created_at` assigned.

        Raises Conflict if the digest already exists (nothing is written) and
        ValidationError for malformed fields.
        """
        record, payload_json = self._check_record(record)

        # Deny-fast: a digest we've already seen can never be inserted again.
        if self.hotpath.seen(record.digest):
            raise conflict("Hash already exists", hash=record.digest)

        try:
            with self._db("insert", isolation_level="IMMEDIATE") as conn:
                # created_at never goes backwards, even if the wall clock does. The
                # max() runs inside the INSERT so it holds the write lock; timestamps
                # share one fixed UTC format, so text order is time order.
                conn.execute(
                    f"INSERT INTO audit_records ({_RECORD_COLUMNS}) "
                    "SELECT ?, ?, ?, ?, ?, ?, ?, "
                    "MAX(?, COALESCE((SELECT created_at_utc FROM audit_records ORDER BY seq DESC LIMIT 1), ''))",
                    (
                        record.id,
                        record.subject_id,
                        record.action,
                        record.caller_fingerprint,
                        record.digest,
                        payload_json,
                        record.author_id,
                        _iso(_now_utc()),
                    ),
                )
                row = conn.execute("SELECT created_at_utc FROM audit_records WHERE id = ?", (record.id,)).fetchone()
                stored = replace(record, created_at=row[0])
        except sqlite3.IntegrityError as e:
            if "digest" in str(e):
                # Another writer got there first; cache it so repeats deny-fast.
                self.hotpath.record(record.digest)
                raise conflict("Hash already exists", hash=record.digest) from e
            raise conflict("Record id already exists", id=record.id) from e

        # Record only after DB success.
        self.hotpath.record(stored.digest)
        return stored

    @staticmethod
    def _row_to_record(row: Tuple[Any, ...]) -> AuditRecord:
        rid, subject_id, action, fingerprint, digest, payload_json, author_id, created_at = row
        return AuditRecord(
            id=rid,
            subject_id=subject_id,
            action=action,
            caller_fingerprint=fingerprint,
            digest=digest,
            payload=json.loads(payload_json) if payload_json is not None else None,
            author_id=author_id,
            created_at=created_at,
        )

    def _select(
        self,
        op_name: str,
        where: str = "",
        params: Tuple[Any, ...] = (),
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AuditRecord]:
        sql = f"SELECT {_RECORD_COLUMNS} FROM audit_records"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY seq ASC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = params + (int(limit), max(0, int(offset)))
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            params = params + (max(0, int(offset)),)
        with self._db(op_name) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def find_by_subject(self, subject_id: str, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditRecord]:
        subject_id = validate_subject_id(subject_id)
        return self._select("find_by_subject", "subject_id = ?", (subject_id,), limit, offset)

    def find_by_action(self, action: str, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditRecord]:
        action = validate_action(action)
        return self._select("find_by_action", "action = ?", (action,), limit, offset)

    def find_by_fingerprint(
        self, fingerprint: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[AuditRecord]:
        fingerprint = validate_fingerprint(fingerprint)
        return self._select("find_by_fingerprint", "caller_fingerprint = ?", (fingerprint,), limit, offset)

    def find_by_digest(self, digest: str) -> Optional[AuditRecord]:
        digest = validate_digest(digest)
        found = self._select("find_by_digest", "digest = ?", (digest,))
        return found[0] if found else None

    def all(self, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditRecord]:
        return self._select("all", limit=limit, offset=offset)

    def count(self) -> int:
        with self._db("count") as conn:
            return int(conn.execute("SELECT COUNT(*) FROM audit_records").fetchone()[0])

    def verify_integrity(self) -> Tuple[bool, str, int]:
        """Re-verify every stored record. Returns (ok, reason, count).

        Checks, in insertion order: field shapes, that each digest still binds
        its record's fields, that digests are unique and that created_at never
        decreases. `count` is the 1-based position of the first bad record, or
        the total number of records when everything verifies.
        """
        seen: set = set()
        prev_created: Optional[datetime] = None
        count = 0
        with self._db("verify_integrity") as conn:
            cursor = conn.execute(f"SELECT {_RECORD_COLUMNS} FROM audit_records ORDER BY seq ASC")
            for row in cursor:
                count += 1
                rec = self._row_to_record(row)
                try:
                    validate_digest(rec.digest)
                    validate_subject_id(rec.subject_id)
                    if validate_action(rec.action) != rec.action:
                        return False, "ACTION_NOT_NORMALIZED", count
                except ChainlogError:
                    return False, "MALFORMED_RECORD", count
                if bind(rec.subject_id, rec.action, rec.caller_fingerprint) != rec.digest:
                    return False, "DIGEST_MISMATCH", count
                if rec.digest in seen:
                    return False, "DUPLICATE_DIGEST", count
                seen.add(rec.digest)
                created = _parse_iso_utc(rec.created_at)
                if created is None:
                    return False, "BAD_TIMESTAMP", count
                if prev_created is not None and created < prev_created:
                    return False, "TIMESTAMP_NOT_MONOTONIC", count
                prev_created = created
        return True, "OK", count

    # ---------------------------
    # Registered callers
    # ---------------------------

    def has_caller(self, caller_id: str) -> bool:
        with self._db("has_caller") as conn:
            row = conn.execute("SELECT 1 FROM registered_callers WHERE id = ?", (caller_id,)).fetchone()
        return row is not None

    def get_caller(self, caller_id: str) -> Optional[RegisteredCaller]:
        with self._db("get_caller") as conn:
            row = conn.execute(
                "SELECT id, registered_at_utc, registered_by FROM registered_callers WHERE id = ?",
                (caller_id,),
            ).fetchone()
        return RegisteredCaller(*row) if row else None

    def add_caller(self, caller_id: str, registered_by: str) -> RegisteredCaller:
        """Insert a caller. Raises Conflict (and writes nothing) if it exists."""
        caller = RegisteredCaller(id=caller_id, registered_at=_iso(_now_utc()), registered_by=registered_by)
        try:
            with self._db("add_caller", isolation_level="IMMEDIATE") as conn:
                conn.execute(
                    "INSERT INTO registered_callers (id, registered_at_utc, registered_by) VALUES (?, ?, ?)",
                    (caller.id, caller.registered_at, caller.registered_by),
                )
        except sqlite3.IntegrityError as e:
            raise conflict("Service already authorized!", service_id=caller_id) from e
        return caller

    def list_callers(self) -> List[RegisteredCaller]:
        with self._db("list_callers") as conn:
            rows = conn.execute(
                "SELECT id, registered_at_utc, registered_by FROM registered_callers ORDER BY registered_at_utc, id"
            ).fetchall()
        return [RegisteredCaller(*r) for r in rows]
