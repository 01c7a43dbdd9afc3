"""Audit engine: per-request orchestration.

Each request walks a fixed sequence of stages and exits with a typed
ChainlogError at any arrow:

    UNAUTHENTICATED -> AUTHENTICATED -> AUTHORIZED -> (BOUND -> STORED | VERIFIED) -> RESPONDED

Reads skip binding and go straight from AUTHORIZED to the store query.

Retry policy: only InternalError is retried, and only around read-only steps
(authorization lookups and queries). Inserts are never retried, because a
retried insert that actually committed would come back as Conflict and hide the
original success. Identity, authorization, validation and conflict failures are
never retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from . import binding
from . import metrics
from .access import CallerRegistry, ServiceKeyAuth, normalize_caller_id
from .errors import ChainlogError, ErrorKind, not_found
from .identity import ClientIdentity, IdentityExtractor, PeerRequest
from .ops_stats import OPS_STATS, OpsStats
from .store import AuditRecord, AuditTrailStore, RegisteredCaller

logger = logging.getLogger("chainlog.engine")

T = TypeVar("T")

API_KEY_HEADER = "x-api-key"


class Stage(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    AUTHORIZED = "authorized"
    BOUND = "bound"
    STORED = "stored"
    VERIFIED = "verified"
    RESPONDED = "responded"


@dataclass(frozen=True)
class Caller:
    """An authenticated caller: its certificate identity plus the id we authorize."""

    identity: ClientIdentity
    caller_id: str

    @property
    def fingerprint(self) -> str:
        return self.identity.fingerprint


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    digest: str
    record: AuditRecord

    def as_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "digest": self.digest}


class RequestFlow:
    """Tracks the stage of one request, for logging on failure."""

    def __init__(self, operation: str):
        self.operation = operation
        self.stage = Stage.UNAUTHENTICATED

    def advance(self, stage: Stage) -> None:
        logger.debug("%s: %s -> %s", self.operation, self.stage.value, stage.value)
        self.stage = stage


class AuditEngine:
    def __init__(
        self,
        extractor: IdentityExtractor,
        gate: CallerRegistry,
        store: AuditTrailStore,
        *,
        service_keys: Optional[ServiceKeyAuth] = None,
        read_retry_attempts: int = 2,
        read_retry_backoff_s: float = 0.05,
        stats: Optional[OpsStats] = None,
    ):
        self.extractor = extractor
        self.gate = gate
        self.store = store
        self.service_keys = service_keys
        self.read_retry_attempts = max(0, int(read_retry_attempts))
        self.read_retry_backoff_s = max(0.0, float(read_retry_backoff_s))
        self.stats = stats or OPS_STATS

    # ---------------------------
    # Internals
    # ---------------------------

    def _read(self, op_name: str, fn: Callable[[], T]) -> T:
        """Run a read-only step, retrying transient InternalError with backoff."""
        attempts = 1 + self.read_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except ChainlogError as e:
                transient = e.kind is ErrorKind.INTERNAL_ERROR and e.details.get("reason") != "LOCKDOWN_ACTIVE"
                if not transient or attempt >= attempts:
                    raise
                self.stats.record_read_retry()
                logger.warning("Retrying %s after storage error (attempt %d/%d)", op_name, attempt, attempts)
                time.sleep(self.read_retry_backoff_s * (2 ** (attempt - 1)))
        raise AssertionError("unreachable")

    def _run(self, operation: str, body: Callable[[RequestFlow], T]) -> T:
        flow = RequestFlow(operation)
        try:
            result = body(flow)
        except ChainlogError as e:
            self._record_failure(operation, flow, e)
            raise
        flow.advance(Stage.RESPONDED)
        self.stats.record_operation(operation, "ok")
        metrics.record_operation(operation, "ok")
        return result

    def _record_failure(self, operation: str, flow: RequestFlow, e: ChainlogError) -> None:
        logger.debug("%s failed at stage %s: %s", operation, flow.stage.value, e.kind.value)
        self.stats.record_operation(operation, e.kind.value)
        metrics.record_operation(operation, e.kind.value)
        if e.kind.is_identity_failure:
            self.stats.record_identity_rejected(e.kind.value)
            metrics.record_identity_reject(e.kind.value, self.extractor.mode.value)
        elif e.kind is ErrorKind.UNAUTHORIZED:
            self.stats.record_unauthorized()
        elif e.kind is ErrorKind.CONFLICT:
            self.stats.record_conflict()
        elif e.details.get("reason") == "LOCKDOWN_ACTIVE":
            self.stats.record_storage_lockdown()

    def _authenticate(self, flow: RequestFlow, request: PeerRequest) -> Caller:
        identity = self.extractor.extract(request)
        caller_id = identity.fingerprint
        if self.service_keys is not None and self.service_keys.enabled():
            caller_id = self.service_keys.caller_id(request.header(API_KEY_HEADER), identity.fingerprint)
        flow.advance(Stage.AUTHENTICATED)
        return Caller(identity=identity, caller_id=caller_id)

    def _authorize(self, flow: RequestFlow, request: PeerRequest) -> Caller:
        caller = self._authenticate(flow, request)
        self._read("authorize", lambda: self.gate.authorize(caller.caller_id))
        flow.advance(Stage.AUTHORIZED)
        return caller

    # ---------------------------
    # Operations
    # ---------------------------

    def identify(self, request: PeerRequest) -> ClientIdentity:
        """Authenticate only. Touches neither the registry nor the trail."""
        return self._run("identify", lambda flow: self._authenticate(flow, request).identity)

    def register(self, request: PeerRequest, subject_id: str, action: str, payload: Any = None) -> AuditRecord:
        """Append a record binding (subject_id, action, caller fingerprint)."""

        def body(flow: RequestFlow) -> AuditRecord:
            caller = self._authorize(flow, request)
            record = AuditRecord.new(
                subject_id=binding.validate_subject_id(subject_id),
                action=binding.validate_action(action),
                caller_fingerprint=caller.fingerprint,
                author_id=caller.caller_id,
                payload=payload,
            )
            flow.advance(Stage.BOUND)
            stored = self.store.insert(record)
            flow.advance(Stage.STORED)
            logger.info("Recorded %s for subject %s (hash %s)", stored.action, stored.subject_id, stored.digest)
            return stored

        return self._run("register", body)

    def verify(self, request: PeerRequest, subject_id: str, action: str) -> VerifyResult:
        """Check that the caller's (subject_id, action) was recorded under its own certificate.

        Absent record is NotFound. A record that is found but does not bind the
        expected values is reported as valid=False, not as an error.
        """

        def body(flow: RequestFlow) -> VerifyResult:
            caller = self._authorize(flow, request)
            subject = binding.validate_subject_id(subject_id)
            act = binding.validate_action(action)
            expected = binding.bind(subject, act, caller.fingerprint)
            flow.advance(Stage.BOUND)
            record = self._read("find_by_digest", lambda: self.store.find_by_digest(expected))
            if record is None:
                raise not_found("Log entry not found", hash=expected)
            valid = binding.verify(record, subject, act, caller.fingerprint)
            flow.advance(Stage.VERIFIED)
            self.stats.record_verification(valid)
            metrics.record_verification(valid)
            if not valid:
                logger.warning("Verification mismatch for hash %s", expected)
            return VerifyResult(valid=valid, digest=record.digest, record=record)

        return self._run("verify", body)

    def by_uuid(
        self, request: PeerRequest, subject_id: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[AuditRecord]:
        def body(flow: RequestFlow) -> List[AuditRecord]:
            self._authorize(flow, request)
            return self._read(
                "find_by_subject", lambda: self.store.find_by_subject(subject_id, limit=limit, offset=offset)
            )

        return self._run("by_uuid", body)

    def by_action(
        self, request: PeerRequest, action: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[AuditRecord]:
        def body(flow: RequestFlow) -> List[AuditRecord]:
            self._authorize(flow, request)
            return self._read("find_by_action", lambda: self.store.find_by_action(action, limit=limit, offset=offset))

        return self._run("by_action", body)

    def by_fingerprint(
        self, request: PeerRequest, fingerprint: str, *, limit: Optional[int] = None, offset: int = 0
    ) -> List[AuditRecord]:
        def body(flow: RequestFlow) -> List[AuditRecord]:
            self._authorize(flow, request)
            return self._read(
                "find_by_fingerprint",
                lambda: self.store.find_by_fingerprint(normalize_caller_id(fingerprint), limit=limit, offset=offset),
            )

        return self._run("by_fingerprint", body)

    def all_records(self, request: PeerRequest, *, limit: Optional[int] = None, offset: int = 0) -> List[AuditRecord]:
        def body(flow: RequestFlow) -> List[AuditRecord]:
            self._authorize(flow, request)
            return self._read("all", lambda: self.store.all(limit=limit, offset=offset))

        return self._run("all_records", body)

    def register_caller(self, request: PeerRequest, new_caller_id: str) -> RegisteredCaller:
        """Controller-only: grant `new_caller_id` access to the trail."""

        def body(flow: RequestFlow) -> RegisteredCaller:
            caller = self._authenticate(flow, request)
            registered = self.gate.register(caller.caller_id, new_caller_id)
            flow.advance(Stage.STORED)
            return registered

        return self._run("register_caller", body)
