"""Operational statistics for the gateway.

Lightweight in-memory counters and a snapshot endpoint.

Notes
-----
- Counters reset on process restart.
- Do not treat these as audit evidence. The trail itself is the evidence.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Trail operations
    operations_total: int = 0
    operations_by_outcome: Dict[str, int] = field(default_factory=dict)
    operations_by_name: Dict[str, int] = field(default_factory=dict)

    # Verification results
    verifications_valid_total: int = 0
    verifications_invalid_total: int = 0

    # Rejections
    identity_rejected_total: int = 0
    identity_rejected_by_kind: Dict[str, int] = field(default_factory=dict)
    unauthorized_total: int = 0
    conflicts_total: int = 0

    # Fail-closed signals
    storage_lockdown_total: int = 0
    read_retries_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_operation(self, name: str, outcome: str) -> None:
        with self._lock:
            self._c.operations_total += 1
            self._inc_map(self._c.operations_by_outcome, outcome or "unknown")
            self._inc_map(self._c.operations_by_name, name or "unknown")

    def record_verification(self, valid: bool) -> None:
        with self._lock:
            if valid:
                self._c.verifications_valid_total += 1
            else:
                self._c.verifications_invalid_total += 1

    def record_identity_rejected(self, kind: str) -> None:
        with self._lock:
            self._c.identity_rejected_total += 1
            self._inc_map(self._c.identity_rejected_by_kind, kind or "unknown")

    def record_unauthorized(self) -> None:
        with self._lock:
            self._c.unauthorized_total += 1

    def record_conflict(self) -> None:
        with self._lock:
            self._c.conflicts_total += 1

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def record_read_retry(self) -> None:
        with self._lock:
            self._c.read_retries_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "operations_total": c.operations_total,
                "operations_by_outcome": dict(c.operations_by_outcome),
                "operations_by_name": dict(c.operations_by_name),
                "verifications_valid_total": c.verifications_valid_total,
                "verifications_invalid_total": c.verifications_invalid_total,
                "identity_rejected_total": c.identity_rejected_total,
                "identity_rejected_by_kind": dict(c.identity_rejected_by_kind),
                "unauthorized_total": c.unauthorized_total,
                "conflicts_total": c.conflicts_total,
                "storage_lockdown_total": c.storage_lockdown_total,
                "read_retries_total": c.read_retries_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
