"""Environment-driven settings for the chainlog gateway.

Numeric values that fail to parse fall back to their defaults and are clamped.
Security-relevant values (certificate mode) fail closed: an unknown mode is an
error at startup, never a silent fallback.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .access import normalize_caller_id
from .identity import DEFAULT_PROXY_HEADER_PREFIX

_TRUTHY = ("1", "true", "yes", "on")
_CERT_MODES = ("direct", "proxied", "nginx", "proxy")


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _get_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name) or str(default)).strip())
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name) or str(default)).strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class GatewaySettings:
    env: str = "dev"
    cert_mode: str = "proxied"
    controller_id: Optional[str] = None
    bootstrap_callers: Tuple[str, ...] = field(default_factory=tuple)
    db_path: str = "chainlog.db"
    proxy_header_prefix: str = DEFAULT_PROXY_HEADER_PREFIX
    proxy_require_validity: bool = False
    max_request_bytes: int = 10 * 1024 * 1024
    max_payload_bytes: int = 1024 * 1024
    read_retry_attempts: int = 2
    read_retry_backoff_s: float = 0.05
    stats_token: str = ""
    stats_require_auth: bool = False
    metrics_token: str = ""
    cert_debug: bool = False

    @property
    def production(self) -> bool:
        return self.env in ("prod", "production")

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        env = str(os.getenv("CHAINLOG_ENV", os.getenv("ENV", "dev"))).strip().lower() or "dev"
        production = env in ("prod", "production")

        cert_mode = (os.getenv("CHAINLOG_CERT_MODE") or cls.cert_mode).strip().lower()
        if cert_mode not in _CERT_MODES:
            raise ValueError(f"CHAINLOG_CERT_MODE must be 'direct' or 'proxied', got {cert_mode!r}")

        controller_raw = (os.getenv("CHAINLOG_CONTROLLER_ID") or "").strip()
        controller_id = normalize_caller_id(controller_raw) if controller_raw else None

        bootstrap = tuple(
            normalize_caller_id(part)
            for part in (os.getenv("CHAINLOG_BOOTSTRAP_CALLERS") or "").split(",")
            if part.strip()
        )

        prefix = (os.getenv("CHAINLOG_PROXY_HEADER_PREFIX") or DEFAULT_PROXY_HEADER_PREFIX).strip().lower()

        max_request_bytes = _get_int("CHAINLOG_MAX_REQUEST_BYTES", cls.max_request_bytes)
        if max_request_bytes < 1024:
            max_request_bytes = 1024
        max_payload_bytes = _get_int("CHAINLOG_MAX_PAYLOAD_BYTES", cls.max_payload_bytes)
        max_payload_bytes = max(1, min(max_payload_bytes, max_request_bytes))

        attempts = max(0, min(_get_int("CHAINLOG_READ_RETRY_ATTEMPTS", cls.read_retry_attempts), 10))
        backoff = _get_float("CHAINLOG_READ_RETRY_BACKOFF_SECONDS", cls.read_retry_backoff_s)
        backoff = max(0.0, min(backoff, 5.0))

        raw_require = os.getenv("CHAINLOG_STATS_REQUIRE_AUTH")
        if raw_require is None:
            stats_require_auth = production
        else:
            stats_require_auth = raw_require.strip().lower() in _TRUTHY

        return cls(
            env=env,
            cert_mode=cert_mode,
            controller_id=controller_id,
            bootstrap_callers=bootstrap,
            db_path=(os.getenv("CHAINLOG_DB_PATH") or cls.db_path).strip(),
            proxy_header_prefix=prefix,
            proxy_require_validity=_get_bool("CHAINLOG_PROXY_REQUIRE_VALIDITY"),
            max_request_bytes=max_request_bytes,
            max_payload_bytes=max_payload_bytes,
            read_retry_attempts=attempts,
            read_retry_backoff_s=backoff,
            stats_token=(os.getenv("CHAINLOG_STATS_TOKEN") or "").strip(),
            stats_require_auth=stats_require_auth,
            metrics_token=(os.getenv("CHAINLOG_METRICS_TOKEN") or "").strip(),
            # Never in production, whatever the flag says.
            cert_debug=_get_bool("CHAINLOG_CERT_DEBUG") and not production,
        )
