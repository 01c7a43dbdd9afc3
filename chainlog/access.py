"""Caller authorization for chainlog.

Two pieces:

- `CallerRegistry` is the authorization gate. The controller identity is always
  allowed; any identity in the registered-caller set is allowed; everything else
  is Unauthorized. Only the controller may register new callers.
- `ServiceKeyAuth` optionally maps an ``X-Api-Key`` header to a service id, so a
  deployment can authorize named services instead of raw certificate
  fingerprints. The certificate is still required either way.

Env vars:
  - CHAINLOG_SERVICE_KEYS_JSON: JSON dict mapping api_key -> service_id
  - CHAINLOG_SERVICE_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import ChainlogError, internal_error, unauthorized, validation_error
from .identity import normalize_fingerprint
from .store import AuditTrailStore, RegisteredCaller

logger = logging.getLogger("chainlog.access")

ENV_SERVICE_KEYS_JSON = "CHAINLOG_SERVICE_KEYS_JSON"
ENV_SERVICE_KEYS_FILE = "CHAINLOG_SERVICE_KEYS_FILE"

MAX_CALLER_ID_LENGTH = 256

_FINGERPRINT_FORM = re.compile(r"^[0-9A-Fa-f]{2}(?::?[0-9A-Fa-f]{2}){15,63}$")


def normalize_caller_id(value: str) -> str:
    """Caller ids written as a certificate fingerprint are used in normalized form.

    Lets operators paste ``AB:CD:...`` from openssl output into the controller
    or bootstrap settings and still match the extracted identity. Only bare hex
    and colon-separated hex pairs count as fingerprints; anything else (UUIDs,
    service names) is kept verbatim. The gate applies this on both the
    registration and the lookup side, so an id that registers always authorizes.
    """
    value = value.strip()
    if not _FINGERPRINT_FORM.match(value):
        return value
    try:
        return normalize_fingerprint(value)
    except ChainlogError:
        return value


def validate_caller_id(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise validation_error("Service id is required")
    value = value.strip()
    if len(value) > MAX_CALLER_ID_LENGTH:
        raise validation_error("Service id is too long", max_length=MAX_CALLER_ID_LENGTH)
    if not value.isprintable() or any(ch.isspace() for ch in value):
        raise validation_error("Service id must not contain whitespace or control characters")
    return value


class CallerRegistry:
    """Authorization gate over the store's registered-caller set."""

    def __init__(self, store: AuditTrailStore, controller_id: Optional[str] = None):
        self.store = store
        self.controller_id = normalize_caller_id(controller_id) if controller_id else None

    def is_controller(self, caller_id: Optional[str]) -> bool:
        if not self.controller_id or not caller_id:
            return False
        caller_id = normalize_caller_id(caller_id)
        return hmac.compare_digest(caller_id.encode("utf-8"), self.controller_id.encode("utf-8"))

    def is_authorized(self, caller_id: Optional[str]) -> bool:
        if not caller_id:
            return False
        if self.is_controller(caller_id):
            return True
        return self.store.has_caller(normalize_caller_id(caller_id))

    def authorize(self, caller_id: Optional[str]) -> None:
        if not self.is_authorized(caller_id):
            raise unauthorized()

    def register(self, requester_id: Optional[str], new_caller_id: str) -> RegisteredCaller:
        """Register `new_caller_id` on behalf of `requester_id`.

        Non-controllers get Unauthorized before the target is even looked at, so
        they learn nothing about which ids are already registered.
        """
        if not self.is_controller(requester_id):
            raise unauthorized()
        new_caller_id = normalize_caller_id(validate_caller_id(new_caller_id))
        caller = self.store.add_caller(new_caller_id, registered_by=str(requester_id))
        logger.info("Registered caller %s", new_caller_id)
        return caller

    def bootstrap(self, caller_ids: Iterable[str]) -> List[str]:
        """Register startup callers on the controller's behalf. Existing ids are skipped."""
        added: List[str] = []
        registered_by = self.controller_id or "bootstrap"
        for raw in caller_ids:
            caller_id = normalize_caller_id(validate_caller_id(raw))
            if self.store.has_caller(caller_id):
                continue
            self.store.add_caller(caller_id, registered_by=registered_by)
            added.append(caller_id)
        if added:
            logger.info("Bootstrapped %d caller(s)", len(added))
        return added


@dataclass(frozen=True)
class ServiceKeyAuth:
    """Service key authentication config."""

    key_to_service: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ServiceKeyAuth":
        """Load the service key mapping from env/file.

        If configuration is *present* but malformed, the instance carries
        config_error so that every request fails closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_SERVICE_KEYS_JSON)
        file_path = os.getenv(ENV_SERVICE_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_SERVICE_KEYS_JSON} must be a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError(f"{ENV_SERVICE_KEYS_FILE} must contain a JSON object")
                mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError) as e:
            logger.error("Service key configuration invalid: %s", e)
            config_error = "SERVICE_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(key_to_service=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def resolve_identity(self, api_key: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (service_id, error). A non-None error means reject the request."""
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return None, None
        if not api_key:
            return None, "API_KEY_REQUIRED"
        for key, service_id in self.key_to_service.items():
            if hmac.compare_digest(key.encode("utf-8"), api_key.encode("utf-8")):
                return service_id, None
        return None, "API_KEY_INVALID"

    def caller_id(self, api_key: Optional[str], fingerprint: str) -> str:
        """Pick the id to authorize: the mapped service id, else the fingerprint."""
        if self.config_error:
            raise internal_error("Service key configuration invalid", reason=self.config_error)
        service_id, err = self.resolve_identity(api_key)
        if err:
            logger.warning("Service key rejected: %s", err)
            raise unauthorized()
        return service_id or fingerprint
