"""Chainlog package.

A certificate-bound, hash-verifiable audit trail:

- Client identity from mutual TLS (direct) or a terminating proxy (proxied)
- Controller-managed registry of authorized callers
- Append-only records whose digest binds subject, action and caller fingerprint
- Verification that detects tampering with any bound field

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from chainlog import AuditEngine, AuditTrailStore, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in `pyproject.toml`,
    so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "AuditEngine",
    "AuditRecord",
    "AuditTrailStore",
    "CallerRegistry",
    "ChainlogError",
    "ErrorKind",
    "bind",
    "build_engine",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AuditEngine": ("chainlog.engine", "AuditEngine"),
    "AuditRecord": ("chainlog.store", "AuditRecord"),
    "AuditTrailStore": ("chainlog.store", "AuditTrailStore"),
    "CallerRegistry": ("chainlog.access", "CallerRegistry"),
    "ChainlogError": ("chainlog.errors", "ChainlogError"),
    "ErrorKind": ("chainlog.errors", "ErrorKind"),
    "bind": ("chainlog.binding", "bind"),
    "build_engine": ("chainlog.server", "build_engine"),
    "create_app": ("chainlog.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'chainlog' has no attribute {name!r}")


def __dir__() -> list[str]:
    # Include lazy exports for IDE/autocomplete.
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
