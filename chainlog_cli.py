#!/usr/bin/env python3
"""
Chainlog - Command Line Interface

Usage:
    chainlog serve [--host H] [--port P]        Run the HTTP gateway
    chainlog verify-store                       Recompute every digest in the trail
    chainlog register-caller <id>               Authorize a caller (as the controller)
    chainlog list [--subject S | --action A | --fingerprint F] [--limit N]
                                                Show audit records, oldest first
    chainlog fingerprint <cert.pem|cert.der>    Print the SHA-256 fingerprint of a certificate

The database path defaults to CHAINLOG_DB_PATH (or chainlog.db).
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from chainlog.access import CallerRegistry, normalize_caller_id
from chainlog.config import GatewaySettings
from chainlog.crypto import load_certificate, name_to_dict
from chainlog.errors import ChainlogError
from chainlog.identity import fingerprint_certificate
from chainlog.store import AuditRecord, AuditTrailStore


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logging.getLogger("chainlog").setLevel(level)


def open_store(args) -> AuditTrailStore:
    return AuditTrailStore(args.db)


def cmd_serve(args) -> int:
    """Run the HTTP gateway."""
    from chainlog.server import serve

    if args.db:
        os.environ["CHAINLOG_DB_PATH"] = args.db
    return serve(
        host=args.host,
        port=args.port,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
        ssl_ca_certs=args.ssl_ca_certs,
    )


def cmd_verify_store(args) -> int:
    """Recompute and check every stored digest."""
    store = open_store(args)

    print(f"Verifying audit trail in {args.db}...")
    print(f"Total records: {store.count()}")

    ok, reason, count = store.verify_integrity()
    if ok:
        print(f"✓ {count} record(s) verified")
        return 0
    print(f"✗ Integrity check FAILED at record {count}: {reason}")
    return 1


def cmd_register_caller(args) -> int:
    """Register a caller on the controller's behalf."""
    settings = GatewaySettings.from_env()
    if not settings.controller_id:
        print("✗ CHAINLOG_CONTROLLER_ID must be set to register callers")
        return 2
    registry = CallerRegistry(open_store(args), controller_id=settings.controller_id)
    try:
        caller = registry.register(settings.controller_id, args.caller_id)
    except ChainlogError as e:
        print(f"✗ {e.message}")
        return 1
    print(f"✓ Registered {caller.id} at {caller.registered_at}")
    return 0


def _print_records(records: List[AuditRecord], as_json: bool) -> None:
    if as_json:
        print(json.dumps([r.as_dict() for r in records], indent=2, sort_keys=True))
        return

    print(f"\n{'='*60}")
    print(f"AUDIT RECORDS ({len(records)})")
    print(f"{'='*60}")
    for rec in records:
        print(f"\n{rec.created_at} | {rec.subject_id}")
        print(f"  Action: {rec.action}, Author: {rec.author_id}")
        print(f"  Fingerprint: {rec.caller_fingerprint[:16]}...")
        print(f"  Hash: {rec.digest[:16]}...")
    print(f"{'='*60}\n")


def cmd_list(args) -> int:
    """Show audit records, oldest first."""
    store = open_store(args)
    try:
        if args.subject:
            records = store.find_by_subject(args.subject, limit=args.limit, offset=args.offset)
        elif args.action:
            records = store.find_by_action(args.action, limit=args.limit, offset=args.offset)
        elif args.fingerprint:
            records = store.find_by_fingerprint(
                normalize_caller_id(args.fingerprint), limit=args.limit, offset=args.offset
            )
        else:
            records = store.all(limit=args.limit, offset=args.offset)
    except ChainlogError as e:
        print(f"✗ {e.message}")
        return 1
    _print_records(records, args.json)
    return 0


def cmd_fingerprint(args) -> int:
    """Print the identity a certificate would present."""
    try:
        cert = load_certificate(Path(args.cert).read_bytes())
    except (OSError, ValueError) as e:
        print(f"✗ Cannot read certificate {args.cert}: {e}")
        return 1
    info = {
        "fingerprint": fingerprint_certificate(cert),
        "subject": name_to_dict(cert.subject),
        "issuer": name_to_dict(cert.issuer),
        "validFrom": cert.not_valid_before_utc.isoformat(),
        "validTo": cert.not_valid_after_utc.isoformat(),
        "serialNumber": format(cert.serial_number, "X"),
    }
    if args.json:
        print(json.dumps(info, indent=2, sort_keys=True))
    else:
        print(info["fingerprint"])
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Chainlog CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("CHAINLOG_DB_PATH") or "chainlog.db",
        help="Path to audit database",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.add_argument("--ssl-certfile", default=None, help="Server certificate (direct mode)")
    serve_parser.add_argument("--ssl-keyfile", default=None, help="Server private key (direct mode)")
    serve_parser.add_argument("--ssl-ca-certs", default=None, help="CA bundle for client certificates")
    serve_parser.set_defaults(func=cmd_serve)

    # verify-store command
    verify_parser = subparsers.add_parser("verify-store", help="Recompute every digest in the trail")
    verify_parser.set_defaults(func=cmd_verify_store)

    # register-caller command
    reg_parser = subparsers.add_parser("register-caller", help="Authorize a caller id")
    reg_parser.add_argument("caller_id", help="Service id or certificate fingerprint")
    reg_parser.set_defaults(func=cmd_register_caller)

    # list command
    list_parser = subparsers.add_parser("list", help="Show audit records")
    group = list_parser.add_mutually_exclusive_group()
    group.add_argument("--subject", help="Filter by subject id")
    group.add_argument("--action", help="Filter by action (create|update|delete)")
    group.add_argument("--fingerprint", help="Filter by caller fingerprint")
    list_parser.add_argument("--limit", type=int, default=None, help="Maximum number of records")
    list_parser.add_argument("--offset", type=int, default=0, help="Records to skip")
    list_parser.add_argument("--json", action="store_true", help="Print JSON")
    list_parser.set_defaults(func=cmd_list)

    # fingerprint command
    fp_parser = subparsers.add_parser("fingerprint", help="Fingerprint a certificate file")
    fp_parser.add_argument("cert", help="PEM or DER certificate")
    fp_parser.add_argument("--json", action="store_true", help="Print subject, issuer and validity too")
    fp_parser.set_defaults(func=cmd_fingerprint)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
