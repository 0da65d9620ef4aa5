#!/usr/bin/env python3
"""Operator tooling for principals and lock records.

Usage:
    # Create a principal (the secret is argon2-hashed before it is stored):
    python scripts/manage_principals.py create --national-id 1012345678 \
        --phone 0512345678 --dob 1990-04-01 --secret 'CorrectHorse9!'

    # Inspect or clear locks:
    python scripts/manage_principals.py lock-state <principal_id>
    python scripts/manage_principals.py support-unlock <principal_id> --operator alice
    python scripts/manage_principals.py clear-soft-lock <principal_id>

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Snapshot directory for the memory store
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from datetime import date
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _build_components():
    # Import here to avoid loading config before env vars are set
    from authflow.config import get_settings
    from authflow.service.credentials import CredentialVerifier
    from authflow.service.lockout import LockoutTracker
    from authflow.storage.memory import MemoryStore
    from authflow.storage.postgres import PostgresStore

    settings = get_settings()
    store = (
        MemoryStore(fs_root=settings.shared_fs_root)
        if settings.use_memory_store
        else PostgresStore(settings.database_url)
    )
    lockout = LockoutTracker(store, settings)
    credentials = CredentialVerifier(store, lockout, settings)
    return settings, store, lockout, credentials


def create_principal(args: argparse.Namespace) -> dict:
    from authflow.service.identifiers import is_national_id, normalize_phone

    settings, store, _, credentials = _build_components()
    if args.national_id and not is_national_id(args.national_id):
        raise ValueError("national id must be 10 digits starting with 1 or 2")
    phone = None
    if args.phone:
        phone = normalize_phone(
            args.phone,
            country_code=settings.phone_country_code,
            local_pattern=settings.phone_local_pattern,
        )
        if phone is None:
            raise ValueError(f"unrecognised phone number: {args.phone}")
    dob = date.fromisoformat(args.dob).isoformat() if args.dob else None

    credential_hash, algo = credentials.hash_secret(args.secret)
    principal = store.create_principal(
        credential_hash=credential_hash,
        credential_algo=algo,
        phone=phone,
        email=args.email,
        national_id=args.national_id,
        date_of_birth=dob,
        locale=args.locale,
    )
    return {"principal_id": principal.id, "identifiers": principal.identifiers}


def _lock_summary(record) -> dict:
    return {
        "subject": record.subject,
        "state": record.state,
        "failures": record.failures,
        "soft_lock_count": record.soft_lock_count,
        "locked_at": record.locked_at.isoformat() if record.locked_at else None,
    }


def show_lock_state(args: argparse.Namespace) -> dict:
    _, _, lockout, _ = _build_components()
    return _lock_summary(lockout.current_state(args.principal_id))


def support_unlock(args: argparse.Namespace) -> dict:
    _, store, lockout, _ = _build_components()
    if store.get_principal(args.principal_id) is None:
        raise ValueError(f"principal {args.principal_id} not found")
    return _lock_summary(lockout.support_unlock(args.principal_id, operator=args.operator))


def clear_soft_lock(args: argparse.Namespace) -> dict:
    _, _, lockout, _ = _build_components()
    return _lock_summary(lockout.clear_soft_lock(args.principal_id))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage authflow principals and lock records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a principal")
    create.add_argument("--national-id")
    create.add_argument("--phone")
    create.add_argument("--email")
    create.add_argument("--dob", help="Date of birth as YYYY-MM-DD")
    create.add_argument("--locale", default="ar")
    create.add_argument(
        "--secret",
        default=os.environ.get("PRINCIPAL_SECRET"),
        help="Initial secret (or set PRINCIPAL_SECRET env var)",
    )
    create.set_defaults(handler=create_principal)

    state = sub.add_parser("lock-state", help="Show a principal's lock record")
    state.add_argument("principal_id")
    state.set_defaults(handler=show_lock_state)

    unlock = sub.add_parser("support-unlock", help="Clear any lock, including a hard lock")
    unlock.add_argument("principal_id")
    unlock.add_argument("--operator", required=True, help="Operator recorded in the audit log")
    unlock.set_defaults(handler=support_unlock)

    soft = sub.add_parser("clear-soft-lock", help="Clear a soft lock only")
    soft.add_argument("principal_id")
    soft.set_defaults(handler=clear_soft_lock)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.command == "create":
        if not args.secret:
            print("Error: --secret or PRINCIPAL_SECRET environment variable required")
            sys.exit(1)
        if not (args.national_id or args.phone or args.email):
            print("Error: at least one of --national-id, --phone or --email is required")
            sys.exit(1)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/authflow")

    try:
        result = args.handler(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
