from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys

from caseregistry.persistence.db import SessionLocal
from caseregistry.persistence.repos.api_keys import issue_api_key
from caseregistry.services.audit import record_audit
from caseregistry.services.auth.api_keys import ROLES


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create a user API key for the case registry")
    parser.add_argument(
        "--role",
        action="append",
        required=True,
        help=f"Role to grant; repeat for several ({', '.join(ROLES)})",
    )
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--expires-days", type=int, default=None, help="Expire the key after N days")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    expires_at = None
    if args.expires_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)

    async with SessionLocal() as session:
        issued = await issue_api_key(
            session,
            roles=args.role,
            name=args.name,
            user_id=args.user_id,
            email=args.email,
            expires_at=expires_at,
        )
        await record_audit(
            session=session,
            user_id=issued.user_id,
            action="API_KEY_CREATE",
            description=f"Issued API key '{args.name}'",
            details={"key_id": issued.key_id, "granted_roles": issued.roles},
        )
        await session.commit()

    print("API key created:")
    print(f"  user_id: {issued.user_id}")
    print(f"  key_id: {issued.key_id}")
    print(f"  roles: {', '.join(issued.roles)}")
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except ValueError as exc:
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
