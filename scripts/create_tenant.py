from __future__ import annotations

import argparse
import asyncio
import sys

from twofold.core.errors import TwofoldError
from twofold.core.logging import configure_logging
from twofold.persistence.db import SessionLocal, engine
from twofold.services.directory import create_tenant


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a tenant and its first admin")
    parser.add_argument("--name", required=True, help="Display name of the tenant")
    parser.add_argument("--owner", required=True, help="Principal id of the owning admin")
    parser.add_argument("--owner-email", default=None, help="Owner email, used to match invites")
    parser.add_argument("--description", default=None)
    parser.add_argument("--public", action="store_true", help="Mark the tenant as publicly shareable")
    parser.add_argument("--password", default=None, help="Optional share-link password")
    return parser


async def _create(args: argparse.Namespace) -> int:
    try:
        async with SessionLocal() as session:
            tenant = await create_tenant(
                session,
                principal_id=args.owner,
                name=args.name,
                description=args.description,
                is_public=args.public,
                access_password=args.password,
                email=args.owner_email,
            )
    finally:
        await engine.dispose()
    print("Tenant created:")
    print(f"  id: {tenant.id}")
    print(f"  slug: {tenant.slug}")
    print(f"  invite_code: {tenant.invite_code}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create(args))
    except TwofoldError as exc:
        print(f"create_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
