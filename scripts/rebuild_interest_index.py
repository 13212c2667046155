#!/usr/bin/env python3
"""
AniMatch — Interest index maintenance CLI

Subcommands:

  migrate   — Copy legacy favorite fields (``favorites`` / ``favourite_animes``)
              into ``interests`` for every user still on the old shape.
  rebuild   — Re-derive every ``interest_index`` entry from users' interests.
  audit     — Check every user's matches for symmetry, optionally healing.

Usage examples
--------------
  # One-time migration followed by a full rebuild
  python scripts/rebuild_interest_index.py migrate
  python scripts/rebuild_interest_index.py rebuild

  # Heal half-written matches
  python scripts/rebuild_interest_index.py audit --heal
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

# Ensure the project root is importable
sys.path.insert(0, ".")

from animatch.config import get_settings
from animatch.services.matching_service import MatchingService, build_matching_service
from animatch.services.profile_repository import USERS_COLLECTION


async def _prepare() -> MatchingService:
    settings = get_settings()
    if settings.STORE_BACKEND == "sql":
        from animatch.database import create_all

        await create_all()
    return build_matching_service(settings)


async def _dispose() -> None:
    if get_settings().STORE_BACKEND == "sql":
        from animatch.database import get_engine

        await get_engine().dispose()


# ──────────────────────────────────────────────────────────────────────────────
# Subcommands
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_migrate(args: argparse.Namespace) -> None:
    service = await _prepare()
    try:
        migrated = await service.profiles.migrate_legacy_interests()
        print(f"Migrated {migrated} user document(s) to 'interests'.")
        if args.rebuild:
            stats = await service.rebuild_interest_index()
            print(json.dumps(stats, indent=2))
    finally:
        await _dispose()


async def cmd_rebuild(args: argparse.Namespace) -> None:
    service = await _prepare()
    try:
        stats = await service.rebuild_interest_index()
        print(json.dumps(stats, indent=2))
    finally:
        await _dispose()


async def cmd_audit(args: argparse.Namespace) -> None:
    service = await _prepare()
    totals = {"users": 0, "checked": 0, "asymmetric": 0, "healed": 0}
    try:
        async for user_id, _doc in service.store.stream(USERS_COLLECTION):
            result = await service.audit_matches(user_id, heal=args.heal)
            totals["users"] += 1
            totals["checked"] += result.checked
            totals["asymmetric"] += len(result.asymmetric)
            totals["healed"] += len(result.healed)
            if args.verbose and result.asymmetric:
                print(f"{user_id}: asymmetric={result.asymmetric} healed={result.healed}")
        print(json.dumps(totals, indent=2))
    finally:
        await service.propagator.wait_for_hooks()
        await _dispose()


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="AniMatch interest index migration, rebuild and match audit.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    # ── migrate ───────────────────────────────────────────────────────
    migrate_parser = subparsers.add_parser(
        "migrate",
        help="Convert legacy favorite fields into 'interests'.",
    )
    migrate_parser.add_argument(
        "--rebuild",
        action="store_true",
        default=False,
        help="Rebuild the interest index after migrating.",
    )

    # ── rebuild ───────────────────────────────────────────────────────
    subparsers.add_parser(
        "rebuild",
        help="Re-derive the interest index from users' interests.",
    )

    # ── audit ─────────────────────────────────────────────────────────
    audit_parser = subparsers.add_parser(
        "audit",
        help="Check every user's matches for symmetry.",
    )
    audit_parser.add_argument(
        "--heal",
        action="store_true",
        default=False,
        help="Re-propagate asymmetric pairs.",
    )
    audit_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=False,
        help="Print every user with an asymmetric match.",
    )

    args = parser.parse_args()

    if args.command == "migrate":
        asyncio.run(cmd_migrate(args))
    elif args.command == "rebuild":
        asyncio.run(cmd_rebuild(args))
    elif args.command == "audit":
        asyncio.run(cmd_audit(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
