from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import json
import sys

from backupvault.core.errors import BackupVaultError
from backupvault.core.logging import configure_logging
from backupvault.services.engine import build_vault


async def _run_restore(args: argparse.Namespace) -> int:
    vault = build_vault()
    await vault.initialize()
    try:
        if args.release_lock:
            released = await vault.release_stale_lock(force=args.force)
            print(json.dumps({"lock_released": released}))
            return 0 if released else 1
        if args.point_in_time:
            result = await vault.restore_point_in_time(datetime.fromisoformat(args.point_in_time))
        elif args.tables:
            tables = [item.strip() for item in args.tables.split(",") if item.strip()]
            result = await vault.restore_selective(args.artifact, tables)
        else:
            result = await vault.restore_complete(args.artifact)
    except BackupVaultError as exc:
        print(json.dumps({"status": "failed", "code": exc.code, "message": str(exc)}))
        return 1
    finally:
        await vault.close()
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.verified else 2


def main() -> None:
    # Restore the target database from an artifact or to a point in time.
    parser = argparse.ArgumentParser(description="Restore from encrypted backups")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--artifact", help="artifact id for a complete or selective restore")
    group.add_argument("--point-in-time", help="ISO-8601 timestamp; naive values are UTC")
    group.add_argument("--release-lock", action="store_true", help="release a stale recovery lock")
    parser.add_argument("--tables", default=None, help="comma-separated tables for a selective restore")
    parser.add_argument("--force", action="store_true", help="release the lock even if a restore looks active")
    args = parser.parse_args()
    if args.tables and not args.artifact:
        parser.error("--tables requires --artifact")
    configure_logging()
    sys.exit(asyncio.run(_run_restore(args)))


if __name__ == "__main__":
    main()
