from __future__ import annotations

import argparse
import asyncio
import json

from backupvault.core.logging import configure_logging
from backupvault.services.engine import build_vault


async def _run_prune(purge_exports: bool, check_stuck: bool) -> None:
    # Apply retention: archive, delete or hold every artifact in the inventory.
    vault = build_vault()
    await vault.initialize()
    try:
        result = await vault.apply_retention()
        report = {"retention": result.to_dict()}
        if purge_exports:
            report["purged_exports"] = await vault.purge_expired_exports()
        if check_stuck:
            report["stuck_recoveries"] = await vault.check_stuck_recovery()
    finally:
        await vault.close()
    print(json.dumps(report, indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply backup retention policy")
    parser.add_argument("--skip-exports", action="store_true", help="do not purge expired portability exports")
    parser.add_argument("--check-stuck", action="store_true", help="alert on long-running recovery operations")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run_prune(not args.skip_exports, args.check_stuck))


if __name__ == "__main__":
    main()
