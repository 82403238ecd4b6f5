from __future__ import annotations

import argparse
import asyncio
import json
import sys

from backupvault.core.errors import BackupFailedError
from backupvault.core.logging import configure_logging
from backupvault.services.engine import build_vault


async def _run_backup(backup_type: str) -> int:
    # Execute one backup job from the CLI; intended to be called by cron.
    vault = build_vault()
    await vault.initialize()
    try:
        if backup_type == "full":
            artifact = await vault.run_full_backup()
        elif backup_type == "incremental":
            artifact = await vault.run_incremental_backup()
        else:
            artifact = await vault.run_differential_backup()
    except BackupFailedError as exc:
        print(
            json.dumps(
                {
                    "status": "failed",
                    "code": exc.code,
                    "job_id": exc.job_id,
                    "failed_tables": exc.failed_tables,
                    "retry_eligible": exc.retry_eligible,
                    "message": str(exc),
                }
            )
        )
        return 1
    finally:
        await vault.close()
    if artifact is None:
        print(json.dumps({"status": "noop", "backup_type": backup_type}))
        return 0
    print(
        json.dumps(
            {
                "status": "completed",
                "artifact_id": artifact.id,
                "backup_type": artifact.artifact_type,
                "size_bytes": artifact.size_bytes,
                "storage_location": artifact.storage_location,
                "tables": sorted(artifact.table_manifest or {}),
            }
        )
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an encrypted database backup")
    parser.add_argument("--type", default="full", choices=["full", "incremental", "differential"])
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_run_backup(args.type)))


if __name__ == "__main__":
    main()
