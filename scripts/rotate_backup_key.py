from __future__ import annotations

import argparse
import asyncio

from backupvault.core.logging import configure_logging
from backupvault.services.engine import build_vault


async def _rotate(reason: str | None, if_due: bool) -> None:
    # Rotate the master key; previous keys stay resolvable for existing artifacts.
    vault = build_vault()
    await vault.initialize()
    try:
        if if_due:
            key_id = await vault.rotate_key_if_due()
        else:
            key_id = await vault.rotate_key(reason=reason)
    finally:
        await vault.close()
    if key_id is None:
        print("rotation_due=false")
    else:
        print(f"key_id={key_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Rotate the backup master encryption key")
    parser.add_argument("--reason", default=None)
    parser.add_argument("--if-due", action="store_true", help="rotate only when the rotation interval elapsed")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_rotate(args.reason, args.if_due))


if __name__ == "__main__":
    main()
