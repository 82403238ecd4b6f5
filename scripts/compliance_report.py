from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path

from backupvault.core.logging import configure_logging
from backupvault.services.engine import build_vault


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def _generate(start: datetime, end: datetime, output: str | None) -> None:
    vault = build_vault()
    await vault.initialize()
    try:
        report = await vault.generate_compliance_report(start, end)
    finally:
        await vault.close()
    body = json.dumps(report.to_dict(), indent=2, default=str)
    if output:
        Path(output).write_text(body, encoding="utf-8")
        print(f"report_path={output}")
    else:
        print(body)


def main() -> None:
    # Generate a compliance report for auditors; defaults to the last 30 days.
    parser = argparse.ArgumentParser(description="Generate a backup compliance report")
    parser.add_argument("--start", default=None, help="ISO-8601 start; naive values are UTC")
    parser.add_argument("--end", default=None, help="ISO-8601 end; naive values are UTC")
    parser.add_argument("--output", default=None)
    args = parser.parse_args()
    end = _parse_ts(args.end) if args.end else datetime.now(timezone.utc)
    start = _parse_ts(args.start) if args.start else end - timedelta(days=30)
    configure_logging()
    asyncio.run(_generate(start, end, args.output))


if __name__ == "__main__":
    main()
