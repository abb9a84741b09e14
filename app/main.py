"""
Family Bank - Scheduled Jobs Entry Point

Run with: python -m app.main process-allowances

Meant to be invoked periodically by an external scheduler (cron, a
Kubernetes CronJob, ...). Each invocation runs one processing tick and
exits; overlapping invocations are safe because every allowance period is
claimed before it is paid.
"""

import argparse
import asyncio
import sys
from typing import Optional

import structlog

from familybank.audit import configure_logging
from familybank.config import get_settings, validate_all_settings
from familybank.orchestrator import create_app_components
from familybank.storage import StorageError


logger = structlog.get_logger("app.main")


async def process_allowances() -> int:
    bank = await create_app_components()
    try:
        report = await bank.allowances.process_due()
    finally:
        await bank.storage.close()

    print(
        f"Processed {len(report.processed)}, skipped {len(report.skipped)}, "
        f"failed {len(report.failed)} allowance(s)"
    )
    return 1 if report.failed else 0


def check_settings() -> int:
    results = validate_all_settings()
    for name, value in results.items():
        print(f"{name}: {value}")
    return 0 if all(v for k, v in results.items() if not k.endswith("_error")) else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="familybank", description="Family Bank jobs")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("process-allowances", help="Pay every allowance that is due")
    subcommands.add_parser("check-settings", help="Validate configuration and exit")
    args = parser.parse_args(argv)

    if args.command == "check-settings":
        return check_settings()

    configure_logging(get_settings().app.log_level)
    try:
        return asyncio.run(process_allowances())
    except StorageError as e:
        logger.error("storage_unavailable", error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
