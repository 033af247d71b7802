"""Run the announcement expiration batch from a shell or a system cron."""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import logging
import sys
from typing import Any

from partage_expiry.core.config import Settings, get_settings
from partage_expiry.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from partage_expiry.services.dry_run import DryRunReporter
from partage_expiry.services.expiration_batch import ExpirationBatch, utc_now
from partage_expiry.services.monitoring import count_statuses, detect_status_anomalies
from partage_expiry.services.records import (
    AnnouncementGateway,
    ConfigurationMissingError,
    GatewayUnavailableError,
    StoreConfig,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_GATEWAY_FAILURE = 1
EXIT_CONFIGURATION_MISSING = 2


async def run_command(command: str, settings: Settings, gateway: AnnouncementGateway) -> dict[str, Any]:
    if command == "run":
        batch = ExpirationBatch(
            gateway,
            pause_every=settings.expiration_pause_every,
            pause_seconds=settings.expiration_pause_seconds,
        )
        result = await asyncio.wait_for(batch.run(), timeout=settings.expiration_timeout_seconds)
        return asdict(result)

    if command == "test":
        report = await DryRunReporter(gateway).simulate()
        return {
            "total_checked": report.total_checked,
            "would_expire": report.would_expire_count,
            "announcements": [asdict(item) for item in report.items],
        }

    records = await gateway.fetch_all()
    anomalies = detect_status_anomalies(records, utc_now())
    return {
        "total_checked": len(records),
        "status_counts": count_statuses(records),
        "anomalies": [
            {"type": a.type, "description": a.description, "count": a.count, "items": a.items} for a in anomalies
        ],
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Expire published announcements whose deadline has passed.")
    parser.add_argument(
        "command",
        nargs="?",
        choices=["run", "test", "monitor"],
        default="run",
        help="run: live batch, test: dry run without writes, monitor: status anomaly report",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging()
    try:
        gateway = AnnouncementGateway(StoreConfig.from_settings(settings))
    except ConfigurationMissingError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIGURATION_MISSING

    telemetry_runtime = setup_telemetry(settings)
    try:
        output = asyncio.run(run_command(args.command, settings, gateway))
    except (GatewayUnavailableError, asyncio.TimeoutError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return EXIT_GATEWAY_FAILURE
    finally:
        shutdown_telemetry(telemetry_runtime)

    print(json.dumps(output, ensure_ascii=False, indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
