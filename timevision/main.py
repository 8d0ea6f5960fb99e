import argparse
import asyncio
import json
import logging
import signal
import sys

import uvicorn

from .config import Settings, settings
from .dates import validate_day, validate_month
from .errors import TimeVisionError
from .services import Services, build_services

logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class TimeVisionServer:
    def __init__(self, services: Services):
        self.services = services
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start the metering server."""
        logger.info("Starting TimeVision...")
        await self.services.connect()
        logger.info(f"Connected to database: {self.services.settings.database_path}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        self.services.watchdog.start()
        anomaly_task = self.services.detector.scheduled_task()
        settlement_task = self.services.engine.scheduled_task()
        anomaly_task.start()
        settlement_task.start()
        logger.info(f"Settlement scheduled for {settlement_task.next_run_at().isoformat()}")

        web_task = asyncio.create_task(self._run_web_server())
        logger.info(f"API available at http://localhost:{self.services.settings.port}")

        await self._shutdown_event.wait()

        web_task.cancel()
        try:
            await web_task
        except asyncio.CancelledError:
            pass

        await self.services.watchdog.stop()
        await anomaly_task.stop()
        await settlement_task.stop()
        await self.services.close()
        logger.info("TimeVision stopped")

    async def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutting down...")
        self._shutdown_event.set()

    async def _run_web_server(self) -> None:
        """Run the FastAPI web server."""
        from gateway.app import create_app

        config = uvicorn.Config(
            create_app(self.services),
            host=self.services.settings.host,
            port=self.services.settings.port,
            log_level=self.services.settings.log_level.lower(),
            ws="websockets",
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        except asyncio.CancelledError:
            pass


async def run_settle(services: Services, month: str, dry_run: bool) -> dict:
    await services.db.connect()
    try:
        result = await services.engine.calculate_settlement(month)
        if not dry_run:
            await services.engine.persist_settlement(result)
        return result.to_wire()
    finally:
        await services.db.close()


async def run_detect(services: Services, day: str) -> list[dict]:
    await services.db.connect()
    try:
        anomalies = await services.detector.run_daily_check(day)
        return [a.model_dump() for a in anomalies]
    finally:
        await services.db.close()


async def run_exclude(services: Services, user_id: int, month: str) -> int:
    await services.db.connect()
    try:
        return await services.detector.exclude_user_from_settlement(user_id, month)
    finally:
        await services.db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="TimeVision - hub traffic metering and settlement")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    settle_parser = subparsers.add_parser("settle", help="Calculate and persist a monthly settlement")
    settle_parser.add_argument("--month", required=True, help="Month to settle (YYYY-MM)")
    settle_parser.add_argument(
        "--dry-run", action="store_true", help="Print the result without persisting it"
    )

    detect_parser = subparsers.add_parser("detect", help="Run the anomaly check for a day")
    detect_parser.add_argument("--date", required=True, help="Day to check (YYYY-MM-DD)")

    exclude_parser = subparsers.add_parser(
        "exclude", help="Invalidate a flagged user's sessions for a month"
    )
    exclude_parser.add_argument("--user", type=int, required=True, help="User id")
    exclude_parser.add_argument("--month", required=True, help="Month (YYYY-MM)")

    return parser


def main(argv: list[str] | None = None, config: Settings = settings) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(config.log_level)
    services = build_services(config)

    try:
        if args.command == "settle":
            result = asyncio.run(run_settle(services, validate_month(args.month), args.dry_run))
            print(json.dumps(result, indent=2))
        elif args.command == "detect":
            anomalies = asyncio.run(run_detect(services, validate_day(args.date)))
            print(json.dumps(anomalies, indent=2))
        elif args.command == "exclude":
            count = asyncio.run(run_exclude(services, args.user, validate_month(args.month)))
            logger.info(f"Invalidated {count} session(s)")
        else:
            asyncio.run(TimeVisionServer(services).start())
    except TimeVisionError as e:
        logger.error(e.message)
        sys.exit(2)


if __name__ == "__main__":
    main()
