import sys
import asyncio

# --- Settings/Logging ---
from punchboard.logging.setup import setup_logging
from punchboard.config.settings import settings

setup_logging()

from loguru import logger

# --- Core Imports ---
import uvicorn
from rich import print
from rich.panel import Panel

from punchboard.feed.archive import FeedArchive
from punchboard.models.punch import PunchRecord
from punchboard.reconciliation.engine import ReconciliationEngine
from punchboard.server.app import PunchBroadcaster, create_app


def print_settings() -> None:
    """Prints the effective configuration at startup."""
    lines = [
        f"Feed: {settings.feed_host}/{settings.feed_path}",
        f"Controls: {', '.join(settings.controls)}",
        f"Poll interval: {settings.poll_interval_seconds:g}s",
        f"Feed log: {settings.feed_log_dir or 'disabled'}",
        f"Display server: http://{settings.server_host}:{settings.server_port}",
    ]
    print(Panel("\n".join(lines), title="Punchboard"))


async def main() -> None:
    """Main entry point for the application."""
    logger.info("Starting Punchboard - Poll, Reconcile, and Announce")
    print_settings()

    archive = FeedArchive(settings.feed_log_dir) if settings.feed_log_dir else None
    engine = await ReconciliationEngine.create(
        settings.feed_host,
        settings.controls,
        path=settings.feed_path,
        timeout=settings.request_timeout_seconds,
        archive=archive,
    )
    broadcaster = PunchBroadcaster()

    def on_new_punch(punch: PunchRecord) -> None:
        broadcaster.publish(punch)

    poller = engine.start(on_new_punch, interval=settings.poll_interval_seconds)

    app = create_app(engine, broadcaster, settings.display_settings())
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.server_host,
            port=settings.server_port,
            log_config=None,  # Routed through loguru by setup_logging
        )
    )
    try:
        await server.serve()
    finally:
        await poller.stop()
        await engine.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Execution interrupted by user (KeyboardInterrupt).")
        sys.exit(0)
    except Exception as e:
        logger.exception(f"Unhandled exception in main execution: {e}")
        sys.exit(1)
