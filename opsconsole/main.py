"""Main entry point for the operator console bot."""

import argparse
import asyncio
import logging
import re
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from opsconsole import __version__
from opsconsole.bot.action_router import CallbackActionRouter
from opsconsole.bot.core import OpsConsoleBot
from opsconsole.bot.utils.action_metrics import MenuActionMetrics
from opsconsole.bot.utils.callback_alias import CallbackAliasTable
from opsconsole.bot.utils.callback_codec import CallbackCodec
from opsconsole.bot.utils.callback_validator import CallbackValidator
from opsconsole.config.loader import load_config
from opsconsole.config.settings import Settings
from opsconsole.exceptions import ConfigurationError
from opsconsole.services import CallbackRecoveryService, OperationLifecycleService
from opsconsole.utils.constants import STALE_NOTICE_TTL_SECONDS

_TELEGRAM_BOT_TOKEN_IN_URL_RE = re.compile(
    r"(https?://api\.telegram\.org/bot)([^/\s]+)"
)
_TELEGRAM_BOT_TOKEN_RAW_RE = re.compile(r"\b\d{6,}:[A-Za-z0-9_-]{20,}\b")


def redact_sensitive_text(text: str) -> str:
    """Redact bot tokens from log text."""
    redacted = _TELEGRAM_BOT_TOKEN_IN_URL_RE.sub(r"\1<redacted>", text)
    redacted = _TELEGRAM_BOT_TOKEN_RAW_RE.sub("<redacted_token>", redacted)
    return redacted


class SensitiveLogFilter(logging.Filter):
    """Filter log records to avoid leaking secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_sensitive_text(message)
        if redacted != message:
            # Pre-formatted so args are not re-inserted
            record.msg = redacted
            record.args = ()
        return True


def setup_logging(debug: bool = False, level_name: Optional[str] = None) -> None:
    """Configure structured logging."""
    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )
    sensitive_filter = SensitiveLogFilter()
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.addFilter(sensitive_filter)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if not debug
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Operator console bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version", action="version", version=f"opsconsole {__version__}"
    )

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parser.add_argument("--config-file", type=Path, help="Path to configuration file")

    parser.add_argument(
        "--env",
        choices=["development", "testing", "production"],
        help="Apply an environment preset",
    )

    return parser.parse_args(argv)


def create_application(config: Settings) -> Dict[str, Any]:
    """Create and wire the application components."""
    logger = structlog.get_logger()
    logger.info("Creating application components")

    alias_table = CallbackAliasTable(
        capacity=config.callback_alias_capacity,
        ttl_seconds=config.callback_alias_ttl_seconds,
    )
    codec = CallbackCodec.from_settings(config, alias_table)
    validator = CallbackValidator(codec, ttl_seconds=config.callback_ttl_seconds)
    menu_metrics = MenuActionMetrics(log_interval=config.menu_metrics_log_interval)
    recovery_service = CallbackRecoveryService(
        codec, notice_ttl_seconds=STALE_NOTICE_TTL_SECONDS
    )
    lifecycle_service = OperationLifecycleService(
        flow_ttl_seconds=config.flow_ttl_seconds,
        conversation_timeout_seconds=config.conversation_timeout_seconds,
    )
    router = CallbackActionRouter()

    if not config.callback_secret:
        logger.warning("CALLBACK_SECRET not set, signing buttons with the bot token")

    dependencies = {
        "callback_alias_table": alias_table,
        "callback_codec": codec,
        "callback_validator": validator,
        "menu_metrics": menu_metrics,
        "callback_recovery_service": recovery_service,
        "operation_lifecycle_service": lifecycle_service,
        "action_router": router,
    }

    bot = OpsConsoleBot(config, dependencies)

    logger.info("Application components created successfully")

    return {
        "bot": bot,
        "config": config,
        **dependencies,
    }


async def run_application(app: Dict[str, Any]) -> None:
    """Run the application with graceful shutdown handling."""
    logger = structlog.get_logger()
    bot: OpsConsoleBot = app["bot"]

    shutdown_event = asyncio.Event()

    def signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        logger.info("Starting operator console")

        bot_task = asyncio.create_task(bot.start())
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [bot_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # Non-zero exit lets the supervisor restart us
        if bot_task in done and not bot_task.cancelled():
            exc = bot_task.exception()
            if exc is not None:
                raise exc

    except Exception as e:
        logger.error("Application error", error=str(e))
        raise
    finally:
        logger.info("Shutting down application")
        try:
            await bot.stop()
        except Exception as e:
            logger.error("Error during shutdown", error=str(e))
        logger.info("Application shutdown complete")


async def main() -> None:
    """Main application entry point."""
    args = parse_args()

    try:
        config = load_config(env=args.env, config_file=args.config_file)
    except ConfigurationError as e:
        setup_logging(debug=args.debug)
        structlog.get_logger().error("Configuration error", error=str(e))
        sys.exit(1)

    setup_logging(debug=args.debug or config.debug, level_name=config.log_level)
    logger = structlog.get_logger()
    logger.info(
        "Starting operator console",
        version=__version__,
        environment="production" if config.is_production else "development",
        callback_ttl_seconds=config.callback_ttl_seconds,
        callback_max_bytes=config.callback_max_bytes,
    )

    try:
        app = create_application(config)
        await run_application(app)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(1)


def run() -> None:
    """Synchronous entry point for setuptools."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)


if __name__ == "__main__":
    run()
