"""Main Telegram bot class.

Features:
- Command registration
- Callback action routing
- Context injection
- Session housekeeping
- Graceful shutdown
"""

import asyncio
from typing import Any, Callable, Dict, Optional

import structlog
from telegram import BotCommand, Update
from telegram.error import Conflict
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from ..config.settings import Settings
from ..exceptions import ConfigurationError, OpsConsoleError
from .action_router import CallbackActionRouter
from .utils.callback_alias import CallbackAliasTable
from .utils.session_state import (
    cleanup_abandoned_handles,
    cleanup_expired_flows,
    get_chat_session,
    get_session_memory_stats,
)

logger = structlog.get_logger()

_HOUSEKEEPING_INTERVAL_SECONDS = 300

BOT_COMMANDS = [
    BotCommand("menu", "Open the operator menu"),
    BotCommand("cancel", "Cancel the current action"),
]


class OpsConsoleBot:
    """Main bot orchestrator."""

    def __init__(self, settings: Settings, dependencies: Dict[str, Any]):
        """Initialize bot with settings and dependencies."""
        self.settings = settings
        self.deps = dependencies
        self.app: Optional[Application] = None
        self.is_running = False

    def _require_app(self) -> Application:
        if self.app is None:
            raise OpsConsoleError("Telegram application is not initialized")
        return self.app

    async def initialize(self) -> None:
        """Initialize bot application."""
        logger.info("Initializing Telegram bot")

        builder = Application.builder()
        builder.token(self.settings.telegram_token_str)

        builder.connect_timeout(30)
        builder.read_timeout(30)
        builder.write_timeout(30)
        builder.pool_timeout(30)

        # Updates stay sequential: one chat's session is never mutated by two
        # handlers at once. Conversations wait in background tasks instead.
        self.app = builder.build()
        app = self._require_app()

        await self._set_bot_commands()
        self._register_actions()
        self._register_handlers()
        app.add_error_handler(self._error_handler)
        self._schedule_housekeeping()

        logger.info("Bot initialization complete")

    async def _set_bot_commands(self) -> None:
        """Set bot command menu (non-fatal on failure)."""
        app = self._require_app()
        try:
            await app.bot.set_my_commands(BOT_COMMANDS)
            logger.info("Bot commands set", commands=[cmd.command for cmd in BOT_COMMANDS])
        except Exception as e:
            logger.warning(
                "Failed to set bot commands, will retry on next startup",
                error=str(e),
                error_type=type(e).__name__,
            )

    def _register_actions(self) -> None:
        """Register callback actions owned by the console itself."""
        from .handlers import command

        router = self.deps.get("action_router")
        if not isinstance(router, CallbackActionRouter):
            raise ConfigurationError("Missing or invalid action_router dependency")

        async def open_menu(update: Update, context: ContextTypes.DEFAULT_TYPE, action: str) -> None:
            await command.show_main_menu(update, context)

        async def show_status(update: Update, context: ContextTypes.DEFAULT_TYPE, action: str) -> None:
            await command.status_report(update, context)

        if command.MENU_ACTION not in router:
            router.add_action(command.MENU_ACTION, open_menu)
        if "STATUS" not in router:
            router.add_action("STATUS", show_status)

    def _register_handlers(self) -> None:
        """Register all command and message handlers."""
        from .handlers import callback, command, message

        app = self._require_app()

        handlers = [
            ("start", command.menu_command),
            ("menu", command.menu_command),
            ("cancel", command.cancel_command),
        ]
        for cmd, handler in handlers:
            app.add_handler(CommandHandler(cmd, self._inject_deps(handler)))

        app.add_handler(
            MessageHandler(
                filters.TEXT & ~filters.COMMAND,
                self._inject_deps(message.handle_text_message),
            ),
            group=10,
        )

        app.add_handler(
            CallbackQueryHandler(self._inject_deps(callback.handle_callback_query))
        )

        logger.info("Bot handlers registered")

    def _inject_deps(self, handler: Callable) -> Callable:
        """Inject dependencies into handlers."""

        async def wrapped(update: Update, context: ContextTypes.DEFAULT_TYPE) -> Any:
            for key, value in self.deps.items():
                context.bot_data[key] = value
            context.bot_data["settings"] = self.settings

            return await handler(update, context)

        return wrapped

    def run_housekeeping(self, chat_data: Dict[Any, Any]) -> Dict[str, int]:
        """Drop expired flows, dead abort handles and expired aliases."""
        flows = 0
        handles = 0
        for data in chat_data.values():
            session = get_chat_session(data)
            removed_flows = cleanup_expired_flows(session)
            removed_handles = cleanup_abandoned_handles(session)
            flows += removed_flows
            handles += removed_handles
            if removed_flows or removed_handles:
                logger.debug("Session after cleanup", **get_session_memory_stats(session))

        aliases = 0
        alias_table = self.deps.get("callback_alias_table")
        if isinstance(alias_table, CallbackAliasTable):
            aliases = alias_table.purge_expired()

        return {"flows": flows, "handles": handles, "aliases": aliases}

    def _schedule_housekeeping(self) -> None:
        """Register the periodic session cleanup job."""
        app = self._require_app()
        if not app.job_queue:
            logger.warning("Job queue not available, skipping session housekeeping")
            return

        async def _housekeeping_job(context: ContextTypes.DEFAULT_TYPE) -> None:
            removed = self.run_housekeeping(context.application.chat_data)
            if any(removed.values()):
                logger.info("Session housekeeping completed", **removed)

        app.job_queue.run_repeating(
            _housekeeping_job,
            interval=_HOUSEKEEPING_INTERVAL_SECONDS,
            first=_HOUSEKEEPING_INTERVAL_SECONDS,
            name="session_housekeeping",
        )
        logger.info("Session housekeeping scheduled", interval_seconds=_HOUSEKEEPING_INTERVAL_SECONDS)

    async def start(self) -> None:
        """Start the bot."""
        if self.is_running:
            logger.warning("Bot is already running")
            return

        await self.initialize()
        logger.info("Starting bot", mode="polling")

        try:
            self.is_running = True
            app = self._require_app()
            await app.initialize()
            await app.start()
            updater = app.updater
            if updater is None:
                raise OpsConsoleError("Telegram updater is not available")
            await updater.start_polling(
                allowed_updates=Update.ALL_TYPES,
                drop_pending_updates=True,
                bootstrap_retries=10,
            )

            while self.is_running:
                await asyncio.sleep(1)
        except Exception as e:
            logger.error("Error running bot", error=str(e))
            raise OpsConsoleError(f"Failed to start bot: {str(e)}") from e
        finally:
            self.is_running = False

    async def stop(self) -> None:
        """Gracefully stop the bot."""
        if self.app is None:
            logger.warning("Bot is not running")
            return

        logger.info("Stopping bot")
        self.is_running = False

        try:
            app = self._require_app()
            updater = getattr(app, "updater", None)
            if updater and updater.running:
                await updater.stop()
            if app.running:
                await app.stop()
            await app.shutdown()
            logger.info("Bot stopped successfully")
        except Exception as e:
            logger.error("Error stopping bot", error=str(e))
            raise OpsConsoleError(f"Failed to stop bot: {str(e)}") from e

    async def _error_handler(
        self, update: object, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        """Handle errors globally."""
        error = context.error
        update_obj = update if isinstance(update, Update) else None
        logger.error(
            "Global error handler triggered",
            error=str(error),
            error_type=type(error).__name__,
            user_id=(
                update_obj.effective_user.id
                if update_obj and update_obj.effective_user
                else None
            ),
        )

        error_messages: list[tuple[type[BaseException], str]] = [
            (
                ConfigurationError,
                "⚙️ Configuration error. Please contact the administrator.",
            ),
            (
                asyncio.TimeoutError,
                "⏰ Operation timed out. Please try again.",
            ),
            (
                Conflict,
                "⚠️ Another instance is running with the same bot token.",
            ),
        ]

        user_message = "❌ An unexpected error occurred. Use /menu to start again."
        if isinstance(error, BaseException):
            for match_type, text in error_messages:
                if isinstance(error, match_type):
                    user_message = text
                    break

        if update_obj and update_obj.effective_message:
            try:
                await update_obj.effective_message.reply_text(user_message)
            except Exception:
                logger.exception("Failed to send error message to user")
