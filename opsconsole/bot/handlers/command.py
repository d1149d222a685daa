"""Command handlers: /start, /menu and /cancel."""

from typing import Any, Optional

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from ...services import OperationLifecycleService
from ..utils.action_metrics import MenuActionMetrics
from ..utils.callback_codec import CallbackCodec
from ..utils.keyboards import KeyboardSpec, build_signed_keyboard
from ..utils.menu_cleanup import send_menu
from ..utils.session_state import (
    ChatSession,
    get_chat_session,
    get_current_op_id,
    get_session_memory_stats,
)

logger = structlog.get_logger()

MENU_COMMAND = "menu"
MENU_ACTION = "MENU"

MAIN_MENU_TEXT = "📋 *Operator console*\n\nChoose an action:"
MAIN_MENU_KEYBOARD: KeyboardSpec = [
    [("📞 Call", "CALL"), ("💬 SMS", "SMS"), ("📧 Email", "EMAIL")],
    [("📚 Scripts", "SCRIPTS"), ("🧾 Call log", "CALLLOG")],
    [("🔌 Providers", "PROVIDER:HOME"), ("📊 Status", "STATUS")],
]


def _lifecycle(context: ContextTypes.DEFAULT_TYPE) -> OperationLifecycleService:
    service = context.bot_data.get("operation_lifecycle_service")
    if service is None:
        service = OperationLifecycleService()
    return service  # type: ignore[no-any-return]


def _chat_id(update: Update) -> Optional[int]:
    chat = getattr(update, "effective_chat", None)
    return getattr(chat, "id", None)


async def show_main_menu(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: Optional[ChatSession] = None,
) -> Any:
    """Open the main menu bound to a fresh menu operation."""
    chat_id = _chat_id(update)
    if chat_id is None:
        return None
    session = session or get_chat_session(context.chat_data)
    codec: CallbackCodec = context.bot_data["callback_codec"]

    _lifecycle(context).start(session, MENU_COMMAND)
    markup = build_signed_keyboard(codec, session, MAIN_MENU_KEYBOARD)
    return await send_menu(
        session,
        context.bot,
        chat_id,
        MAIN_MENU_TEXT,
        parse_mode="Markdown",
        reply_markup=markup,
    )


async def menu_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Reset whatever is running and show a fresh menu."""
    session = get_chat_session(context.chat_data)
    await _lifecycle(context).reset(session, reason="menu_command")
    await show_main_menu(update, context, session)


async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Abort the live operation and any work it owns."""
    session = get_chat_session(context.chat_data)
    result = await _lifecycle(context).end(session, reason="cancel_command")

    message = update.effective_message
    if message is None:
        return
    if result.had_active_operation:
        await message.reply_text("🛑 Cancelled. Use /menu to start again.")
    else:
        await message.reply_text("ℹ️ Nothing to cancel.")


async def status_report(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Show the chat's session footprint and the menu health summary."""
    message = update.effective_message
    if message is None:
        return
    session = get_chat_session(context.chat_data)
    stats = get_session_memory_stats(session)
    lines = [
        "📊 *Session status*",
        f"Operation: `{get_current_op_id(session) or 'none'}`",
        f"Command: {session.last_command or 'none'}",
        f"Flow active: {'yes' if stats['has_flow'] and not stats['flow_expired'] else 'no'}",
        f"Pending tasks: {stats['abort_handles']}",
        f"Tracked menus: {stats['menu_messages']}",
    ]
    metrics: Optional[MenuActionMetrics] = context.bot_data.get("menu_metrics")
    summary = metrics.format_summary() if metrics is not None else ""
    if summary:
        lines.append(f"Menu health: `{summary}`")
    await message.reply_text("\n".join(lines), parse_mode="Markdown")
