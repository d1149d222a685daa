"""Handle inline keyboard callbacks.

Every press is validated against the chat's live operation before any
action handler runs. Dead presses (stale, expired, invalid) go to the
recovery service; live ones are de-duplicated and routed.
"""

from typing import Any, Dict, Optional

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from ...exceptions import OperationCancelledError
from ...services import CallbackRecoveryService
from ...services.callback_recovery_service import CallbackRecoveryActions
from ...utils.constants import STALE_NOTICE_TTL_SECONDS
from ..action_router import CallbackActionRouter
from ..utils.action_dedupe import is_duplicate_action
from ..utils.action_metrics import (
    MenuActionMetrics,
    finish_action_metric,
    start_action_metric,
)
from ..utils.callback_routing import (
    build_stale_conversation_key,
    is_conversation_callback_stale,
    parse_callback_action,
    resolve_conversation_from_prefix,
)
from ..utils.callback_validator import CallbackValidator
from ..utils.conversation import ConversationChannel
from ..utils.menu_cleanup import clear_callback_message_markup, clear_menu_messages
from ..utils.session_state import (
    ChatSession,
    cancel_active_flow,
    get_chat_session,
    get_current_op_id,
    get_current_op_token,
    reset_session,
)
from .command import show_main_menu

logger = structlog.get_logger()

DUPLICATE_PRESS_TEXT = "Already processed."


async def _safe_answer(query: Any, text: Optional[str] = None) -> None:
    """Answer a callback query; Telegram rejects late answers, ignore that."""
    try:
        if text:
            await query.answer(text)
        else:
            await query.answer()
    except Exception as e:
        logger.debug("Failed to answer callback query", error=str(e))


def _query_ids(query: Any) -> Dict[str, Optional[int]]:
    message = getattr(query, "message", None)
    return {
        "user_id": getattr(getattr(query, "from_user", None), "id", None),
        "chat_id": getattr(getattr(message, "chat", None), "id", None),
        "message_id": getattr(message, "message_id", None),
    }


async def _recover_dead_press(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: ChatSession,
    raw_action: str,
    validation: Any,
    message_id: Optional[int],
) -> Any:
    query = update.callback_query
    recovery: CallbackRecoveryService = context.bot_data["callback_recovery_service"]

    async def reopen_menu(_action: str) -> None:
        await show_main_menu(update, context, session)

    return await recovery.handle_invalid_callback(
        session=session,
        raw_action=raw_action,
        validation=validation,
        message_id=message_id,
        actions=CallbackRecoveryActions(
            answer=lambda text: _safe_answer(query, text),
            clear_markup=lambda: clear_callback_message_markup(query),
            clear_menus=lambda: clear_menu_messages(session, context.bot),
            reopen_menu=reopen_menu,
        ),
    )


async def handle_callback_query(
    update: Update, context: ContextTypes.DEFAULT_TYPE
) -> None:
    """Validate, de-duplicate and route an inline button press."""
    query = update.callback_query
    if query is None:
        return

    deps = context.bot_data
    settings = deps.get("settings")
    validator: CallbackValidator = deps["callback_validator"]
    router: Optional[CallbackActionRouter] = deps.get("action_router")
    menu_metrics: Optional[MenuActionMetrics] = deps.get("menu_metrics")
    dedupe_ttl = getattr(settings, "action_dedupe_ttl_seconds", None)

    raw_action = query.data or ""
    session = get_chat_session(context.chat_data)
    ids = _query_ids(query)
    metric = start_action_metric(
        session,
        "callback",
        user_id=ids["user_id"],
        chat_id=ids["chat_id"],
        raw_action=raw_action,
    )
    status = "ok"
    action = ""
    extra: Dict[str, Any] = {}

    try:
        callback_id = getattr(query, "id", None)
        if callback_id and is_duplicate_action(
            session, f"gcbid:callback:{callback_id}", STALE_NOTICE_TTL_SECONDS
        ):
            await _safe_answer(query, DUPLICATE_PRESS_TEXT)
            status = "duplicate_callback_id"
            return

        validation = validator.validate(session, raw_action)
        action = validation.action
        if not validation.ok:
            result = await _recover_dead_press(
                update, context, session, raw_action, validation, ids["message_id"]
            )
            status = result.metric_status
            extra = dict(result.metric_extra)
            return

        action_key = f"{action}|{ids['message_id'] or ''}"
        if dedupe_ttl is None:
            duplicate = is_duplicate_action(session, action_key)
        else:
            duplicate = is_duplicate_action(session, action_key, dedupe_ttl)
        if duplicate:
            await _safe_answer(query, DUPLICATE_PRESS_TEXT)
            status = "duplicate"
            return

        await _safe_answer(query)
        logger.info("Callback query received", action=action, user_id=ids["user_id"])

        parsed = parse_callback_action(action)
        conversation = resolve_conversation_from_prefix(parsed.prefix) if parsed else None
        if conversation:
            channel = session.conversation
            stale_op = (
                bool(parsed.op_id)
                and parsed.op_id != get_current_op_token(session)
                and is_conversation_callback_stale(parsed, get_current_op_id(session))
            )
            if (
                isinstance(channel, ConversationChannel)
                and not stale_op
                and channel.push(update)
            ):
                status = "routed"
                return
            if router is None or action not in router:
                await _handle_desynced_conversation(
                    update, context, session, action, conversation, parsed.op_id
                )
                status = "stale"
                return

        resolved = router.resolve(action) if router is not None else None
        if resolved is None:
            logger.warning("No handler for callback action", action=action)
            message = getattr(query, "message", None)
            if message is not None:
                await message.reply_text("⚠️ This action is not available. Use /menu.")
            status = "unknown"
            return

        _, handler = resolved
        await handler(update, context, action)

    except OperationCancelledError as e:
        logger.debug("Callback handler cancelled", action=action, reason=e.reason)
        status = "cancelled"
    except Exception as e:
        logger.exception("Callback handler failed", action=action, error=str(e))
        status = "error"
        extra = {"error": str(e)}
        message = getattr(query, "message", None)
        if message is not None:
            try:
                await message.reply_text("❌ Something went wrong. Use /menu to start again.")
            except Exception as reply_error:
                logger.warning("Failed to send error notice", error=str(reply_error))
    finally:
        finish_action_metric(
            metric,
            status,
            menu_metrics=menu_metrics,
            action=action,
            **extra,
        )


async def _handle_desynced_conversation(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    session: ChatSession,
    action: str,
    conversation: str,
    op_id: Optional[str],
) -> None:
    """A conversation button arrived while that conversation is not running."""
    first_notice = not is_duplicate_action(
        session,
        build_stale_conversation_key(conversation, op_id),
        STALE_NOTICE_TTL_SECONDS,
    )
    await cancel_active_flow(session, f"stale_callback:{action}")
    reset_session(session)
    await clear_callback_message_markup(update.callback_query)
    if first_notice:
        message = getattr(update.callback_query, "message", None)
        if message is not None:
            await message.reply_text("⌛ This menu expired. Opening a fresh one…")
        await show_main_menu(update, context, session)
