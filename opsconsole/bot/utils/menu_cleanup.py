"""Track menu messages per chat so stale menus can be removed."""

import time
from typing import Any, Optional

import structlog

from .session_state import ChatSession

logger = structlog.get_logger()


def register_menu_message(session: ChatSession, chat_id: Any, message_id: Any) -> None:
    if not chat_id or not message_id:
        return
    entries = [
        entry
        for entry in session.menu_messages
        if not (entry.get("chat_id") == chat_id and entry.get("message_id") == message_id)
    ]
    entries.append({"chat_id": chat_id, "message_id": message_id, "created_at": time.time()})
    session.menu_messages = entries


def get_latest_menu_message_id(session: ChatSession, chat_id: Any) -> Optional[int]:
    for entry in reversed(session.menu_messages):
        if entry.get("chat_id") == chat_id:
            return entry.get("message_id")
    return None


async def clear_menu_messages(
    session: ChatSession,
    bot: Any,
    *,
    keep_message_id: Optional[int] = None,
) -> None:
    """Delete tracked menus, or strip their buttons when deletion is refused."""
    kept = []
    for entry in session.menu_messages:
        chat_id = entry.get("chat_id")
        message_id = entry.get("message_id")
        if keep_message_id and message_id == keep_message_id:
            kept.append(entry)
            continue
        if not chat_id or not message_id:
            continue
        try:
            await bot.delete_message(chat_id=chat_id, message_id=message_id)
            continue
        except Exception as e:
            logger.debug("Menu delete failed, clearing buttons", message_id=message_id, error=str(e))
        try:
            await bot.edit_message_reply_markup(
                chat_id=chat_id, message_id=message_id, reply_markup=None
            )
        except Exception as e:
            logger.debug("Menu markup clear failed", message_id=message_id, error=str(e))
    session.menu_messages = kept


async def send_menu(
    session: ChatSession,
    bot: Any,
    chat_id: int,
    text: str,
    **send_kwargs: Any,
) -> Any:
    """Replace every tracked menu with a new one."""
    await clear_menu_messages(session, bot)
    message = await bot.send_message(chat_id=chat_id, text=text, **send_kwargs)
    register_menu_message(session, chat_id, getattr(message, "message_id", None))
    return message


async def clear_callback_message_markup(query: Any) -> None:
    """Remove the keyboard from the message a callback came from."""
    try:
        await query.edit_message_reply_markup(reply_markup=None)
    except Exception as e:
        if "message is not modified" not in str(e).lower():
            logger.debug("Failed to clear callback markup", error=str(e))
