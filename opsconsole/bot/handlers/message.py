"""Plain text messages: feed the chat's running conversation."""

import structlog
from telegram import Update
from telegram.ext import ContextTypes

from ..utils.conversation import ConversationChannel
from ..utils.session_state import get_chat_session

logger = structlog.get_logger()


async def handle_text_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Deliver text to the waiting conversation, or point the user at /menu."""
    session = get_chat_session(context.chat_data)
    channel = session.conversation
    if isinstance(channel, ConversationChannel) and channel.push(update):
        logger.debug("Update delivered to conversation", conversation=channel.name)
        return

    message = update.effective_message
    if message is not None:
        await message.reply_text("📋 Use /menu to choose an action.")
