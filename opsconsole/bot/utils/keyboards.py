"""Inline keyboards whose buttons carry signed, operation-bound payloads."""

from __future__ import annotations

from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from .callback_codec import CallbackCodec
from .session_state import ChatSession

# Rows of (label, action) pairs
KeyboardSpec = list[list[tuple[str, str]]]


def build_signed_keyboard(
    codec: CallbackCodec,
    session: ChatSession,
    keyboard_spec: KeyboardSpec | None,
    *,
    ttl_seconds: Optional[float] = None,
) -> InlineKeyboardMarkup | None:
    """Build inline keyboard markup, stamping every action via the codec."""
    if not keyboard_spec:
        return None

    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    label,
                    callback_data=codec.build_callback_data(
                        session, action, ttl_seconds=ttl_seconds
                    ),
                )
                for label, action in row
            ]
            for row in keyboard_spec
        ]
    )
