"""Tests for per-chat duplicate press suppression."""

from opsconsole.bot.utils.action_dedupe import is_duplicate_action
from opsconsole.bot.utils.session_state import ChatSession


def _freeze(monkeypatch, now):
    monkeypatch.setattr(
        "opsconsole.bot.utils.action_dedupe.time.time",
        lambda: now[0],
    )


def test_duplicate_within_window_then_expires(monkeypatch):
    now = [100.0]
    _freeze(monkeypatch, now)
    session = ChatSession()

    assert is_duplicate_action(session, "MENU|42", 8) is False
    now[0] = 105.0
    assert is_duplicate_action(session, "MENU|42", 8) is True
    now[0] = 109.0
    assert is_duplicate_action(session, "MENU|42", 8) is False


def test_empty_key_is_never_duplicate():
    session = ChatSession()

    assert is_duplicate_action(session, "") is False
    assert is_duplicate_action(session, "") is False
    assert session.action_history == {}


def test_short_checks_do_not_prune_long_windows(monkeypatch):
    """A one-hour notice key survives many short double-tap checks."""
    now = [0.0]
    _freeze(monkeypatch, now)
    session = ChatSession()

    assert is_duplicate_action(session, "stale_menu:stale:7", 3600) is False
    now[0] = 60.0
    assert is_duplicate_action(session, "MENU|7", 8) is False
    now[0] = 120.0
    assert is_duplicate_action(session, "stale_menu:stale:7", 3600) is True
