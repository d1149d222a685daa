"""Action timing and menu health metrics.

Purely observational: nothing here feeds back into callback validation or
handler control flow.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import structlog

from ...utils.constants import DEFAULT_MENU_METRICS_LOG_INTERVAL
from .session_state import ChatSession, get_current_op_id

logger = structlog.get_logger()

MENU_ACTIONS: FrozenSet[str] = frozenset(
    {
        "MENU",
        "CALL",
        "CALLLOG",
        "CALLLOG_RECENT",
        "CALLLOG_SEARCH",
        "CALLLOG_DETAILS",
        "CALLLOG_EVENTS",
        "SMS",
        "SMS_SEND",
        "SMS_SCHEDULE",
        "SMS_STATUS",
        "SMS_CONVO",
        "SMS_RECENT",
        "SMS_STATS",
        "EMAIL",
        "EMAIL_SEND",
        "EMAIL_STATUS",
        "EMAIL_TEMPLATES",
        "EMAIL_HISTORY",
        "BULK_SMS",
        "BULK_SMS_SEND",
        "BULK_SMS_LIST",
        "BULK_SMS_STATUS",
        "BULK_SMS_STATS",
        "BULK_EMAIL",
        "BULK_EMAIL_SEND",
        "BULK_EMAIL_STATUS",
        "BULK_EMAIL_LIST",
        "BULK_EMAIL_STATS",
        "SCRIPTS",
        "PROVIDER:HOME",
        "PROVIDER:CALL",
        "PROVIDER:SMS",
        "PROVIDER:EMAIL",
        "PROVIDER:BACK:HOME",
        "PROVIDER_STATUS",
        "PROVIDER_STATUS:CALL",
        "PROVIDER_STATUS:SMS",
        "PROVIDER_STATUS:EMAIL",
        "PROVIDER_OVERRIDES",
        "PROVIDER_CLEAR_OVERRIDES",
        "REQUEST_ACCESS",
        "STATUS",
        "USERS",
        "USERS_LIST",
        "CALLER_FLAGS",
        "CALLER_FLAGS_LIST",
        "CALLER_FLAGS_ALLOW",
        "CALLER_FLAGS_BLOCK",
        "CALLER_FLAGS_SPAM",
    }
)


@dataclass
class _ActionCounter:
    total: int = 0
    errors: int = 0

    @property
    def error_rate(self) -> int:
        """Error rate as a rounded percentage."""
        return round(self.errors / self.total * 100) if self.total else 0


class MenuActionMetrics:
    """Rolling invocation/error counters for well-known menu actions."""

    def __init__(
        self,
        *,
        log_interval: int = DEFAULT_MENU_METRICS_LOG_INTERVAL,
        top_n: int = 5,
        actions: Iterable[str] = MENU_ACTIONS,
    ) -> None:
        self.log_interval = max(1, int(log_interval))
        self.top_n = max(1, int(top_n))
        self.actions = frozenset(actions)
        self._counters: Dict[str, _ActionCounter] = {}
        self._observations = 0

    def record(self, action: str, status: str = "ok") -> bool:
        """Count one invocation. Returns False for actions outside the allow-list."""
        if action not in self.actions:
            return False
        counter = self._counters.setdefault(action, _ActionCounter())
        counter.total += 1
        if status != "ok":
            counter.errors += 1
        self._observations += 1
        if self._observations % self.log_interval == 0:
            logger.info(
                "Menu action health",
                observations=self._observations,
                summary=self.format_summary(),
            )
        return True

    def summary(self) -> List[Dict[str, Any]]:
        """Highest error-rate actions first."""
        rows = [
            {"action": action, "total": counter.total, "error_rate": counter.error_rate}
            for action, counter in self._counters.items()
        ]
        rows.sort(key=lambda row: (-row["error_rate"], -row["total"], row["action"]))
        return rows[: self.top_n]

    def format_summary(self) -> str:
        return " | ".join(
            f"{row['action']}: {row['error_rate']}% ({row['total']})"
            for row in self.summary()
        )


@dataclass
class ActionMetric:
    name: str
    started_at: float
    user_id: Optional[int] = None
    chat_id: Optional[int] = None
    op_id: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def start_action_metric(
    session: ChatSession,
    name: str,
    *,
    user_id: Optional[int] = None,
    chat_id: Optional[int] = None,
    **meta: Any,
) -> ActionMetric:
    return ActionMetric(
        name=name,
        started_at=time.monotonic(),
        user_id=user_id,
        chat_id=chat_id,
        op_id=get_current_op_id(session),
        meta=meta,
    )


def finish_action_metric(
    metric: Optional[ActionMetric],
    status: str = "ok",
    *,
    menu_metrics: Optional[MenuActionMetrics] = None,
    action: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log the metric and feed callback actions into the menu counters.

    ``action`` is the decoded logical action for callback metrics.
    """
    if metric is None:
        return
    duration_ms = int((time.monotonic() - metric.started_at) * 1000)
    logger.info(
        "Action metric",
        action=metric.name,
        status=status,
        duration_ms=duration_ms,
        user_id=metric.user_id,
        chat_id=metric.chat_id,
        op_id=metric.op_id,
        **{**metric.meta, **extra},
    )
    if menu_metrics is not None and action:
        menu_metrics.record(action, status)
