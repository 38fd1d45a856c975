"""
Машина состояний заявки и выданного доступа.

    PENDING ──► PARTIALLY_APPROVED ──► APPROVED ──► REVOKED
       │               │  ▲ (ещё голоса)
       │               ▼──┘
       └──────────► REJECTED

Все переходы проверяются централизованно через ensure_transition;
любой переход вне таблицы — ConflictError.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import ConflictError


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_APPROVED = "PARTIALLY_APPROVED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"

    @property
    def is_terminal(self) -> bool:
        """Голосование по заявке завершено (одобрение/отклонение невозможны)."""
        return self in TERMINAL_STATUSES


class GrantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class AdminRoleType(str, Enum):
    PROJECT_ADMIN = "project-admin"
    SUPER_ADMIN = "super-admin"


class NotificationType(str, Enum):
    ACCESS_APPROVED = "ACCESS_APPROVED"
    ACCESS_REJECTED = "ACCESS_REJECTED"
    ACCESS_REVOKED = "ACCESS_REVOKED"
    NEW_REQUEST = "NEW_REQUEST"
    BULK_ACTION = "BULK_ACTION"


TERMINAL_STATUSES: FrozenSet[RequestStatus] = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.REVOKED}
)

REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {
            RequestStatus.PARTIALLY_APPROVED,
            RequestStatus.APPROVED,
            RequestStatus.REJECTED,
        }
    ),
    RequestStatus.PARTIALLY_APPROVED: frozenset(
        {
            RequestStatus.PARTIALLY_APPROVED,
            RequestStatus.APPROVED,
            RequestStatus.REJECTED,
        }
    ),
    RequestStatus.APPROVED: frozenset({RequestStatus.REVOKED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.REVOKED: frozenset(),
}

GRANT_TRANSITIONS: Dict[GrantStatus, FrozenSet[GrantStatus]] = {
    GrantStatus.ACTIVE: frozenset({GrantStatus.REVOKED}),
    GrantStatus.REVOKED: frozenset(),
}


def parse_request_status(value: str) -> RequestStatus:
    """Разобрать сохранённый статус; неизвестное значение не может быть источником перехода."""
    try:
        return RequestStatus(value)
    except ValueError:
        raise ConflictError(f"Unknown request status '{value}'") from None


def ensure_transition(current: RequestStatus, target: RequestStatus) -> None:
    if target not in REQUEST_TRANSITIONS[current]:
        raise ConflictError(
            f"Transition {current.value} -> {target.value} is not allowed"
        )


def ensure_grant_transition(current: GrantStatus, target: GrantStatus) -> None:
    if target not in GRANT_TRANSITIONS[current]:
        raise ConflictError(
            f"Grant transition {current.value} -> {target.value} is not allowed"
        )


def status_for_approvals(approval_count: int, required_approvals: int) -> RequestStatus:
    """
    Статус, следующий из числа голосов:
    0 — PENDING, меньше порога — PARTIALLY_APPROVED, порог достигнут — APPROVED.
    При пороге 1 состояние PARTIALLY_APPROVED не встречается.
    """
    if approval_count >= max(required_approvals, 1):
        return RequestStatus.APPROVED
    if approval_count > 0:
        return RequestStatus.PARTIALLY_APPROVED
    return RequestStatus.PENDING


def normalize_email(value: Optional[str]) -> str:
    """Почта сравнивается без учёта регистра и пробелов по краям."""
    return (value or "").strip().lower()
