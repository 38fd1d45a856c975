import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Iterable, List, Optional

from .engine import ConsensusEngine
from .errors import LifecycleError
from .lifecycle import normalize_email
from .models import AccessRequest
from .notifications import NotificationDispatcher, run_effects

logger = logging.getLogger(__name__)


@dataclass
class BulkItemResult:
    id: str
    ok: bool
    status: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class BulkResult:
    action: str
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


class BulkActionCoordinator:
    """
    Массовые действия над заявками. Каждая заявка обрабатывается отдельно:
    ошибка по одной (уже закрыта, нет прав на проект, не найдена)
    не прерывает обработку остальных.
    """

    def __init__(self, engine: ConsensusEngine, dispatcher: NotificationDispatcher):
        self._engine = engine
        self._dispatcher = dispatcher

    async def bulk_approve(self, request_ids: Iterable[str], approver_email: str) -> BulkResult:
        return await self._run(
            "approve",
            request_ids,
            approver_email,
            lambda rid: self._engine.approve(rid, approver_email),
        )

    async def bulk_reject(
        self,
        request_ids: Iterable[str],
        approver_email: str,
        reason: Optional[str] = None,
    ) -> BulkResult:
        return await self._run(
            "reject",
            request_ids,
            approver_email,
            lambda rid: self._engine.reject(rid, approver_email, reason),
        )

    async def _run(
        self,
        action: str,
        request_ids: Iterable[str],
        actor_email: str,
        apply: Callable[[str], Awaitable[AccessRequest]],
    ) -> BulkResult:
        outcome = BulkResult(action=action)
        for request_id in dict.fromkeys(request_ids):
            try:
                request = await apply(request_id)
            except LifecycleError as exc:
                outcome.results.append(
                    BulkItemResult(
                        id=request_id,
                        ok=False,
                        error=exc.message,
                        error_type=type(exc).__name__,
                    )
                )
                continue
            outcome.results.append(BulkItemResult(id=request_id, ok=True, status=request.status))

        logger.info(
            "Bulk %s by %s: %d succeeded, %d failed",
            action, actor_email, outcome.succeeded, outcome.failed,
        )
        if outcome.succeeded:
            actor = normalize_email(actor_email)
            await run_effects(
                [
                    partial(
                        self._dispatcher.notify_bulk_action,
                        outcome.succeeded,
                        action,
                        actor,
                        [actor],
                    )
                ]
            )
        return outcome
