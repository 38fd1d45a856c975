"""
ConsensusEngine — жизненный цикл заявки на доступ.

Каждая операция: чтение → проверки (существование, права, машина
состояний) → условная запись (compare-and-set по version) → фиксация
транзакции → побочные эффекты (уведомления). Если условная запись не
применилась, операция целиком повторяется на свежих данных: повторный
голос того же администратора превращается в ConflictError, голос другого
администратора ложится поверх.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from functools import partial
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import repositories as repo
from .directory import AdminDirectory
from .errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    StaleWriteError,
    UnauthorizedError,
    ValidationError,
)
from .iam import RoleAssigner
from .lifecycle import (
    GrantStatus,
    RequestStatus,
    ensure_grant_transition,
    ensure_transition,
    normalize_email,
    parse_request_status,
    status_for_approvals,
)
from .models import AccessRequest, GrantedAccess, utcnow
from .notifications import Effect, NotificationDispatcher, run_effects

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

T = TypeVar("T")


class KeyedLocks:
    """asyncio.Lock на ключ; запись удаляется, когда ключ никто не держит и не ждёт."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def _require_text(value: Optional[str], field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required and must be a non-empty string")
    return value.strip()


def _require_email(value: Optional[str], field: str) -> str:
    email = normalize_email(_require_text(value, field))
    if not EMAIL_RE.match(email):
        raise ValidationError(f"{field} has invalid email format")
    return email


class ConsensusEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: AdminDirectory,
        dispatcher: NotificationDispatcher,
        role_assigner: RoleAssigner,
        required_approvals: int = 2,
        max_attempts: int = 5,
    ):
        if required_approvals < 1:
            raise ValueError("required_approvals must be at least 1")
        self._sessions = session_factory
        self._directory = directory
        self._dispatcher = dispatcher
        self._roles = role_assigner
        self.required_approvals = required_approvals
        self._max_attempts = max(1, max_attempts)
        self._request_locks = KeyedLocks()
        self._grant_locks = KeyedLocks()
        self._tuple_locks = KeyedLocks()

    # ------------------------------------------------------------ helpers

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            raise ExternalServiceError(f"Record store failure: {exc}") from exc

    async def _retrying(
        self, describe: str, attempt: Callable[[], Awaitable[T]]
    ) -> T:
        for n in range(1, self._max_attempts + 1):
            try:
                return await attempt()
            except StaleWriteError as exc:
                logger.info(
                    "%s: stale write on attempt %d/%d (%s)",
                    describe, n, self._max_attempts, exc,
                )
        raise ConflictError(f"{describe}: concurrent modification, retry later")

    async def _authorize(self, actor_email: str, project_id: str) -> None:
        if not await self._directory.can_act(actor_email, project_id):
            raise UnauthorizedError(
                f"{actor_email} is not allowed to act on project {project_id}"
            )

    @staticmethod
    async def _load_request(session: AsyncSession, request_id: str) -> AccessRequest:
        request = await repo.get_request(session, request_id)
        if request is None:
            raise NotFoundError(f"Access request {request_id} not found")
        return request

    # ------------------------------------------------------------- submit

    async def submit(
        self,
        *,
        requester_email: str,
        asset_name: str,
        project_id: str,
        requested_role: str,
        justification: Optional[str] = None,
        approver_list: Optional[List[str]] = None,
        request_id: Optional[str] = None,
    ) -> AccessRequest:
        """
        Создать заявку (PENDING). Ввод проверяется до обращения к хранилищу.
        Согласующим из approver_list (или администраторам проекта, если
        список пуст) рассылается уведомление о новой заявке.
        """
        requester = _require_email(requester_email, "Requester email")
        asset = _require_text(asset_name, "Asset name")
        project = _require_text(project_id, "Project ID")
        role = _require_text(requested_role, "Requested role")
        if approver_list is not None and not isinstance(approver_list, list):
            raise ValidationError("Approver list must be a list of emails")
        approvers = [_require_email(a, "Approver email") for a in approver_list or []]
        approvers = list(dict.fromkeys(approvers))
        if request_id is not None:
            request_id = _require_text(request_id, "Request ID")

        async with self._transaction() as session:
            if request_id and await repo.get_request(session, request_id) is not None:
                raise ConflictError(f"Access request {request_id} already exists")
            try:
                request = await repo.create_request(
                    session,
                    request_id=request_id,
                    requester_email=requester,
                    asset_name=asset,
                    project_id=project,
                    requested_role=role,
                    justification=justification or None,
                    project_admins=approvers,
                    required_approvals=self.required_approvals,
                )
                await session.commit()
            except IntegrityError as exc:
                raise ConflictError(f"Access request {request_id} already exists") from exc

        logger.info(
            "Access request %s submitted by %s for %s (%s) on %s",
            request.id, requester, asset, role, project,
        )
        await run_effects([partial(self._notify_new_request, request)])
        return request

    async def _notify_new_request(self, request: AccessRequest) -> None:
        recipients = list(request.project_admins or [])
        if not recipients:
            admins = await self._directory.project_admins(request.gcp_project_id)
            recipients = [a.email for a in admins]
        if not recipients:
            logger.warning("No approvers to notify for request %s", request.id)
            return
        await self._dispatcher.notify_new_request(request, recipients)

    # ------------------------------------------------------------ approve

    async def approve(self, request_id: str, approver_email: str) -> AccessRequest:
        """
        Учесть голос администратора.
        По достижении порога заявка становится APPROVED и выдаётся доступ
        (идемпотентно по кортежу пользователь/ресурс/роль).
        """
        approver = normalize_email(approver_email)
        async with self._request_locks.hold(request_id):
            request, effects = await self._retrying(
                f"approve {request_id}",
                partial(self._approve_once, request_id, approver),
            )
        await run_effects(effects)
        return request

    async def _approve_once(
        self, request_id: str, approver: str
    ) -> Tuple[AccessRequest, List[Effect]]:
        effects: List[Effect] = []
        async with self._transaction() as session:
            request = await self._load_request(session, request_id)
            await self._authorize(approver, request.gcp_project_id)

            current = parse_request_status(request.status)
            if current.is_terminal:
                raise ConflictError(
                    f"Access request {request_id} is already {current.value}"
                )
            approvals = list(request.approvals or [])
            if approver in approvals:
                raise ConflictError(
                    f"Access request {request_id} already approved by this reviewer"
                )
            approvals.append(approver)
            target = status_for_approvals(len(approvals), request.required_approvals)
            ensure_transition(current, target)

            now = utcnow()
            values = {"approvals": approvals, "status": target.value, "updated_at": now}
            if target is RequestStatus.APPROVED:
                values.update(reviewed_by=approver, reviewed_at=now)
            updated = await repo.compare_and_set_request(session, request, **values)
            if updated is None:
                raise StaleWriteError(f"Access request {request_id} changed since read")

            if target is RequestStatus.APPROVED:
                key = (updated.requester_email, updated.asset_name, updated.requested_role)
                async with self._tuple_locks.hold(key):
                    grant, created = await repo.create_grant(
                        session,
                        user_email=updated.requester_email,
                        asset_name=updated.asset_name,
                        project_id=updated.gcp_project_id,
                        role=updated.requested_role,
                        request_id=updated.id,
                        granted_by=approver,
                    )
                    if created:
                        await self._roles.grant_role(
                            updated.gcp_project_id,
                            updated.requester_email,
                            updated.requested_role,
                        )
                    await session.commit()
                logger.info(
                    "Access request %s approved by %s (%d/%d), grant %s %s",
                    request_id, approver, len(approvals), updated.required_approvals,
                    grant.id, "issued" if created else "already active",
                )
                effects.append(partial(self._dispatcher.notify_approved, updated, approver))
            else:
                await session.commit()
                logger.info(
                    "Access request %s partially approved by %s (%d/%d)",
                    request_id, approver, len(approvals), updated.required_approvals,
                )
        return updated, effects

    # ------------------------------------------------------------- reject

    async def reject(
        self, request_id: str, approver_email: str, reason: Optional[str] = None
    ) -> AccessRequest:
        """Отклонить заявку. Накопленные голоса сохраняются для аудита."""
        approver = normalize_email(approver_email)
        async with self._request_locks.hold(request_id):
            request, effects = await self._retrying(
                f"reject {request_id}",
                partial(self._reject_once, request_id, approver, reason),
            )
        await run_effects(effects)
        return request

    async def _reject_once(
        self, request_id: str, approver: str, reason: Optional[str]
    ) -> Tuple[AccessRequest, List[Effect]]:
        async with self._transaction() as session:
            request = await self._load_request(session, request_id)
            await self._authorize(approver, request.gcp_project_id)

            current = parse_request_status(request.status)
            if current.is_terminal:
                raise ConflictError(
                    f"Access request {request_id} is already {current.value}"
                )
            ensure_transition(current, RequestStatus.REJECTED)

            now = utcnow()
            updated = await repo.compare_and_set_request(
                session,
                request,
                status=RequestStatus.REJECTED.value,
                reviewed_by=approver,
                reviewed_at=now,
                admin_note=reason or "",
                updated_at=now,
            )
            if updated is None:
                raise StaleWriteError(f"Access request {request_id} changed since read")
            await session.commit()

        logger.info("Access request %s rejected by %s", request_id, approver)
        return updated, [partial(self._dispatcher.notify_rejected, updated, approver, reason)]

    # ------------------------------------------------------------- revoke

    async def revoke(self, grant_id: str, actor_email: str) -> GrantedAccess:
        """
        Отозвать выданный доступ. Исходная заявка не изменяется:
        original_request_id остаётся ссылкой только для поиска.
        """
        actor = normalize_email(actor_email)
        async with self._grant_locks.hold(grant_id):
            async with self._transaction() as session:
                grant = await repo.get_grant(session, grant_id)
                if grant is None:
                    raise NotFoundError(f"Granted access {grant_id} not found")
                await self._authorize(actor, grant.gcp_project_id)

                try:
                    current = GrantStatus(grant.status)
                except ValueError:
                    raise ConflictError(f"Unknown grant status '{grant.status}'") from None
                ensure_grant_transition(current, GrantStatus.REVOKED)

                updated = await repo.revoke_grant(session, grant, actor)
                if updated is None:
                    raise ConflictError(f"Granted access {grant_id} is no longer active")
                await self._roles.revoke_role(
                    updated.gcp_project_id, updated.user_email, updated.role
                )
                await session.commit()

        logger.info("Granted access %s revoked by %s", grant_id, actor)
        await run_effects([partial(self._dispatcher.notify_revoked, updated, actor)])
        return updated
