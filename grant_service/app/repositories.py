"""
Доступ к хранилищу записей.

Функции для заявок и выданных доступов только выполняют flush: транзакцией
владеет движок жизненного цикла (ConsensusEngine). Функции уведомлений и
ролей администраторов — самостоятельные операции и фиксируют изменения сами.
"""

import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import StaleWriteError
from .lifecycle import GrantStatus, RequestStatus
from .models import AccessRequest, AdminRole, GrantedAccess, Notification, utcnow


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ---------------------------------------------------------------- requests


async def create_request(
    session: AsyncSession,
    *,
    requester_email: str,
    asset_name: str,
    project_id: str,
    requested_role: str,
    justification: Optional[str],
    project_admins: List[str],
    required_approvals: int,
    request_id: Optional[str] = None,
) -> AccessRequest:
    """Создать заявку со статусом PENDING и пустым списком голосов."""
    now = utcnow()
    req = AccessRequest(
        id=request_id or new_id("req"),
        requester_email=requester_email,
        asset_name=asset_name,
        gcp_project_id=project_id,
        requested_role=requested_role,
        justification=justification,
        status=RequestStatus.PENDING.value,
        approvals=[],
        required_approvals=required_approvals,
        project_admins=list(project_admins),
        admin_note="",
        submitted_at=now,
        updated_at=now,
        version=1,
    )
    session.add(req)
    await session.flush()
    return req


async def get_request(session: AsyncSession, request_id: str) -> Optional[AccessRequest]:
    """Вернуть заявку по идентификатору или None."""
    res = await session.execute(
        select(AccessRequest).where(AccessRequest.id == request_id)
    )
    return res.scalar_one_or_none()


async def list_requests(
    session: AsyncSession,
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    requester_email: Optional[str] = None,
) -> List[AccessRequest]:
    """Вернуть заявки по фильтрам, новые первыми."""
    stmt = select(AccessRequest)
    if status:
        stmt = stmt.where(AccessRequest.status == status)
    if project_id:
        stmt = stmt.where(AccessRequest.gcp_project_id == project_id)
    if requester_email:
        stmt = stmt.where(AccessRequest.requester_email == requester_email)
    stmt = stmt.order_by(AccessRequest.submitted_at.desc(), AccessRequest.id.desc())
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def compare_and_set_request(
    session: AsyncSession, request: AccessRequest, **values
) -> Optional[AccessRequest]:
    """
    Условно обновить заявку: запись меняется, только если её version
    совпадает с прочитанной. Возвращает обновлённую заявку или None,
    если запись успели изменить.
    """
    stmt = (
        update(AccessRequest)
        .where(
            AccessRequest.id == request.id,
            AccessRequest.version == request.version,
        )
        .values(version=request.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        return None
    await session.refresh(request)
    return request


# ------------------------------------------------------------------ grants


async def find_active_grant(
    session: AsyncSession, user_email: str, asset_name: str, role: str
) -> Optional[GrantedAccess]:
    """Найти ACTIVE доступ для кортежа (user_email, asset_name, role)."""
    res = await session.execute(
        select(GrantedAccess).where(
            GrantedAccess.user_email == user_email,
            GrantedAccess.asset_name == asset_name,
            GrantedAccess.role == role,
            GrantedAccess.status == GrantStatus.ACTIVE.value,
        )
    )
    return res.scalars().first()


async def create_grant(
    session: AsyncSession,
    *,
    user_email: str,
    asset_name: str,
    project_id: str,
    role: str,
    request_id: Optional[str],
    granted_by: str,
) -> Tuple[GrantedAccess, bool]:
    """
    Идемпотентно выдать доступ.
    Если для кортежа уже есть ACTIVE запись — она возвращается без изменений
    (created=False). Иначе создаётся новая ACTIVE запись (created=True).
    Нарушение уникального индекса означает, что параллельный писатель
    успел первым: поднимается StaleWriteError для повтора операции.
    """
    existing = await find_active_grant(session, user_email, asset_name, role)
    if existing is not None:
        return existing, False

    grant = GrantedAccess(
        id=new_id("grant"),
        user_email=user_email,
        asset_name=asset_name,
        gcp_project_id=project_id,
        role=role,
        granted_at=utcnow(),
        granted_by=granted_by,
        original_request_id=request_id,
        status=GrantStatus.ACTIVE.value,
    )
    session.add(grant)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise StaleWriteError(
            f"Active grant for {user_email}/{asset_name}/{role} created concurrently"
        ) from exc
    return grant, True


async def get_grant(session: AsyncSession, grant_id: str) -> Optional[GrantedAccess]:
    res = await session.execute(
        select(GrantedAccess).where(GrantedAccess.id == grant_id)
    )
    return res.scalar_one_or_none()


async def list_grants(
    session: AsyncSession,
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    user_email: Optional[str] = None,
    asset_name: Optional[str] = None,
) -> List[GrantedAccess]:
    """Вернуть выданные доступы по фильтрам, новые первыми."""
    stmt = select(GrantedAccess)
    if status:
        stmt = stmt.where(GrantedAccess.status == status)
    if project_id:
        stmt = stmt.where(GrantedAccess.gcp_project_id == project_id)
    if user_email:
        stmt = stmt.where(GrantedAccess.user_email == user_email)
    if asset_name:
        stmt = stmt.where(GrantedAccess.asset_name == asset_name)
    stmt = stmt.order_by(GrantedAccess.granted_at.desc(), GrantedAccess.id.desc())
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def revoke_grant(
    session: AsyncSession, grant: GrantedAccess, revoked_by: str
) -> Optional[GrantedAccess]:
    """
    Отозвать доступ условной записью (только из ACTIVE).
    Возвращает обновлённую запись или None, если доступ уже не активен.
    """
    stmt = (
        update(GrantedAccess)
        .where(
            GrantedAccess.id == grant.id,
            GrantedAccess.status == GrantStatus.ACTIVE.value,
        )
        .values(
            status=GrantStatus.REVOKED.value,
            revoked_at=utcnow(),
            revoked_by=revoked_by,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        return None
    await session.refresh(grant)
    return grant


async def grant_stats(session: AsyncSession, project_id: str) -> Dict[str, int]:
    """Статистика доступов проекта: активные, отозванные, уникальные пользователи."""
    counts = await session.execute(
        select(GrantedAccess.status, func.count())
        .where(GrantedAccess.gcp_project_id == project_id)
        .group_by(GrantedAccess.status)
    )
    by_status = {status: count for status, count in counts.all()}
    users = await session.execute(
        select(func.count(func.distinct(GrantedAccess.user_email))).where(
            GrantedAccess.gcp_project_id == project_id,
            GrantedAccess.status == GrantStatus.ACTIVE.value,
        )
    )
    return {
        "active_grants": by_status.get(GrantStatus.ACTIVE.value, 0),
        "revoked_grants": by_status.get(GrantStatus.REVOKED.value, 0),
        "unique_users": users.scalar_one(),
    }


# ----------------------------------------------------------- notifications


async def add_notification(
    session: AsyncSession, notification: Notification
) -> Notification:
    session.add(notification)
    await session.commit()
    await session.refresh(notification)
    return notification


async def list_notifications(
    session: AsyncSession,
    recipient_email: str,
    now: datetime,
    read: Optional[bool] = None,
    limit: Optional[int] = None,
) -> List[Notification]:
    """Непросроченные уведомления получателя, новые первыми."""
    stmt = select(Notification).where(
        Notification.recipient_email == recipient_email,
        Notification.expires_at > now,
    )
    if read is not None:
        stmt = stmt.where(Notification.read == read)
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    if limit:
        stmt = stmt.limit(limit)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def unread_count(
    session: AsyncSession, recipient_email: str, now: datetime
) -> int:
    res = await session.execute(
        select(func.count()).where(
            Notification.recipient_email == recipient_email,
            Notification.read.is_(False),
            Notification.expires_at > now,
        )
    )
    return res.scalar_one()


async def mark_read(session: AsyncSession, notification_ids: Iterable[str]) -> int:
    """Отметить уведомления прочитанными. Возвращает число обновлённых записей."""
    ids = list(notification_ids)
    if not ids:
        return 0
    res = await session.execute(
        update(Notification)
        .where(Notification.id.in_(ids), Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return res.rowcount or 0


async def mark_all_read(session: AsyncSession, recipient_email: str) -> int:
    res = await session.execute(
        update(Notification)
        .where(
            Notification.recipient_email == recipient_email,
            Notification.read.is_(False),
        )
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return res.rowcount or 0


async def delete_notification(session: AsyncSession, notification_id: str) -> bool:
    res = await session.execute(
        delete(Notification).where(Notification.id == notification_id)
    )
    await session.commit()
    return bool(res.rowcount)


async def purge_expired_notifications(session: AsyncSession, now: datetime) -> int:
    """Удалить уведомления с истёкшим сроком хранения."""
    res = await session.execute(
        delete(Notification).where(Notification.expires_at <= now)
    )
    await session.commit()
    return res.rowcount or 0


# ------------------------------------------------------------- admin roles


async def get_admin_role(session: AsyncSession, email: str) -> Optional[AdminRole]:
    """Вернуть запись роли (в том числе неактивную) или None."""
    res = await session.execute(select(AdminRole).where(AdminRole.email == email))
    return res.scalar_one_or_none()


async def list_active_admins(session: AsyncSession) -> List[AdminRole]:
    res = await session.execute(
        select(AdminRole)
        .where(AdminRole.is_active.is_(True))
        .order_by(AdminRole.email)
    )
    return list(res.scalars().all())


async def upsert_admin_role(
    session: AsyncSession,
    email: str,
    role: str,
    assigned_projects: List[str],
    created_by: Optional[str],
) -> AdminRole:
    """
    Создать или обновить роль администратора (и активировать её).
    created_by/created_at сохраняются только при создании.
    """
    now = utcnow()
    admin = await get_admin_role(session, email)
    if admin is None:
        admin = AdminRole(email=email, created_by=created_by, created_at=now)
        session.add(admin)
    admin.role = role
    admin.assigned_projects = list(assigned_projects)
    admin.updated_at = now
    admin.is_active = True
    await session.commit()
    await session.refresh(admin)
    return admin


async def set_assigned_projects(
    session: AsyncSession, admin: AdminRole, assigned_projects: List[str]
) -> AdminRole:
    admin.assigned_projects = list(assigned_projects)
    admin.updated_at = utcnow()
    await session.commit()
    await session.refresh(admin)
    return admin


async def deactivate_admin_role(session: AsyncSession, email: str) -> bool:
    """Мягко удалить роль. False, если активной записи нет."""
    admin = await get_admin_role(session, email)
    if admin is None or not admin.is_active:
        return False
    admin.is_active = False
    admin.updated_at = utcnow()
    await session.commit()
    return True
