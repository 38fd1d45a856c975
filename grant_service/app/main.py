import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from . import repositories as repo
from . import schemas
from .bulk import BulkActionCoordinator, BulkResult
from .deps import (
    Services,
    build_services,
    get_bulk,
    get_directory,
    get_dispatcher,
    get_engine,
    get_session,
)
from .directory import AdminDirectory
from .engine import ConsensusEngine
from .errors import LifecycleError
from .lifecycle import normalize_email
from .models import Notification
from .notifications import NotificationDispatcher
from .settings import load_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Собрать приложение. Если services не переданы, они создаются из
    переменных окружения при старте и освобождаются при остановке.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "services", None) is None:
            settings = load_settings()
            configure_logging(settings.log_level)
            owned = build_services(settings)
            app.state.services = owned
            logger.info(
                "Grant service started (required approvals: %d)",
                settings.required_approvals,
            )
        try:
            yield
        finally:
            if owned is not None:
                await owned.db_engine.dispose()

    app = FastAPI(
        title="Grant Lifecycle Service",
        version="1.0.0",
        description=(
            "Жизненный цикл доступа к ресурсам данных: подача заявки, "
            "консенсусное согласование, выдача и отзыв доступа, уведомления."
        ),
        lifespan=lifespan,
    )
    if services is not None:
        configure_logging(services.settings.log_level)
        app.state.services = services

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    app.include_router(router)
    return app


def to_bulk_out(result: BulkResult) -> schemas.BulkResultOut:
    return schemas.BulkResultOut(
        action=result.action,
        succeeded=result.succeeded,
        failed=result.failed,
        results=[schemas.BulkItemOut.model_validate(r.__dict__) for r in result.results],
    )


def to_notification_out(n: Notification) -> schemas.NotificationOut:
    return schemas.NotificationOut(
        id=n.id,
        recipient_email=n.recipient_email,
        type=n.type,
        title=n.title,
        message=n.message,
        metadata=dict(n.details or {}),
        read=n.read,
        created_at=n.created_at,
        expires_at=n.expires_at,
    )


@router.get("/health", tags=["Техническое"], summary="Проверка здоровья")
async def health():
    """Возвращает статус готовности сервиса к обработке запросов."""
    return {"status": "ok"}


# ------------------------------------------------------------------ заявки


@router.post(
    "/requests",
    response_model=schemas.RequestOut,
    status_code=201,
    tags=["Заявки"],
    summary="Подать заявку",
    description=(
        "Создаёт заявку со статусом PENDING и уведомляет согласующих "
        "(переданный список или администраторов проекта)."
    ),
)
async def submit_request(
    body: schemas.SubmitRequest, engine: ConsensusEngine = Depends(get_engine)
):
    req = await engine.submit(
        requester_email=body.requester_email,
        asset_name=body.asset_name,
        project_id=body.project_id,
        requested_role=body.requested_role,
        justification=body.justification,
        approver_list=body.approver_list,
        request_id=body.id,
    )
    return schemas.RequestOut.model_validate(req.__dict__)


@router.get(
    "/requests",
    response_model=List[schemas.RequestOut],
    tags=["Заявки"],
    summary="Список заявок",
    description="Фильтры: status, project_id, requester_email. Новые первыми.",
)
async def list_requests(
    status: Optional[schemas.RequestStatusName] = None,
    project_id: Optional[str] = None,
    requester_email: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    items = await repo.list_requests(
        session,
        status=status,
        project_id=project_id,
        requester_email=normalize_email(requester_email) or None,
    )
    return [schemas.RequestOut.model_validate(i.__dict__) for i in items]


@router.post(
    "/requests/bulk/approve",
    response_model=schemas.BulkResultOut,
    tags=["Массовые действия"],
    summary="Массовое одобрение",
    description="Одобряет набор заявок; ошибка по одной заявке не прерывает остальные.",
)
async def bulk_approve(
    body: schemas.BulkApproveBody,
    bulk: BulkActionCoordinator = Depends(get_bulk),
):
    result = await bulk.bulk_approve(body.request_ids, body.approver_email)
    return to_bulk_out(result)


@router.post(
    "/requests/bulk/reject",
    response_model=schemas.BulkResultOut,
    tags=["Массовые действия"],
    summary="Массовое отклонение",
)
async def bulk_reject(
    body: schemas.BulkRejectBody,
    bulk: BulkActionCoordinator = Depends(get_bulk),
):
    result = await bulk.bulk_reject(body.request_ids, body.approver_email, body.reason)
    return to_bulk_out(result)


@router.get(
    "/requests/{request_id}",
    response_model=schemas.RequestOut,
    tags=["Заявки"],
    summary="Получить заявку",
)
async def get_request(request_id: str, session: AsyncSession = Depends(get_session)):
    req = await repo.get_request(session, request_id)
    if not req:
        raise HTTPException(status_code=404, detail="Request not found")
    return schemas.RequestOut.model_validate(req.__dict__)


@router.post(
    "/requests/{request_id}/approve",
    response_model=schemas.RequestOut,
    tags=["Заявки"],
    summary="Одобрить заявку",
    description=(
        "Учитывает голос администратора. По достижении порога заявка "
        "становится APPROVED и выдаётся доступ."
    ),
)
async def approve_request(
    request_id: str,
    body: schemas.ApproveBody,
    engine: ConsensusEngine = Depends(get_engine),
):
    req = await engine.approve(request_id, body.approver_email)
    return schemas.RequestOut.model_validate(req.__dict__)


@router.post(
    "/requests/{request_id}/reject",
    response_model=schemas.RequestOut,
    tags=["Заявки"],
    summary="Отклонить заявку",
)
async def reject_request(
    request_id: str,
    body: schemas.RejectBody,
    engine: ConsensusEngine = Depends(get_engine),
):
    req = await engine.reject(request_id, body.approver_email, body.reason)
    return schemas.RequestOut.model_validate(req.__dict__)


# ------------------------------------------------------- выданные доступы


@router.get(
    "/grants",
    response_model=List[schemas.GrantOut],
    tags=["Доступы"],
    summary="Список выданных доступов",
)
async def list_grants(
    status: Optional[schemas.GrantStatusName] = None,
    project_id: Optional[str] = None,
    user_email: Optional[str] = None,
    asset_name: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    items = await repo.list_grants(
        session,
        status=status,
        project_id=project_id,
        user_email=normalize_email(user_email) or None,
        asset_name=asset_name,
    )
    return [schemas.GrantOut.model_validate(g.__dict__) for g in items]


@router.get(
    "/grants/{grant_id}",
    response_model=schemas.GrantOut,
    tags=["Доступы"],
    summary="Получить выданный доступ",
)
async def get_grant(grant_id: str, session: AsyncSession = Depends(get_session)):
    grant = await repo.get_grant(session, grant_id)
    if not grant:
        raise HTTPException(status_code=404, detail="Grant not found")
    return schemas.GrantOut.model_validate(grant.__dict__)


@router.post(
    "/grants/{grant_id}/revoke",
    response_model=schemas.GrantOut,
    tags=["Доступы"],
    summary="Отозвать доступ",
    description="Отзывает активный доступ. Исходная заявка не изменяется.",
)
async def revoke_grant(
    grant_id: str,
    body: schemas.RevokeBody,
    engine: ConsensusEngine = Depends(get_engine),
):
    grant = await engine.revoke(grant_id, body.actor_email)
    return schemas.GrantOut.model_validate(grant.__dict__)


@router.get(
    "/projects/{project_id}/grant-stats",
    response_model=schemas.GrantStatsOut,
    tags=["Доступы"],
    summary="Статистика доступов проекта",
)
async def project_grant_stats(project_id: str, session: AsyncSession = Depends(get_session)):
    stats = await repo.grant_stats(session, project_id)
    return schemas.GrantStatsOut(project_id=project_id, **stats)


# ------------------------------------------------------------ уведомления


@router.get(
    "/notifications/{recipient_email}",
    response_model=List[schemas.NotificationOut],
    tags=["Уведомления"],
    summary="Входящие уведомления",
)
async def list_notifications(
    recipient_email: str,
    read: Optional[bool] = None,
    limit: Optional[int] = None,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    items = await dispatcher.list_notifications(recipient_email, read=read, limit=limit)
    return [to_notification_out(n) for n in items]


@router.get(
    "/notifications/{recipient_email}/unread-count",
    response_model=schemas.CountOut,
    tags=["Уведомления"],
    summary="Число непрочитанных",
)
async def unread_count(
    recipient_email: str,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return schemas.CountOut(count=await dispatcher.unread_count(recipient_email))


@router.post(
    "/notifications/read",
    response_model=schemas.CountOut,
    tags=["Уведомления"],
    summary="Отметить прочитанными",
)
async def mark_read(
    body: schemas.MarkReadBody,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return schemas.CountOut(count=await dispatcher.mark_read(body.notification_ids))


@router.post(
    "/notifications/purge-expired",
    response_model=schemas.CountOut,
    tags=["Уведомления"],
    summary="Удалить просроченные",
)
async def purge_expired(dispatcher: NotificationDispatcher = Depends(get_dispatcher)):
    return schemas.CountOut(count=await dispatcher.purge_expired())


@router.post(
    "/notifications/{recipient_email}/read-all",
    response_model=schemas.CountOut,
    tags=["Уведомления"],
    summary="Отметить все прочитанными",
)
async def mark_all_read(
    recipient_email: str,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return schemas.CountOut(count=await dispatcher.mark_all_read(recipient_email))


@router.delete(
    "/notifications/{notification_id}",
    tags=["Уведомления"],
    summary="Удалить уведомление",
)
async def delete_notification(
    notification_id: str,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if not await dispatcher.delete_notification(notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"deleted": True}


# --------------------------------------------------------- администраторы


@router.get(
    "/admins",
    response_model=List[schemas.AdminRoleOut],
    tags=["Администраторы"],
    summary="Активные администраторы",
)
async def list_admins(directory: AdminDirectory = Depends(get_directory)):
    return [schemas.AdminRoleOut.model_validate(a.__dict__) for a in await directory.list_admins()]


@router.get(
    "/admins/{email}",
    response_model=schemas.ResolvedRoleOut,
    tags=["Администраторы"],
    summary="Роль пользователя",
    description="Возвращает разрешённую роль; role=null, если пользователь не администратор.",
)
async def resolve_admin(email: str, directory: AdminDirectory = Depends(get_directory)):
    resolved = await directory.resolve_role(email)
    if resolved is None:
        return schemas.ResolvedRoleOut(email=email)
    return schemas.ResolvedRoleOut(
        email=resolved.email,
        role=resolved.role.value,
        assigned_projects=resolved.assigned_projects,
    )


@router.put(
    "/admins/{email}",
    response_model=schemas.AdminRoleOut,
    tags=["Администраторы"],
    summary="Назначить роль администратора",
)
async def set_admin(
    email: str,
    body: schemas.AdminRoleIn,
    directory: AdminDirectory = Depends(get_directory),
):
    admin = await directory.set_admin_role(
        email, body.role, body.assigned_projects, body.actor_email
    )
    return schemas.AdminRoleOut.model_validate(admin.__dict__)


@router.delete(
    "/admins/{email}",
    tags=["Администраторы"],
    summary="Снять роль администратора",
)
async def deactivate_admin(
    email: str,
    actor_email: str,
    directory: AdminDirectory = Depends(get_directory),
):
    await directory.deactivate_admin_role(email, actor_email)
    return {"deactivated": True}


@router.post(
    "/admins/{email}/projects/{project_id}",
    response_model=schemas.AdminRoleOut,
    tags=["Администраторы"],
    summary="Добавить проект администратору",
)
async def add_admin_project(
    email: str,
    project_id: str,
    actor_email: str,
    directory: AdminDirectory = Depends(get_directory),
):
    admin = await directory.add_project(email, project_id, actor_email)
    return schemas.AdminRoleOut.model_validate(admin.__dict__)


@router.delete(
    "/admins/{email}/projects/{project_id}",
    response_model=schemas.AdminRoleOut,
    tags=["Администраторы"],
    summary="Убрать проект у администратора",
)
async def remove_admin_project(
    email: str,
    project_id: str,
    actor_email: str,
    directory: AdminDirectory = Depends(get_directory),
):
    admin = await directory.remove_project(email, project_id, actor_email)
    return schemas.AdminRoleOut.model_validate(admin.__dict__)


app = create_app()
