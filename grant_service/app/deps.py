from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .bulk import BulkActionCoordinator
from .db import create_db_engine, make_session_factory
from .directory import AdminDirectory
from .engine import ConsensusEngine
from .iam import DisabledRoleAssigner, HttpRoleAssigner, RoleAssigner
from .messaging import Publisher, make_queue_publisher
from .notifications import NotificationDispatcher
from .settings import Settings


@dataclass
class Services:
    """Зависимости процесса; создаются один раз при старте и передаются явно."""

    settings: Settings
    db_engine: AsyncEngine
    sessions: async_sessionmaker[AsyncSession]
    directory: AdminDirectory
    dispatcher: NotificationDispatcher
    engine: ConsensusEngine
    bulk: BulkActionCoordinator


def build_services(
    settings: Settings,
    role_assigner: Optional[RoleAssigner] = None,
    publisher: Optional[Publisher] = None,
) -> Services:
    db_engine = create_db_engine(settings.database_url)
    sessions = make_session_factory(db_engine)

    if role_assigner is None:
        if settings.role_assignment_url:
            role_assigner = HttpRoleAssigner(
                settings.role_assignment_url, timeout=settings.role_assignment_timeout
            )
        else:
            role_assigner = DisabledRoleAssigner()
    if publisher is None and settings.publish_notifications:
        publisher = make_queue_publisher(settings.rabbitmq_url, settings.notifications_queue)

    directory = AdminDirectory(sessions, super_admin_email=settings.super_admin_email)
    dispatcher = NotificationDispatcher(
        sessions, publisher=publisher, retention_days=settings.notification_retention_days
    )
    engine = ConsensusEngine(
        sessions,
        directory,
        dispatcher,
        role_assigner,
        required_approvals=settings.required_approvals,
        max_attempts=settings.cas_max_attempts,
    )
    return Services(
        settings=settings,
        db_engine=db_engine,
        sessions=sessions,
        directory=directory,
        dispatcher=dispatcher,
        engine=engine,
        bulk=BulkActionCoordinator(engine, dispatcher),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Зависимость FastAPI: выдаёт асинхронную сессию БД на время запроса."""
    async with get_services(request).sessions() as session:
        yield session


def get_engine(request: Request) -> ConsensusEngine:
    return get_services(request).engine


def get_bulk(request: Request) -> BulkActionCoordinator:
    return get_services(request).bulk


def get_directory(request: Request) -> AdminDirectory:
    return get_services(request).directory


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return get_services(request).dispatcher
