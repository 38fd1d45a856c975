from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessRequest(Base):
    """
    Заявка пользователя на роль в ресурсе данных.
    Поля:
    - requester_email / asset_name / gcp_project_id / requested_role: что и кому
    - status: PENDING | PARTIALLY_APPROVED | APPROVED | REJECTED | REVOKED
    - approvals: упорядоченный список различных одобривших администраторов
    - required_approvals: порог консенсуса на момент подачи заявки
    - project_admins: список согласующих, переданный при подаче
    - admin_note / reviewed_by / reviewed_at: итог рассмотрения
    - version: счётчик изменений для compare-and-set
    """

    __tablename__ = "access_requests"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    requester_email: Mapped[str] = mapped_column(String(320), index=True)
    asset_name: Mapped[str] = mapped_column(String(1024))
    gcp_project_id: Mapped[str] = mapped_column(String(200), index=True)
    requested_role: Mapped[str] = mapped_column(String(200))
    justification: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(32), default="PENDING", index=True)
    approvals: Mapped[List[str]] = mapped_column(JSON, default=list)
    required_approvals: Mapped[int] = mapped_column(Integer, default=2)
    project_admins: Mapped[List[str]] = mapped_column(JSON, default=list)
    admin_note: Mapped[str] = mapped_column(Text, default="")
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(320))
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class GrantedAccess(Base):
    """
    Выданный доступ пользователя к ресурсу.
    original_request_id — только ссылка для поиска исходной заявки.
    Частичный уникальный индекс гарантирует не более одного ACTIVE
    доступа на кортеж (user_email, asset_name, role).
    """

    __tablename__ = "granted_accesses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_email: Mapped[str] = mapped_column(String(320), index=True)
    asset_name: Mapped[str] = mapped_column(String(1024))
    gcp_project_id: Mapped[str] = mapped_column(String(200), index=True)
    role: Mapped[str] = mapped_column(String(200))
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    granted_by: Mapped[str] = mapped_column(String(320))
    original_request_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", index=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    revoked_by: Mapped[Optional[str]] = mapped_column(String(320))

    __table_args__ = (
        Index(
            "uq_active_grant_tuple",
            "user_email",
            "asset_name",
            "role",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )


class Notification(Base):
    """Уведомление во входящих получателя. Хранится до expires_at."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_email: Mapped[str] = mapped_column(String(320), index=True)
    type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class AdminRole(Base):
    """
    Роль администратора.
    - role: 'project-admin' | 'super-admin'
    - assigned_projects: проекты project-admin (для super-admin всегда пусто)
    - is_active: мягкое удаление
    """

    __tablename__ = "admin_roles"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    role: Mapped[str] = mapped_column(String(32))
    assigned_projects: Mapped[List[str]] = mapped_column(JSON, default=list)
    created_by: Mapped[Optional[str]] = mapped_column(String(320))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
