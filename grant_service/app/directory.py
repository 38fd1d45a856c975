import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import repositories as repo
from .errors import ExternalServiceError, NotFoundError, UnauthorizedError, ValidationError
from .lifecycle import AdminRoleType
from .models import AdminRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedRole:
    email: str
    role: AdminRoleType
    assigned_projects: List[str] = field(default_factory=list)
    source: str = "store"

    def covers(self, project_id: str) -> bool:
        if self.role is AdminRoleType.SUPER_ADMIN:
            return True
        return project_id in self.assigned_projects


class AdminDirectory:
    """
    Каталог администраторов: определяет роль вызывающего и проекты,
    которыми он управляет. Проверки доступа работают по принципу
    fail closed: любая ошибка хранилища или отсутствие записи — отказ.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        super_admin_email: Optional[str] = None,
    ):
        self._sessions = session_factory
        self._super_admin_email = (super_admin_email or "").strip().lower() or None

    async def resolve_role(self, email: Optional[str]) -> Optional[ResolvedRole]:
        """
        Определить роль пользователя:
        1) активная запись в admin_roles
        2) SUPER_ADMIN_EMAIL из настроек
        Иначе None.
        """
        email = (email or "").strip().lower()
        if not email:
            return None
        try:
            async with self._sessions() as session:
                admin = await repo.get_admin_role(session, email)
        except Exception:
            # any store or driver failure denies access
            logger.warning("Admin role lookup failed for %s, denying", email, exc_info=True)
            return None

        if admin is not None and admin.is_active:
            try:
                role = AdminRoleType(admin.role)
            except ValueError:
                logger.warning("Unknown admin role %r stored for %s", admin.role, email)
                return None
            projects = [] if role is AdminRoleType.SUPER_ADMIN else list(admin.assigned_projects or [])
            return ResolvedRole(email=admin.email, role=role, assigned_projects=projects)

        if self._super_admin_email and email.lower() == self._super_admin_email:
            return ResolvedRole(email=email, role=AdminRoleType.SUPER_ADMIN, source="env")
        return None

    async def can_act(self, email: Optional[str], project_id: str) -> bool:
        resolved = await self.resolve_role(email)
        return resolved is not None and resolved.covers(project_id)

    async def is_super_admin(self, email: Optional[str]) -> bool:
        resolved = await self.resolve_role(email)
        return resolved is not None and resolved.role is AdminRoleType.SUPER_ADMIN

    async def project_admins(self, project_id: str) -> List[AdminRole]:
        """Активные super-admin и project-admin, назначенные на проект."""
        async with self._sessions() as session:
            admins = await repo.list_active_admins(session)
        return [
            a
            for a in admins
            if a.role == AdminRoleType.SUPER_ADMIN.value
            or project_id in (a.assigned_projects or [])
        ]

    # --- управление ролями (только super-admin)

    async def _require_super_admin(self, actor_email: Optional[str]) -> None:
        if not await self.is_super_admin(actor_email):
            raise UnauthorizedError("Only super-admins can manage admin roles")

    async def list_admins(self) -> List[AdminRole]:
        try:
            async with self._sessions() as session:
                return await repo.list_active_admins(session)
        except SQLAlchemyError as exc:
            raise ExternalServiceError("Admin store unavailable") from exc

    async def set_admin_role(
        self,
        email: str,
        role: str,
        assigned_projects: List[str],
        actor_email: str,
    ) -> AdminRole:
        await self._require_super_admin(actor_email)
        try:
            role_type = AdminRoleType(role)
        except ValueError:
            raise ValidationError(f"Unknown admin role '{role}'") from None
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("Admin email is required")
        projects = [] if role_type is AdminRoleType.SUPER_ADMIN else _dedupe(assigned_projects)
        try:
            async with self._sessions() as session:
                admin = await repo.upsert_admin_role(
                    session, email, role_type.value, projects, actor_email
                )
        except SQLAlchemyError as exc:
            raise ExternalServiceError("Admin store unavailable") from exc
        logger.info("Admin role %s set for %s by %s", role_type.value, email, actor_email)
        return admin

    async def deactivate_admin_role(self, email: str, actor_email: str) -> None:
        await self._require_super_admin(actor_email)
        email = email.strip().lower()
        try:
            async with self._sessions() as session:
                found = await repo.deactivate_admin_role(session, email)
        except SQLAlchemyError as exc:
            raise ExternalServiceError("Admin store unavailable") from exc
        if not found:
            raise NotFoundError(f"No admin role found for {email}")
        logger.info("Admin role for %s deactivated by %s", email, actor_email)

    async def add_project(self, email: str, project_id: str, actor_email: str) -> AdminRole:
        return await self._change_projects(email, project_id, actor_email, add=True)

    async def remove_project(self, email: str, project_id: str, actor_email: str) -> AdminRole:
        return await self._change_projects(email, project_id, actor_email, add=False)

    async def _change_projects(
        self, email: str, project_id: str, actor_email: str, add: bool
    ) -> AdminRole:
        await self._require_super_admin(actor_email)
        email = email.strip().lower()
        try:
            async with self._sessions() as session:
                admin = await repo.get_admin_role(session, email)
                if admin is None or not admin.is_active:
                    raise NotFoundError(f"No admin role found for {email}")
                # super-admins implicitly cover every project
                if admin.role == AdminRoleType.SUPER_ADMIN.value:
                    return admin
                projects = list(admin.assigned_projects or [])
                if add and project_id not in projects:
                    projects.append(project_id)
                elif not add:
                    projects = [p for p in projects if p != project_id]
                return await repo.set_assigned_projects(session, admin, projects)
        except SQLAlchemyError as exc:
            raise ExternalServiceError("Admin store unavailable") from exc


def _dedupe(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen
