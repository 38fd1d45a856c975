import logging
from typing import Optional, Protocol

import httpx

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


class RoleAssigner(Protocol):
    async def grant_role(self, project_id: str, member_email: str, role: str) -> None: ...

    async def revoke_role(self, project_id: str, member_email: str, role: str) -> None: ...


class HttpRoleAssigner:
    """
    Клиент сервиса назначения ролей в облаке.
    Сервис должен быть идемпотентным: повторная выдача уже выданной роли
    и отзыв отсутствующей роли завершаются успешно.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def grant_role(self, project_id: str, member_email: str, role: str) -> None:
        await self._post("/roles/grant", project_id, member_email, role)

    async def revoke_role(self, project_id: str, member_email: str, role: str) -> None:
        await self._post("/roles/revoke", project_id, member_email, role)

    async def _post(self, path: str, project_id: str, member_email: str, role: str) -> None:
        member = member_email if ":" in member_email else f"user:{member_email}"
        payload = {"project_id": project_id, "member": member, "role": role}
        try:
            if self._client is not None:
                r = await self._client.post(
                    f"{self._base_url}{path}", json=payload, timeout=self._timeout
                )
                r.raise_for_status()
            else:
                async with httpx.AsyncClient() as client:
                    r = await client.post(
                        f"{self._base_url}{path}", json=payload, timeout=self._timeout
                    )
                    r.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                f"Role assignment {path} failed for {member} on {project_id}: {exc}"
            ) from exc
        logger.info("Role assignment %s: %s %s on %s", path, member, role, project_id)


class DisabledRoleAssigner:
    """Используется, когда ROLE_ASSIGNMENT_URL не задан: вызовы только логируются."""

    async def grant_role(self, project_id: str, member_email: str, role: str) -> None:
        logger.info(
            "Role assignment disabled, skipping grant of %s to %s on %s",
            role, member_email, project_id,
        )

    async def revoke_role(self, project_id: str, member_email: str, role: str) -> None:
        logger.info(
            "Role assignment disabled, skipping revoke of %s from %s on %s",
            role, member_email, project_id,
        )
