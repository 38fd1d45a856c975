import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import repositories as repo
from .errors import ExternalServiceError
from .lifecycle import NotificationType, normalize_email
from .messaging import Publisher
from .models import AccessRequest, GrantedAccess, Notification, utcnow

logger = logging.getLogger(__name__)

Effect = Callable[[], Awaitable[Any]]


async def run_effects(effects: Iterable[Effect]) -> None:
    """
    Выполнить побочные эффекты перехода (уведомления) после фиксации.
    Сбой эффекта логируется и не влияет на результат перехода.
    """
    for effect in effects:
        try:
            await effect()
        except Exception:
            logger.exception("Notification side effect failed")


def notification_payload(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "recipient_email": n.recipient_email,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "metadata": dict(n.details or {}),
        "read": n.read,
        "created_at": n.created_at.isoformat() if n.created_at else None,
        "expires_at": n.expires_at.isoformat() if n.expires_at else None,
    }


class NotificationDispatcher:
    """
    Формирует и сохраняет уведомления; бизнес-правил не содержит.
    Если задан publisher, сохранённое уведомление публикуется в очередь
    для доставки.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: Optional[Publisher] = None,
        retention_days: int = 30,
    ):
        self._sessions = session_factory
        self._publisher = publisher
        self._retention = timedelta(days=retention_days)

    async def create_notification(
        self,
        recipient_email: str,
        type: NotificationType,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        now = utcnow()
        recipient_email = normalize_email(recipient_email)
        notification = Notification(
            id=repo.new_id("notif"),
            recipient_email=recipient_email,
            type=type.value,
            title=title,
            message=message,
            details=metadata or {},
            read=False,
            created_at=now,
            expires_at=now + self._retention,
        )
        try:
            async with self._sessions() as session:
                notification = await repo.add_notification(session, notification)
        except SQLAlchemyError as exc:
            raise ExternalServiceError(
                f"Failed to persist notification for {recipient_email}"
            ) from exc

        if self._publisher is not None:
            try:
                await self._publisher(notification_payload(notification))
            except Exception as exc:
                raise ExternalServiceError(
                    f"Failed to publish notification {notification.id}"
                ) from exc
        return notification

    # --- триггеры

    async def notify_approved(self, request: AccessRequest, actor_email: str) -> Notification:
        return await self.create_notification(
            recipient_email=request.requester_email,
            type=NotificationType.ACCESS_APPROVED,
            title="Access Request Approved",
            message=f"Your access request for {request.asset_name} has been approved.",
            metadata={
                "request_id": request.id,
                "asset_name": request.asset_name,
                "project_id": request.gcp_project_id,
                "role": request.requested_role,
                "action_by": actor_email,
            },
        )

    async def notify_rejected(
        self, request: AccessRequest, actor_email: str, reason: Optional[str] = None
    ) -> Notification:
        message = f"Your access request for {request.asset_name} has been rejected."
        if reason:
            message += f" Reason: {reason}"
        return await self.create_notification(
            recipient_email=request.requester_email,
            type=NotificationType.ACCESS_REJECTED,
            title="Access Request Rejected",
            message=message,
            metadata={
                "request_id": request.id,
                "asset_name": request.asset_name,
                "project_id": request.gcp_project_id,
                "role": request.requested_role,
                "action_by": actor_email,
                "reason": reason or "",
            },
        )

    async def notify_revoked(self, grant: GrantedAccess, actor_email: str) -> Notification:
        return await self.create_notification(
            recipient_email=grant.user_email,
            type=NotificationType.ACCESS_REVOKED,
            title="Access Revoked",
            message=f"Your access to {grant.asset_name} has been revoked.",
            metadata={
                "grant_id": grant.id,
                "request_id": grant.original_request_id,
                "asset_name": grant.asset_name,
                "project_id": grant.gcp_project_id,
                "role": grant.role,
                "action_by": actor_email,
            },
        )

    async def notify_new_request(
        self, request: AccessRequest, recipients: Iterable[str]
    ) -> List[Notification]:
        """Разослать по одному уведомлению каждому согласующему."""
        return await self._fan_out(
            recipients,
            type=NotificationType.NEW_REQUEST,
            title="New Access Request",
            message=f"{request.requester_email} is requesting access to {request.asset_name}",
            metadata={
                "request_id": request.id,
                "asset_name": request.asset_name,
                "project_id": request.gcp_project_id,
                "role": request.requested_role,
                "requester": request.requester_email,
            },
        )

    async def notify_bulk_action(
        self, count: int, action: str, actor_email: str, recipients: Iterable[str]
    ) -> List[Notification]:
        return await self._fan_out(
            recipients,
            type=NotificationType.BULK_ACTION,
            title="Bulk Action Completed",
            message=f"{actor_email} performed bulk {action} on {count} request(s).",
            metadata={"count": count, "action": action, "action_by": actor_email},
        )

    async def _fan_out(
        self,
        recipients: Iterable[str],
        type: NotificationType,
        title: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> List[Notification]:
        """
        По записи на получателя. Сбой для одного получателя логируется
        и не мешает остальным; возвращаются только созданные записи.
        """
        created = []
        for recipient in dict.fromkeys(normalize_email(r) for r in recipients):
            try:
                created.append(
                    await self.create_notification(
                        recipient_email=recipient,
                        type=type,
                        title=title,
                        message=message,
                        metadata=dict(metadata),
                    )
                )
            except ExternalServiceError:
                logger.exception("%s notification for %s failed", type.value, recipient)
        return created

    # --- входящие

    async def list_notifications(
        self, recipient_email: str, read: Optional[bool] = None, limit: Optional[int] = None
    ) -> List[Notification]:
        async with self._sessions() as session:
            return await repo.list_notifications(
                session, normalize_email(recipient_email), utcnow(), read=read, limit=limit
            )

    async def unread_count(self, recipient_email: str) -> int:
        async with self._sessions() as session:
            return await repo.unread_count(session, normalize_email(recipient_email), utcnow())

    async def mark_read(self, notification_ids: Iterable[str]) -> int:
        async with self._sessions() as session:
            return await repo.mark_read(session, notification_ids)

    async def mark_all_read(self, recipient_email: str) -> int:
        async with self._sessions() as session:
            return await repo.mark_all_read(session, normalize_email(recipient_email))

    async def delete_notification(self, notification_id: str) -> bool:
        async with self._sessions() as session:
            return await repo.delete_notification(session, notification_id)

    async def purge_expired(self) -> int:
        async with self._sessions() as session:
            removed = await repo.purge_expired_notifications(session, utcnow())
        if removed:
            logger.info("Purged %d expired notifications", removed)
        return removed
