import logging
from datetime import timedelta

import pytest
from sqlalchemy import update

from grant_service.app.errors import ExternalServiceError
from grant_service.app.lifecycle import NotificationType
from grant_service.app.models import Notification, utcnow
from grant_service.app.notifications import NotificationDispatcher, run_effects

from .conftest import ALICE, BOB, CAROL, USER


async def _notify(dispatcher, recipient=USER, title="hello"):
    return await dispatcher.create_notification(
        recipient_email=recipient,
        type=NotificationType.ACCESS_APPROVED,
        title=title,
        message="msg",
        metadata={"request_id": "req_1"},
    )


@pytest.mark.asyncio
async def test_notification_expires_after_retention(services):
    n = await _notify(services.dispatcher)
    assert n.read is False
    assert n.details == {"request_id": "req_1"}
    assert n.expires_at - n.created_at == timedelta(days=30)


@pytest.mark.asyncio
async def test_new_request_fans_out_once_per_recipient(services, submit):
    req = await submit(approver_list=[])
    created = await services.dispatcher.notify_new_request(req, [ALICE, BOB, ALICE])
    assert [n.recipient_email for n in created] == [ALICE, BOB]
    assert all(n.type == "NEW_REQUEST" for n in created)
    assert created[0].details["request_id"] == req.id


@pytest.mark.asyncio
async def test_rejection_message_carries_reason(services, submit):
    req = await submit()
    n = await services.dispatcher.notify_rejected(req, ALICE, "not needed")
    assert n.message.endswith("Reason: not needed")
    assert n.details["reason"] == "not needed"


@pytest.mark.asyncio
async def test_inbox_read_flags(services):
    dispatcher = services.dispatcher
    first = await _notify(dispatcher, title="first")
    second = await _notify(dispatcher, title="second")
    await _notify(dispatcher, recipient=ALICE)

    assert await dispatcher.unread_count(USER) == 2
    assert await dispatcher.mark_read([first.id, "missing"]) == 1
    assert await dispatcher.mark_read([first.id]) == 0
    assert await dispatcher.unread_count(USER) == 1

    unread = await dispatcher.list_notifications(USER, read=False)
    assert [n.id for n in unread] == [second.id]

    assert await dispatcher.mark_all_read(USER) == 1
    assert await dispatcher.unread_count(USER) == 0
    assert await dispatcher.unread_count(ALICE) == 1


@pytest.mark.asyncio
async def test_delete_notification(services):
    n = await _notify(services.dispatcher)
    assert await services.dispatcher.delete_notification(n.id) is True
    assert await services.dispatcher.delete_notification(n.id) is False
    assert await services.dispatcher.list_notifications(USER) == []


@pytest.mark.asyncio
async def test_expired_notifications_hidden_and_purged(services):
    dispatcher = services.dispatcher
    old = await _notify(dispatcher, title="old")
    fresh = await _notify(dispatcher, title="fresh")
    async with services.sessions() as s:
        await s.execute(
            update(Notification)
            .where(Notification.id == old.id)
            .values(expires_at=utcnow() - timedelta(days=1))
        )
        await s.commit()

    assert [n.id for n in await dispatcher.list_notifications(USER)] == [fresh.id]
    assert await dispatcher.unread_count(USER) == 1
    assert await dispatcher.purge_expired() == 1
    assert await dispatcher.purge_expired() == 0


@pytest.mark.asyncio
async def test_publish_failure_is_reported_after_persisting(services):
    published = []

    async def broken_publisher(message):
        published.append(message)
        raise ConnectionError("broker down")

    dispatcher = NotificationDispatcher(services.sessions, publisher=broken_publisher)
    with pytest.raises(ExternalServiceError):
        await _notify(dispatcher)

    assert published[0]["recipient_email"] == USER
    assert published[0]["metadata"] == {"request_id": "req_1"}
    assert len(await dispatcher.list_notifications(USER)) == 1


@pytest.mark.asyncio
async def test_publisher_receives_payload(services):
    published = []

    async def publisher(message):
        published.append(message)

    dispatcher = NotificationDispatcher(services.sessions, publisher=publisher, retention_days=7)
    n = await _notify(dispatcher)
    assert published[0]["id"] == n.id
    assert published[0]["type"] == "ACCESS_APPROVED"
    assert n.expires_at - n.created_at == timedelta(days=7)


@pytest.mark.asyncio
async def test_run_effects_logs_and_continues(caplog):
    calls = []

    async def failing():
        raise ExternalServiceError("store down")

    async def succeeding():
        calls.append("ok")

    with caplog.at_level(logging.ERROR):
        await run_effects([failing, succeeding])

    assert calls == ["ok"]
    assert "Notification side effect failed" in caplog.text


@pytest.mark.asyncio
async def test_fan_out_survives_one_failing_recipient(services, submit, caplog):
    req = await submit(approver_list=[])
    published = []

    async def publisher(message):
        if message["recipient_email"] == ALICE:
            raise ConnectionError("broker rejected message")
        published.append(message["recipient_email"])

    dispatcher = NotificationDispatcher(services.sessions, publisher=publisher)
    with caplog.at_level(logging.ERROR):
        created = await dispatcher.notify_new_request(req, [ALICE, BOB, CAROL])

    assert [n.recipient_email for n in created] == [BOB, CAROL]
    assert published == [BOB, CAROL]
    assert "NEW_REQUEST notification for alice@corp.example failed" in caplog.text


@pytest.mark.asyncio
async def test_inbox_lookups_ignore_email_case(services):
    await _notify(services.dispatcher, recipient=" User@Corp.Example ")

    inbox = await services.dispatcher.list_notifications("USER@corp.example")
    assert [n.recipient_email for n in inbox] == [USER]
    assert await services.dispatcher.unread_count("User@Corp.Example") == 1
    assert await services.dispatcher.mark_all_read("User@Corp.Example") == 1
