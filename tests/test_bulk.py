import pytest

from grant_service.app import repositories as repo
from grant_service.app.lifecycle import RequestStatus

from .conftest import ALICE, BOB, DAVE, USER


@pytest.mark.asyncio
async def test_bulk_reject_reports_each_item(services, submit):
    r2 = await submit()

    outcome = await services.bulk.bulk_reject([r2.id, "nonexistent-id"], ALICE, "cleanup")

    assert outcome.action == "reject"
    assert [(r.id, r.ok) for r in outcome.results] == [(r2.id, True), ("nonexistent-id", False)]
    assert outcome.results[0].status == RequestStatus.REJECTED.value
    assert outcome.results[1].error_type == "NotFoundError"
    assert outcome.succeeded == 1
    assert outcome.failed == 1

    async with services.sessions() as s:
        stored = await repo.get_request(s, r2.id)
    assert stored.status == "REJECTED"
    assert stored.admin_note == "cleanup"


@pytest.mark.asyncio
async def test_bulk_approve_continues_past_failures(services, submit, role_assigner):
    own = await submit()
    foreign = await submit(project_id="proj-b")
    closed = await submit()
    await services.engine.reject(closed.id, ALICE)

    outcome = await services.bulk.bulk_approve([own.id, foreign.id, closed.id], ALICE)

    by_id = {r.id: r for r in outcome.results}
    assert by_id[own.id].ok is True
    assert by_id[own.id].status == "PARTIALLY_APPROVED"
    assert by_id[foreign.id].error_type == "UnauthorizedError"
    assert by_id[closed.id].error_type == "ConflictError"
    assert role_assigner.granted == []

    # second admin completes the first request in another batch
    outcome = await services.bulk.bulk_approve([own.id], BOB)
    assert outcome.results[0].status == "APPROVED"
    assert len(role_assigner.granted) == 1


@pytest.mark.asyncio
async def test_bulk_duplicate_ids_processed_once(services, submit):
    req = await submit()
    outcome = await services.bulk.bulk_approve([req.id, req.id], ALICE)
    assert len(outcome.results) == 1
    assert outcome.results[0].ok is True


@pytest.mark.asyncio
async def test_bulk_summary_notification_goes_to_actor(services, submit):
    req = await submit(project_id="proj-b", approver_list=[DAVE, BOB])
    await services.bulk.bulk_approve([req.id], DAVE.upper())

    inbox = await services.dispatcher.list_notifications(DAVE)
    summaries = [n for n in inbox if n.type == "BULK_ACTION"]
    assert len(summaries) == 1
    assert summaries[0].details == {"count": 1, "action": "approve", "action_by": DAVE}


@pytest.mark.asyncio
async def test_bulk_without_successes_sends_no_summary(services):
    outcome = await services.bulk.bulk_reject(["missing-1", "missing-2"], ALICE)
    assert outcome.succeeded == 0
    inbox = await services.dispatcher.list_notifications(ALICE)
    assert [n for n in inbox if n.type == "BULK_ACTION"] == []
    assert await services.dispatcher.list_notifications(USER) == []
