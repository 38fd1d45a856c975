import pytest

from grant_service.app.deps import build_services
from grant_service.app.directory import AdminDirectory
from grant_service.app.errors import NotFoundError, UnauthorizedError, ValidationError
from grant_service.app.lifecycle import AdminRoleType

from .conftest import ALICE, BOB, CAROL, DAVE, ROOT


@pytest.mark.asyncio
async def test_project_admin_scope(services):
    directory = services.directory
    assert await directory.can_act(ALICE, "proj-a") is True
    assert await directory.can_act(ALICE, "proj-b") is False
    assert await directory.can_act(BOB, "proj-b") is True
    assert await directory.can_act(DAVE, "proj-a") is False


@pytest.mark.asyncio
async def test_super_admin_acts_everywhere(services):
    resolved = await services.directory.resolve_role(CAROL)
    assert resolved.role is AdminRoleType.SUPER_ADMIN
    assert resolved.assigned_projects == []
    assert await services.directory.can_act(CAROL, "any-project") is True


@pytest.mark.asyncio
async def test_unknown_and_empty_callers_are_denied(services):
    assert await services.directory.resolve_role("nobody@corp.example") is None
    assert await services.directory.resolve_role("") is None
    assert await services.directory.can_act(None, "proj-a") is False


@pytest.mark.asyncio
async def test_env_super_admin_fallback(services):
    resolved = await services.directory.resolve_role("Root@Corp.Example")
    assert resolved.role is AdminRoleType.SUPER_ADMIN
    assert resolved.source == "env"


@pytest.mark.asyncio
async def test_store_failure_fails_closed(settings):
    # schema is never created, so every lookup hits a missing table
    broken = build_services(settings.model_copy(update={"super_admin_email": None}))
    try:
        assert await broken.directory.resolve_role(CAROL) is None
        assert await broken.directory.can_act(CAROL, "proj-a") is False
    finally:
        await broken.db_engine.dispose()


@pytest.mark.asyncio
async def test_deactivated_admin_loses_access(services):
    await services.directory.deactivate_admin_role(ALICE, CAROL)
    assert await services.directory.resolve_role(ALICE) is None
    assert await services.directory.can_act(ALICE, "proj-a") is False
    with pytest.raises(NotFoundError):
        await services.directory.deactivate_admin_role("ghost@corp.example", CAROL)


@pytest.mark.asyncio
async def test_only_super_admins_manage_roles(services):
    with pytest.raises(UnauthorizedError):
        await services.directory.set_admin_role("new@corp.example", "project-admin", ["proj-a"], ALICE)
    with pytest.raises(ValidationError):
        await services.directory.set_admin_role("new@corp.example", "owner", [], CAROL)

    admin = await services.directory.set_admin_role(
        "New@Corp.Example", "project-admin", ["proj-c", "proj-c"], ROOT
    )
    assert admin.email == "new@corp.example"
    assert admin.assigned_projects == ["proj-c"]
    assert admin.created_by == ROOT
    assert await services.directory.can_act("new@corp.example", "proj-c") is True


@pytest.mark.asyncio
async def test_super_admin_role_never_stores_projects(services):
    admin = await services.directory.set_admin_role(DAVE, "super-admin", ["proj-b"], CAROL)
    assert admin.role == "super-admin"
    assert admin.assigned_projects == []
    assert await services.directory.can_act(DAVE, "proj-a") is True


@pytest.mark.asyncio
async def test_add_and_remove_projects(services):
    directory = services.directory
    admin = await directory.add_project(ALICE, "proj-b", CAROL)
    assert admin.assigned_projects == ["proj-a", "proj-b"]
    admin = await directory.add_project(ALICE, "proj-b", CAROL)
    assert admin.assigned_projects == ["proj-a", "proj-b"]

    admin = await directory.remove_project(ALICE, "proj-a", CAROL)
    assert admin.assigned_projects == ["proj-b"]
    assert await directory.can_act(ALICE, "proj-a") is False

    with pytest.raises(NotFoundError):
        await directory.add_project("ghost@corp.example", "proj-a", CAROL)


@pytest.mark.asyncio
async def test_project_admins_include_super_admins(services):
    admins = await services.directory.project_admins("proj-b")
    assert {a.email for a in admins} == {BOB, CAROL, DAVE}


@pytest.mark.asyncio
async def test_directory_without_env_super_admin(services):
    directory = AdminDirectory(services.sessions)
    assert await directory.resolve_role(ROOT) is None


@pytest.mark.asyncio
async def test_driver_failure_fails_closed():
    def unreachable_store():
        raise OSError("connection refused")

    directory = AdminDirectory(unreachable_store, super_admin_email=ROOT)
    assert await directory.resolve_role(CAROL) is None
    assert await directory.can_act(ROOT, "proj-a") is False
