import pytest
from httpx import AsyncClient, ASGITransport

from grant_service.app import repositories as repo
from grant_service.app.db import create_schema
from grant_service.app.deps import build_services
from grant_service.app.errors import ExternalServiceError
from grant_service.app.main import create_app
from grant_service.app.settings import Settings

ROOT = "root@corp.example"
ALICE = "alice@corp.example"  # project-admin: proj-a
BOB = "bob@corp.example"  # project-admin: proj-a, proj-b
CAROL = "carol@corp.example"  # super-admin
DAVE = "dave@corp.example"  # project-admin: proj-b
USER = "user@corp.example"

ASSET = "projects/proj-a/datasets/sales/tables/orders"
ROLE = "roles/bigquery.dataViewer"


class RecordingRoleAssigner:
    def __init__(self):
        self.granted = []
        self.revoked = []
        self.fail = False

    async def grant_role(self, project_id, member_email, role):
        if self.fail:
            raise ExternalServiceError("role assignment service unavailable")
        self.granted.append((project_id, member_email, role))

    async def revoke_role(self, project_id, member_email, role):
        if self.fail:
            raise ExternalServiceError("role assignment service unavailable")
        self.revoked.append((project_id, member_email, role))


@pytest.fixture
def role_assigner():
    return RecordingRoleAssigner()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'grants.db'}",
        super_admin_email=ROOT,
    )


@pytest.fixture
async def services(settings, role_assigner):
    svc = build_services(settings, role_assigner=role_assigner)
    await create_schema(svc.db_engine)
    async with svc.sessions() as s:
        await repo.upsert_admin_role(s, ALICE, "project-admin", ["proj-a"], ROOT)
        await repo.upsert_admin_role(s, BOB, "project-admin", ["proj-a", "proj-b"], ROOT)
        await repo.upsert_admin_role(s, CAROL, "super-admin", [], ROOT)
        await repo.upsert_admin_role(s, DAVE, "project-admin", ["proj-b"], ROOT)
    yield svc
    await svc.db_engine.dispose()


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
def submit(engine):
    async def _submit(**overrides):
        data = dict(
            requester_email=USER,
            asset_name=ASSET,
            project_id="proj-a",
            requested_role=ROLE,
            justification="quarterly revenue report",
            approver_list=[ALICE, BOB],
        )
        data.update(overrides)
        return await engine.submit(**data)

    return _submit


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
