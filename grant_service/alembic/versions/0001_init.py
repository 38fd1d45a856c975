from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "access_requests",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("requester_email", sa.String(length=320), nullable=False),
        sa.Column("asset_name", sa.String(length=1024), nullable=False),
        sa.Column("gcp_project_id", sa.String(length=200), nullable=False),
        sa.Column("requested_role", sa.String(length=200), nullable=False),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.Column(
            "status", sa.String(length=32), nullable=False, server_default="PENDING"
        ),
        sa.Column("approvals", sa.JSON(), nullable=False),
        sa.Column(
            "required_approvals", sa.Integer(), nullable=False, server_default="2"
        ),
        sa.Column("project_admins", sa.JSON(), nullable=False),
        sa.Column("admin_note", sa.Text(), nullable=False, server_default=""),
        sa.Column("reviewed_by", sa.String(length=320), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "submitted_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.create_index(
        "ix_access_requests_requester_email", "access_requests", ["requester_email"]
    )
    op.create_index(
        "ix_access_requests_gcp_project_id", "access_requests", ["gcp_project_id"]
    )
    op.create_index("ix_access_requests_status", "access_requests", ["status"])

    op.create_table(
        "granted_accesses",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_email", sa.String(length=320), nullable=False),
        sa.Column("asset_name", sa.String(length=1024), nullable=False),
        sa.Column("gcp_project_id", sa.String(length=200), nullable=False),
        sa.Column("role", sa.String(length=200), nullable=False),
        sa.Column(
            "granted_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column("granted_by", sa.String(length=320), nullable=False),
        sa.Column("original_request_id", sa.String(length=64), nullable=True),
        sa.Column(
            "status", sa.String(length=16), nullable=False, server_default="ACTIVE"
        ),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(length=320), nullable=True),
    )
    op.create_index(
        "ix_granted_accesses_user_email", "granted_accesses", ["user_email"]
    )
    op.create_index(
        "ix_granted_accesses_gcp_project_id", "granted_accesses", ["gcp_project_id"]
    )
    op.create_index("ix_granted_accesses_status", "granted_accesses", ["status"])
    # at most one ACTIVE grant per (user, asset, role)
    op.create_index(
        "uq_active_grant_tuple",
        "granted_accesses",
        ["user_email", "asset_name", "role"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("recipient_email", sa.String(length=320), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_notifications_recipient_email", "notifications", ["recipient_email"]
    )
    op.create_index("ix_notifications_expires_at", "notifications", ["expires_at"])

    op.create_table(
        "admin_roles",
        sa.Column("email", sa.String(length=320), primary_key=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("assigned_projects", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=320), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()")
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )


def downgrade() -> None:
    op.drop_table("admin_roles")
    op.drop_index("ix_notifications_expires_at", table_name="notifications")
    op.drop_index("ix_notifications_recipient_email", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("uq_active_grant_tuple", table_name="granted_accesses")
    op.drop_index("ix_granted_accesses_status", table_name="granted_accesses")
    op.drop_index("ix_granted_accesses_gcp_project_id", table_name="granted_accesses")
    op.drop_index("ix_granted_accesses_user_email", table_name="granted_accesses")
    op.drop_table("granted_accesses")
    op.drop_index("ix_access_requests_status", table_name="access_requests")
    op.drop_index("ix_access_requests_gcp_project_id", table_name="access_requests")
    op.drop_index("ix_access_requests_requester_email", table_name="access_requests")
    op.drop_table("access_requests")
