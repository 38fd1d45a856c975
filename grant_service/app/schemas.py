from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

RequestStatusName = Literal[
    "PENDING", "PARTIALLY_APPROVED", "APPROVED", "REJECTED", "REVOKED"
]
GrantStatusName = Literal["ACTIVE", "REVOKED"]
AdminRoleName = Literal["project-admin", "super-admin"]


class SubmitRequest(BaseModel):
    """Подача заявки. approver_list — согласующие, которым уйдёт уведомление."""

    requester_email: str
    asset_name: str
    project_id: str
    requested_role: str
    justification: Optional[str] = None
    approver_list: List[str] = Field(default_factory=list)
    id: Optional[str] = None


class ApproveBody(BaseModel):
    approver_email: str


class RejectBody(BaseModel):
    approver_email: str
    reason: Optional[str] = None


class RevokeBody(BaseModel):
    actor_email: str


class BulkApproveBody(BaseModel):
    request_ids: List[str]
    approver_email: str


class BulkRejectBody(BaseModel):
    request_ids: List[str]
    approver_email: str
    reason: Optional[str] = None


class RequestOut(BaseModel):
    id: str
    requester_email: str
    asset_name: str
    gcp_project_id: str
    requested_role: str
    justification: Optional[str] = None
    status: str
    approvals: List[str]
    required_approvals: int
    project_admins: List[str] = Field(default_factory=list)
    admin_note: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    submitted_at: datetime
    updated_at: datetime


class GrantOut(BaseModel):
    id: str
    user_email: str
    asset_name: str
    gcp_project_id: str
    role: str
    granted_at: datetime
    granted_by: str
    original_request_id: Optional[str] = None
    status: str
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class GrantStatsOut(BaseModel):
    project_id: str
    active_grants: int
    revoked_grants: int
    unique_users: int


class BulkItemOut(BaseModel):
    id: str
    ok: bool
    status: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class BulkResultOut(BaseModel):
    action: str
    succeeded: int
    failed: int
    results: List[BulkItemOut]


class NotificationOut(BaseModel):
    id: str
    recipient_email: str
    type: str
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    read: bool
    created_at: datetime
    expires_at: datetime


class MarkReadBody(BaseModel):
    notification_ids: List[str]


class CountOut(BaseModel):
    count: int


class AdminRoleIn(BaseModel):
    role: AdminRoleName
    assigned_projects: List[str] = Field(default_factory=list)
    actor_email: str


class AdminRoleOut(BaseModel):
    email: str
    role: str
    assigned_projects: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_active: bool = True


class ResolvedRoleOut(BaseModel):
    email: str
    role: Optional[AdminRoleName] = None
    assigned_projects: List[str] = Field(default_factory=list)
