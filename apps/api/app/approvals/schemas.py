from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ApprovalStatus = Literal["pending", "approved", "rejected", "cancelled"]
ApprovalDecision = Literal["approved", "rejected"]


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    entity_type: str = Field(min_length=1, max_length=64)
    is_active: bool = True


class WorkflowUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    is_active: bool | None = None


class WorkflowStepCreate(BaseModel):
    step_order: int = Field(ge=1)
    approver_id: UUID
    requires_all: bool = False
    additional_approver_ids: list[UUID] = Field(default_factory=list)


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    step_order: int
    approver_id: UUID
    requires_all: bool
    additional_approver_ids: list[UUID]
    created_at: datetime


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    entity_type: str
    is_active: bool
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime
    steps: list[WorkflowStepRead] = Field(default_factory=list)


class WorkflowSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    entity_type: str


class RequesterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    first_name: str | None
    last_name: str | None


class ApprovalRequestCreate(BaseModel):
    workflow_id: UUID
    entity_type: str = Field(min_length=1, max_length=64)
    entity_id: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    request_data: dict[str, Any] = Field(default_factory=dict)


class ApprovalRequestUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None


class ApprovalRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    entity_type: str
    entity_id: str
    requester_id: UUID
    title: str
    description: str | None
    request_data: dict[str, Any]
    status: ApprovalStatus
    current_step_id: UUID | None
    current_step_approvals: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    workflow: WorkflowSummaryRead | None = None
    requester: RequesterRead | None = None


class ApprovalActionCreate(BaseModel):
    step_id: UUID
    action: ApprovalDecision
    comments: str | None = Field(default=None, max_length=4000)


class ApprovalActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    request_id: UUID
    step_id: UUID
    approver_id: UUID
    action: ApprovalDecision
    comments: str | None
    created_at: datetime


class ApprovalRequestDetail(ApprovalRequestRead):
    actions: list[ApprovalActionRead] = Field(default_factory=list)


class ApprovalActionResult(BaseModel):
    action: ApprovalActionRead
    request: ApprovalRequestRead
