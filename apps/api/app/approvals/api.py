from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.approvals.schemas import (
    ApprovalActionCreate,
    ApprovalActionRead,
    ApprovalActionResult,
    ApprovalRequestCreate,
    ApprovalRequestDetail,
    ApprovalRequestRead,
    ApprovalRequestUpdate,
    WorkflowCreate,
    WorkflowRead,
    WorkflowStepCreate,
    WorkflowStepRead,
    WorkflowUpdate,
)
from app.approvals.service import approval_service
from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.rbac import require_roles


workflows_router = APIRouter(prefix="/api/approval-workflows", tags=["approvals.workflows"])
requests_router = APIRouter(prefix="/api/approval-requests", tags=["approvals.requests"])


@workflows_router.get("", response_model=list[WorkflowRead])
def list_workflows(
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> list[WorkflowRead]:
    return [WorkflowRead.model_validate(row) for row in approval_service.list_workflows(db, active_only=active_only)]


@workflows_router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_roles("admin")),
) -> WorkflowRead:
    return WorkflowRead.model_validate(approval_service.create_workflow(db, user, dto))


@workflows_router.get("/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> WorkflowRead:
    return WorkflowRead.model_validate(approval_service.get_workflow(db, workflow_id))


@workflows_router.patch("/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_roles("admin")),
) -> WorkflowRead:
    return WorkflowRead.model_validate(approval_service.update_workflow(db, workflow_id, dto))


@workflows_router.delete("/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow(
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_roles("admin")),
) -> Response:
    approval_service.delete_workflow(db, workflow_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@workflows_router.get("/{workflow_id}/steps", response_model=list[WorkflowStepRead])
def list_steps(
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> list[WorkflowStepRead]:
    return [WorkflowStepRead.model_validate(row) for row in approval_service.list_steps(db, workflow_id)]


@workflows_router.post("/{workflow_id}/steps", response_model=WorkflowStepRead, status_code=status.HTTP_201_CREATED)
def add_step(
    workflow_id: uuid.UUID,
    dto: WorkflowStepCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_roles("admin")),
) -> WorkflowStepRead:
    return WorkflowStepRead.model_validate(approval_service.add_step(db, workflow_id, dto))


@workflows_router.delete("/{workflow_id}/steps/{step_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_step(
    workflow_id: uuid.UUID,
    step_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_roles("admin")),
) -> Response:
    approval_service.delete_step(db, workflow_id, step_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@requests_router.get("", response_model=list[ApprovalRequestRead])
def list_my_requests(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ApprovalRequestRead]:
    rows = approval_service.list_requests_for_requester(db, user.id)
    return [ApprovalRequestRead.model_validate(row) for row in rows]


@requests_router.get("/pending", response_model=list[ApprovalRequestRead])
def list_pending_requests(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ApprovalRequestRead]:
    rows = approval_service.list_pending_for_approver(db, user.id)
    return [ApprovalRequestRead.model_validate(row) for row in rows]


@requests_router.post("", response_model=ApprovalRequestRead, status_code=status.HTTP_201_CREATED)
def create_request(
    dto: ApprovalRequestCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ApprovalRequestRead:
    return ApprovalRequestRead.model_validate(approval_service.create_request(db, user, dto))


@requests_router.get("/{request_id}", response_model=ApprovalRequestDetail)
def get_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ApprovalRequestDetail:
    return ApprovalRequestDetail.model_validate(approval_service.get_request(db, request_id, user))


@requests_router.patch("/{request_id}", response_model=ApprovalRequestRead)
def update_request(
    request_id: uuid.UUID,
    dto: ApprovalRequestUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ApprovalRequestRead:
    return ApprovalRequestRead.model_validate(approval_service.update_request(db, request_id, user, dto))


@requests_router.post("/{request_id}/cancel", response_model=ApprovalRequestRead)
def cancel_request(
    request_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ApprovalRequestRead:
    return ApprovalRequestRead.model_validate(approval_service.cancel_request(db, request_id, user))


@requests_router.post("/{request_id}/actions", response_model=ApprovalActionResult)
def act_on_request(
    request_id: uuid.UUID,
    dto: ApprovalActionCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ApprovalActionResult:
    result = approval_service.process_action(
        db,
        request_id=request_id,
        step_id=dto.step_id,
        approver_id=user.id,
        action=dto.action,
        comments=dto.comments,
    )
    return ApprovalActionResult(
        action=ApprovalActionRead.model_validate(result.action),
        request=ApprovalRequestRead.model_validate(result.request),
    )
