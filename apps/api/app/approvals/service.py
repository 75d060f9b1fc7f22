from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id
from app.approvals.models import (
    APPROVAL_ACTIONS,
    ApprovalAction,
    ApprovalRequest,
    ApprovalWorkflow,
    ApprovalWorkflowStep,
    ApprovalWorkflowStepApprover,
)
from app.approvals.schemas import (
    ApprovalRequestCreate,
    ApprovalRequestUpdate,
    WorkflowCreate,
    WorkflowStepCreate,
    WorkflowUpdate,
)
from app.auth.models import User, utcnow
from app.core.auth import AuthUser
from app.core.database import unit_of_work
from app.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from app.metrics import observe_approval_action
from app.services.audit import write_audit_log


logger = logging.getLogger("app.approvals")
tracer = trace.get_tracer("app.approvals")

_PRIVILEGED_READERS = frozenset({"admin", "manager"})


@dataclass(slots=True)
class ProcessedAction:
    action: ApprovalAction
    request: ApprovalRequest
    outcome: str


@dataclass(slots=True)
class _Transition:
    status: str
    current_step_id: uuid.UUID | None
    current_step_approvals: int
    completed_at: datetime | None
    outcome: str


def _publish(event_type: str, request: ApprovalRequest, **extra: Any) -> None:
    events.publish(
        events.build_envelope(
            event_type,
            request_id=str(request.id),
            workflow_id=str(request.workflow_id),
            entity_type=request.entity_type,
            entity_id=request.entity_id,
            status=request.status,
            current_step_id=str(request.current_step_id) if request.current_step_id else None,
            **extra,
        )
    )


@dataclass(slots=True)
class ApprovalService:
    clock: Callable[[], datetime] = field(default=utcnow)

    # workflows

    def list_workflows(self, session: Session, *, active_only: bool = False) -> list[ApprovalWorkflow]:
        stmt = select(ApprovalWorkflow)
        if active_only:
            stmt = stmt.where(ApprovalWorkflow.is_active.is_(True))
        return list(session.scalars(stmt.order_by(ApprovalWorkflow.name.asc())).all())

    def get_workflow(self, session: Session, workflow_id: uuid.UUID) -> ApprovalWorkflow:
        workflow = session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("approval workflow not found")
        return workflow

    def create_workflow(self, session: Session, actor: AuthUser, dto: WorkflowCreate) -> ApprovalWorkflow:
        with unit_of_work(session):
            workflow = ApprovalWorkflow(
                name=dto.name.strip(),
                description=dto.description,
                entity_type=dto.entity_type.strip(),
                is_active=dto.is_active,
                created_by=actor.id,
            )
            session.add(workflow)
            session.flush()
            write_audit_log(
                session,
                event="approval.workflow.created",
                user_id=actor.id,
                details={"workflow_id": str(workflow.id), "entity_type": workflow.entity_type},
            )
        session.refresh(workflow)
        logger.info("approval.workflow_created", extra={"workflow_id": str(workflow.id)})
        return workflow

    def update_workflow(self, session: Session, workflow_id: uuid.UUID, dto: WorkflowUpdate) -> ApprovalWorkflow:
        workflow = self.get_workflow(session, workflow_id)
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("name") is None:
            changes.pop("name", None)
        if changes.get("is_active") is None:
            changes.pop("is_active", None)
        with unit_of_work(session):
            for key, value in changes.items():
                setattr(workflow, key, value)
        session.refresh(workflow)
        return workflow

    def delete_workflow(self, session: Session, workflow_id: uuid.UUID) -> None:
        workflow = self.get_workflow(session, workflow_id)
        referenced = session.scalar(select(exists().where(ApprovalRequest.workflow_id == workflow.id)))
        if referenced:
            raise ConflictError("approval workflow has requests and cannot be deleted")
        with unit_of_work(session, "approval workflow is still referenced"):
            session.delete(workflow)
        logger.info("approval.workflow_deleted", extra={"workflow_id": str(workflow_id)})

    # steps

    def list_steps(self, session: Session, workflow_id: uuid.UUID) -> list[ApprovalWorkflowStep]:
        self.get_workflow(session, workflow_id)
        stmt = (
            select(ApprovalWorkflowStep)
            .where(ApprovalWorkflowStep.workflow_id == workflow_id)
            .order_by(ApprovalWorkflowStep.step_order.asc())
        )
        return list(session.scalars(stmt).all())

    def _ensure_no_pending_requests(self, session: Session, workflow_id: uuid.UUID) -> None:
        pending = session.scalar(
            select(
                exists().where(
                    ApprovalRequest.workflow_id == workflow_id,
                    ApprovalRequest.status == "pending",
                )
            )
        )
        if pending:
            raise ConflictError("workflow steps cannot change while requests are pending")

    def add_step(self, session: Session, workflow_id: uuid.UUID, dto: WorkflowStepCreate) -> ApprovalWorkflowStep:
        workflow = self.get_workflow(session, workflow_id)
        if dto.step_order < 1:
            raise ValidationFailedError("step_order must be at least 1")
        self._ensure_no_pending_requests(session, workflow.id)

        duplicate = session.scalar(
            select(
                exists().where(
                    ApprovalWorkflowStep.workflow_id == workflow.id,
                    ApprovalWorkflowStep.step_order == dto.step_order,
                )
            )
        )
        if duplicate:
            raise ConflictError(f"step_order {dto.step_order} already exists in this workflow")

        additional = [user_id for user_id in dict.fromkeys(dto.additional_approver_ids) if user_id != dto.approver_id]
        approver_ids = [dto.approver_id, *additional]
        known = set(session.scalars(select(User.id).where(User.id.in_(approver_ids))).all())
        missing = [str(user_id) for user_id in approver_ids if user_id not in known]
        if missing:
            raise ValidationFailedError("unknown approver", details={"approver_ids": missing})

        with unit_of_work(session, f"step_order {dto.step_order} already exists in this workflow"):
            step = ApprovalWorkflowStep(
                workflow_id=workflow.id,
                step_order=dto.step_order,
                approver_id=dto.approver_id,
                requires_all=dto.requires_all,
            )
            step.additional_approvers = [ApprovalWorkflowStepApprover(user_id=user_id) for user_id in additional]
            session.add(step)
        session.refresh(step)
        logger.info("approval.step_added", extra={"workflow_id": str(workflow.id), "step_id": str(step.id)})
        return step

    def delete_step(self, session: Session, workflow_id: uuid.UUID, step_id: uuid.UUID) -> None:
        step = session.get(ApprovalWorkflowStep, step_id)
        if step is None or step.workflow_id != workflow_id:
            raise NotFoundError("workflow step not found")
        self._ensure_no_pending_requests(session, workflow_id)
        if session.scalar(select(exists().where(ApprovalAction.step_id == step.id))):
            raise ConflictError("workflow step has recorded decisions and cannot be deleted")
        with unit_of_work(session, "workflow step is still referenced"):
            session.delete(step)

    # requests

    def create_request(self, session: Session, requester: AuthUser, dto: ApprovalRequestCreate) -> ApprovalRequest:
        workflow = self.get_workflow(session, dto.workflow_id)
        if not workflow.is_active:
            raise ValidationFailedError("approval workflow is not active")
        if workflow.entity_type != dto.entity_type:
            raise ValidationFailedError(
                f"approval workflow governs '{workflow.entity_type}', not '{dto.entity_type}'"
            )
        first_step = session.scalar(
            select(ApprovalWorkflowStep)
            .where(ApprovalWorkflowStep.workflow_id == workflow.id)
            .order_by(ApprovalWorkflowStep.step_order.asc())
            .limit(1)
        )
        if first_step is None:
            raise ValidationFailedError("approval workflow has no steps")

        with unit_of_work(session):
            request = ApprovalRequest(
                workflow_id=workflow.id,
                entity_type=dto.entity_type,
                entity_id=dto.entity_id,
                requester_id=requester.id,
                title=dto.title.strip(),
                description=dto.description,
                request_data=dto.request_data,
                status="pending",
                current_step_id=first_step.id,
                current_step_approvals=0,
                row_version=1,
            )
            session.add(request)
            session.flush()
            write_audit_log(
                session,
                event="approval.request.created",
                user_id=requester.id,
                details={"request_id": str(request.id), "workflow_id": str(workflow.id)},
            )
        session.refresh(request)
        _publish("approval.request.created", request, requester_id=str(request.requester_id))
        logger.info("approval.request_created", extra={"request_id": str(request.id), "workflow_id": str(workflow.id)})
        return request

    def get_request(self, session: Session, request_id: uuid.UUID, actor: AuthUser | None = None) -> ApprovalRequest:
        request = session.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError("approval request not found")
        if actor is not None and not self._can_view(session, request, actor):
            raise PermissionDeniedError("not allowed to view this approval request")
        return request

    def _can_view(self, session: Session, request: ApprovalRequest, actor: AuthUser) -> bool:
        if actor.role in _PRIVILEGED_READERS or request.requester_id == actor.id:
            return True
        return actor.id in self._workflow_approver_ids(session, request.workflow_id)

    def _workflow_approver_ids(self, session: Session, workflow_id: uuid.UUID) -> set[uuid.UUID]:
        primary = session.scalars(
            select(ApprovalWorkflowStep.approver_id).where(ApprovalWorkflowStep.workflow_id == workflow_id)
        ).all()
        extra = session.scalars(
            select(ApprovalWorkflowStepApprover.user_id)
            .join(ApprovalWorkflowStep, ApprovalWorkflowStep.id == ApprovalWorkflowStepApprover.step_id)
            .where(ApprovalWorkflowStep.workflow_id == workflow_id)
        ).all()
        return {*primary, *extra}

    def list_requests_for_requester(self, session: Session, requester_id: uuid.UUID) -> list[ApprovalRequest]:
        stmt = (
            select(ApprovalRequest)
            .where(ApprovalRequest.requester_id == requester_id)
            .order_by(ApprovalRequest.created_at.desc())
        )
        return list(session.scalars(stmt).all())

    def list_pending_for_approver(self, session: Session, approver_id: uuid.UUID) -> list[ApprovalRequest]:
        """Pending requests whose current step lists the user and that the user has not decided yet."""
        designated = or_(
            ApprovalWorkflowStep.approver_id == approver_id,
            exists().where(
                ApprovalWorkflowStepApprover.step_id == ApprovalWorkflowStep.id,
                ApprovalWorkflowStepApprover.user_id == approver_id,
            ),
        )
        already_decided = exists().where(
            ApprovalAction.request_id == ApprovalRequest.id,
            ApprovalAction.step_id == ApprovalRequest.current_step_id,
            ApprovalAction.approver_id == approver_id,
        )
        stmt = (
            select(ApprovalRequest)
            .join(ApprovalWorkflowStep, ApprovalWorkflowStep.id == ApprovalRequest.current_step_id)
            .where(ApprovalRequest.status == "pending", designated, ~already_decided)
            .order_by(ApprovalRequest.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def update_request(
        self,
        session: Session,
        request_id: uuid.UUID,
        actor: AuthUser,
        dto: ApprovalRequestUpdate,
    ) -> ApprovalRequest:
        request = self.get_request(session, request_id)
        if request.requester_id != actor.id and actor.role != "admin":
            raise PermissionDeniedError("only the requester or an admin may edit this approval request")

        changes = dto.model_dump(exclude_unset=True)
        if changes.get("title") is None:
            changes.pop("title", None)
        if not changes:
            return request
        with unit_of_work(session):
            for key, value in changes.items():
                setattr(request, key, value)
            request.row_version = request.row_version + 1
        session.refresh(request)
        return request

    def cancel_request(self, session: Session, request_id: uuid.UUID, actor: AuthUser) -> ApprovalRequest:
        now = self.clock()
        try:
            request = session.scalar(
                select(ApprovalRequest).where(ApprovalRequest.id == request_id).with_for_update()
            )
            if request is None:
                raise NotFoundError("approval request not found")
            if request.requester_id != actor.id and actor.role != "admin":
                raise PermissionDeniedError("only the requester or an admin may cancel this approval request")
            if request.is_terminal:
                raise InvalidTransitionError(f"approval request is already {request.status}")

            result = session.execute(
                update(ApprovalRequest)
                .where(ApprovalRequest.id == request.id, ApprovalRequest.row_version == request.row_version)
                .values(status="cancelled", completed_at=now, row_version=request.row_version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError("approval request was modified concurrently")
            write_audit_log(
                session,
                event="approval.request.cancelled",
                user_id=actor.id,
                details={"request_id": str(request.id)},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise

        session.refresh(request)
        _publish("approval.request.cancelled", request, cancelled_by=actor.sub)
        logger.info("approval.request_cancelled", extra={"request_id": str(request.id)})
        return request

    def list_actions(self, session: Session, request_id: uuid.UUID) -> list[ApprovalAction]:
        stmt = (
            select(ApprovalAction)
            .where(ApprovalAction.request_id == request_id)
            .order_by(ApprovalAction.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    # decisions

    def process_action(
        self,
        session: Session,
        *,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        approver_id: uuid.UUID,
        action: str,
        comments: str | None = None,
    ) -> ProcessedAction:
        """Record one decision and move the request to its next state in a single transaction.

        The request row is locked for the duration and the final write is a
        compare-and-set on ``row_version``; a decision that loses a race sees
        the already-updated request and is refused as an invalid transition.
        """
        if action not in APPROVAL_ACTIONS:
            raise ValidationFailedError("action must be 'approved' or 'rejected'")

        with tracer.start_as_current_span("approval.process_action") as span:
            span.set_attribute("request_id", str(request_id))
            span.set_attribute("step_id", str(step_id))
            span.set_attribute("user_id", str(approver_id))
            span.set_attribute("approval.action", action)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            try:
                request = session.scalar(
                    select(ApprovalRequest).where(ApprovalRequest.id == request_id).with_for_update()
                )
                if request is None:
                    raise NotFoundError("approval request not found")
                if request.is_terminal:
                    raise InvalidTransitionError(f"approval request is already {request.status}")
                if request.current_step_id != step_id:
                    raise InvalidTransitionError("step is not the current step of this approval request")

                step = session.get(ApprovalWorkflowStep, step_id)
                if step is None or step.workflow_id != request.workflow_id:
                    raise NotFoundError("workflow step not found")
                if approver_id not in step.approver_ids():
                    raise PermissionDeniedError("not a designated approver for this step")

                observed_version = request.row_version
                decision = ApprovalAction(
                    request_id=request.id,
                    step_id=step.id,
                    approver_id=approver_id,
                    action=action,
                    comments=comments,
                )
                session.add(decision)
                try:
                    session.flush()
                except IntegrityError as exc:
                    raise InvalidTransitionError("approver has already decided on this step") from exc

                transition = self._next_state(session, request, step, action)
                result = session.execute(
                    update(ApprovalRequest)
                    .where(ApprovalRequest.id == request.id, ApprovalRequest.row_version == observed_version)
                    .values(
                        status=transition.status,
                        current_step_id=transition.current_step_id,
                        current_step_approvals=transition.current_step_approvals,
                        completed_at=transition.completed_at,
                        row_version=observed_version + 1,
                        updated_at=self.clock(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidTransitionError("approval request was modified concurrently")

                write_audit_log(
                    session,
                    event=f"approval.action.{action}",
                    user_id=approver_id,
                    details={
                        "request_id": str(request.id),
                        "step_id": str(step.id),
                        "outcome": transition.outcome,
                    },
                )
                session.commit()
            except Exception:
                session.rollback()
                observe_approval_action(action, "refused")
                raise

            session.refresh(request)
            session.refresh(decision)
            span.set_attribute("approval.outcome", transition.outcome)

        observe_approval_action(action, transition.outcome)
        logger.info(
            "approval.action_processed",
            extra={
                "request_id": str(request.id),
                "step_id": str(step_id),
                "action": action,
                "status": request.status,
            },
        )
        if transition.outcome in ("advanced", "approved", "rejected"):
            _publish(f"approval.request.{transition.outcome}", request, decided_by=str(approver_id))
        return ProcessedAction(action=decision, request=request, outcome=transition.outcome)

    def _next_state(
        self,
        session: Session,
        request: ApprovalRequest,
        step: ApprovalWorkflowStep,
        action: str,
    ) -> _Transition:
        now = self.clock()
        if action == "rejected":
            return _Transition("rejected", request.current_step_id, request.current_step_approvals, now, "rejected")

        approvals = request.current_step_approvals + 1
        if approvals < step.required_approvals():
            return _Transition("pending", step.id, approvals, None, "partial")

        next_step_id = session.scalar(
            select(ApprovalWorkflowStep.id)
            .where(
                ApprovalWorkflowStep.workflow_id == request.workflow_id,
                ApprovalWorkflowStep.step_order > step.step_order,
            )
            .order_by(ApprovalWorkflowStep.step_order.asc())
            .limit(1)
        )
        if next_step_id is None:
            return _Transition("approved", step.id, approvals, now, "approved")
        return _Transition("pending", next_step_id, 0, None, "advanced")


approval_service = ApprovalService()
