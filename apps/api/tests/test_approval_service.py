from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.approvals.models import ApprovalAction, ApprovalRequest, ApprovalWorkflow
from app.approvals.schemas import ApprovalRequestCreate, WorkflowCreate, WorkflowStepCreate
from app.approvals.service import ApprovalService
from app.auth.models import User
from app.core.auth import AuthUser
from app.core.database import Base
from app.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from app.models.audit import AuditLog


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def service() -> ApprovalService:
    return ApprovalService()


def _user(session: Session, email: str, role: str = "user") -> AuthUser:
    user = User(email=email, first_name=email.split("@")[0].title(), last_name="Test", role=role)
    session.add(user)
    session.commit()
    return AuthUser(sub=str(user.id), email=user.email, role=user.role)


@pytest.fixture()
def people(db_session: Session) -> dict[str, AuthUser]:
    return {
        "admin": _user(db_session, "admin@example.com", role="admin"),
        "requester": _user(db_session, "req@example.com"),
        "lead": _user(db_session, "lead@example.com", role="manager"),
        "finance": _user(db_session, "finance@example.com"),
        "auditor": _user(db_session, "auditor@example.com"),
        "outsider": _user(db_session, "outsider@example.com"),
    }


def _workflow(service: ApprovalService, session: Session, admin: AuthUser, *steps: WorkflowStepCreate) -> ApprovalWorkflow:
    workflow = service.create_workflow(
        session,
        admin,
        WorkflowCreate(name="Discount approval", entity_type="opportunity"),
    )
    for step in steps:
        service.add_step(session, workflow.id, step)
    session.refresh(workflow)
    return workflow


def _two_step(service: ApprovalService, session: Session, people: dict[str, AuthUser]) -> ApprovalWorkflow:
    return _workflow(
        service,
        session,
        people["admin"],
        WorkflowStepCreate(step_order=1, approver_id=people["lead"].id),
        WorkflowStepCreate(step_order=2, approver_id=people["finance"].id),
    )


def _submit(service: ApprovalService, session: Session, workflow: ApprovalWorkflow, requester: AuthUser) -> ApprovalRequest:
    return service.create_request(
        session,
        requester,
        ApprovalRequestCreate(
            workflow_id=workflow.id,
            entity_type="opportunity",
            entity_id="opp-42",
            title="20% discount for ACME",
            request_data={"discount_percent": 20},
        ),
    )


def _event_types() -> list[str]:
    return [item["event_type"] for item in events.published_events]


def test_create_request_starts_at_lowest_step(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _workflow(
        service,
        db_session,
        people["admin"],
        WorkflowStepCreate(step_order=20, approver_id=people["finance"].id),
        WorkflowStepCreate(step_order=10, approver_id=people["lead"].id),
    )

    request = _submit(service, db_session, workflow, people["requester"])

    assert request.status == "pending"
    assert request.row_version == 1
    first = min(workflow.steps, key=lambda step: step.step_order)
    assert request.current_step_id == first.id
    assert _event_types() == ["approval.request.created"]


def test_create_request_requires_matching_active_workflow_with_steps(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    empty = _workflow(service, db_session, people["admin"])
    with pytest.raises(ValidationFailedError):
        _submit(service, db_session, empty, people["requester"])

    workflow = _two_step(service, db_session, people)
    with pytest.raises(ValidationFailedError):
        service.create_request(
            db_session,
            people["requester"],
            ApprovalRequestCreate(workflow_id=workflow.id, entity_type="invoice", entity_id="inv-1", title="Wrong type"),
        )

    workflow.is_active = False
    db_session.commit()
    with pytest.raises(ValidationFailedError):
        _submit(service, db_session, workflow, people["requester"])

    with pytest.raises(NotFoundError):
        service.create_request(
            db_session,
            people["requester"],
            ApprovalRequestCreate(workflow_id=uuid.uuid4(), entity_type="opportunity", entity_id="x", title="Missing"),
        )


def test_two_step_workflow_advances_then_approves(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, step_two = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    first = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step_one.id,
        approver_id=people["lead"].id,
        action="approved",
        comments="Fine by me",
    )
    assert first.outcome == "advanced"
    assert first.request.status == "pending"
    assert first.request.current_step_id == step_two.id
    assert first.request.row_version == 2

    second = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step_two.id,
        approver_id=people["finance"].id,
        action="approved",
    )
    assert second.outcome == "approved"
    assert second.request.status == "approved"
    assert second.request.completed_at is not None
    assert second.request.current_step_id == step_two.id
    assert second.request.row_version == 3

    actions = service.list_actions(db_session, request.id)
    assert [(row.step_id, row.action) for row in actions] == [(step_one.id, "approved"), (step_two.id, "approved")]
    assert _event_types() == [
        "approval.request.created",
        "approval.request.advanced",
        "approval.request.approved",
    ]
    audits = db_session.scalars(select(AuditLog.event).where(AuditLog.event.like("approval.action.%"))).all()
    assert list(audits) == ["approval.action.approved", "approval.action.approved"]


def test_rejection_at_first_step_is_terminal(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, step_two = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    rejected = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step_one.id,
        approver_id=people["lead"].id,
        action="rejected",
        comments="Too steep",
    )

    assert rejected.request.status == "rejected"
    assert rejected.request.completed_at is not None
    assert rejected.request.current_step_id == step_one.id

    with pytest.raises(InvalidTransitionError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_two.id,
            approver_id=people["finance"].id,
            action="approved",
        )
    assert len(service.list_actions(db_session, request.id)) == 1
    assert _event_types()[-1] == "approval.request.rejected"


def _three_step(service: ApprovalService, session: Session, people: dict[str, AuthUser]) -> ApprovalWorkflow:
    return _workflow(
        service,
        session,
        people["admin"],
        WorkflowStepCreate(step_order=1, approver_id=people["lead"].id),
        WorkflowStepCreate(step_order=2, approver_id=people["finance"].id),
        WorkflowStepCreate(step_order=3, approver_id=people["auditor"].id),
    )


def test_three_step_workflow_walks_every_step_before_approving(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _three_step(service, db_session, people)
    step_one, step_two, step_three = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    first = service.process_action(
        db_session, request_id=request.id, step_id=step_one.id, approver_id=people["lead"].id, action="approved"
    )
    assert (first.request.status, first.request.current_step_id) == ("pending", step_two.id)

    second = service.process_action(
        db_session, request_id=request.id, step_id=step_two.id, approver_id=people["finance"].id, action="approved"
    )
    assert second.outcome == "advanced"
    assert (second.request.status, second.request.current_step_id) == ("pending", step_three.id)
    assert second.request.completed_at is None

    third = service.process_action(
        db_session, request_id=request.id, step_id=step_three.id, approver_id=people["auditor"].id, action="approved"
    )
    assert third.outcome == "approved"
    assert third.request.status == "approved"
    assert third.request.completed_at is not None
    assert third.request.row_version == 4
    assert _event_types() == [
        "approval.request.created",
        "approval.request.advanced",
        "approval.request.advanced",
        "approval.request.approved",
    ]


def test_rejection_at_middle_step_ends_the_request(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _three_step(service, db_session, people)
    step_one, step_two, step_three = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    service.process_action(
        db_session, request_id=request.id, step_id=step_one.id, approver_id=people["lead"].id, action="approved"
    )
    rejected = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step_two.id,
        approver_id=people["finance"].id,
        action="rejected",
        comments="Over budget",
    )

    assert rejected.outcome == "rejected"
    assert rejected.request.status == "rejected"
    assert rejected.request.completed_at is not None
    assert rejected.request.current_step_id == step_two.id

    with pytest.raises(InvalidTransitionError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_three.id,
            approver_id=people["auditor"].id,
            action="approved",
        )
    actions = service.list_actions(db_session, request.id)
    assert [(row.step_id, row.action) for row in actions] == [(step_one.id, "approved"), (step_two.id, "rejected")]
    assert _event_types()[-1] == "approval.request.rejected"


def test_action_on_stale_step_is_refused(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    _, step_two = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    with pytest.raises(InvalidTransitionError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_two.id,
            approver_id=people["finance"].id,
            action="approved",
        )

    db_session.refresh(request)
    assert request.row_version == 1
    assert service.list_actions(db_session, request.id) == []


def test_only_designated_approver_may_decide(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, _ = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    with pytest.raises(PermissionDeniedError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_one.id,
            approver_id=people["outsider"].id,
            action="approved",
        )
    with pytest.raises(NotFoundError):
        service.process_action(
            db_session,
            request_id=uuid.uuid4(),
            step_id=step_one.id,
            approver_id=people["lead"].id,
            action="approved",
        )
    with pytest.raises(ValidationFailedError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_one.id,
            approver_id=people["lead"].id,
            action="maybe",
        )


def test_requires_all_waits_for_every_approver(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _workflow(
        service,
        db_session,
        people["admin"],
        WorkflowStepCreate(
            step_order=1,
            approver_id=people["lead"].id,
            requires_all=True,
            additional_approver_ids=[people["auditor"].id, people["auditor"].id],
        ),
    )
    step = workflow.steps[0]
    assert step.approver_ids() == [people["lead"].id, people["auditor"].id]
    request = _submit(service, db_session, workflow, people["requester"])

    partial = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step.id,
        approver_id=people["auditor"].id,
        action="approved",
    )
    assert partial.outcome == "partial"
    assert partial.request.status == "pending"
    assert partial.request.current_step_approvals == 1

    with pytest.raises(InvalidTransitionError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step.id,
            approver_id=people["auditor"].id,
            action="approved",
        )

    assert [row.id for row in service.list_pending_for_approver(db_session, people["lead"].id)] == [request.id]
    assert service.list_pending_for_approver(db_session, people["auditor"].id) == []

    done = service.process_action(
        db_session,
        request_id=request.id,
        step_id=step.id,
        approver_id=people["lead"].id,
        action="approved",
    )
    assert done.request.status == "approved"
    assert "approval.request.advanced" not in _event_types()


def test_failure_after_recording_decision_rolls_everything_back(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, _ = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])
    events.published_events.clear()

    def broken_audit(*args: object, **kwargs: object) -> None:
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr("app.approvals.service.write_audit_log", broken_audit)

    with pytest.raises(RuntimeError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_one.id,
            approver_id=people["lead"].id,
            action="approved",
        )

    db_session.expire_all()
    stored = db_session.get(ApprovalRequest, request.id)
    assert stored is not None
    assert stored.status == "pending"
    assert stored.current_step_id == step_one.id
    assert stored.row_version == 1
    assert db_session.scalars(select(ApprovalAction)).all() == []
    assert events.published_events == []


def test_concurrent_change_loses_compare_and_set(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, _ = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])
    original_next_state = ApprovalService._next_state

    def racing_next_state(self, session, request, step, action):  # type: ignore[no-untyped-def]
        session.execute(
            update(ApprovalRequest)
            .where(ApprovalRequest.id == request.id)
            .values(row_version=ApprovalRequest.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        return original_next_state(self, session, request, step, action)

    monkeypatch.setattr(ApprovalService, "_next_state", racing_next_state)

    with pytest.raises(InvalidTransitionError) as exc_info:
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=step_one.id,
            approver_id=people["lead"].id,
            action="approved",
        )

    assert "concurrently" in exc_info.value.message
    db_session.expire_all()
    stored = db_session.get(ApprovalRequest, request.id)
    assert stored is not None and stored.row_version == 1
    assert db_session.scalars(select(ApprovalAction)).all() == []


def test_cancel_by_requester_only_while_pending(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    request = _submit(service, db_session, workflow, people["requester"])

    with pytest.raises(PermissionDeniedError):
        service.cancel_request(db_session, request.id, people["lead"])

    cancelled = service.cancel_request(db_session, request.id, people["requester"])
    assert cancelled.status == "cancelled"
    assert cancelled.completed_at is not None
    assert cancelled.row_version == 2
    assert _event_types()[-1] == "approval.request.cancelled"

    with pytest.raises(InvalidTransitionError):
        service.cancel_request(db_session, request.id, people["admin"])
    with pytest.raises(InvalidTransitionError):
        service.process_action(
            db_session,
            request_id=request.id,
            step_id=workflow.steps[0].id,
            approver_id=people["lead"].id,
            action="approved",
        )


def test_visibility_of_requests(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    request = _submit(service, db_session, workflow, people["requester"])

    for viewer in ("requester", "lead", "finance", "admin"):
        assert service.get_request(db_session, request.id, people[viewer]).id == request.id
    with pytest.raises(PermissionDeniedError):
        service.get_request(db_session, request.id, people["outsider"])
    with pytest.raises(NotFoundError):
        service.get_request(db_session, uuid.uuid4(), people["admin"])


def test_pending_list_follows_the_current_step(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)
    step_one, _ = workflow.steps
    request = _submit(service, db_session, workflow, people["requester"])

    assert [row.id for row in service.list_pending_for_approver(db_session, people["lead"].id)] == [request.id]
    assert service.list_pending_for_approver(db_session, people["finance"].id) == []

    service.process_action(
        db_session,
        request_id=request.id,
        step_id=step_one.id,
        approver_id=people["lead"].id,
        action="approved",
    )

    assert service.list_pending_for_approver(db_session, people["lead"].id) == []
    assert [row.id for row in service.list_pending_for_approver(db_session, people["finance"].id)] == [request.id]
    assert [row.id for row in service.list_requests_for_requester(db_session, people["requester"].id)] == [request.id]


def test_step_management_guards(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)

    with pytest.raises(ConflictError):
        service.add_step(db_session, workflow.id, WorkflowStepCreate(step_order=1, approver_id=people["auditor"].id))
    with pytest.raises(ValidationFailedError) as exc_info:
        service.add_step(db_session, workflow.id, WorkflowStepCreate(step_order=3, approver_id=uuid.uuid4()))
    assert exc_info.value.details["approver_ids"]

    request = _submit(service, db_session, workflow, people["requester"])
    with pytest.raises(ConflictError):
        service.add_step(db_session, workflow.id, WorkflowStepCreate(step_order=3, approver_id=people["auditor"].id))
    with pytest.raises(ConflictError):
        service.delete_workflow(db_session, workflow.id)

    service.cancel_request(db_session, request.id, people["requester"])
    extra = service.add_step(db_session, workflow.id, WorkflowStepCreate(step_order=3, approver_id=people["auditor"].id))
    service.delete_step(db_session, workflow.id, extra.id)
    assert [step.step_order for step in service.list_steps(db_session, workflow.id)] == [1, 2]
    with pytest.raises(NotFoundError):
        service.delete_step(db_session, workflow.id, extra.id)


def test_unused_workflow_can_be_deleted(
    service: ApprovalService,
    db_session: Session,
    people: dict[str, AuthUser],
) -> None:
    workflow = _two_step(service, db_session, people)

    service.delete_workflow(db_session, workflow.id)

    with pytest.raises(NotFoundError):
        service.get_workflow(db_session, workflow.id)
