from app.approvals.models import (
    ApprovalAction,
    ApprovalRequest,
    ApprovalWorkflow,
    ApprovalWorkflowStep,
    ApprovalWorkflowStepApprover,
)

__all__ = [
    "ApprovalWorkflow",
    "ApprovalWorkflowStep",
    "ApprovalWorkflowStepApprover",
    "ApprovalRequest",
    "ApprovalAction",
]
