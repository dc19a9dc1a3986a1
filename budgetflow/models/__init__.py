from budgetflow.models.base import BFBaseModel
from budgetflow.models.requests import (
    AmountGateInput,
    ApprovalStepInput,
    ApproveRequest,
    BudgetPreviewRequest,
    CreateAccountRequest,
    CreateInvoiceRequest,
    CreatePORequest,
    CreateSubAccountRequest,
    LineItemInput,
    MarkPaidRequest,
    MemberInput,
    ReasonRequest,
    RejectRequest,
    RequestInfoRequest,
    SavePolicyRequest,
    SetMembersRequest,
    UpdateInvoiceRequest,
    UpdatePORequest,
)

__all__ = [
    "AmountGateInput",
    "ApprovalStepInput",
    "ApproveRequest",
    "BFBaseModel",
    "BudgetPreviewRequest",
    "CreateAccountRequest",
    "CreateInvoiceRequest",
    "CreatePORequest",
    "CreateSubAccountRequest",
    "LineItemInput",
    "MarkPaidRequest",
    "MemberInput",
    "ReasonRequest",
    "RejectRequest",
    "RequestInfoRequest",
    "SavePolicyRequest",
    "SetMembersRequest",
    "UpdateInvoiceRequest",
    "UpdatePORequest",
]
