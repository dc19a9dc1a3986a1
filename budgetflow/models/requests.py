"""API request models."""
from typing import List, Literal, Optional

from pydantic import Field

from budgetflow.models.base import BFBaseModel


class MemberInput(BFBaseModel):
    member_id: str = Field(min_length=1)
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None


class SetMembersRequest(BFBaseModel):
    members: List[MemberInput] = Field(default_factory=list)


class AmountGateInput(BFBaseModel):
    condition: Literal["above", "below", "between"] = "above"
    threshold: float = 0.0
    threshold_max: Optional[float] = None


class ApprovalStepInput(BFBaseModel):
    id: Optional[str] = None
    order: Optional[int] = None
    approver_type: Literal["fixed", "role", "hod", "coordinator"] = "fixed"
    approvers: List[str] = Field(default_factory=list)
    roles: List[str] = Field(default_factory=list)
    department: Optional[str] = None
    require_all: bool = False
    amount_gate: Optional[AmountGateInput] = None


class SavePolicyRequest(BFBaseModel):
    steps: List[ApprovalStepInput] = Field(default_factory=list)


class CreateAccountRequest(BFBaseModel):
    code: str = Field(min_length=1)
    description: str = ""


class CreateSubAccountRequest(BFBaseModel):
    code: str = Field(min_length=1)
    description: str = ""
    budgeted: float = Field(default=0.0, ge=0)


class LineItemInput(BFBaseModel):
    line_id: Optional[str] = None
    description: str = ""
    sub_account_id: str = Field(min_length=1)
    quantity: float = 0.0
    unit_price: float = 0.0
    base_amount: float = 0.0
    vat_rate: float = 0.0
    irpf_rate: float = 0.0
    total_amount: float = 0.0
    po_item_id: Optional[str] = None
    po_item_index: Optional[int] = Field(default=None, ge=0)
    is_new_item: bool = False


class BudgetPreviewRequest(BFBaseModel):
    line_items: List[LineItemInput] = Field(default_factory=list)


class CreatePORequest(BFBaseModel):
    supplier: str = ""
    supplier_id: str = ""
    department: Optional[str] = None
    description: str = ""
    currency: Optional[str] = None
    po_type: str = ""
    line_items: List[LineItemInput] = Field(default_factory=list)
    submit: bool = True


class UpdatePORequest(BFBaseModel):
    supplier: Optional[str] = None
    supplier_id: Optional[str] = None
    department: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    po_type: Optional[str] = None
    line_items: Optional[List[LineItemInput]] = None


class UpdateInvoiceRequest(BFBaseModel):
    supplier: Optional[str] = None
    supplier_id: Optional[str] = None
    department: Optional[str] = None
    description: Optional[str] = None
    currency: Optional[str] = None
    # Empty string unlinks the invoice from its PO
    po_id: Optional[str] = None
    due_date: Optional[str] = None
    line_items: Optional[List[LineItemInput]] = None


class CreateInvoiceRequest(BFBaseModel):
    document_type: Literal["invoice", "proforma", "budget", "guarantee"] = "invoice"
    supplier: str = ""
    supplier_id: str = ""
    department: Optional[str] = None
    description: str = ""
    currency: Optional[str] = None
    po_id: Optional[str] = None
    due_date: Optional[str] = None
    replaces_document_id: Optional[str] = None
    line_items: List[LineItemInput] = Field(default_factory=list)
    submit: bool = True


class ApproveRequest(BFBaseModel):
    comment: Optional[str] = None


class RejectRequest(BFBaseModel):
    reason: str = Field(min_length=1)


class RequestInfoRequest(BFBaseModel):
    message: str = Field(min_length=1)


class ReasonRequest(BFBaseModel):
    reason: str = Field(min_length=1)


class MarkPaidRequest(BFBaseModel):
    paid_at: Optional[str] = None
