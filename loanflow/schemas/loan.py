from __future__ import annotations

import json
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator

from loanflow.schemas.query import QueryNode


class LoanStatus(str, Enum):
    DRAFT = "draft"
    UNDER_KAM_REVIEW = "under_kam_review"
    QUERY_WITH_CLIENT = "query_with_client"
    PENDING_CREDIT_REVIEW = "pending_credit_review"
    CREDIT_QUERY_WITH_KAM = "credit_query_with_kam"
    IN_NEGOTIATION = "in_negotiation"
    SENT_TO_NBFC = "sent_to_nbfc"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    WITHDRAWN = "withdrawn"
    CLOSED = "closed"

    @classmethod
    def _missing_(cls, value):  # type: ignore[override]
        if isinstance(value, str):
            normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
            return cls._value2member_map_.get(normalized)
        return None


class LenderDecisionStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    NEEDS_CLARIFICATION = "Needs Clarification"


class NbfcRejectionReason(str, Enum):
    CREDIT_PROFILE = "credit_profile"
    DOCUMENTATION_INCOMPLETE = "documentation_incomplete"
    POLICY_MISMATCH = "policy_mismatch"
    CAPACITY_EXHAUSTED = "capacity_exhausted"
    PRICING = "pricing"
    OTHER = "other"


def _id_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item)
    if value in (None, ""):
        return ()
    return (str(value),)


def _current_links(primary: str | None, linked: tuple[str, ...]) -> tuple[str, ...]:
    # a reassigned primary id replaces the stored list
    if not primary:
        return ()
    return linked if primary in linked else (primary,)


class LoanApplication(BaseModel):
    """A loan file as stored in the ``Loan Application`` table.

    Attribute names are snake_case; aliases are the store's column names.
    ``model_dump(by_alias=True)`` yields a row ready for upsert.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    file_id: str | None = Field(default=None, alias="File ID")
    client_id: str | None = Field(default=None, alias="Client")
    applicant_name: str | None = Field(default=None, alias="Applicant Name")
    loan_product: str | None = Field(default=None, alias="Loan Product")
    requested_loan_amount: Decimal | None = Field(default=None, alias="Requested Loan Amount")
    assigned_kam_id: str | None = Field(default=None, alias="Assigned KAM")
    assigned_credit_analyst_id: str | None = Field(default=None, alias="Assigned Credit Analyst")
    assigned_nbfc_id: str | None = Field(default=None, alias="Assigned NBFC")
    status: LoanStatus = Field(default=LoanStatus.DRAFT, alias="Status")
    lender_decision_status: LenderDecisionStatus | None = Field(default=None, alias="Lender Decision Status")
    lender_decision_date: str | None = Field(default=None, alias="Lender Decision Date")
    lender_decision_remarks: str | None = Field(default=None, alias="Lender Decision Remarks")
    approved_loan_amount: Decimal | None = Field(default=None, alias="Approved Loan Amount")
    disbursed_amount: Decimal | None = Field(default=None, alias="Disbursed Amount")
    disbursed_date: str | None = Field(default=None, alias="Disbursed Date")
    form_data: dict[str, Any] = Field(default_factory=dict, alias="Form Data")
    form_config_version: str | None = Field(default=None, alias="Form Config Version")
    created_at: str | None = Field(default=None, alias="Creation Date")
    submitted_at: str | None = Field(default=None, alias="Submitted Date")
    last_updated_at: str | None = Field(default=None, alias="Last Updated")
    # every id of a multi-valued link, in stored order
    linked_client_ids: tuple[str, ...] = Field(default=(), exclude=True)
    linked_nbfc_ids: tuple[str, ...] = Field(default=(), exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _keep_linked_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for alias, name, target in (
            ("Client", "client_id", "linked_client_ids"),
            ("Assigned NBFC", "assigned_nbfc_id", "linked_nbfc_ids"),
        ):
            if target not in data:
                data[target] = _id_tuple(data[alias] if alias in data else data.get(name))
        return data

    @field_validator(
        "assigned_kam_id",
        "assigned_credit_analyst_id",
        "assigned_nbfc_id",
        "client_id",
        mode="before",
    )
    @classmethod
    def _first_linked_id(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return str(value[0]) if value else None
        if value == "":
            return None
        return value

    @field_validator(
        "requested_loan_amount",
        "approved_loan_amount",
        "disbursed_amount",
        "lender_decision_status",
        mode="before",
    )
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("form_data", mode="before")
    @classmethod
    def _parse_form_data(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return value

    @field_serializer("form_data")
    def _serialize_form_data(self, value: dict[str, Any], info) -> Any:
        if info.by_alias:
            return json.dumps(value, default=str)
        return value

    @field_serializer("client_id", "assigned_nbfc_id")
    def _serialize_link(self, value: str | None, info) -> Any:
        linked = self.client_ids if info.field_name == "client_id" else self.assigned_nbfc_ids
        if info.by_alias and len(linked) > 1:
            return list(linked)
        return value

    @property
    def client_ids(self) -> tuple[str, ...]:
        return _current_links(self.client_id, self.linked_client_ids)

    @property
    def assigned_nbfc_ids(self) -> tuple[str, ...]:
        return _current_links(self.assigned_nbfc_id, self.linked_nbfc_ids)

    @property
    def is_submitted(self) -> bool:
        return bool(self.submitted_at)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class LoanApplicationCreate(BaseModel):
    applicant_name: str | None = None
    loan_product: str | None = None
    requested_loan_amount: Decimal | None = Field(default=None, gt=0)
    form_data: dict[str, Any] = Field(default_factory=dict)


class LoanApplicationDraftUpdate(BaseModel):
    applicant_name: str | None = None
    loan_product: str | None = None
    requested_loan_amount: Decimal | None = Field(default=None, gt=0)
    form_data: dict[str, Any] | None = None


class StatusTransitionRequest(BaseModel):
    status: LoanStatus
    reason: str | None = Field(default=None, max_length=2000)


class QueryWithClientRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)


class CreditQueryRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)


class AssignNbfcRequest(BaseModel):
    nbfc_id: str = Field(min_length=1)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class ApproveRequest(BaseModel):
    approved_loan_amount: Decimal | None = Field(default=None, gt=0)
    remarks: str | None = None


class NbfcDecisionRequest(BaseModel):
    decision: LenderDecisionStatus
    remarks: str | None = None
    approved_amount: Decimal | None = Field(default=None, gt=0)
    rejection_reason: NbfcRejectionReason | None = None


class DisbursementRequest(BaseModel):
    disbursed_amount: Decimal = Field(gt=0)
    disbursed_date: str = Field(min_length=1)


class CloseRequest(BaseModel):
    reason: str | None = None


class AllowedTransitionsResponse(BaseModel):
    current_status: LoanStatus
    allowed: list[LoanStatus]


class LoanApplicationListResponse(BaseModel):
    items: list[LoanApplication]
    total: int


class ApplicationWithQueryResponse(BaseModel):
    application: LoanApplication
    query: QueryNode
