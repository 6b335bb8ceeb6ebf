from fastapi import APIRouter, Depends, Query, status

from loanflow.api import deps
from loanflow.schemas.audit import StatusHistoryItem
from loanflow.schemas.identity import Role
from loanflow.schemas.loan import (
    AllowedTransitionsResponse,
    ApplicationWithQueryResponse,
    ApproveRequest,
    AssignNbfcRequest,
    CloseRequest,
    CreditQueryRequest,
    DisbursementRequest,
    LoanApplication,
    LoanApplicationCreate,
    LoanApplicationDraftUpdate,
    LoanApplicationListResponse,
    LoanStatus,
    NbfcDecisionRequest,
    QueryWithClientRequest,
    RejectRequest,
    StatusTransitionRequest,
)
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.capabilities import Capability
from loanflow.services.lifecycle import LifecycleOrchestrator

router = APIRouter(prefix="/loan-applications", tags=["loan-applications"])

_client_only = deps.require_roles(Role.CLIENT)
_kam_only = deps.require_roles(Role.KAM)
_credit_only = deps.require_roles(Role.CREDIT_TEAM)
_nbfc_only = deps.require_roles(Role.NBFC)


@router.get(
    "",
    response_model=LoanApplicationListResponse,
    response_model_by_alias=False,
    summary="List loan applications visible to the caller",
)
async def list_loan_applications(
    status_filter: LoanStatus | None = Query(default=None, alias="status"),
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplicationListResponse:
    items = await orchestrator.list_applications(capability, status=status_filter)
    return LoanApplicationListResponse(items=items, total=len(items))


@router.post(
    "",
    response_model=LoanApplication,
    response_model_by_alias=False,
    status_code=status.HTTP_201_CREATED,
    summary="Create a draft loan application",
)
async def create_loan_application(
    payload: LoanApplicationCreate,
    capability: Capability = Depends(_client_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.create_application(capability, payload)


@router.get("/{application_id}", response_model=LoanApplication, response_model_by_alias=False)
async def get_loan_application(
    application_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.get_application(capability, application_id)


@router.patch(
    "/{application_id}",
    response_model=LoanApplication,
    response_model_by_alias=False,
    summary="Save changes to a draft",
)
async def update_loan_application_draft(
    application_id: str,
    payload: LoanApplicationDraftUpdate,
    capability: Capability = Depends(_client_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.update_draft(capability, application_id, payload)


@router.get("/{application_id}/allowed-transitions", response_model=AllowedTransitionsResponse)
async def get_allowed_transitions(
    application_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> AllowedTransitionsResponse:
    application = await orchestrator.get_application(capability, application_id)
    allowed = await orchestrator.allowed_transitions(capability, application_id)
    return AllowedTransitionsResponse(current_status=application.status, allowed=allowed)


@router.get("/{application_id}/status-history", response_model=list[StatusHistoryItem])
async def get_status_history(
    application_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    recorder: AuditTrailRecorder = Depends(deps.get_recorder),
) -> list[StatusHistoryItem]:
    application = await orchestrator.get_application(capability, application_id)
    return await recorder.get_status_history(application.file_id or application.id)


@router.post(
    "/{application_id}/transition",
    response_model=LoanApplication,
    response_model_by_alias=False,
    summary="Move a file to another status",
)
async def transition_loan_application(
    application_id: str,
    payload: StatusTransitionRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.transition(capability, application_id, payload.status, reason=payload.reason)


@router.post("/{application_id}/submit", response_model=LoanApplication, response_model_by_alias=False)
async def submit_loan_application(
    application_id: str,
    capability: Capability = Depends(_client_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.submit_application(capability, application_id)


@router.post("/{application_id}/withdraw", response_model=LoanApplication, response_model_by_alias=False)
async def withdraw_loan_application(
    application_id: str,
    payload: CloseRequest,
    capability: Capability = Depends(_client_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.withdraw_application(capability, application_id, payload.reason)


@router.post(
    "/{application_id}/respond-to-query",
    response_model=LoanApplication,
    response_model_by_alias=False,
    summary="Send a file back to the KAM after answering a query",
)
async def respond_to_client_query(
    application_id: str,
    payload: CloseRequest,
    capability: Capability = Depends(_client_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.respond_to_client_query(capability, application_id, payload.reason)


@router.post(
    "/{application_id}/query-with-client",
    response_model=ApplicationWithQueryResponse,
    response_model_by_alias=False,
)
async def raise_query_with_client(
    application_id: str,
    payload: QueryWithClientRequest,
    capability: Capability = Depends(_kam_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> ApplicationWithQueryResponse:
    application, query = await orchestrator.raise_query_with_client(capability, application_id, payload.message)
    return ApplicationWithQueryResponse(application=application, query=query)


@router.post(
    "/{application_id}/forward-to-credit",
    response_model=LoanApplication,
    response_model_by_alias=False,
)
async def forward_to_credit(
    application_id: str,
    capability: Capability = Depends(_kam_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.forward_to_credit(capability, application_id)


@router.post(
    "/{application_id}/credit-query",
    response_model=ApplicationWithQueryResponse,
    response_model_by_alias=False,
)
async def raise_credit_query(
    application_id: str,
    payload: CreditQueryRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> ApplicationWithQueryResponse:
    application, query = await orchestrator.raise_credit_query(capability, application_id, payload.message)
    return ApplicationWithQueryResponse(application=application, query=query)


@router.post(
    "/{application_id}/negotiation",
    response_model=LoanApplication,
    response_model_by_alias=False,
)
async def mark_in_negotiation(
    application_id: str,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.mark_in_negotiation(capability, application_id)


@router.post(
    "/{application_id}/assign-nbfc",
    response_model=LoanApplication,
    response_model_by_alias=False,
)
async def assign_nbfc(
    application_id: str,
    payload: AssignNbfcRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.assign_nbfc(capability, application_id, payload.nbfc_id)


@router.post(
    "/{application_id}/nbfc-decision",
    response_model=LoanApplication,
    response_model_by_alias=False,
)
async def record_nbfc_decision(
    application_id: str,
    payload: NbfcDecisionRequest,
    capability: Capability = Depends(_nbfc_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.record_nbfc_decision(
        capability,
        application_id,
        decision=payload.decision,
        remarks=payload.remarks,
        approved_amount=payload.approved_amount,
        rejection_reason=payload.rejection_reason,
    )


@router.post("/{application_id}/approve", response_model=LoanApplication, response_model_by_alias=False)
async def approve_loan_application(
    application_id: str,
    payload: ApproveRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.approve(
        capability,
        application_id,
        approved_loan_amount=payload.approved_loan_amount,
        remarks=payload.remarks,
    )


@router.post("/{application_id}/reject", response_model=LoanApplication, response_model_by_alias=False)
async def reject_loan_application(
    application_id: str,
    payload: RejectRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.reject(capability, application_id, payload.reason)


@router.post("/{application_id}/disburse", response_model=LoanApplication, response_model_by_alias=False)
async def mark_disbursed(
    application_id: str,
    payload: DisbursementRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.mark_disbursed(
        capability,
        application_id,
        disbursed_amount=payload.disbursed_amount,
        disbursed_date=payload.disbursed_date,
    )


@router.post("/{application_id}/close", response_model=LoanApplication, response_model_by_alias=False)
async def close_loan_application(
    application_id: str,
    payload: CloseRequest,
    capability: Capability = Depends(_credit_only),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
) -> LoanApplication:
    return await orchestrator.close_application(capability, application_id, payload.reason)
