from fastapi import APIRouter, Depends, Query

from loanflow.api import deps
from loanflow.schemas.audit import AdminActivityListResponse, FileAuditListResponse
from loanflow.services import access_filter
from loanflow.services.audit import AuditTrailRecorder
from loanflow.services.capabilities import Capability
from loanflow.services.lifecycle import LifecycleOrchestrator

router = APIRouter(tags=["audit-logs"])


@router.get(
    "/loan-applications/{application_id}/audit-log",
    response_model=FileAuditListResponse,
    response_model_by_alias=False,
    summary="File audit trail for one loan application",
)
async def list_file_audit_log(
    application_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    recorder: AuditTrailRecorder = Depends(deps.get_recorder),
) -> FileAuditListResponse:
    application = await orchestrator.get_application(capability, application_id)
    items = await recorder.list_file_events(application.file_id or application.id)
    return FileAuditListResponse(items=items, total=len(items))


@router.get(
    "/audit/file-log",
    response_model=FileAuditListResponse,
    response_model_by_alias=False,
    summary="File audit entries visible to the caller",
)
async def list_visible_file_audit_log(
    limit: int = Query(200, ge=1, le=1000),
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    recorder: AuditTrailRecorder = Depends(deps.get_recorder),
) -> FileAuditListResponse:
    scope = await orchestrator.scope_for(capability)
    visible = await orchestrator.list_applications(capability)
    entries = access_filter.filter_file_audit_log(await recorder.list_file_events(), scope, visible)
    entries.reverse()
    return FileAuditListResponse(items=entries[:limit], total=len(entries))


@router.get(
    "/audit/admin-activity",
    response_model=AdminActivityListResponse,
    response_model_by_alias=False,
    summary="Admin activity entries visible to the caller",
)
async def list_admin_activity(
    limit: int = Query(200, ge=1, le=1000),
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    recorder: AuditTrailRecorder = Depends(deps.get_recorder),
) -> AdminActivityListResponse:
    scope = await orchestrator.scope_for(capability)
    visible = await orchestrator.list_applications(capability)
    entries = access_filter.filter_admin_activity_log(
        await recorder.list_admin_activity(), scope, visible, capability.identity
    )
    return AdminActivityListResponse(items=entries[:limit], total=len(entries))
