from fastapi import APIRouter, Depends, HTTPException, status

from loanflow.api import deps
from loanflow.schemas.loan import CloseRequest
from loanflow.schemas.query import (
    QueryCreateRequest,
    QueryEditRequest,
    QueryNode,
    QueryReplyRequest,
    QueryResolveRequest,
    QueryThread,
)
from loanflow.services.capabilities import Capability
from loanflow.services.lifecycle import LifecycleOrchestrator
from loanflow.services.queries import QUERY_NOT_FOUND, QueryThreadEngine

router = APIRouter(prefix="/loan-applications/{application_id}/queries", tags=["queries"])


async def _file_key(
    application_id: str,
    capability: Capability,
    orchestrator: LifecycleOrchestrator,
) -> tuple[str, str | None]:
    application = await orchestrator.get_application(capability, application_id)
    return application.file_id or application.id, application.client_id


async def _visible_thread(
    engine: QueryThreadEngine,
    query_id: str,
    file_id: str,
    capability: Capability,
) -> QueryThread:
    thread = await engine.get_thread(query_id)
    if thread.root.file_id != file_id or not capability.can_view_thread(thread.root):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=QUERY_NOT_FOUND)
    return thread


@router.get("", response_model=list[QueryThread], summary="List query threads on a file")
async def list_query_threads(
    application_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> list[QueryThread]:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    return await engine.list_threads(file_id, capability)


@router.post("", response_model=QueryNode, status_code=status.HTTP_201_CREATED)
async def create_query(
    application_id: str,
    payload: QueryCreateRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryNode:
    file_id, client_id = await _file_key(application_id, capability, orchestrator)
    return await engine.create_query(
        file_id=file_id,
        capability=capability,
        message=payload.message,
        target_role=payload.target_role,
        client_id=client_id,
    )


@router.get("/{query_id}", response_model=QueryThread)
async def get_query_thread(
    application_id: str,
    query_id: str,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryThread:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    return await _visible_thread(engine, query_id, file_id, capability)


@router.post("/{query_id}/replies", response_model=QueryNode, status_code=status.HTTP_201_CREATED)
async def reply_to_query(
    application_id: str,
    query_id: str,
    payload: QueryReplyRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryNode:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    thread = await _visible_thread(engine, query_id, file_id, capability)
    return await engine.reply_to_query(
        root_id=thread.root.id,
        file_id=file_id,
        capability=capability,
        message=payload.message,
    )


@router.post("/{query_id}/resolve", response_model=QueryNode)
async def resolve_query(
    application_id: str,
    query_id: str,
    payload: QueryResolveRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryNode:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    return await engine.resolve_query(query_id, file_id, capability, payload.resolution_message)


@router.post("/{query_id}/reopen", response_model=QueryNode)
async def reopen_query(
    application_id: str,
    query_id: str,
    payload: CloseRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryNode:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    return await engine.reopen_query(query_id, file_id, capability, payload.reason)


@router.patch("/{query_id}", response_model=QueryNode)
async def edit_query(
    application_id: str,
    query_id: str,
    payload: QueryEditRequest,
    capability: Capability = Depends(deps.get_capability),
    orchestrator: LifecycleOrchestrator = Depends(deps.get_orchestrator),
    engine: QueryThreadEngine = Depends(deps.get_query_engine),
) -> QueryNode:
    file_id, _ = await _file_key(application_id, capability, orchestrator)
    return await engine.update_query(query_id, capability, payload.message, file_id=file_id)
