"""Read-only execution ledger routes."""

from typing import Optional

from fastapi import APIRouter, Depends

from core.container import container
from services.workflow import WorkflowService

router = APIRouter(prefix="/api/executions", tags=["executions"])


def get_workflow_service() -> WorkflowService:
    return container.workflow_service()


@router.get("")
async def list_executions(
    owner_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    limit: int = 50,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    executions = await workflow_service.list_executions(
        workflow_id=workflow_id, owner_id=owner_id, limit=limit
    )
    return {"executions": [e.model_dump(mode="json") for e in executions]}


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    """Execution record with its node results."""
    record = await workflow_service.get_execution(execution_id)
    node_results = await workflow_service.get_node_results(execution_id)
    return {
        **record.model_dump(mode="json", exclude={"job_payload"}),
        "node_results": [r.model_dump(mode="json") for r in node_results],
    }


@router.get("/{execution_id}/nodes")
async def get_node_results(
    execution_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    node_results = await workflow_service.get_node_results(execution_id)
    return {"node_results": [r.model_dump(mode="json") for r in node_results]}


@router.get("/{execution_id}/logs")
async def get_execution_logs(
    execution_id: str,
    workflow_service: WorkflowService = Depends(get_workflow_service)
):
    logs = await workflow_service.get_execution_logs(execution_id)
    return {"logs": [entry.model_dump(mode="json") for entry in logs]}
