"""
Queue observability

GET /api/v1/queues/{name}/counts → waiting / active / completed / failed / delayed
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from docpipe.api.dependencies import Broker
from docpipe.queue.catalogue import get_queue_config
from docpipe.schemas.files import ApiErrors, ErrorResponse, QueueCountsResponse

router = APIRouter(prefix="/queues", tags=["Queues"])


@router.get(
    "/{name}/counts",
    response_model=QueueCountsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_queue_counts(name: str, broker: Broker):
    try:
        config = get_queue_config(name)
    except KeyError:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND,
                            content=ApiErrors.not_found("queue", name).model_dump(mode="json"))

    counts = await broker.get_counts(config.name)
    return QueueCountsResponse(queue=config.name.value, degraded=broker.degraded, **counts)
