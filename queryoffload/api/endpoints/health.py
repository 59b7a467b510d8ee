from fastapi import APIRouter, HTTPException, status

from queryoffload.api.deps import offload_dep
from queryoffload.core import schemas

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=schemas.HealthResponse)
async def health_check(offload: offload_dep):
    """Liveness plus the number of queued, not yet picked up jobs."""
    try:
        depth = await offload.queue_depth()
    except Exception as error:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, f"Queue unavailable: {error}")
    return schemas.HealthResponse(queue_depth=depth)
