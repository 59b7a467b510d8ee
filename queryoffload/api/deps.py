from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from queryoffload.core.offload.service import QueryOffload


# The composition root stores the one running handle on app.state
def get_offload(request: Request) -> QueryOffload:
    offload = getattr(request.app.state, "offload", None)
    if offload is None or not offload.initialized:
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            {"code": "NOT_INITIALIZED", "message": "Query offload is not running"},
        )
    return offload


offload_dep = Annotated[QueryOffload, Depends(get_offload)]
