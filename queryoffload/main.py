import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from queryoffload.api.router import api_router
from queryoffload.core.config import settings
from queryoffload.core.offload.service import QueryOffload

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# One engine handle per process: built here, shut down when the app stops
@asynccontextmanager
async def lifespan(app: FastAPI):
    offload = QueryOffload(settings)
    await offload.initialize()
    app.state.offload = offload

    yield
    await offload.shutdown()


app = FastAPI(title="Query Offload API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Query Offload API. Submit read-only queries to POST /jobs"}
