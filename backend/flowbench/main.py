import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from flowbench import __version__
from flowbench.api import flows
from flowbench.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Flow execution service starting (backend: %s)", settings.backend_url)

    yield

    logger.info("Flow execution service stopped")


app = FastAPI(
    title="Flowbench API",
    description="Flow execution engine for API test workbenches",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flows.router, prefix="/api/flows", tags=["flows"])


@app.get("/health")
async def health():
    return {"status": "healthy"}


def run():
    import uvicorn

    uvicorn.run("flowbench.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
