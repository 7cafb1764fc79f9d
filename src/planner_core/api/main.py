"""Planner Core FastAPI application."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from planner_core import __version__
from planner_core.config import get_settings
from planner_core.errors import PlannerError

from .routers import decisions, nodes, plans

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("planner-core")

logger.info("Starting Planner Core API")

# HTTP status for each core error code
STATUS_BY_CODE = {
    "not_found": 404,
    "forbidden": 403,
    "invalid_state": 409,
    "invalid_input": 400,
    "conflict": 409,
}

app = FastAPI(
    title="Planner Core API",
    description="Collaborative plan trees for humans and agents",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PlannerError)
def planner_error_handler(request: Request, exc: PlannerError):
    status_code = STATUS_BY_CODE.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"Unmapped planner error on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


app.include_router(plans.router, prefix="/api/v1/plans")
app.include_router(nodes.router, prefix="/api/v1/plans/{plan_id}/nodes")
app.include_router(decisions.router, prefix="/api/v1/plans/{plan_id}/decisions")


@app.get("/")
def root():
    """Root endpoint with server info."""
    return {
        "name": "Planner Core API",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
