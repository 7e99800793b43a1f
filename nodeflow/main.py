"""
NodeFlow - FastAPI Application Entry Point.

A workflow execution engine: typed node graphs, sandboxed node scripts,
concurrent branches and step-wise playback.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from nodeflow.config import settings
from nodeflow.api.routes import presets, runs, scenarios, websocket
from nodeflow.engine.errors import EngineError, GraphValidationError


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    runs.scheduler.sandbox.shutdown()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="""
## Workflow Execution Engine API

Executes graphs of typed nodes whose scripts run in a sandbox.

### Features
- **Nodes**: starting, job, agent and aggregator nodes with Python scripts
- **Presets**: reusable node configurations, resolved into node documents
- **Concurrency**: independent branches run concurrently, aggregators fan in
- **Playback**: step through any run with next / prev / reset
- **Real-time Updates**: WebSocket streaming of events and transitions

### Quick Start
1. List scenarios: `GET /scenarios`
2. Run one: `POST /scenarios/three-jobs/run`
3. Inspect it: `GET /runs/{run_id}`
4. Step through it: `POST /runs/{run_id}/player/next`
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(runs.router)
app.include_router(scenarios.router)
app.include_router(presets.router)
app.include_router(websocket.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "A workflow execution engine with step-wise playback",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "runs": "/runs",
            "scenarios": "/scenarios",
            "presets": "/presets",
            "websocket": "/ws/runs/{run_id}",
        },
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    from nodeflow.storage.memory import run_storage
    from nodeflow.presets import preset_registry

    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "runs_count": len(run_storage),
        "presets_count": len(preset_registry),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(GraphValidationError)
async def graph_validation_handler(request: Request, exc: GraphValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Graph validation failed", "detail": exc.errors, "status_code": 400},
    )


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    logger.warning(f"Engine error: {exc}")
    return JSONResponse(
        status_code=400,
        content={"error": type(exc).__name__, "detail": str(exc), "status_code": 400},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )
