"""
PhaseFlow - FastAPI Application Entry Point.

An async workflow execution engine for multi-phase agent pipelines.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from phaseflow.config import settings
from phaseflow.api.deps import engine, event_bus, http_client
from phaseflow.api.routes import instances, websocket, workflows
from phaseflow.storage.memory import definition_storage, run_record_storage
from phaseflow.workflows.demo import register_demo_workflows


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

    await register_demo_workflows()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await engine.shutdown()
    await http_client.aclose()
    event_bus.close_subscriptions()


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="""
## Workflow Execution Engine API

Runs versioned workflow definitions made of agent, code, HTTP, file,
conditional, loop and sub-workflow nodes.

### Features
- **Context**: Variables flow between nodes through input/output mappings
- **Branching & Loops**: Conditional routes, count/while/for-each loops
- **Human in the loop**: Approval gates and user input prompts pause an instance
- **Resilience**: Per-node retries with exponential backoff and timeouts
- **Real-time Updates**: WebSocket stream of lifecycle events

### Quick Start
1. Register a workflow: `POST /workflows`
2. Start an instance: `POST /instances`
3. Follow it: `GET /instances/{instance_id}` or `/ws/instances/{instance_id}`
4. Approve a paused phase: `POST /instances/{instance_id}/nodes/{node_id}/approve`

### Demo Workflows
`article-pipeline` and `greeting` are registered at startup.
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
app.include_router(workflows.router)
app.include_router(instances.router)
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
        "description": "An async workflow execution engine for agent pipelines",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "workflows": "/workflows",
            "instances": "/instances",
            "websocket_instance": "/ws/instances/{instance_id}",
            "websocket_events": "/ws/events",
        },
        "demo_workflows": ["article-pipeline", "greeting"],
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "definitions_count": len(definition_storage),
        "runs_count": len(run_record_storage),
        "running_instances": len(engine.get_running_workflows()),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )
