"""
API Gateway for Sophia.

This module builds the FastAPI application exposing the tool registry and
the workflow engine over HTTP. Services are created once and handed to the
application explicitly; routers reach them through ``app.state``.
"""

import logging
import time
from datetime import datetime
from typing import Optional

import psutil
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sophia import __version__
from sophia.api_gateway.models import SystemHealth
from sophia.api_gateway.tools_api import router as tools_router
from sophia.api_gateway.workflows_api import router as workflows_router
from sophia.config import settings
from sophia.tool_registry.registry import ToolRegistry
from sophia.utils.error_handling import SophiaError
from sophia.workflow.service import WorkflowService
from sophia.workflow.suggestions import LLMWorkflowService


# Set up logging
logger = logging.getLogger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging requests and responses."""

    async def dispatch(self, request: Request, call_next):
        """
        Handle a request, logging details.

        Args:
            request: The incoming request
            call_next: The next middleware/route handler

        Returns:
            The response
        """
        start_time = time.time()
        logger.info(f"Request: {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error processing request: {e}")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": str(e), "component": "api_gateway", "details": {}}
            )

        duration_ms = (time.time() - start_time) * 1000
        logger.info(f"Response: {response.status_code} - {duration_ms:.2f}ms")
        response.headers["X-Process-Time"] = f"{duration_ms:.2f}ms"
        return response


async def sophia_error_handler(request: Request, exc: SophiaError) -> JSONResponse:
    """Render a Sophia error with its HTTP status."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.message, "component": exc.component, "details": exc.details}
    )


def create_app(
    tool_registry: ToolRegistry,
    workflow_service: WorkflowService,
    suggestion_service: Optional[LLMWorkflowService] = None,
) -> FastAPI:
    """
    Create the gateway application around already constructed services.

    Args:
        tool_registry: Tool registry (initialized on startup if needed)
        workflow_service: Workflow service
        suggestion_service: Workflow suggestion service

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="Sophia API Gateway",
        description="Tool registry and workflow engine of the Sophia companion server",
        version=__version__
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_exception_handler(SophiaError, sophia_error_handler)

    app.state.tool_registry = tool_registry
    app.state.workflow_service = workflow_service
    app.state.suggestion_service = suggestion_service
    app.state.start_time = datetime.now()

    app.include_router(tools_router)
    app.include_router(workflows_router)

    @app.on_event("startup")
    async def startup_event():
        """Run when the API gateway starts."""
        logger.info("API Gateway starting up")
        await tool_registry.initialize()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Run when the API gateway shuts down."""
        logger.info("API Gateway shutting down")

    @app.get("/health", response_model=SystemHealth)
    async def get_system_health():
        """
        Get system health status.

        Returns:
            System health status
        """
        uptime = (datetime.now() - app.state.start_time).total_seconds()
        components = {
            "api_gateway": {"status": "healthy", "uptime_seconds": uptime},
            "tool_registry": {
                "status": "healthy" if tool_registry.is_initialized else "initializing",
                "tools": len(tool_registry.tools)
            },
            "workflow_service": {"status": "healthy", "workflows": len(workflow_service.workflows)},
        }

        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')

        resource_utilization = {
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "memory_used_mb": memory.used / (1024 * 1024),
            "disk_percent": disk.percent,
            "disk_free_gb": disk.free / (1024 * 1024 * 1024)
        }

        health_status = "healthy"
        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 95:
            health_status = "degraded"

        return SystemHealth(
            status=health_status,
            uptime_seconds=uptime,
            components=components,
            resource_utilization=resource_utilization
        )

    return app


def build_app() -> FastAPI:
    """Construct the services from settings and wrap them in the gateway."""
    from sophia.utils.events import EventBus
    from sophia.utils.openai_client import LLMClient
    from sophia.utils.vector_store import FileVectorStore

    events = EventBus()
    llm = LLMClient()
    registry = ToolRegistry(
        store=FileVectorStore(settings.tool_registry_storage_dir),
        embedder=llm,
        events=events,
        workspace_path=settings.workspace_path
    )
    workflows = WorkflowService(registry, settings.workflow_storage_dir, events=events)
    suggestions = LLMWorkflowService(llm, registry)
    return create_app(registry, workflows, suggestions)


def run_gateway():
    """Run the API gateway with Uvicorn."""
    import uvicorn
    uvicorn.run(
        "sophia.api_gateway.gateway:build_app",
        factory=True,
        host=settings.api_gateway_host,
        port=settings.api_gateway_port,
        reload=settings.debug
    )


if __name__ == "__main__":
    run_gateway()
