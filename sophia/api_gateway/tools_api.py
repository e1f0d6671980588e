"""
API endpoints for the Tool Registry.

Thin adapters over ToolRegistry; registry errors are rendered by the
gateway's SophiaError handler.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from sophia.api_gateway.models import (
    MessageResponse,
    ProposeToolRequest,
    RunToolRequest,
    SetCurrentVersionRequest,
    ValidateInputRequest,
    ValidateOutputRequest,
)
from sophia.tool_registry.models import (
    CategoryNode,
    InstallationResult,
    Tool,
    ToolCategory,
    ToolDependency,
    ToolExecutionResult,
    ToolMetrics,
    ToolStats,
    ToolSummary,
    ToolVersion,
    ValidationResult,
)
from sophia.tool_registry.registry import ToolRegistry


# Set up logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/api/tools",
    tags=["tools"],
    responses={404: {"description": "Not found"}}
)


def get_tool_registry(request: Request) -> ToolRegistry:
    """Get the registry the gateway was created with."""
    return request.app.state.tool_registry


@router.get("", response_model=List[ToolSummary])
async def list_tools(
    category_id: Optional[str] = Query(None),
    tag: Optional[str] = Query(None),
    registry: ToolRegistry = Depends(get_tool_registry)
):
    """
    List registered tools.

    Args:
        category_id: Only tools in this category
        tag: Only tools with this tag

    Returns:
        Tool summaries
    """
    return await registry.list_tools(category_id=category_id, tag=tag)


@router.post("", response_model=Tool, status_code=status.HTTP_201_CREATED)
async def add_tool(tool: Dict[str, Any], registry: ToolRegistry = Depends(get_tool_registry)):
    """Register a new tool."""
    return await registry.add_tool(tool)


@router.get("/stats", response_model=ToolStats)
async def get_tool_stats(registry: ToolRegistry = Depends(get_tool_registry)):
    """Aggregate tool usage statistics."""
    return await registry.get_tool_stats()


@router.get("/search/{query}", response_model=List[Tool])
async def search_tools(
    query: str,
    top_k: Optional[int] = Query(None, ge=1, le=50),
    registry: ToolRegistry = Depends(get_tool_registry)
):
    """Semantic search for tools."""
    return await registry.find_tool(query, top_k=top_k)


@router.post("/suggest", response_model=Tool)
async def suggest_tool(request: ProposeToolRequest, registry: ToolRegistry = Depends(get_tool_registry)):
    """Ask the LLM to propose a tool definition (not registered)."""
    return await registry.propose_new_tool(request.description)


# Category endpoints

@router.get("/categories", response_model=List[ToolCategory])
async def list_categories(registry: ToolRegistry = Depends(get_tool_registry)):
    return await registry.list_categories()


@router.get("/categories/hierarchy", response_model=List[CategoryNode])
async def get_category_hierarchy(registry: ToolRegistry = Depends(get_tool_registry)):
    """Depth-first flattened category tree."""
    return await registry.get_category_hierarchy()


@router.post("/categories", response_model=ToolCategory, status_code=status.HTTP_201_CREATED)
async def add_category(category: Dict[str, Any], registry: ToolRegistry = Depends(get_tool_registry)):
    return await registry.add_category(category)


@router.put("/categories/{category_id}", response_model=ToolCategory)
async def update_category(
    category_id: str,
    updates: Dict[str, Any],
    registry: ToolRegistry = Depends(get_tool_registry)
):
    return await registry.update_category(category_id, updates)


@router.delete("/categories/{category_id}", response_model=MessageResponse)
async def delete_category(category_id: str, registry: ToolRegistry = Depends(get_tool_registry)):
    await registry.delete_category(category_id)
    return MessageResponse(message=f"Category {category_id} deleted")


# Tool endpoints

@router.get("/{name}", response_model=Tool)
async def get_tool(name: str, registry: ToolRegistry = Depends(get_tool_registry)):
    """Get a tool by name."""
    tool = await registry.get_tool(name)
    if tool is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Tool '{name}' not found")
    return tool


@router.put("/{name}", response_model=Tool)
async def update_tool(name: str, updates: Dict[str, Any], registry: ToolRegistry = Depends(get_tool_registry)):
    """Merge updates into a tool."""
    return await registry.update_tool(name, updates)


@router.delete("/{name}", response_model=MessageResponse)
async def delete_tool(name: str, registry: ToolRegistry = Depends(get_tool_registry)):
    await registry.delete_tool(name)
    return MessageResponse(message=f"Tool {name} deleted")


@router.post("/{name}/run", response_model=ToolExecutionResult)
async def run_tool(name: str, request: RunToolRequest, registry: ToolRegistry = Depends(get_tool_registry)):
    """
    Execute a tool.

    Tool-level failures come back with success=false and HTTP 200.
    """
    return await registry.execute_tool(name, request.input)


@router.post("/{name}/validate-input", response_model=ValidationResult)
async def validate_input(
    name: str,
    request: ValidateInputRequest,
    registry: ToolRegistry = Depends(get_tool_registry)
):
    return await registry.validate_input(name, request.input)


@router.post("/{name}/validate-output", response_model=ValidationResult)
async def validate_output(
    name: str,
    request: ValidateOutputRequest,
    registry: ToolRegistry = Depends(get_tool_registry)
):
    return await registry.validate_output(name, request.output)


# Version endpoints

@router.get("/{name}/versions", response_model=List[ToolVersion])
async def list_versions(name: str, registry: ToolRegistry = Depends(get_tool_registry)):
    return await registry.list_versions(name)


@router.post("/{name}/versions", response_model=ToolVersion, status_code=status.HTTP_201_CREATED)
async def create_version(name: str, version: Dict[str, Any], registry: ToolRegistry = Depends(get_tool_registry)):
    """Add a version; the current version is not moved."""
    return await registry.create_version(name, version)


@router.get("/{name}/versions/{version}", response_model=ToolVersion)
async def get_version(name: str, version: str, registry: ToolRegistry = Depends(get_tool_registry)):
    found = await registry.get_version(name, version)
    if found is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Version {name}@{version} not found")
    return found


@router.put("/{name}/current-version", response_model=Tool)
async def set_current_version(
    name: str,
    request: SetCurrentVersionRequest,
    registry: ToolRegistry = Depends(get_tool_registry)
):
    """Point the tool at an existing version."""
    return await registry.set_current_version(name, request.version)


# Dependency endpoints

@router.get("/{name}/dependencies", response_model=List[ToolDependency])
async def resolve_dependencies(
    name: str,
    version: Optional[str] = Query(None),
    transitive: bool = Query(True),
    registry: ToolRegistry = Depends(get_tool_registry)
):
    return await registry.resolve_dependencies(name, version, transitive=transitive)


@router.post("/{name}/dependencies", response_model=InstallationResult)
async def install_dependencies(
    name: str,
    version: Optional[str] = Query(None),
    registry: ToolRegistry = Depends(get_tool_registry)
):
    """Resolve and install a tool version's dependencies."""
    return await registry.install_dependencies(name, version)


# Metrics endpoints

@router.get("/{name}/metrics", response_model=ToolMetrics)
async def get_tool_metrics(name: str, registry: ToolRegistry = Depends(get_tool_registry)):
    return await registry.get_tool_metrics(name)


@router.delete("/{name}/metrics", response_model=ToolMetrics)
async def prune_tool_metrics(
    name: str,
    max_age_days: Optional[float] = Query(None, gt=0),
    registry: ToolRegistry = Depends(get_tool_registry)
):
    """Reset a tool's metrics, or only drop errors older than max_age_days."""
    return await registry.prune_metrics(name, max_age_days=max_age_days)
