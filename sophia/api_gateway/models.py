"""
Request and response models for the API Gateway.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SystemHealth(BaseModel):
    """System health status model."""
    status: str  # "healthy" or "degraded"
    uptime_seconds: float
    components: Dict[str, Dict[str, Any]]
    resource_utilization: Dict[str, float]
    timestamp: datetime = Field(default_factory=datetime.now)


class ErrorResponse(BaseModel):
    error: str
    component: str
    details: Dict[str, Any] = {}


class MessageResponse(BaseModel):
    message: str


class RunToolRequest(BaseModel):
    input: Any = None


class ValidateInputRequest(BaseModel):
    input: Any = None


class ValidateOutputRequest(BaseModel):
    output: Any = None


class ProposeToolRequest(BaseModel):
    description: str


class SetCurrentVersionRequest(BaseModel):
    version: str


class ExecuteWorkflowRequest(BaseModel):
    input: Optional[Any] = None
