"""
API Gateway component.

Exposes the tool registry and workflow engine through a RESTful API.
"""

from sophia.api_gateway.models import SystemHealth
from sophia.api_gateway.gateway import build_app, create_app, run_gateway

__all__ = [
    # Models
    "SystemHealth",

    # Gateway
    "create_app",
    "build_app",
    "run_gateway"
]
