"""
Tool Registry component.

Register, version, validate, search and execute dynamically defined tools.
"""

from sophia.tool_registry.models import (
    DependencyType,
    InstallationResult,
    Tool,
    ToolCategory,
    ToolDependency,
    ToolExecutionResult,
    ToolMetrics,
    ToolVersion,
    ValidationResult,
)
from sophia.tool_registry.validator import SchemaValidator
from sophia.tool_registry.runner import ToolRunner
from sophia.tool_registry.installer import DependencyInstaller
from sophia.tool_registry.registry import ToolRegistry

__all__ = [
    # Models
    "DependencyType",
    "InstallationResult",
    "Tool",
    "ToolCategory",
    "ToolDependency",
    "ToolExecutionResult",
    "ToolMetrics",
    "ToolVersion",
    "ValidationResult",

    # Services
    "SchemaValidator",
    "ToolRunner",
    "DependencyInstaller",
    "ToolRegistry"
]
