"""
Data models for the Tool Registry component.
"""

import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def is_valid_version(version: Optional[str]) -> bool:
    """Check a MAJOR.MINOR.PATCH[-pre][+build] version string."""
    return bool(version) and SEMVER_PATTERN.match(version) is not None


def version_sort_key(version: str) -> Tuple:
    """
    Sort key following semver precedence.

    A release sorts after its pre-releases; numeric pre-release identifiers
    sort before alphanumeric ones; build metadata is ignored.
    """
    match = SEMVER_PATTERN.match(version)
    if not match:
        return (-1, -1, -1, 0, ())
    major, minor, patch, prerelease = int(match.group(1)), int(match.group(2)), int(match.group(3)), match.group(4)
    if prerelease is None:
        return (major, minor, patch, 1, ())
    identifiers = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in prerelease.split(".")
    )
    return (major, minor, patch, 0, identifiers)


class DependencyType(str, Enum):
    """Kinds of tool dependencies."""
    PACKAGE = "package"  # Python package installed with pip
    TOOL = "tool"        # another registered tool at a given version
    SYSTEM = "system"    # host system package


# Long-form spellings accepted for each dependency type.
DEPENDENCY_TYPE_ALIASES = {
    "npm-package": DependencyType.PACKAGE.value,
    "other-tool": DependencyType.TOOL.value,
    "system-package": DependencyType.SYSTEM.value,
}


class ToolDependency(BaseModel):
    """A dependency declared by a tool version."""
    name: str
    version: str
    type: DependencyType
    optional: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return DEPENDENCY_TYPE_ALIASES.get(value, value)
        return value

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


class ToolVersion(BaseModel):
    """One immutable version of a tool's code."""
    version: str
    code: str
    dependencies: List[ToolDependency] = []
    changelog: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    author: Optional[str] = None


class ToolCategory(BaseModel):
    """A node in the category tree."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    parent_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CategoryNode(BaseModel):
    """A category with its position in the flattened hierarchy."""
    category: ToolCategory
    depth: int
    path: List[str]


class InputPattern(BaseModel):
    """Shape of an input (key -> JSON type name) and how often it was seen."""
    pattern: Dict[str, str]
    count: int = 0


class ErrorRecord(BaseModel):
    error: str
    timestamp: datetime = Field(default_factory=datetime.now)


class ToolMetrics(BaseModel):
    """Aggregated execution metrics for a tool."""
    execution_count: int = 0
    average_execution_time: float = 0.0
    error_rate: float = 0.0
    last_executed: Optional[datetime] = None
    successful_executions: int = 0
    failed_executions: int = 0
    popular_input_patterns: List[InputPattern] = []
    last_errors: List[ErrorRecord] = []


class ToolMetadata(BaseModel):
    author: Optional[str] = None
    tags: List[str] = []
    last_used: Optional[datetime] = None
    use_count: int = 0
    category: Optional[str] = None
    metrics: ToolMetrics = Field(default_factory=ToolMetrics)
    last_modified: Optional[datetime] = None

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, tags: List[str]) -> List[str]:
        # tags behave as a set; keep first-seen order
        return list(dict.fromkeys(tags))


class Tool(BaseModel):
    """A named, versioned, schema-validated unit of executable logic."""
    name: str
    description: str = ""
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    code: str = ""
    current_version: str = "1.0.0"
    versions: Dict[str, ToolVersion] = Field(default_factory=dict)
    category_id: Optional[str] = None
    metadata: ToolMetadata = Field(default_factory=ToolMetadata)

    @property
    def current(self) -> Optional[ToolVersion]:
        return self.versions.get(self.current_version)


class ToolSummary(BaseModel):
    """Listing entry returned by ToolRegistry.list_tools."""
    name: str
    description: str
    current_version: str
    author: Optional[str] = None
    tags: List[str] = []
    last_used: Optional[datetime] = None
    use_count: int = 0
    category: Optional[str] = None
    metrics: Optional[ToolMetrics] = None
    input_schema: Optional[Dict[str, Any]] = None


class ToolStats(BaseModel):
    total: int
    recently_used: List[Tool]
    most_used: List[Tool]


class ValidationResult(BaseModel):
    """Outcome of validating data against a schema."""
    is_valid: bool
    errors: Optional[List[str]] = None
    coerced_data: Any = None


class ToolValidationResult(BaseModel):
    is_valid: bool
    errors: Optional[List[str]] = None
    warnings: Optional[List[str]] = None


class ToolRunResult(BaseModel):
    """Raw outcome of running a code string in the sandbox."""
    success: bool
    result: Any = None
    logs: List[str] = []
    error: Optional[str] = None
    execution_time: float = 0.0


class ToolExecutionResult(BaseModel):
    """Outcome of ToolRegistry.execute_tool."""
    success: bool
    output: Any = None
    logs: List[str] = []
    execution_time: float = 0.0
    error: Optional[str] = None


class InstalledDependency(BaseModel):
    name: str
    version: str
    type: DependencyType


class FailedDependency(BaseModel):
    name: str
    version: str
    type: DependencyType
    error: str
    optional: bool = False


class InstallationResult(BaseModel):
    """Outcome of DependencyInstaller.install."""
    success: bool = True
    installed: List[InstalledDependency] = []
    failed: List[FailedDependency] = []
    logs: List[str] = []
