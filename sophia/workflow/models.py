"""
Data models for workflows, their executions and LLM suggestions.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


RESERVED_INPUT_STEP_ID = "input"


def new_workflow_id() -> str:
    return f"workflow-{uuid.uuid4().hex[:12]}"


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex}"


class StepMapping(BaseModel):
    """Pulls a field out of a prior step's output (or the workflow input)."""
    step_id: str
    output_path: str = ""


class StepInput(BaseModel):
    static: Dict[str, Any] = Field(default_factory=dict)
    mappings: Dict[str, StepMapping] = Field(default_factory=dict)


class ConditionType(str, Enum):
    IF = "if"
    SWITCH = "switch"


class ConditionBranch(BaseModel):
    case: Any
    next_step_id: Optional[str] = None


class StepCondition(BaseModel):
    """
    Gate evaluated before a step runs.

    ``if`` runs the step when the expression is truthy; ``switch`` runs it
    when the expression's value equals one of the branch cases.
    """
    type: ConditionType = ConditionType.IF
    expression: str
    branches: List[ConditionBranch] = []


class WorkflowStep(BaseModel):
    id: str
    tool_name: str
    input: StepInput = Field(default_factory=StepInput)
    condition: Optional[StepCondition] = None


class WorkflowMetadata(BaseModel):
    author: Optional[str] = None
    version: Optional[str] = None
    tags: List[str] = []
    last_run: Optional[datetime] = None
    run_count: int = 0


class Workflow(BaseModel):
    """An ordered pipeline of tool invocations."""
    id: str = Field(default_factory=new_workflow_id)
    name: str
    description: str = ""
    steps: List[WorkflowStep] = []
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepExecutionStatus(BaseModel):
    status: StepStatus = StepStatus.PENDING
    retries: int = 0
    error: Optional[str] = None


class DataFlowEdge(BaseModel):
    """Records that ``from_step`` fed ``to_step.target_param`` via ``path``."""
    from_step: str
    to_step: str
    path: str
    target_param: str


class WorkflowProgress(BaseModel):
    execution_id: str
    workflow_id: str
    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    completed_steps: int = 0
    total_steps: int = 0
    current_step: Optional[str] = None
    step_statuses: Dict[str, StepExecutionStatus] = Field(default_factory=dict)
    data_flow: List[DataFlowEdge] = []
    error: Optional[str] = None


class StepResult(BaseModel):
    success: bool
    output: Any = None
    error: Optional[str] = None
    execution_time: float = 0.0
    attempt: int = 0
    skipped: bool = False


class WorkflowExecutionResult(BaseModel):
    execution_id: str
    success: bool
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    total_execution_time: float = 0.0
    error: Optional[str] = None
    failed_step: Optional[str] = None
    data_flow: List[DataFlowEdge] = []


class SuggestionStep(BaseModel):
    tool_name: str
    description: str = ""
    input: Dict[str, Any] = Field(default_factory=dict)


class WorkflowSuggestion(BaseModel):
    name: str
    description: str = ""
    steps: List[SuggestionStep]
    confidence: float = 0.0
    reasoning: str = ""


class SuggestionContext(BaseModel):
    previous_workflows: List[str] = []
    current_workflow: Optional[str] = None


class WorkflowSuggestionRequest(BaseModel):
    description: str
    available_tools: List[str]
    context: Optional[SuggestionContext] = None
