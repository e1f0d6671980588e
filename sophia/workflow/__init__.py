"""
Workflow component.

Chain tool executions into ordered pipelines with conditions, data-flow
mappings and retries, and ask an LLM to suggest new pipelines.
"""

from sophia.workflow.models import (
    Workflow,
    WorkflowStep,
    WorkflowProgress,
    WorkflowExecutionResult,
    WorkflowSuggestion,
    WorkflowSuggestionRequest
)
from sophia.workflow.expression import ExpressionEvaluator
from sophia.workflow.service import WorkflowService
from sophia.workflow.suggestions import LLMWorkflowService

__all__ = [
    "Workflow",
    "WorkflowStep",
    "WorkflowProgress",
    "WorkflowExecutionResult",
    "WorkflowSuggestion",
    "WorkflowSuggestionRequest",
    "ExpressionEvaluator",
    "WorkflowService",
    "LLMWorkflowService"
]
