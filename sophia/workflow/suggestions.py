"""
LLM Workflow Service for proposing workflows that compose registered tools.
"""

import logging
import re
from typing import Dict, List, Optional

from sophia.utils.error_handling import LLMError
from sophia.workflow.models import (
    StepInput,
    SuggestionStep,
    Workflow,
    WorkflowMetadata,
    WorkflowStep,
    WorkflowSuggestion,
    WorkflowSuggestionRequest,
)

logger = logging.getLogger(__name__)


MAX_SUGGESTIONS = 3

SUGGESTION_SPLIT = re.compile(r"Suggestion\s+\d+\s*:", re.IGNORECASE)
NAME_PATTERN = re.compile(r"^\s*(?:\d+\.\s*)?Name:\s*(.+)$", re.MULTILINE)
DESCRIPTION_PATTERN = re.compile(r"^\s*(?:\d+\.\s*)?Description:\s*(.+)$", re.MULTILINE)
CONFIDENCE_PATTERN = re.compile(r"Confidence:\s*([\d.]+)")
REASONING_PATTERN = re.compile(r"Reasoning:\s*([\s\S]*?)(?=\n\s*\n|$)")
STEPS_PATTERN = re.compile(r"Steps:\s*([\s\S]*?)(?=\n\s*(?:\d+\.\s*)?(?:Confidence|Reasoning):)")
STEP_LINE_PATTERN = re.compile(r"^\s*(?:\d+[.)]|[-*])\s*")


class LLMWorkflowService:
    """
    Asks an LLM for workflow skeletons built from available tools.
    """

    def __init__(self, llm, tool_registry):
        """
        Initialize the LLM Workflow Service.

        Args:
            llm: Object with an async get_completion(prompt, ...) method
            tool_registry: Registry used for tool descriptions and validation
        """
        self.llm = llm
        self.tool_registry = tool_registry

    async def _generate_prompt(self, request: WorkflowSuggestionRequest) -> str:
        descriptions: Dict[str, str] = {}
        for summary in await self.tool_registry.list_tools():
            descriptions[summary.name] = summary.description

        tool_lines = "\n".join(
            f"- {name}: {descriptions.get(name) or 'No description available'}"
            for name in request.available_tools
        )

        sections = [
            "Given the following task description and available tools, suggest a workflow to accomplish the task.",
            f"Task Description: {request.description}",
            f"Available Tools:\n{tool_lines}",
        ]
        if request.context and request.context.previous_workflows:
            sections.append("Previous Workflows:\n" + "\n".join(request.context.previous_workflows))
        if request.context and request.context.current_workflow:
            sections.append(f"Current Workflow:\n{request.context.current_workflow}")

        sections.append(
            "Provide up to 3 different suggestions, ordered by confidence, each in this format:\n"
            "Suggestion 1:\n"
            "Name: A concise name for the workflow\n"
            "Description: A brief description of what the workflow does\n"
            "Steps:\n"
            "1. tool_name: what this step does\n"
            "2. tool_name: what this step does\n"
            "Confidence: A number between 0 and 1\n"
            "Reasoning: Why this workflow would work well\n\n"
            "Only use tool names from the list of available tools."
        )
        return "\n\n".join(sections)

    def _parse_response(self, response: str) -> List[WorkflowSuggestion]:
        """Best-effort parse of the LLM text; malformed blocks are skipped."""
        suggestions = []
        for block in SUGGESTION_SPLIT.split(response):
            if not block.strip():
                continue
            suggestion = self._parse_block(block)
            if suggestion is not None:
                suggestions.append(suggestion)
        return sorted(suggestions, key=lambda s: s.confidence, reverse=True)

    @staticmethod
    def _parse_block(block: str) -> Optional[WorkflowSuggestion]:
        name_match = NAME_PATTERN.search(block)
        steps_match = STEPS_PATTERN.search(block + "\n")
        if not name_match or not steps_match:
            return None

        steps = []
        for line in steps_match.group(1).strip().splitlines():
            line = STEP_LINE_PATTERN.sub("", line).strip()
            if not line:
                continue
            tool_name, _, description = line.partition(":")
            tool_name = tool_name.strip().strip("`*")
            if tool_name:
                steps.append(SuggestionStep(tool_name=tool_name, description=description.strip()))
        if not steps:
            return None

        description_match = DESCRIPTION_PATTERN.search(block)
        confidence_match = CONFIDENCE_PATTERN.search(block)
        reasoning_match = REASONING_PATTERN.search(block)

        try:
            confidence = float(confidence_match.group(1)) if confidence_match else 0.0
        except ValueError:
            confidence = 0.0

        return WorkflowSuggestion(
            name=name_match.group(1).strip(),
            description=description_match.group(1).strip() if description_match else "",
            steps=steps,
            confidence=min(max(confidence, 0.0), 1.0),
            reasoning=reasoning_match.group(1).strip() if reasoning_match else ""
        )

    async def get_suggestions(self, request: WorkflowSuggestionRequest) -> List[WorkflowSuggestion]:
        """
        Propose up to three workflows for a task.

        Suggestions referencing tools outside request.available_tools are dropped.

        Raises:
            LLMError: If the LLM call fails
        """
        prompt = await self._generate_prompt(request)
        try:
            response = await self.llm.get_completion(
                prompt,
                system_message="You are an expert at composing tools into automated workflows.",
                temperature=0.7,
                max_tokens=1000,
                stop=["Suggestion 4:"]
            )
        except LLMError:
            raise
        except Exception as e:
            logger.error(f"Error generating workflow suggestions: {e}")
            raise LLMError(f"Failed to generate workflow suggestions: {e}", component="workflow_suggestions") from e

        available = set(request.available_tools)
        suggestions = [
            suggestion for suggestion in self._parse_response(response)
            if all(step.tool_name in available for step in suggestion.steps)
        ]
        logger.info(f"Generated {len(suggestions)} valid workflow suggestions")
        return suggestions[:MAX_SUGGESTIONS]

    async def validate_suggestion(self, suggestion: WorkflowSuggestion) -> bool:
        """Check that every tool a suggestion references is registered."""
        for step in suggestion.steps:
            if await self.tool_registry.get_tool(step.tool_name) is None:
                return False
        return True

    @staticmethod
    def suggestion_to_workflow(suggestion: WorkflowSuggestion, author: Optional[str] = None) -> Workflow:
        """Turn a suggestion into a savable workflow with one step per suggested tool."""
        return Workflow(
            name=suggestion.name,
            description=suggestion.description,
            steps=[
                WorkflowStep(
                    id=f"step{position}",
                    tool_name=step.tool_name,
                    input=StepInput(static=dict(step.input))
                )
                for position, step in enumerate(suggestion.steps, start=1)
            ],
            metadata=WorkflowMetadata(author=author, tags=["suggested"])
        )
