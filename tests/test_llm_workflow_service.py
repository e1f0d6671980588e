"""
Tests for the LLMWorkflowService.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from sophia.tool_registry.models import ToolSummary
from sophia.utils.error_handling import LLMError
from sophia.workflow.models import (
    SuggestionContext,
    SuggestionStep,
    WorkflowSuggestion,
    WorkflowSuggestionRequest,
)
from sophia.workflow.suggestions import LLMWorkflowService


LLM_RESPONSE = """Suggestion 1:
Name: Fetch and summarize
Description: Downloads a page and summarizes it
Steps:
1. fetch_page: download the page
2. summarize: condense the text
Confidence: 0.6
Reasoning: A straightforward two-step pipeline.

Suggestion 2:
Name: Translate first
Description: Translates the page before summarizing
Steps:
1. fetch_page: download the page
2. translate: translate to English
3. summarize: condense the text
Confidence: 0.9
Reasoning: Handles pages in other languages.

Suggestion 3:
Name: Uses an unknown tool
Description: Not possible with the given tools
Steps:
1. scrape_everything: crawl the whole site
Confidence: 0.95
Reasoning: Would be thorough.
"""


@pytest.fixture
def tool_registry():
    registry = MagicMock()
    registry.list_tools = AsyncMock(return_value=[
        ToolSummary(name="fetch_page", description="Download a web page", current_version="1.0.0"),
        ToolSummary(name="summarize", description="Summarize text", current_version="1.0.0"),
    ])
    registry.get_tool = AsyncMock(side_effect=lambda name: object() if name != "translate" else None)
    return registry


@pytest.fixture
def llm():
    client = MagicMock()
    client.get_completion = AsyncMock(return_value=LLM_RESPONSE)
    return client


@pytest.fixture
def service(llm, tool_registry):
    return LLMWorkflowService(llm, tool_registry)


@pytest.fixture
def request_model():
    return WorkflowSuggestionRequest(
        description="Summarize a web page",
        available_tools=["fetch_page", "summarize", "translate"],
        context=SuggestionContext(previous_workflows=["Daily digest"])
    )


@pytest.mark.asyncio
async def test_suggestions_are_parsed_filtered_and_sorted(service, request_model):
    suggestions = await service.get_suggestions(request_model)

    assert [s.name for s in suggestions] == ["Translate first", "Fetch and summarize"]
    top = suggestions[0]
    assert top.confidence == 0.9
    assert [step.tool_name for step in top.steps] == ["fetch_page", "translate", "summarize"]
    assert top.steps[1].description == "translate to English"
    assert top.reasoning == "Handles pages in other languages."
    assert top.description == "Translates the page before summarizing"


@pytest.mark.asyncio
async def test_prompt_lists_tools_and_context(service, llm, request_model):
    await service.get_suggestions(request_model)

    prompt = llm.get_completion.await_args.args[0]
    kwargs = llm.get_completion.await_args.kwargs
    assert "Task Description: Summarize a web page" in prompt
    assert "- fetch_page: Download a web page" in prompt
    assert "- translate: No description available" in prompt
    assert "Daily digest" in prompt
    assert kwargs["temperature"] == 0.7
    assert kwargs["max_tokens"] == 1000
    assert kwargs["stop"] == ["Suggestion 4:"]


@pytest.mark.asyncio
async def test_at_most_three_suggestions(service, llm, request_model):
    block = "Suggestion {n}:\nName: Option {n}\nSteps:\n1. summarize: do it\nConfidence: 0.{n}\nReasoning: fine\n\n"
    llm.get_completion.return_value = "".join(block.format(n=n) for n in range(1, 6))

    suggestions = await service.get_suggestions(request_model)

    assert [s.name for s in suggestions] == ["Option 5", "Option 4", "Option 3"]


@pytest.mark.asyncio
async def test_malformed_blocks_are_ignored(service, llm, request_model):
    llm.get_completion.return_value = "Suggestion 1:\nI am not sure what to do.\n"

    assert await service.get_suggestions(request_model) == []


@pytest.mark.asyncio
async def test_confidence_is_clamped(service, llm, request_model):
    llm.get_completion.return_value = "Suggestion 1:\nName: Eager\nSteps:\n1. summarize: go\nConfidence: 7\n"

    suggestions = await service.get_suggestions(request_model)

    assert suggestions[0].confidence == 1.0


@pytest.mark.asyncio
async def test_llm_failures_raise_llm_error(service, llm, request_model):
    llm.get_completion.side_effect = RuntimeError("connection refused")

    with pytest.raises(LLMError):
        await service.get_suggestions(request_model)


@pytest.mark.asyncio
async def test_validate_suggestion(service):
    known = WorkflowSuggestion(name="ok", steps=[SuggestionStep(tool_name="summarize")])
    unknown = WorkflowSuggestion(name="bad", steps=[SuggestionStep(tool_name="translate")])

    assert await service.validate_suggestion(known)
    assert not await service.validate_suggestion(unknown)


def test_suggestion_to_workflow(service):
    suggestion = WorkflowSuggestion(
        name="Digest",
        description="Fetch then summarize",
        steps=[
            SuggestionStep(tool_name="fetch_page", input={"url": "https://example.com"}),
            SuggestionStep(tool_name="summarize"),
        ],
        confidence=0.8
    )

    workflow = service.suggestion_to_workflow(suggestion, author="ada")

    assert workflow.name == "Digest"
    assert [s.id for s in workflow.steps] == ["step1", "step2"]
    assert workflow.steps[0].input.static == {"url": "https://example.com"}
    assert workflow.metadata.author == "ada"
    assert workflow.metadata.tags == ["suggested"]
