"""
Shared fixtures for the Sophia tests.
"""

import pytest
import pytest_asyncio

from sophia.tool_registry.registry import ToolRegistry
from sophia.tool_registry.runner import ToolRunner
from sophia.utils.events import EventBus
from sophia.utils.vector_store import FileVectorStore


VOCABULARY = ["weather", "forecast", "sum", "number", "translate", "text", "double", "echo"]


class FakeEmbedder:
    """Keyword-count embeddings, so similarity follows shared vocabulary."""

    def __init__(self):
        self.calls = []

    async def get_embedding(self, text):
        self.calls.append(text)
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]


ADD_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "a": {"type": "number"},
        "b": {"type": "number"}
    },
    "required": ["a", "b"]
}

ADD_OUTPUT_SCHEMA = {
    "type": "object",
    "properties": {"sum": {"type": "number"}},
    "required": ["sum"]
}


@pytest.fixture
def make_tool():
    """Build a tool definition dict; keyword arguments override fields."""
    def factory(name="add_numbers", **overrides):
        tool = {
            "name": name,
            "description": "Sum two numbers",
            "input_schema": ADD_INPUT_SCHEMA,
            "output_schema": ADD_OUTPUT_SCHEMA,
            "code": "return {'sum': input['a'] + input['b']}",
            "metadata": {"author": "tests", "tags": ["math"]}
        }
        tool.update(overrides)
        return tool
    return factory


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def storage_dir(tmp_path):
    return str(tmp_path / "tools")


@pytest_asyncio.fixture
async def registry(tmp_path, storage_dir, embedder, events):
    """An initialized registry backed by a temporary directory."""
    registry = ToolRegistry(
        store=FileVectorStore(storage_dir),
        embedder=embedder,
        runner=ToolRunner(events=events, timeout=5),
        events=events,
        workspace_path=str(tmp_path / "workspace")
    )
    await registry.initialize()
    return registry
