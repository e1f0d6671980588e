"""
Tests for the Tool Registry component.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from sophia.tool_registry.models import InstallationResult, ToolRunResult
from sophia.tool_registry.registry import ToolRegistry
from sophia.tool_registry.runner import ToolRunner
from sophia.utils.error_handling import (
    CategoryError,
    RegistryNotInitializedError,
    ToolAlreadyExistsError,
    ToolNotFoundError,
    ToolValidationError,
    VersionError,
)
from sophia.utils.vector_store import FileVectorStore


def version(number, code="return {'sum': 0}", dependencies=None):
    return {"version": number, "code": code, "dependencies": dependencies or []}


# Registration

@pytest.mark.asyncio
async def test_add_tool_seeds_current_version(registry, make_tool):
    tool = await registry.add_tool(make_tool())

    assert tool.name == "add_numbers"
    assert tool.current_version == "1.0.0"
    assert tool.versions["1.0.0"].code == tool.code
    assert tool.versions["1.0.0"].author == "tests"
    assert tool.metadata.last_modified is not None

    stored = await registry.get_tool("add_numbers")
    assert stored == tool


@pytest.mark.asyncio
async def test_add_tool_rejects_duplicates(registry, make_tool):
    await registry.add_tool(make_tool())

    with pytest.raises(ToolAlreadyExistsError):
        await registry.add_tool(make_tool(description="again"))


@pytest.mark.asyncio
async def test_concurrent_registration_admits_one(registry, make_tool):
    results = await asyncio.gather(
        registry.add_tool(make_tool()),
        registry.add_tool(make_tool()),
        return_exceptions=True
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], ToolAlreadyExistsError)
    assert len(await registry.list_tools()) == 1


@pytest.mark.asyncio
async def test_add_tool_validates_definition(registry, make_tool):
    with pytest.raises(ToolValidationError) as exc_info:
        await registry.add_tool(make_tool(name="9bad", input_schema={"type": "nope"}, code=""))

    errors = exc_info.value.errors
    assert any("Invalid tool name" in error for error in errors)
    assert any(error.startswith("Input schema:") for error in errors)
    assert "Tool code is required" in errors
    assert await registry.get_tool("9bad") is None


@pytest.mark.asyncio
async def test_add_tool_rejects_unknown_category(registry, make_tool):
    with pytest.raises(ToolValidationError):
        await registry.add_tool(make_tool(category_id="missing"))


@pytest.mark.asyncio
async def test_add_tool_rejects_malformed_payload(registry):
    with pytest.raises(ToolValidationError):
        await registry.add_tool({"description": "no name"})


@pytest.mark.asyncio
async def test_registry_requires_initialize(tmp_path, embedder, make_tool):
    registry = ToolRegistry(store=FileVectorStore(None), embedder=embedder, workspace_path=str(tmp_path))

    with pytest.raises(RegistryNotInitializedError):
        await registry.add_tool(make_tool())


@pytest.mark.asyncio
async def test_tools_survive_restart(registry, make_tool, storage_dir, embedder):
    await registry.add_tool(make_tool())

    reloaded = ToolRegistry(store=FileVectorStore(storage_dir), embedder=embedder)
    await reloaded.initialize()

    tool = await reloaded.get_tool("add_numbers")
    assert tool is not None
    assert tool.input_schema == make_tool()["input_schema"]


@pytest.mark.asyncio
async def test_update_tool_amends_current_version(registry, make_tool):
    await registry.add_tool(make_tool())

    updated = await registry.update_tool("add_numbers", {
        "code": "return {'sum': input['a'] + input['b'] + 0}",
        "metadata": {"tags": ["math", "arith"]}
    })

    assert updated.versions["1.0.0"].code == updated.code
    assert updated.metadata.tags == ["math", "arith"]
    assert updated.metadata.author == "tests"


@pytest.mark.asyncio
async def test_update_tool_name_is_immutable(registry, make_tool):
    await registry.add_tool(make_tool())

    with pytest.raises(ToolValidationError):
        await registry.update_tool("add_numbers", {"name": "renamed"})


@pytest.mark.asyncio
async def test_update_missing_tool(registry):
    with pytest.raises(ToolNotFoundError):
        await registry.update_tool("ghost", {"description": "x"})


@pytest.mark.asyncio
async def test_delete_tool(registry, make_tool, events):
    deleted = []
    events.subscribe("tool_deleted", deleted.append)
    await registry.add_tool(make_tool())

    await registry.delete_tool("add_numbers")

    assert await registry.get_tool("add_numbers") is None
    assert registry.store.count_vectors() == 0
    assert deleted == ["add_numbers"]

    with pytest.raises(ToolNotFoundError):
        await registry.delete_tool("add_numbers")


@pytest.mark.asyncio
async def test_list_tools_filters(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.add_tool(make_tool(name="echo", description="Echo text", metadata={"tags": ["text"]}))

    assert [t.name for t in await registry.list_tools()] == ["add_numbers", "echo"]
    assert [t.name for t in await registry.list_tools(tag="text")] == ["echo"]


@pytest.mark.asyncio
async def test_find_tool_ranks_by_similarity(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.add_tool(make_tool(name="weather_lookup", description="Look up the weather forecast"))

    results = await registry.find_tool("what is the weather forecast", top_k=1)

    assert [tool.name for tool in results] == ["weather_lookup"]


@pytest.mark.asyncio
async def test_propose_new_tool_is_not_registered(registry):
    registry.llm = MagicMock()
    registry.llm.get_json_completion = AsyncMock(return_value={
        "name": "reverse_text",
        "description": "Reverse a string",
        "input_schema": {"type": "object", "properties": {"text": {"type": "string"}}},
        "output_schema": {"type": "string"},
        "code": "return input['text'][::-1]",
        "tags": ["text"]
    })

    tool = await registry.propose_new_tool("reverse some text")

    assert tool.name == "reverse_text"
    assert tool.metadata.author == "llm"
    assert tool.versions["1.0.0"].code == "return input['text'][::-1]"
    assert await registry.get_tool("reverse_text") is None
    prompt = registry.llm.get_json_completion.await_args.args[0]
    assert "json" in prompt
    assert "asyncio" not in prompt.replace("asyncio.sleep", "")


# Execution

@pytest.mark.asyncio
async def test_execute_tool_success(registry, make_tool, events):
    executed = []
    events.subscribe("tool_executed", lambda name, result: executed.append(name))
    await registry.add_tool(make_tool())

    result = await registry.execute_tool("add_numbers", {"a": "2", "b": 3})

    assert result.success
    assert result.output == {"sum": 5}
    assert executed == ["add_numbers"]


@pytest.mark.asyncio
async def test_invalid_input_never_reaches_the_runner(registry, make_tool):
    await registry.add_tool(make_tool())
    registry.runner.execute = AsyncMock()

    result = await registry.execute_tool("add_numbers", {"a": 1})

    assert not result.success
    assert result.error.startswith("Invalid input: ")
    assert "'b' is a required property" in result.error
    registry.runner.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_runner_receives_coerced_input(registry, make_tool):
    await registry.add_tool(make_tool())
    registry.runner.execute = AsyncMock(return_value=ToolRunResult(success=True, result={"sum": 3}))

    await registry.execute_tool("add_numbers", {"a": "1", "b": "2", "c": 9})

    args = registry.runner.execute.await_args
    assert args.args[0] == (await registry.get_tool("add_numbers")).code
    assert args.args[1] == {"a": 1, "b": 2}


@pytest.mark.asyncio
async def test_invalid_output_fails_the_execution(registry, make_tool):
    await registry.add_tool(make_tool(code="return {'sum': 'five'}"))

    result = await registry.execute_tool("add_numbers", {"a": 1, "b": 2})

    assert not result.success
    assert result.error.startswith("Invalid output: ")
    assert result.output == {"sum": "five"}


@pytest.mark.asyncio
async def test_failing_code_is_reported(registry, make_tool, events):
    failed = []
    events.subscribe("tool_execution_failed", lambda name, result: failed.append(result.error))
    await registry.add_tool(make_tool(code="console.log('start')\nraise ValueError('boom')"))

    result = await registry.execute_tool("add_numbers", {"a": 1, "b": 2})

    assert not result.success
    assert result.error == "boom"
    assert result.logs == ["start"]
    assert failed == ["boom"]


@pytest.mark.asyncio
async def test_execute_missing_tool_raises(registry):
    with pytest.raises(ToolNotFoundError):
        await registry.execute_tool("ghost", {})


@pytest.mark.asyncio
async def test_validate_input_and_output(registry, make_tool):
    await registry.add_tool(make_tool())

    assert (await registry.validate_input("add_numbers", {"a": "1", "b": 2})).is_valid
    assert not (await registry.validate_output("add_numbers", {"sum": "1"})).is_valid
    assert (await registry.validate_output("add_numbers", {"sum": 1})).is_valid


# Metrics

@pytest.mark.asyncio
async def test_metrics_are_recorded(registry, make_tool):
    await registry.add_tool(make_tool())

    await registry.execute_tool("add_numbers", {"a": 1, "b": 2})
    await registry.execute_tool("add_numbers", {"a": 1, "b": 5})
    await registry.execute_tool("add_numbers", {"a": 1})

    metrics = await registry.get_tool_metrics("add_numbers")
    assert metrics.execution_count == 3
    assert metrics.successful_executions == 2
    assert metrics.failed_executions == 1
    assert metrics.error_rate == pytest.approx(1 / 3)
    assert metrics.last_executed is not None
    assert len(metrics.last_errors) == 1
    assert metrics.popular_input_patterns[0].pattern == {"a": "integer", "b": "integer"}
    assert metrics.popular_input_patterns[0].count == 2

    tool = await registry.get_tool("add_numbers")
    assert tool.metadata.use_count == 3
    assert tool.metadata.last_used is not None


@pytest.mark.asyncio
async def test_prune_metrics(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.execute_tool("add_numbers", {"a": 1})

    kept = await registry.prune_metrics("add_numbers", max_age_days=1)
    assert len(kept.last_errors) == 1
    assert kept.execution_count == 1

    tool = registry.tools["add_numbers"]
    tool.metadata.metrics.last_errors[0].timestamp = datetime.now() - timedelta(days=3)
    pruned = await registry.prune_metrics("add_numbers", max_age_days=1)
    assert pruned.last_errors == []

    reset = await registry.prune_metrics("add_numbers")
    assert reset.execution_count == 0


@pytest.mark.asyncio
async def test_tool_stats(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.add_tool(make_tool(name="echo", description="Echo text"))
    await registry.execute_tool("add_numbers", {"a": 1, "b": 2})

    stats = await registry.get_tool_stats()

    assert stats.total == 2
    assert [tool.name for tool in stats.recently_used] == ["add_numbers"]
    assert stats.most_used[0].name == "add_numbers"


# Versions

@pytest.mark.asyncio
async def test_create_version_keeps_current(registry, make_tool, events):
    created = []
    events.subscribe("version_created", lambda name, v: created.append(v.version))
    await registry.add_tool(make_tool())

    new_version = await registry.create_version("add_numbers", version("1.1.0"))

    assert new_version.version == "1.1.0"
    tool = await registry.get_tool("add_numbers")
    assert tool.current_version == "1.0.0"
    assert created == ["1.1.0"]


@pytest.mark.asyncio
async def test_create_version_rejects_bad_versions(registry, make_tool):
    await registry.add_tool(make_tool())

    with pytest.raises(VersionError):
        await registry.create_version("add_numbers", version("1.0.0"))
    with pytest.raises(VersionError):
        await registry.create_version("add_numbers", version("v2"))
    with pytest.raises(ToolNotFoundError):
        await registry.create_version("ghost", version("1.0.0"))


@pytest.mark.asyncio
async def test_get_version_returns_what_was_stored(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.create_version("add_numbers", {**version("2.0.0"), "changelog": "rewrite"})

    stored = await registry.get_version("add_numbers", "2.0.0")
    assert stored.changelog == "rewrite"
    assert await registry.get_version("add_numbers", "9.9.9") is None
    assert await registry.get_version("ghost", "1.0.0") is None


@pytest.mark.asyncio
async def test_list_versions_in_semver_order(registry, make_tool):
    await registry.add_tool(make_tool())
    for number in ("1.10.0", "1.2.0", "1.2.0-beta.1", "1.2.0-alpha"):
        await registry.create_version("add_numbers", version(number))

    versions = [v.version for v in await registry.list_versions("add_numbers")]

    assert versions == ["1.0.0", "1.2.0-alpha", "1.2.0-beta.1", "1.2.0", "1.10.0"]


@pytest.mark.asyncio
async def test_set_current_version_switches_code(registry, make_tool):
    await registry.add_tool(make_tool())
    await registry.create_version("add_numbers", version("2.0.0", code="return {'sum': input['a'] * input['b']}"))

    tool = await registry.set_current_version("add_numbers", "2.0.0")
    assert tool.current_version == "2.0.0"

    result = await registry.execute_tool("add_numbers", {"a": 3, "b": 4})
    assert result.output == {"sum": 12}

    with pytest.raises(VersionError):
        await registry.set_current_version("add_numbers", "3.0.0")


# Dependencies

@pytest.mark.asyncio
async def test_resolve_dependencies_transitively(registry, make_tool):
    await registry.add_tool(make_tool(name="helper", versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "numpy", "version": "1.26.0", "type": "package"},
        {"name": "requests", "version": "2.31.0", "type": "package", "optional": True},
    ])}))
    await registry.add_tool(make_tool(name="main_tool", versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "helper", "version": "1.0.0", "type": "tool"},
        {"name": "requests", "version": "2.31.0", "type": "package"},
    ])}))

    direct = await registry.resolve_dependencies("main_tool", transitive=False)
    assert sorted(dep.key for dep in direct) == ["helper@1.0.0", "requests@2.31.0"]

    resolved = {dep.key: dep for dep in await registry.resolve_dependencies("main_tool")}
    assert sorted(resolved) == ["helper@1.0.0", "numpy@1.26.0", "requests@2.31.0"]
    assert resolved["requests@2.31.0"].optional is False


@pytest.mark.asyncio
async def test_resolve_dependencies_detects_cycles(registry, make_tool):
    await registry.add_tool(make_tool(name="first", versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "second", "version": "1.0.0", "type": "tool"},
    ])}))
    await registry.add_tool(make_tool(name="second", versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "first", "version": "1.0.0", "type": "tool"},
    ])}))

    with pytest.raises(VersionError) as exc_info:
        await registry.resolve_dependencies("first")
    assert "Circular" in exc_info.value.message


@pytest.mark.asyncio
async def test_resolve_dependencies_of_missing_version(registry, make_tool):
    await registry.add_tool(make_tool())

    with pytest.raises(VersionError):
        await registry.resolve_dependencies("add_numbers", "4.0.0")


@pytest.mark.asyncio
async def test_install_dependencies_delegates_to_installer(registry, make_tool):
    await registry.add_tool(make_tool(versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "requests", "version": "2.31.0", "type": "package"},
    ])}))
    registry.installer.install = AsyncMock(return_value=InstallationResult())

    result = await registry.install_dependencies("add_numbers")

    assert result.success
    installed = registry.installer.install.await_args.args[0]
    assert [dep.key for dep in installed] == ["requests@2.31.0"]


@pytest.mark.asyncio
async def test_package_dependencies_are_passed_to_the_runner(registry, make_tool):
    await registry.add_tool(make_tool(versions={"1.0.0": version("1.0.0", dependencies=[
        {"name": "requests", "version": "2.31.0", "type": "package"},
        {"name": "helper", "version": "1.0.0", "type": "tool"},
    ])}))
    registry.runner.execute = AsyncMock(return_value=ToolRunResult(success=True, result={"sum": 0}))

    await registry.execute_tool("add_numbers", {"a": 1, "b": 2})

    packages = registry.runner.execute.await_args.kwargs["required_packages"]
    assert [dep.name for dep in packages] == ["requests"]


# Categories

@pytest.mark.asyncio
async def test_category_hierarchy(registry):
    root = await registry.add_category({"id": "utilities", "name": "Utilities"})
    await registry.add_category({"id": "text", "name": "Text", "parent_id": root.id})
    await registry.add_category({"id": "math", "name": "Math", "parent_id": root.id})
    await registry.add_category({"id": "apis", "name": "APIs"})

    nodes = await registry.get_category_hierarchy()

    assert [(node.category.id, node.depth) for node in nodes] == [
        ("apis", 0), ("utilities", 0), ("math", 1), ("text", 1)
    ]
    assert nodes[2].path == ["Utilities", "Math"]


@pytest.mark.asyncio
async def test_category_requires_existing_parent(registry):
    with pytest.raises(CategoryError):
        await registry.add_category({"name": "Orphan", "parent_id": "nowhere"})


@pytest.mark.asyncio
async def test_category_cycles_are_rejected(registry):
    await registry.add_category({"id": "a", "name": "A"})
    await registry.add_category({"id": "b", "name": "B", "parent_id": "a"})
    await registry.add_category({"id": "c", "name": "C", "parent_id": "b"})

    with pytest.raises(CategoryError):
        await registry.update_category("a", {"parent_id": "c"})
    with pytest.raises(CategoryError):
        await registry.update_category("a", {"parent_id": "a"})

    moved = await registry.update_category("c", {"parent_id": "a"})
    assert moved.parent_id == "a"


@pytest.mark.asyncio
async def test_delete_category(registry, make_tool):
    await registry.add_category({"id": "a", "name": "A"})
    await registry.add_category({"id": "b", "name": "B", "parent_id": "a"})
    await registry.add_tool(make_tool(category_id="b"))

    with pytest.raises(CategoryError):
        await registry.delete_category("a")

    await registry.delete_category("b")

    assert (await registry.get_tool("add_numbers")).category_id is None
    with pytest.raises(CategoryError):
        await registry.get_category("b")


@pytest.mark.asyncio
async def test_categories_survive_restart(registry, storage_dir, embedder):
    await registry.add_category({"id": "a", "name": "A"})

    reloaded = ToolRegistry(store=FileVectorStore(storage_dir), embedder=embedder)
    await reloaded.initialize()

    assert (await reloaded.get_category("a")).name == "A"
