"""
Tests for the ToolRunner.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from sophia.tool_registry.models import DependencyType, ToolDependency
from sophia.tool_registry.runner import ToolRunner
from sophia.utils.error_handling import DependencyInstallError
from sophia.utils.events import EventBus


@pytest.fixture
def runner():
    return ToolRunner(events=EventBus(), timeout=5)


@pytest.mark.asyncio
async def test_execute_returns_value_and_logs(runner):
    code = """
    total = input["a"] + input["b"]
    console.log("sum is", total)
    console.warn("careful")
    console.error({"code": 1})
    print("printed")
    return {"sum": total}
    """
    result = await runner.execute(code, {"a": 2, "b": 3})

    assert result.success
    assert result.result == {"sum": 5}
    assert result.logs == ["sum is 5", "WARN: careful", 'ERROR: {"code": 1}', "printed"]
    assert result.error is None
    assert result.execution_time > 0


@pytest.mark.asyncio
async def test_execute_supports_await(runner):
    code = """
    await sleep(0.01)
    return input["value"] * 2
    """
    result = await runner.execute(code, {"value": 21})

    assert result.success
    assert result.result == 42


@pytest.mark.asyncio
async def test_exceptions_become_failed_results(runner):
    result = await runner.execute("console.log('before')\nraise ValueError('boom')", {})

    assert not result.success
    assert result.error == "boom"
    assert result.logs == ["before"]


@pytest.mark.asyncio
async def test_syntax_errors_become_failed_results(runner):
    result = await runner.execute("return (", {})

    assert not result.success
    assert result.error


@pytest.mark.asyncio
async def test_disallowed_import_is_blocked(runner):
    result = await runner.execute("import os\nreturn os.getcwd()", {})

    assert not result.success
    assert "not allowed" in result.error


@pytest.mark.asyncio
async def test_dangerous_builtins_are_missing(runner):
    result = await runner.execute("return open('/etc/passwd').read()", {})

    assert not result.success
    assert "open" in result.error


@pytest.mark.asyncio
async def test_allowed_imports_extend_the_allow_list():
    runner = ToolRunner(events=EventBus(), allowed_modules=["json"], timeout=5)

    blocked = await runner.execute("import math\nreturn math.pi", {})
    allowed = await runner.execute("import math\nreturn round(math.pi, 2)", {}, allowed_imports=["math"])

    assert not blocked.success
    assert allowed.success
    assert allowed.result == 3.14


@pytest.mark.asyncio
async def test_input_is_not_mutated(runner):
    original = {"items": [1, 2]}
    result = await runner.execute("input['items'].append(3)\nreturn input", original)

    assert result.success
    assert result.result == {"items": [1, 2, 3]}
    assert original == {"items": [1, 2]}


@pytest.mark.asyncio
async def test_cpu_bound_code_times_out(runner):
    result = await runner.execute("while True:\n    pass", {}, timeout=0.3)

    assert not result.success
    assert result.error.startswith("ExecutionTimeout")


@pytest.mark.asyncio
async def test_awaited_hang_times_out(runner):
    code = "await sleep(10)\nreturn 1"
    result = await runner.execute(code, {}, timeout=0.2)

    assert not result.success
    assert result.error.startswith("ExecutionTimeout")
    assert result.execution_time < 5000


@pytest.mark.asyncio
async def test_console_lines_are_emitted_as_events():
    events = EventBus()
    received = []
    events.subscribe("log", received.append)
    events.subscribe("warn", received.append)
    runner = ToolRunner(events=events, timeout=5)

    await runner.execute("console.log('one')\nconsole.warn('two')\nreturn None", {})
    await asyncio.sleep(0.01)

    assert received == ["one", "WARN: two"]


@pytest.mark.asyncio
async def test_required_packages_are_installed_and_importable(runner):
    runner._install_packages = AsyncMock()
    packages = [ToolDependency(name="decimal", version="1.0.0", type=DependencyType.PACKAGE)]

    result = await runner.execute("import decimal\nreturn str(decimal.Decimal('1.5'))", {},
                                  required_packages=packages)

    assert result.success
    assert result.result == "1.5"
    runner._install_packages.assert_awaited_once()


@pytest.mark.asyncio
async def test_package_installation_failure_fails_the_run(runner):
    runner._install_packages = AsyncMock(
        side_effect=DependencyInstallError("Failed to install packages: no such package", component="tool_runner")
    )
    packages = [ToolDependency(name="nonexistent-pkg", version="0.0.1", type=DependencyType.PACKAGE)]

    result = await runner.execute("return 1", {}, required_packages=packages)

    assert not result.success
    assert "no such package" in result.error


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [
    "import json\nreturn json.codecs.sys.modules['os'].getcwd()",
    "import random\nreturn random._os.getcwd()",
    "return ().__class__.__base__.__subclasses__()",
    "return console.log.__self__",
    "return __builtins__",
    "import json\njson.loads = None",
    "def gen():\n    yield 1\nreturn gen().gi_frame.f_back",
])
async def test_code_cannot_reach_the_host(runner, code):
    result = await runner.execute(code, {})

    assert not result.success
    assert "not allowed" in result.error


@pytest.mark.asyncio
async def test_modules_expose_only_public_non_module_attributes(runner):
    submodule = await runner.execute("from json import decoder\nreturn 1", {})
    missing = await runner.execute("import random\nreturn hasattr(random, 'randint'), hasattr(random, 'os')", {})

    assert not submodule.success
    assert missing.success
    assert missing.result == (True, False)


@pytest.mark.asyncio
async def test_asyncio_is_not_importable_by_default(runner):
    code = "import asyncio\nproc = await asyncio.create_subprocess_exec('id')\nreturn 1"
    result = await runner.execute(code, {})

    assert not result.success
    assert "not allowed" in result.error


@pytest.mark.asyncio
async def test_type_and_object_builtins_are_missing(runner):
    result = await runner.execute("return type(1)", {})

    assert not result.success
    assert "type" in result.error
