"""
Tool Runner implementation for executing tool code in an isolated namespace.

Tool code is the body of an async function with three names in scope:
``input`` (the validated input), ``console`` (log/warn/error into the
execution logs) and ``sleep`` (asyncio.sleep). Its return value is the
tool output, e.g.::

    total = input["a"] + input["b"]
    console.log("sum is", total)
    return {"sum": total}

The namespace only exposes a curated set of builtins, and ``import`` is
limited to an allow-list. Imported modules are handed over as read-only
views of their public, non-module attributes. Before compiling, the code
is checked for access to private or introspection attributes and for
attribute assignment, so tool code cannot climb from an object back to
the host process. Execution failures never raise; they come back as a
failed ToolRunResult.
"""

import ast
import asyncio
import builtins
import copy
import json
import logging
import sys
import textwrap
import time
import types
from typing import Any, Callable, Dict, Iterable, List, Optional

from sophia.config import settings
from sophia.tool_registry.models import ToolDependency, ToolRunResult
from sophia.utils.error_handling import DependencyInstallError, ExecutionTimeout
from sophia.utils.events import EventBus

logger = logging.getLogger(__name__)


TOOL_FILENAME = "<tool>"

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr", "dict",
    "divmod", "enumerate", "filter", "float", "format", "frozenset", "hasattr", "hash",
    "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min",
    "next", "oct", "ord", "pow", "range", "repr", "reversed", "round", "set",
    "slice", "sorted", "str", "sum", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception", "IndexError",
    "KeyError", "LookupError", "NotImplementedError", "RuntimeError", "StopIteration",
    "TypeError", "ValueError", "ZeroDivisionError",
)

# Frame, code and traceback attributes lead back to the host's globals.
BLOCKED_ATTRIBUTES = frozenset({
    "ag_code", "ag_frame", "cr_await", "cr_code", "cr_frame", "f_back", "f_builtins",
    "f_code", "f_globals", "f_locals", "gi_code", "gi_frame", "gi_yieldfrom", "mro",
    "tb_frame", "tb_next",
})


def check_tool_code(tree: ast.AST) -> None:
    """
    Reject syntax that reaches outside the tool's namespace.

    Raises:
        PermissionError: On private, dunder or introspection attribute access,
            dunder names, attribute assignment or relative imports
    """
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in BLOCKED_ATTRIBUTES:
                raise PermissionError(f"Access to attribute '{node.attr}' is not allowed in tool code")
            if not isinstance(node.ctx, ast.Load):
                raise PermissionError(f"Assigning attribute '{node.attr}' is not allowed in tool code")
        elif isinstance(node, ast.Name) and node.id.startswith("__"):
            raise PermissionError(f"Access to name '{node.id}' is not allowed in tool code")
        elif isinstance(node, ast.ImportFrom) and node.level:
            raise PermissionError("Relative imports are not allowed in tool code")


class ModuleView(types.SimpleNamespace):
    """Public, non-module attributes of an allowed module."""

    def __init__(self, module: types.ModuleType):
        super().__init__(**{
            key: value for key, value in vars(module).items()
            if not key.startswith("_") and not isinstance(value, types.ModuleType)
        })
        # Not a sys.modules key, so ``from x import submodule`` finds nothing.
        self.__name__ = f"<tool view of {module.__name__}>"

    def __getattr__(self, name: str) -> Any:
        raise AttributeError(f"Access to module attribute '{name}' is not allowed in tool code")


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class ToolConsole:
    """The ``console`` object handed to tool code."""

    def __init__(self, logs: List[str], emit: Callable[[str, str], None]):
        self._logs = logs
        self._emit = emit

    def log(self, *args: Any) -> None:
        line = " ".join(_stringify(arg) for arg in args)
        self._logs.append(line)
        self._emit("log", line)

    info = log

    def warn(self, *args: Any) -> None:
        line = "WARN: " + " ".join(_stringify(arg) for arg in args)
        self._logs.append(line)
        self._emit("warn", line)

    warning = warn

    def error(self, *args: Any) -> None:
        line = "ERROR: " + " ".join(_stringify(arg) for arg in args)
        self._logs.append(line)
        self._emit("error", line)


def _normalize_module_name(package_name: str) -> str:
    return package_name.strip().lower().replace("-", "_")


class ToolRunner:
    """
    Executes tool code strings against a structured input.
    """

    def __init__(self, events: Optional[EventBus] = None,
                 allowed_modules: Optional[Iterable[str]] = None,
                 timeout: Optional[float] = None):
        """
        Initialize the Tool Runner.

        Args:
            events: Event bus receiving log/warn/error lines as they happen
            allowed_modules: Modules tool code may import
            timeout: Default wall-clock limit in seconds (None or 0 disables)
        """
        self.events = events or EventBus()
        self.allowed_modules = set(allowed_modules if allowed_modules is not None else settings.allowed_modules)
        self.timeout = settings.tool_execution_timeout_seconds if timeout is None else timeout

    async def execute(
        self,
        code: str,
        input: Any,
        required_packages: Optional[List[ToolDependency]] = None,
        allowed_imports: Optional[Iterable[str]] = None,
        timeout: Optional[float] = None,
    ) -> ToolRunResult:
        """
        Execute tool code.

        Args:
            code: Body of the tool's async function
            input: Input value bound to ``input``
            required_packages: Packages to pip-install before running
            allowed_imports: Extra importable modules for this run
            timeout: Override of the default wall-clock limit

        Returns:
            ToolRunResult; execution_time includes package installation
        """
        start_time = time.perf_counter()
        logs: List[str] = []
        limit = self.timeout if timeout is None else timeout

        allowed = set(self.allowed_modules)
        allowed.update(_normalize_module_name(name) for name in (allowed_imports or []))

        try:
            if required_packages:
                await self._install_packages(required_packages, logs)
                allowed.update(_normalize_module_name(dep.name) for dep in required_packages)

            loop = asyncio.get_running_loop()

            def emit(event: str, line: str) -> None:
                loop.call_soon_threadsafe(self.events.emit_nowait, event, line)

            console = ToolConsole(logs, emit)
            main = self._compile(code, allowed, console)

            result = await asyncio.to_thread(self._run_in_thread, main, copy.deepcopy(input), console, limit)

            return ToolRunResult(
                success=True,
                result=result,
                logs=logs,
                execution_time=(time.perf_counter() - start_time) * 1000
            )
        except ExecutionTimeout as e:
            logger.warning(f"Tool execution timed out after {limit}s")
            return ToolRunResult(
                success=False,
                error=f"ExecutionTimeout: {e.message}",
                logs=logs,
                execution_time=(time.perf_counter() - start_time) * 1000
            )
        except Exception as e:
            logger.info(f"Tool execution failed: {type(e).__name__}: {e}")
            return ToolRunResult(
                success=False,
                error=str(e) or type(e).__name__,
                logs=logs,
                execution_time=(time.perf_counter() - start_time) * 1000
            )

    def _compile(self, code: str, allowed: set, console: ToolConsole) -> Callable:
        """Wrap the code in an async function, check it and compile it in a fresh namespace."""
        body = textwrap.dedent(code).strip("\n") or "pass"
        source = "async def __tool_main__(input, console):\n" + textwrap.indent(body, "    ") + "\n"

        tree = ast.parse(source, TOOL_FILENAME)
        check_tool_code(tree)

        namespace: Dict[str, Any] = {
            "__builtins__": self._build_builtins(allowed, console),
            "__name__": "__tool__",
        }
        exec(compile(tree, TOOL_FILENAME, "exec"), namespace)
        return namespace["__tool_main__"]

    @staticmethod
    def _build_builtins(allowed: set, console: ToolConsole) -> Dict[str, Any]:
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
        views: Dict[str, ModuleView] = {}

        def restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
            if level != 0 or "." in name or name not in allowed:
                raise ImportError(f"Import of '{name}' is not allowed in tool code")
            if name not in views:
                views[name] = ModuleView(builtins.__import__(name))
            return views[name]

        safe["__import__"] = restricted_import
        safe["print"] = console.log
        safe["sleep"] = asyncio.sleep
        return safe

    @staticmethod
    def _run_in_thread(main: Callable, tool_input: Any, console: ToolConsole, timeout: Optional[float]) -> Any:
        """
        Run the tool coroutine on a private event loop.

        Awaited hangs are cut by wait_for; CPU-bound loops by a line-level
        deadline check installed with sys.settrace for tool frames only.
        """
        deadline = time.monotonic() + timeout if timeout else None

        def check_deadline(frame, event, arg):
            if time.monotonic() > deadline:
                raise ExecutionTimeout(f"Tool execution exceeded {timeout}s", component="tool_runner")
            return check_deadline

        def trace_calls(frame, event, arg):
            if frame.f_code.co_filename != TOOL_FILENAME:
                return None
            return check_deadline(frame, event, arg)

        async def guarded():
            if deadline is None:
                return await main(tool_input, console)
            return await asyncio.wait_for(main(tool_input, console), timeout)

        if deadline is not None:
            sys.settrace(trace_calls)
        try:
            return asyncio.run(guarded())
        except asyncio.TimeoutError:
            raise ExecutionTimeout(f"Tool execution exceeded {timeout}s", component="tool_runner")
        except asyncio.CancelledError:
            raise RuntimeError("Tool execution was cancelled")
        finally:
            if deadline is not None:
                sys.settrace(None)

    async def _install_packages(self, packages: List[ToolDependency], logs: List[str]) -> None:
        specs = [f"{pkg.name}=={pkg.version}" if pkg.version else pkg.name for pkg in packages]
        logger.info(f"Installing packages: {', '.join(specs)}")

        process = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "pip", "install", *specs,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"pip exited with {process.returncode}"
            raise DependencyInstallError(f"Failed to install packages: {message}", component="tool_runner")

        if stdout:
            self.events.emit_nowait("log", f"Package installation output: {stdout.decode(errors='replace').strip()}")
        if stderr:
            logs.append(f"WARN: Package installation warnings: {stderr.decode(errors='replace').strip()}")
