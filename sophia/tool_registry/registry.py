"""
Tool Registry implementation for maintaining the catalog of executable tools.

The registry is the single source of truth for tool definitions, their
versions, categories and metrics. Tools are persisted one record per name in
a vector store (document = tool JSON, metadata = flattened projection,
embedding = name + description + input property names) and mirrored in an
in-memory cache that is only written after the store write succeeded.
"""

import json
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Type, Union

from pydantic import BaseModel, ValidationError

from sophia.config import settings
from sophia.tool_registry.installer import DependencyInstaller
from sophia.tool_registry.models import (
    CategoryNode,
    DependencyType,
    ErrorRecord,
    InputPattern,
    InstallationResult,
    Tool,
    ToolCategory,
    ToolDependency,
    ToolExecutionResult,
    ToolMetrics,
    ToolStats,
    ToolSummary,
    ToolValidationResult,
    ToolVersion,
    ValidationResult,
    is_valid_version,
    version_sort_key,
)
from sophia.tool_registry.runner import ToolRunner
from sophia.tool_registry.validator import TOOL_NAME_PATTERN, SchemaValidator
from sophia.utils.error_handling import (
    CategoryError,
    ErrorContext,
    RegistryNotInitializedError,
    StorageError,
    ToolAlreadyExistsError,
    ToolNotFoundError,
    ToolValidationError,
    VersionError,
)
from sophia.utils.events import EventBus
from sophia.utils.locks import KeyedLock
from sophia.utils.vector_store import FileVectorStore

logger = logging.getLogger(__name__)


CATEGORY_LOCK_KEY = "__categories__"

PROPOSE_TOOL_PROMPT = """Design a tool for the following need:

{description}

A tool is the body of a Python async function. It receives `input` (a dict
matching input_schema), `console` (with log/warn/error methods) and `sleep`
(asyncio.sleep). It may import only {modules}, must not touch private or
dunder attributes or assign attributes, and must `return` a value matching
output_schema.

Respond with a JSON object with these fields:
- name: short identifier (letters, digits, '_', '-', '.')
- description: one sentence describing what the tool does
- input_schema: JSON schema of the input object
- output_schema: JSON schema of the returned value
- code: the function body
- tags: list of capability keywords
"""


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _input_pattern(data: Any) -> Dict[str, str]:
    """Shape of an input: top-level key -> JSON type name."""
    if isinstance(data, dict):
        return {key: _json_type(data[key]) for key in sorted(data)}
    return {"$": _json_type(data)}


def _parse_model(model_class: Type[BaseModel], data: Any, what: str) -> Any:
    if isinstance(data, model_class):
        return data.model_copy(deep=True)
    try:
        return model_class.model_validate(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(part) for part in err['loc']) or what} {err['msg']}" for err in e.errors()]
        raise ToolValidationError(f"Invalid {what}: {'; '.join(errors)}", errors=errors)


class ToolRegistry:
    """
    Maintains the registry of tools, their versions, categories and metrics.
    """

    def __init__(
        self,
        store: Optional[FileVectorStore] = None,
        embedder=None,
        runner: Optional[ToolRunner] = None,
        validator: Optional[SchemaValidator] = None,
        installer: Optional[DependencyInstaller] = None,
        events: Optional[EventBus] = None,
        workspace_path: Optional[str] = None,
        llm=None,
    ):
        """
        Initialize the Tool Registry.

        Args:
            store: Backing record store for tool definitions
            embedder: Object with an async get_embedding(text) method
            runner: Tool runner used by execute_tool
            validator: Schema validator
            installer: Dependency installer (created on demand)
            events: Event bus for observer hooks
            workspace_path: Root of the dependency cache
            llm: Object with an async get_json_completion(prompt) method, used by propose_new_tool
        """
        if store is None:
            store = FileVectorStore(settings.tool_registry_storage_dir)
        if embedder is None:
            from sophia.utils.openai_client import LLMClient
            embedder = LLMClient()

        self.store = store
        self.embedder = embedder
        self.llm = llm or embedder
        self.events = events or EventBus()
        self.validator = validator or SchemaValidator()
        self.runner = runner or ToolRunner(events=self.events)
        self.installer = installer or DependencyInstaller(workspace_path, tool_registry=self)

        self.tools: Dict[str, Tool] = {}
        self.categories: Dict[str, ToolCategory] = {}
        self._locks = KeyedLock()
        self._initialized = False

        storage_dir = getattr(store, "storage_dir", None)
        self.categories_file = os.path.join(storage_dir, "categories.json") if storage_dir else None

    async def initialize(self) -> None:
        """Load tools and categories from storage into the cache."""
        if self._initialized:
            return

        loaded: Dict[str, Tool] = {}
        for record in self.store.get():
            try:
                tool = Tool.model_validate_json(record["document"])
            except (ValidationError, TypeError, ValueError) as e:
                logger.error(f"Skipping unreadable tool record {record.get('id')}: {e}")
                continue
            loaded[tool.name] = tool
        self.tools = loaded

        if self.categories_file and os.path.exists(self.categories_file):
            with ErrorContext("tool_registry", "Failed to load categories", StorageError):
                with open(self.categories_file, "r") as f:
                    data = json.load(f)
            self.categories = {item["id"]: ToolCategory.model_validate(item) for item in data}

        self._initialized = True
        logger.info(f"Loaded {len(self.tools)} tools and {len(self.categories)} categories from storage")

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RegistryNotInitializedError("Tool registry is not initialized", component="tool_registry")

    def _require_tool(self, name: str) -> Tool:
        self._ensure_initialized()
        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool '{name}' not found", component="tool_registry")
        return tool

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def validate_tool(self, tool: Tool) -> ToolValidationResult:
        """
        Check a tool definition.

        Args:
            tool: Tool to check

        Returns:
            ToolValidationResult listing every problem found
        """
        errors: List[str] = []
        warnings: List[str] = []

        if not tool.name:
            errors.append("Tool name is required")
        elif not TOOL_NAME_PATTERN.match(tool.name):
            errors.append(f"Invalid tool name '{tool.name}'")

        if not is_valid_version(tool.current_version):
            errors.append(f"Invalid version format: {tool.current_version}")
        elif tool.current_version not in tool.versions:
            errors.append(f"Current version {tool.current_version} does not exist")

        if not tool.code or not tool.code.strip():
            errors.append("Tool code is required")

        for label, schema in (("Input", tool.input_schema), ("Output", tool.output_schema)):
            if schema is None:
                errors.append(f"{label} schema is required")
                continue
            schema_check = self.validator.validate_schema(schema)
            if not schema_check.is_valid:
                errors.extend(f"{label} schema: {error}" for error in schema_check.errors or [])

        for key, version in tool.versions.items():
            if not is_valid_version(key):
                errors.append(f"Invalid version format: {key}")
            elif version.version != key:
                errors.append(f"Version {key} is stored with mismatching version {version.version}")
            if version.dependencies:
                deps_check = self.validator.validate_dependencies(
                    [dep.model_dump(mode="json") for dep in version.dependencies]
                )
                if not deps_check.is_valid:
                    errors.extend(f"Version {key} dependencies: {error}" for error in deps_check.errors or [])

        if tool.category_id and tool.category_id not in self.categories:
            errors.append(f"Category {tool.category_id} does not exist")

        if not tool.description:
            warnings.append("Tool has no description; semantic search will rely on its name")

        return ToolValidationResult(
            is_valid=not errors,
            errors=errors or None,
            warnings=warnings or None
        )

    def _check_tool(self, tool: Tool) -> None:
        check = self.validate_tool(tool)
        if not check.is_valid:
            raise ToolValidationError(
                f"Invalid tool definition: {', '.join(check.errors or [])}",
                errors=check.errors
            )
        for warning in check.warnings or []:
            logger.warning(f"Tool {tool.name}: {warning}")

    async def add_tool(self, tool: Union[Tool, Dict[str, Any]]) -> Tool:
        """
        Register a new tool.

        Args:
            tool: Tool definition

        Returns:
            The stored tool

        Raises:
            ToolValidationError: If the definition is invalid
            ToolAlreadyExistsError: If a tool with the same name is registered
        """
        self._ensure_initialized()
        tool = _parse_model(Tool, tool, "tool")

        async with self._locks.hold(tool.name):
            if tool.name in self.tools:
                raise ToolAlreadyExistsError(f"Tool '{tool.name}' already exists", component="tool_registry")

            if not tool.versions and tool.code:
                tool.versions[tool.current_version] = ToolVersion(
                    version=tool.current_version,
                    code=tool.code,
                    author=tool.metadata.author
                )
            elif not tool.code and tool.current is not None:
                tool.code = tool.current.code

            self._check_tool(tool)
            tool.metadata.last_modified = datetime.now()

            embedding = await self._embed_tool(tool)
            self.store.add(
                ids=[tool.name],
                embeddings=[embedding],
                metadatas=[self._flatten_metadata(tool)],
                documents=[tool.model_dump_json()]
            )
            self.tools[tool.name] = tool

        logger.info(f"Registered tool {tool.name}@{tool.current_version}")
        await self.events.emit("tool_added", tool)
        return tool

    async def update_tool(self, name: str, updates: Dict[str, Any]) -> Tool:
        """
        Merge updates into an existing tool.

        A new ``code`` amends the current version; a new ``current_version``
        must already exist and brings its code along.

        Args:
            name: Tool name
            updates: Fields to change (name is immutable)

        Returns:
            The updated tool
        """
        self._ensure_initialized()
        if "name" in updates and updates["name"] != name:
            raise ToolValidationError("Tool name is immutable", errors=["name cannot be changed"])

        async with self._locks.hold(name):
            existing = self._require_tool(name)
            merged = existing.model_dump()
            for key, value in updates.items():
                if key == "metadata" and isinstance(value, dict):
                    merged["metadata"] = {**merged["metadata"], **value}
                elif key != "name":
                    merged[key] = value
            tool = _parse_model(Tool, merged, "tool")

            if "current_version" in updates and "code" not in updates and tool.current is not None:
                tool.code = tool.current.code
            elif "code" in updates and tool.current is not None:
                tool.versions[tool.current_version] = tool.current.model_copy(update={"code": tool.code})

            self._check_tool(tool)
            tool.metadata.last_modified = datetime.now()

            embedding = await self._embed_tool(tool)
            self._persist(tool, embedding)
            self.validator.clear_cache()

        logger.info(f"Updated tool {name}")
        await self.events.emit("tool_updated", tool)
        return tool

    async def delete_tool(self, name: str) -> None:
        """
        Remove a tool and all of its versions.

        Raises:
            ToolNotFoundError: If the tool does not exist
        """
        async with self._locks.hold(name):
            self._require_tool(name)
            self.store.delete([name])
            del self.tools[name]
            self.validator.clear_cache()

        logger.info(f"Deleted tool {name}")
        await self.events.emit("tool_deleted", name)

    async def get_tool(self, name: str) -> Optional[Tool]:
        """Exact lookup by name."""
        self._ensure_initialized()
        return self.tools.get(name)

    async def list_tools(self, category_id: Optional[str] = None, tag: Optional[str] = None) -> List[ToolSummary]:
        """
        List registered tools as summaries.

        Args:
            category_id: Only tools in this category
            tag: Only tools carrying this tag

        Returns:
            Summaries sorted by name
        """
        self._ensure_initialized()
        summaries = []
        for tool in sorted(self.tools.values(), key=lambda t: t.name):
            if category_id is not None and tool.category_id != category_id:
                continue
            if tag is not None and tag not in tool.metadata.tags:
                continue
            summaries.append(ToolSummary(
                name=tool.name,
                description=tool.description,
                current_version=tool.current_version,
                author=tool.metadata.author,
                tags=tool.metadata.tags,
                last_used=tool.metadata.last_used,
                use_count=tool.metadata.use_count,
                category=tool.metadata.category,
                metrics=tool.metadata.metrics,
                input_schema=tool.input_schema
            ))
        return summaries

    async def find_tool(self, query: str, top_k: Optional[int] = None) -> List[Tool]:
        """
        Semantic search over tool names, descriptions and input fields.

        Args:
            query: Free-text description of the wanted capability
            top_k: Maximum number of results

        Returns:
            Tools ordered by similarity
        """
        self._ensure_initialized()
        embedding = await self.embedder.get_embedding(query)
        results = self.store.query(embedding, top_k=top_k or settings.search_top_k)

        tools = []
        for match in results.get("matches", []):
            tool = self.tools.get(match["id"])
            if tool is not None:
                tools.append(tool)
        return tools

    async def propose_new_tool(self, description: str) -> Tool:
        """
        Ask the LLM to design a tool for a free-text need.

        The proposal is validated but not registered.

        Raises:
            LLMError: If the LLM call fails
            ToolValidationError: If the proposed definition is invalid
        """
        self._ensure_initialized()
        proposal = await self.llm.get_json_completion(
            PROPOSE_TOOL_PROMPT.format(
                description=description,
                modules=", ".join(sorted(self.runner.allowed_modules)) or "no modules"
            ),
            system_message="You are an expert Python developer who writes small, safe, self-contained tools."
        )
        if not isinstance(proposal, dict):
            raise ToolValidationError("Proposed tool is not a JSON object", errors=["expected an object"])

        version = "1.0.0"
        tool = _parse_model(Tool, {
            "name": proposal.get("name", ""),
            "description": proposal.get("description", description),
            "input_schema": proposal.get("input_schema"),
            "output_schema": proposal.get("output_schema"),
            "code": proposal.get("code", ""),
            "current_version": version,
            "versions": {version: {"version": version, "code": proposal.get("code", ""), "author": "llm"}},
            "metadata": {"author": "llm", "tags": proposal.get("tags") or []},
        }, "proposed tool")

        self._check_tool(tool)
        return tool

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_tool(self, name: str, input: Any) -> ToolExecutionResult:
        """
        Execute a tool against an input.

        Tool-level failures (invalid input, failing code, invalid output) are
        returned as a failed result. Metrics are updated for every outcome.

        Args:
            name: Tool name
            input: Tool input

        Returns:
            ToolExecutionResult

        Raises:
            ToolNotFoundError: If the tool does not exist
            RegistryNotInitializedError: If initialize() was not awaited
        """
        tool = self._require_tool(name)
        start_time = time.perf_counter()

        try:
            result = await self._run_tool(tool, input, start_time)
        except Exception as e:
            logger.error(f"Unexpected error executing tool {name}: {e}")
            result = ToolExecutionResult(
                success=False,
                error=str(e) or "Unknown error occurred",
                execution_time=(time.perf_counter() - start_time) * 1000
            )

        await self._record_execution(name, input, result)

        if result.success:
            await self.events.emit("tool_executed", name, result)
        else:
            await self.events.emit("tool_execution_failed", name, result)
        return result

    async def _run_tool(self, tool: Tool, input: Any, start_time: float) -> ToolExecutionResult:
        input_check = self._validate(input, tool.input_schema, coerce=True)
        if not input_check.is_valid:
            return ToolExecutionResult(
                success=False,
                error=f"Invalid input: {', '.join(input_check.errors or [])}",
                execution_time=(time.perf_counter() - start_time) * 1000
            )

        dependencies = tool.current.dependencies if tool.current else []
        packages = [dep for dep in dependencies if dep.type == DependencyType.PACKAGE]

        run = await self.runner.execute(tool.code, input_check.coerced_data, required_packages=packages or None)
        if not run.success:
            return ToolExecutionResult(
                success=False,
                error=run.error,
                logs=run.logs,
                execution_time=run.execution_time
            )

        output_check = self._validate(run.result, tool.output_schema, coerce=False)
        if not output_check.is_valid:
            return ToolExecutionResult(
                success=False,
                output=run.result,
                error=f"Invalid output: {', '.join(output_check.errors or [])}",
                logs=run.logs,
                execution_time=(time.perf_counter() - start_time) * 1000
            )

        return ToolExecutionResult(
            success=True,
            output=run.result,
            logs=run.logs,
            execution_time=(time.perf_counter() - start_time) * 1000
        )

    def _validate(self, data: Any, schema: Optional[Dict[str, Any]], coerce: bool) -> ValidationResult:
        if schema is None:
            return ValidationResult(is_valid=True, coerced_data=data)
        return self.validator.validate(data, schema, coerce=coerce)

    async def validate_input(self, name: str, input: Any) -> ValidationResult:
        """Validate an input against a tool's input schema."""
        tool = self._require_tool(name)
        return self._validate(input, tool.input_schema, coerce=True)

    async def validate_output(self, name: str, output: Any) -> ValidationResult:
        """Validate an output against a tool's output schema."""
        tool = self._require_tool(name)
        return self._validate(output, tool.output_schema, coerce=False)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def _record_execution(self, name: str, input: Any, result: ToolExecutionResult) -> None:
        async with self._locks.hold(name):
            current = self.tools.get(name)
            if current is None:
                logger.warning(f"Tool {name} was removed during execution; metrics not recorded")
                return

            tool = current.model_copy(deep=True)
            now = datetime.now()
            metrics = tool.metadata.metrics

            total_time = metrics.average_execution_time * metrics.execution_count + result.execution_time
            metrics.execution_count += 1
            metrics.average_execution_time = total_time / metrics.execution_count
            metrics.last_executed = now

            if result.success:
                metrics.successful_executions += 1
            else:
                metrics.failed_executions += 1
                metrics.last_errors.append(ErrorRecord(error=result.error or "Unknown error", timestamp=now))
                metrics.last_errors = metrics.last_errors[-settings.metrics_max_errors:]
            metrics.error_rate = metrics.failed_executions / metrics.execution_count

            pattern = _input_pattern(input)
            for entry in metrics.popular_input_patterns:
                if entry.pattern == pattern:
                    entry.count += 1
                    break
            else:
                metrics.popular_input_patterns.append(InputPattern(pattern=pattern, count=1))
            metrics.popular_input_patterns.sort(key=lambda entry: entry.count, reverse=True)
            metrics.popular_input_patterns = metrics.popular_input_patterns[:settings.metrics_max_input_patterns]

            tool.metadata.use_count += 1
            tool.metadata.last_used = now

            self._persist(tool)

    async def get_tool_metrics(self, name: str) -> ToolMetrics:
        """Return the aggregated execution metrics of a tool."""
        return self._require_tool(name).metadata.metrics

    async def prune_metrics(self, name: str, max_age_days: Optional[float] = None) -> ToolMetrics:
        """
        Prune a tool's metrics.

        Args:
            name: Tool name
            max_age_days: Only drop recorded errors older than this; when None
                every counter is reset

        Returns:
            The remaining metrics
        """
        async with self._locks.hold(name):
            tool = self._require_tool(name).model_copy(deep=True)
            if max_age_days is None:
                tool.metadata.metrics = ToolMetrics()
            else:
                cutoff = datetime.now() - timedelta(days=max_age_days)
                tool.metadata.metrics.last_errors = [
                    record for record in tool.metadata.metrics.last_errors if record.timestamp >= cutoff
                ]
            self._persist(tool)

        logger.info(f"Pruned metrics of tool {name}")
        return tool.metadata.metrics

    async def get_tool_stats(self) -> ToolStats:
        """Aggregate counts plus the five most recently used and most used tools."""
        self._ensure_initialized()
        tools = list(self.tools.values())
        used = [tool for tool in tools if tool.metadata.last_used is not None]

        return ToolStats(
            total=len(tools),
            recently_used=sorted(used, key=lambda t: t.metadata.last_used, reverse=True)[:5],
            most_used=sorted(tools, key=lambda t: t.metadata.use_count, reverse=True)[:5]
        )

    # ------------------------------------------------------------------
    # Versions and dependencies
    # ------------------------------------------------------------------

    async def create_version(self, name: str, version: Union[ToolVersion, Dict[str, Any]]) -> ToolVersion:
        """
        Add a new version to a tool. The current version is not moved.

        Raises:
            VersionError: If the version string is invalid or already exists
        """
        new_version = _parse_model(ToolVersion, version, "version")
        if not is_valid_version(new_version.version):
            raise VersionError(f"Invalid version format: {new_version.version}", component="tool_registry")
        if not new_version.code.strip():
            raise ToolValidationError("Version code is required", errors=["code is required"])

        if new_version.dependencies:
            deps_check = self.validator.validate_dependencies(
                [dep.model_dump(mode="json") for dep in new_version.dependencies]
            )
            if not deps_check.is_valid:
                raise ToolValidationError(
                    f"Invalid dependencies: {', '.join(deps_check.errors or [])}",
                    errors=deps_check.errors
                )

        async with self._locks.hold(name):
            tool = self._require_tool(name).model_copy(deep=True)
            if new_version.version in tool.versions:
                raise VersionError(
                    f"Version {new_version.version} of tool '{name}' already exists",
                    component="tool_registry"
                )
            tool.versions[new_version.version] = new_version
            tool.metadata.last_modified = datetime.now()
            self._persist(tool)

        logger.info(f"Created version {name}@{new_version.version}")
        await self.events.emit("version_created", name, new_version)
        return new_version

    async def get_version(self, name: str, version: str) -> Optional[ToolVersion]:
        """Return exactly what was stored for a version, or None."""
        self._ensure_initialized()
        tool = self.tools.get(name)
        if tool is None:
            return None
        return tool.versions.get(version)

    async def list_versions(self, name: str) -> List[ToolVersion]:
        """List a tool's versions in semver order."""
        tool = self._require_tool(name)
        return [tool.versions[key] for key in sorted(tool.versions, key=version_sort_key)]

    async def set_current_version(self, name: str, version: str) -> Tool:
        """
        Point a tool at one of its versions; that version's code becomes the executed code.

        Raises:
            VersionError: If the version does not exist
        """
        async with self._locks.hold(name):
            tool = self._require_tool(name).model_copy(deep=True)
            if version not in tool.versions:
                raise VersionError(f"Version {version} of tool '{name}' does not exist", component="tool_registry")
            tool.current_version = version
            tool.code = tool.versions[version].code
            tool.metadata.last_modified = datetime.now()
            self._persist(tool)
            self.validator.clear_cache()

        logger.info(f"Tool {name} now at version {version}")
        await self.events.emit("tool_updated", tool)
        return tool

    async def resolve_dependencies(self, name: str, version: Optional[str] = None,
                                   transitive: bool = True) -> List[ToolDependency]:
        """
        Collect the dependencies of a tool version.

        With transitive=True the dependencies of tool-type dependencies are
        followed as well. Duplicates (same name@version) are reported once,
        as required if any occurrence is required.

        Raises:
            VersionError: If the version does not exist or tool dependencies form a cycle
        """
        tool = self._require_tool(name)
        root = tool.versions.get(version or tool.current_version)
        if root is None:
            raise VersionError(f"Version {version} of tool '{name}' does not exist", component="tool_registry")

        resolved: Dict[str, ToolDependency] = {}
        self._collect_dependencies(root, resolved, {f"{name}@{root.version}"}, transitive)
        return list(resolved.values())

    def _collect_dependencies(self, version: ToolVersion, resolved: Dict[str, ToolDependency],
                              visiting: Set[str], transitive: bool) -> None:
        for dep in version.dependencies:
            if transitive and dep.type == DependencyType.TOOL and dep.key in visiting:
                raise VersionError(
                    f"Circular tool dependency: {' -> '.join(sorted(visiting))} -> {dep.key}",
                    component="tool_registry"
                )

            if dep.key in resolved:
                if not dep.optional and resolved[dep.key].optional:
                    resolved[dep.key] = resolved[dep.key].model_copy(update={"optional": False})
                continue
            resolved[dep.key] = dep

            if transitive and dep.type == DependencyType.TOOL:
                dep_tool = self.tools.get(dep.name)
                dep_version = dep_tool.versions.get(dep.version) if dep_tool else None
                if dep_version is None:
                    # left for the installer to report
                    continue
                visiting.add(dep.key)
                self._collect_dependencies(dep_version, resolved, visiting, transitive)
                visiting.discard(dep.key)

    async def install_dependencies(self, name: str, version: Optional[str] = None) -> InstallationResult:
        """Resolve and install the dependencies of a tool version."""
        dependencies = await self.resolve_dependencies(name, version)
        return await self.installer.install(dependencies)

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    async def list_categories(self) -> List[ToolCategory]:
        self._ensure_initialized()
        return sorted(self.categories.values(), key=lambda c: c.name)

    async def get_category(self, category_id: str) -> ToolCategory:
        self._ensure_initialized()
        category = self.categories.get(category_id)
        if category is None:
            raise CategoryError(f"Category {category_id} not found", component="tool_registry")
        return category

    async def add_category(self, category: Union[ToolCategory, Dict[str, Any]]) -> ToolCategory:
        """
        Add a category. Its parent, if any, must exist.
        """
        self._ensure_initialized()
        category = _parse_model(ToolCategory, category, "category")

        async with self._locks.hold(CATEGORY_LOCK_KEY):
            if category.id in self.categories:
                raise CategoryError(f"Category {category.id} already exists", component="tool_registry")
            if category.parent_id is not None and category.parent_id not in self.categories:
                raise CategoryError(f"Parent category {category.parent_id} not found", component="tool_registry")

            categories = dict(self.categories)
            categories[category.id] = category
            self._save_categories(categories)

        logger.info(f"Added category {category.name} ({category.id})")
        return category

    async def update_category(self, category_id: str, updates: Dict[str, Any]) -> ToolCategory:
        """
        Update a category. Re-parenting under one of its own descendants is rejected.
        """
        self._ensure_initialized()
        async with self._locks.hold(CATEGORY_LOCK_KEY):
            existing = self.categories.get(category_id)
            if existing is None:
                raise CategoryError(f"Category {category_id} not found", component="tool_registry")

            changes = {key: value for key, value in updates.items() if key != "id"}
            category = _parse_model(ToolCategory, {**existing.model_dump(), **changes}, "category")

            parent_id = category.parent_id
            if parent_id is not None:
                if parent_id not in self.categories:
                    raise CategoryError(f"Parent category {parent_id} not found", component="tool_registry")
                ancestor: Optional[str] = parent_id
                while ancestor is not None:
                    if ancestor == category_id:
                        raise CategoryError(
                            f"Category {category_id} cannot be moved under its own descendant {parent_id}",
                            component="tool_registry"
                        )
                    ancestor = self.categories[ancestor].parent_id

            categories = dict(self.categories)
            categories[category_id] = category
            self._save_categories(categories)

        return category

    async def delete_category(self, category_id: str) -> None:
        """
        Delete a leaf category; tools in it lose their category reference.
        """
        self._ensure_initialized()
        async with self._locks.hold(CATEGORY_LOCK_KEY):
            if category_id not in self.categories:
                raise CategoryError(f"Category {category_id} not found", component="tool_registry")
            children = [c.name for c in self.categories.values() if c.parent_id == category_id]
            if children:
                raise CategoryError(
                    f"Category {category_id} has child categories: {', '.join(children)}",
                    component="tool_registry"
                )

            categories = {key: value for key, value in self.categories.items() if key != category_id}
            self._save_categories(categories)

        for name in [t.name for t in self.tools.values() if t.category_id == category_id]:
            async with self._locks.hold(name):
                current = self.tools.get(name)
                if current is None or current.category_id != category_id:
                    continue
                tool = current.model_copy(deep=True)
                tool.category_id = None
                if tool.metadata.category == category_id:
                    tool.metadata.category = None
                self._persist(tool)

        logger.info(f"Deleted category {category_id}")

    async def get_category_hierarchy(self) -> List[CategoryNode]:
        """
        Flatten the category tree depth-first, siblings sorted by name.

        Returns:
            CategoryNode entries with their depth and the names on the path from the root
        """
        self._ensure_initialized()
        children: Dict[Optional[str], List[ToolCategory]] = {}
        for category in self.categories.values():
            children.setdefault(category.parent_id, []).append(category)

        nodes: List[CategoryNode] = []

        def visit(parent_id: Optional[str], depth: int, path: List[str]) -> None:
            for category in sorted(children.get(parent_id, []), key=lambda c: c.name):
                node_path = path + [category.name]
                nodes.append(CategoryNode(category=category, depth=depth, path=node_path))
                visit(category.id, depth + 1, node_path)

        visit(None, 0, [])
        return nodes

    def _save_categories(self, categories: Dict[str, ToolCategory]) -> None:
        if self.categories_file:
            with ErrorContext("tool_registry", "Failed to save categories", StorageError):
                with open(self.categories_file, "w") as f:
                    json.dump([c.model_dump(mode="json") for c in categories.values()], f, indent=2)
        self.categories = categories

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    async def _embed_tool(self, tool: Tool) -> List[float]:
        properties = (tool.input_schema or {}).get("properties") or {}
        text = f"{tool.name}\n{tool.description}\n{' '.join(properties)}"
        return await self.embedder.get_embedding(text)

    @staticmethod
    def _flatten_metadata(tool: Tool) -> Dict[str, Any]:
        """Flat projection stored next to the document for store-side filtering."""
        metadata = tool.metadata
        return {
            "name": tool.name,
            "description": tool.description,
            "current_version": tool.current_version,
            "schema": json.dumps(tool.input_schema),
            "author": metadata.author or "",
            "tags": json.dumps(metadata.tags),
            "category": metadata.category or "",
            "last_used": metadata.last_used.isoformat() if metadata.last_used else "",
            "use_count": metadata.use_count,
            "metrics": metadata.metrics.model_dump_json(),
        }

    def _persist(self, tool: Tool, embedding: Optional[List[float]] = None) -> None:
        """Write an existing tool to the store, then to the cache."""
        self.store.update(
            ids=[tool.name],
            metadatas=[self._flatten_metadata(tool)],
            documents=[tool.model_dump_json()],
            embeddings=[embedding] if embedding is not None else None
        )
        self.tools[tool.name] = tool
