#!/usr/bin/env python

"""
Command-line entry point for Sophia.

Runs the API gateway, or drives the tool registry and workflow engine
directly from the shell.
"""

import argparse
import asyncio
import json
import logging
import sys
import time
import traceback
from typing import Any, Callable, Dict, Optional

from sophia.config import print_settings, settings, validate_environment
from sophia.tool_registry.registry import ToolRegistry
from sophia.utils.error_handling import SophiaError
from sophia.utils.events import EventBus
from sophia.utils.openai_client import LLMClient
from sophia.utils.vector_store import FileVectorStore
from sophia.workflow.service import WorkflowService


logger = logging.getLogger(__name__)


class SophiaSession:
    """
    Session holding the registry and workflow service for CLI commands.
    """

    def __init__(self):
        self.session_id = f"s-{int(time.time())}"
        self.events = EventBus()
        self.init_times: Dict[str, float] = {}

        logger.info("Initializing Sophia components...")
        self.llm = self._timed_init("llm", LLMClient)
        self.tool_registry = self._timed_init("tool_registry", self._init_tool_registry)
        self.workflow_service = self._timed_init("workflow_service", self._init_workflow_service)

        total_init_time = sum(self.init_times.values())
        logger.info(f"Sophia initialized in {total_init_time:.2f}ms")

    def _timed_init(self, component_name: str, init_func: Callable) -> Any:
        """
        Time the initialization of a component.

        Args:
            component_name: Name of the component
            init_func: Initialization function

        Returns:
            Initialized component
        """
        start_time = time.time()
        try:
            component = init_func()
            self.init_times[component_name] = (time.time() - start_time) * 1000
            return component
        except Exception as e:
            logger.error(f"Error initializing {component_name}: {e}")
            self.init_times[component_name] = 0
            raise

    def _init_tool_registry(self) -> ToolRegistry:
        return ToolRegistry(
            store=FileVectorStore(settings.tool_registry_storage_dir),
            embedder=self.llm,
            events=self.events,
            workspace_path=settings.workspace_path
        )

    def _init_workflow_service(self) -> WorkflowService:
        return WorkflowService(self.tool_registry, settings.workflow_storage_dir, events=self.events)

    async def start(self) -> None:
        await self.tool_registry.initialize()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_input(raw: Optional[str]) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise SystemExit(f"Input is not valid JSON: {e}")


async def tools_command(args: argparse.Namespace) -> int:
    session = SophiaSession()
    await session.start()
    registry = session.tool_registry

    if args.tools_command == "list":
        summaries = await registry.list_tools(category_id=args.category, tag=args.tag)
        if args.json:
            _print_json([summary.model_dump(mode="json") for summary in summaries])
        else:
            for summary in summaries:
                print(f"{summary.name}@{summary.current_version}  {summary.description}")
            print(f"\n{len(summaries)} tools")
        return 0

    if args.tools_command == "search":
        tools = await registry.find_tool(args.query, top_k=args.top_k)
        for tool in tools:
            print(f"{tool.name}@{tool.current_version}  {tool.description}")
        return 0

    if args.tools_command == "run":
        result = await registry.execute_tool(args.name, _parse_input(args.input))
        _print_json(result.model_dump(mode="json"))
        return 0 if result.success else 1

    return 2


async def workflows_command(args: argparse.Namespace) -> int:
    session = SophiaSession()
    await session.start()
    service = session.workflow_service

    if args.workflows_command == "list":
        for workflow in await service.list_workflows():
            print(f"{workflow.id}  {workflow.name} ({len(workflow.steps)} steps)")
        return 0

    if args.workflows_command == "run":
        def show_progress(progress) -> None:
            if progress.current_step:
                print(f"  [{progress.completed_steps}/{progress.total_steps}] {progress.current_step}")

        session.events.subscribe("progress", show_progress)
        result = await service.execute_workflow(args.workflow_id, _parse_input(args.input))
        _print_json(result.model_dump(mode="json"))
        return 0 if result.success else 1

    return 2


def clean_cache_command() -> int:
    from sophia.tool_registry.installer import DependencyInstaller

    removed = DependencyInstaller(settings.workspace_path).clean()
    print(f"Removed {removed} stale cache files")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sophia - tool registry and workflow engine")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-essential output")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the API gateway")
    subparsers.add_parser("settings", help="Show current settings")
    subparsers.add_parser("clean-cache", help="Purge stale dependency cache files")

    tools = subparsers.add_parser("tools", help="Inspect and run tools")
    tools_sub = tools.add_subparsers(dest="tools_command", required=True)
    tools_list = tools_sub.add_parser("list", help="List registered tools")
    tools_list.add_argument("--category", help="Only tools in this category id")
    tools_list.add_argument("--tag", help="Only tools with this tag")
    tools_list.add_argument("--json", "-j", action="store_true", help="Output in JSON format")
    tools_search = tools_sub.add_parser("search", help="Semantic tool search")
    tools_search.add_argument("query")
    tools_search.add_argument("--top-k", type=int, default=None)
    tools_run = tools_sub.add_parser("run", help="Execute a tool")
    tools_run.add_argument("name")
    tools_run.add_argument("--input", "-i", help="Tool input as JSON")

    workflows = subparsers.add_parser("workflows", help="Inspect and run workflows")
    workflows_sub = workflows.add_subparsers(dest="workflows_command", required=True)
    workflows_sub.add_parser("list", help="List saved workflows")
    workflows_run = workflows_sub.add_parser("run", help="Execute a workflow")
    workflows_run.add_argument("workflow_id")
    workflows_run.add_argument("--input", "-i", help="Workflow input as JSON")

    return parser


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point for the CLI.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.info("Debug mode enabled")
    if args.quiet:
        logging.getLogger().setLevel(logging.WARNING)

    if args.command == "settings":
        print(print_settings())
        return 0

    if args.command == "serve":
        from sophia.api_gateway.gateway import run_gateway

        validate_environment()
        run_gateway()
        return 0

    if args.command == "clean-cache":
        return clean_cache_command()

    try:
        if args.command == "tools":
            return asyncio.run(tools_command(args))
        if args.command == "workflows":
            return asyncio.run(workflows_command(args))
    except SophiaError as e:
        print(f"Error ({e.component}): {e.message}")
        return 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}")
        if logging.getLogger().getEffectiveLevel() <= logging.DEBUG:
            traceback.print_exc()
        sys.exit(1)
