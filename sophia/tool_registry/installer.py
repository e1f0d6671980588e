"""
Dependency Installer for tool dependencies.

Dependencies are grouped by type and the three groups are installed
concurrently; within a group installation is sequential:

- package: Python packages installed with pip into the current interpreter
- tool: other registered tools, cached as JSON under ``name@version``
- system: host packages installed through apt-get, yum or brew
"""

import asyncio
import json
import logging
import os
import shutil
import sys
import time
from typing import Dict, List, Optional, Tuple

from sophia.config import settings
from sophia.tool_registry.models import (
    DependencyType,
    FailedDependency,
    InstallationResult,
    InstalledDependency,
    ToolDependency,
)
from sophia.utils.error_handling import DependencyInstallError, catch_and_log

logger = logging.getLogger(__name__)


# Package manager executable -> install command prefix
SYSTEM_PACKAGE_MANAGERS: List[Tuple[str, List[str]]] = [
    ("apt-get", ["apt-get", "install", "-y"]),
    ("yum", ["yum", "install", "-y"]),
    ("brew", ["brew", "install"]),
]

MANIFEST_NAME = "requirements.txt"


class DependencyInstaller:
    """
    Resolves and installs the dependencies declared by a tool version.
    """

    def __init__(self, workspace_path: Optional[str] = None, tool_registry=None,
                 retention_days: Optional[int] = None):
        """
        Initialize the Dependency Installer.

        Args:
            workspace_path: Root directory for the dependency cache
            tool_registry: Registry used to resolve tool-type dependencies
            retention_days: Age after which cached artifacts are purged
        """
        self.workspace_path = workspace_path or settings.workspace_path
        self.tool_registry = tool_registry
        self.retention_days = settings.tool_cache_retention_days if retention_days is None else retention_days

        self.cache_dir = os.path.join(self.workspace_path, ".tool-cache")
        self.package_cache_dir = os.path.join(self.cache_dir, "packages")
        self.tool_cache_dir = os.path.join(self.cache_dir, "tools")

    async def install(self, dependencies: List[ToolDependency]) -> InstallationResult:
        """
        Install a list of dependencies.

        Args:
            dependencies: Dependencies to install

        Returns:
            InstallationResult; success is False iff a required dependency failed
        """
        result = InstallationResult()

        groups: Dict[DependencyType, List[ToolDependency]] = {dep_type: [] for dep_type in DependencyType}
        for dep in dependencies:
            groups[dep.type].append(dep)

        await asyncio.gather(
            self._install_packages(groups[DependencyType.PACKAGE], result),
            self._install_tools(groups[DependencyType.TOOL], result),
            self._install_system(groups[DependencyType.SYSTEM], result),
        )

        result.success = not any(not failure.optional for failure in result.failed)
        logger.info(
            f"Dependency installation finished: {len(result.installed)} installed, "
            f"{len(result.failed)} failed"
        )
        return result

    async def _install_packages(self, dependencies: List[ToolDependency], result: InstallationResult) -> None:
        if not dependencies:
            return

        try:
            self._ensure_manifest()
        except OSError as e:
            for dep in dependencies:
                self._record_failure(result, dep, f"Failed to create package manifest: {e}")
            return

        for dep in dependencies:
            try:
                spec = f"{dep.name}=={dep.version}"
                result.logs.append(f"Installing package {spec}")
                output = await self._run_command([sys.executable, "-m", "pip", "install", spec])
                if output:
                    result.logs.append(output)
                self._append_to_manifest(spec)
                self._record_success(result, dep)
            except (DependencyInstallError, OSError) as e:
                self._record_failure(result, dep, getattr(e, "message", str(e)))

    async def _install_tools(self, dependencies: List[ToolDependency], result: InstallationResult) -> None:
        if not dependencies:
            return

        for dep in dependencies:
            if self.tool_registry is None:
                self._record_failure(result, dep, "No tool registry available to resolve tool dependencies")
                continue
            try:
                version = await self.tool_registry.get_version(dep.name, dep.version)
                if version is None:
                    self._record_failure(result, dep, f"Tool {dep.key} not found")
                    continue

                os.makedirs(self.tool_cache_dir, exist_ok=True)
                with open(os.path.join(self.tool_cache_dir, f"{dep.key}.json"), "w") as f:
                    f.write(version.model_dump_json(indent=2))

                result.logs.append(f"Cached tool dependency {dep.key}")
                self._record_success(result, dep)
            except Exception as e:
                self._record_failure(result, dep, str(e))

    async def _install_system(self, dependencies: List[ToolDependency], result: InstallationResult) -> None:
        if not dependencies:
            return

        manager = self._detect_package_manager()
        if manager is None:
            result.logs.append(
                "No supported system package manager found; skipping system dependencies: "
                + ", ".join(dep.name for dep in dependencies)
            )
            logger.warning("No system package manager detected, system dependencies not installed")
            return

        name, install_command = manager
        for dep in dependencies:
            if shutil.which(dep.name):
                result.logs.append(f"System package {dep.name} already present")
                self._record_success(result, dep)
                continue
            try:
                result.logs.append(f"Installing system package {dep.name} with {name}")
                output = await self._run_command(install_command + [dep.name])
                if output:
                    result.logs.append(output)
                self._record_success(result, dep)
            except (DependencyInstallError, OSError) as e:
                self._record_failure(result, dep, getattr(e, "message", str(e)))

    @staticmethod
    def _detect_package_manager() -> Optional[Tuple[str, List[str]]]:
        for executable, command in SYSTEM_PACKAGE_MANAGERS:
            if shutil.which(executable):
                return executable, command
        return None

    def _ensure_manifest(self) -> None:
        """Create the package manifest on first use."""
        os.makedirs(self.package_cache_dir, exist_ok=True)
        manifest = os.path.join(self.package_cache_dir, MANIFEST_NAME)
        if not os.path.exists(manifest):
            with open(manifest, "w") as f:
                f.write("# Packages installed for registered tools\n")

    def _append_to_manifest(self, spec: str) -> None:
        manifest = os.path.join(self.package_cache_dir, MANIFEST_NAME)
        with open(manifest, "r") as f:
            entries = f.read().splitlines()
        if spec not in entries:
            with open(manifest, "a") as f:
                f.write(spec + "\n")

    async def _run_command(self, command: List[str]) -> str:
        """
        Run a command and return its stdout.

        Raises:
            DependencyInstallError: If the command exits with a non-zero status
        """
        logger.debug(f"Running command: {' '.join(command)}")
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit status {process.returncode}"
            raise DependencyInstallError(
                f"Command '{' '.join(command)}' failed: {message}",
                component="dependency_installer"
            )
        return stdout.decode(errors="replace").strip()

    @staticmethod
    def _record_success(result: InstallationResult, dep: ToolDependency) -> None:
        result.installed.append(InstalledDependency(name=dep.name, version=dep.version, type=dep.type))

    @staticmethod
    def _record_failure(result: InstallationResult, dep: ToolDependency, error: str) -> None:
        level = logging.WARNING if dep.optional else logging.ERROR
        logger.log(level, f"Failed to install {dep.type.value} dependency {dep.key}: {error}")
        result.failed.append(FailedDependency(
            name=dep.name, version=dep.version, type=dep.type, error=error, optional=dep.optional
        ))
        result.logs.append(f"Failed to install {dep.key}: {error}")

    @catch_and_log(component="dependency_installer", default_return=0)
    def clean(self) -> int:
        """
        Purge cached artifacts older than the retention window.

        Returns:
            Number of files removed
        """
        if not os.path.isdir(self.cache_dir):
            return 0

        cutoff = time.time() - self.retention_days * 24 * 60 * 60
        removed = 0
        for directory in (self.package_cache_dir, self.tool_cache_dir):
            if not os.path.isdir(directory):
                continue
            for entry in os.scandir(directory):
                if entry.is_file() and entry.name != MANIFEST_NAME and entry.stat().st_mtime < cutoff:
                    os.remove(entry.path)
                    removed += 1

        logger.info(f"Removed {removed} stale dependency cache files")
        return removed

    def cached_tool(self, name: str, version: str) -> Optional[Dict]:
        """Read a cached tool dependency definition, if present."""
        path = os.path.join(self.tool_cache_dir, f"{name}@{version}.json")
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return json.load(f)
