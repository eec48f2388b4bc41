"""Dependency resolution executor - Orchestrate discovery, loading, planning and installation.

Waves run one after another; the contexts inside a wave run concurrently and
share one ``IndexWriteCollector``, flushed once when every task in the wave has
finished. The executor always returns an ``ExecutionResult``; it never raises.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from .conflicts import Conflict
from .conflicts import ConflictResolver
from .exceptions import OpenPackageError
from .graph import DependencyGraph
from .graph import DependencyGraphBuilder
from .graph import GraphOptions
from .graph import NodeState
from .identity import PackageIdentity
from .index_collector import IndexWriteCollector
from .installer import FlowInstallPipeline
from .loader import LoaderOptions
from .loader import PackageLoader
from .loader import WorkspaceIndexSourceLoader
from .loader import default_source_loader
from .models import DEFAULT_TASK_TIMEOUT
from .models import InstallContext
from .models import InstallMode
from .planner import InstallationPlan
from .planner import InstallationPlanner
from .planner import PlannerOptions
from .platforms import PlatformRegistry
from .protocols import InstallPipelineProtocol
from .protocols import SourceLoaderProtocol
from .protocols import SourceResolverProtocol
from .sources import LocalSourceResolver
from .workspace_index import WorkspaceIndex
from .workspace_index import read_workspace_index

logger = logging.getLogger(__name__)


class ExecutorOptions(BaseModel):
    """
    Execution policy.

    Attributes:
        graph: Graph discovery policy
        loader: Loading policy
        planner: Planning policy
        dry_run: Plan only; nothing is installed and the index is not touched
        fail_fast: Start nothing else (in this wave or later ones) after the first failure
        concurrency: Maximum packages installing at once within a wave
        task_timeout: Seconds allowed per package install (None disables the bound). The
            default pipeline yields between source files, so the bound is checked per file
        platforms: Explicit platforms (detected from the workspace when None)
    """

    graph: GraphOptions = Field(default_factory=GraphOptions)
    loader: LoaderOptions = Field(default_factory=LoaderOptions)
    planner: PlannerOptions = Field(default_factory=PlannerOptions)
    dry_run: bool = False
    fail_fast: bool = False
    concurrency: int = 4
    task_timeout: float | None = DEFAULT_TASK_TIMEOUT
    platforms: list[str] | None = None


class PackageResult(BaseModel):
    id: PackageIdentity
    success: bool
    data: Any = None
    error: str | None = None


class ExecutionSummary(BaseModel):
    total: int = 0
    installed: int = 0
    failed: int = 0
    skipped: int = 0


class ExecutionResult(BaseModel):
    """Structured outcome of a run, suitable for rendering partial success."""

    success: bool
    results: list[PackageResult] = Field(default_factory=list)
    summary: ExecutionSummary = Field(default_factory=ExecutionSummary)
    warnings: list[str] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    error: str | None = None
    graph: DependencyGraph | None = None
    plan: InstallationPlan | None = None


class DependencyResolutionExecutor:
    """
    Top-level coordinator: build -> load -> plan -> execute.

    Every collaborator is injectable; the defaults resolve and load local path
    dependencies and install them with platform flows. Create one executor per
    installation run: the conflict claims it tracks are per run.

    Args:
        workspace_root: Workspace directory
        options: Execution policy
        resolver: Source resolver (defaults to ``LocalSourceResolver``)
        source_loader: Source loader (defaults to path + workspace-index loaders,
            or the workspace index alone in apply mode)
        pipeline: Install pipeline (defaults to ``FlowInstallPipeline``)
        registry: Platform registry for the default pipeline
        conflicts: Conflict resolver shared with ``pipeline``

    Example:
        >>> executor = DependencyResolutionExecutor(Path.cwd(), ExecutorOptions(fail_fast=True))
        >>> result = await executor.execute()
        >>> result.summary
        ExecutionSummary(total=2, installed=2, failed=0, skipped=0)
    """

    def __init__(
        self,
        workspace_root: Path,
        options: ExecutorOptions | None = None,
        resolver: SourceResolverProtocol | None = None,
        source_loader: SourceLoaderProtocol | None = None,
        pipeline: InstallPipelineProtocol | None = None,
        registry: PlatformRegistry | None = None,
        conflicts: ConflictResolver | None = None,
    ):
        self.workspace_root = workspace_root
        self.options = options or ExecutorOptions()
        self.resolver = resolver or LocalSourceResolver()

        if source_loader is None:
            if self.options.planner.mode == InstallMode.APPLY:
                source_loader = WorkspaceIndexSourceLoader(workspace_root)
            else:
                source_loader = default_source_loader(workspace_root)
        self.source_loader = source_loader

        self.conflicts = conflicts or ConflictResolver()
        self._registry = registry
        self._pipeline = pipeline

    @property
    def pipeline(self) -> InstallPipelineProtocol:
        # Platform config is only read when the default pipeline is actually needed
        if self._pipeline is None:
            registry = self._registry or PlatformRegistry.load(self.workspace_root)
            self._pipeline = FlowInstallPipeline(registry, self.conflicts)
        return self._pipeline

    async def execute(self) -> ExecutionResult:
        """
        Execute full dependency resolution and installation.

        Returns:
            ExecutionResult (``success`` is False if anything failed)
        """
        results: list[PackageResult] = []
        warnings: list[str] = []
        graph: DependencyGraph | None = None

        try:
            logger.info("Discovering dependencies")
            builder = DependencyGraphBuilder(self.workspace_root, self.options.graph, self.resolver)
            graph = await builder.build()
            warnings.extend(graph.metadata.warnings)
            logger.info(f"Found {graph.metadata.node_count} packages (max depth: {graph.metadata.max_depth})")

            logger.info("Loading packages")
            loaded_count = await PackageLoader(self.source_loader, self.options.loader).load_all(graph)
            logger.info(f"Loaded {loaded_count}/{graph.metadata.node_count} packages")
            for node in graph.nodes.values():
                if node.load_error:
                    warnings.append(f"Failed to load {node.display_name}: {node.load_error}")

            logger.info("Planning installation")
            planner = InstallationPlanner(self.options.planner, self._read_index(warnings))
            plan = planner.create_plan(
                graph,
                self.workspace_root,
                dry_run=self.options.dry_run,
                platforms=self.options.platforms,
            )
            for skipped in plan.skipped:
                graph.nodes[skipped.id].state = NodeState.SKIPPED
            logger.info(f"{len(plan.contexts)} packages to install, {len(plan.skipped)} skipped")

            if self.options.dry_run:
                return self._create_dry_run_result(plan, graph, warnings)

            logger.info("Installing packages")
            for number, wave in enumerate(plan.waves, start=1):
                logger.debug(f"Wave {number}/{len(plan.waves)}: {', '.join(ctx.package.name for ctx in wave)}")
                wave_results = await self._execute_wave(wave, graph, warnings)
                results.extend(wave_results)
                if self.options.fail_fast and any(not result.success for result in wave_results):
                    logger.warning(f"Stopping after wave {number}: a package failed to install")
                    break

            return self._create_final_result(results, plan, graph, warnings)
        except Exception as e:
            message = e.message if isinstance(e, OpenPackageError) else f"{type(e).__name__}: {e}"
            logger.error(f"Installation failed: {message}")
            return ExecutionResult(
                success=False,
                error=message,
                results=results,
                summary=self._summarize(results, graph, skipped=0),
                warnings=warnings,
                conflicts=self.conflicts.conflicts(),
                graph=graph,
            )

    async def _execute_wave(
        self,
        wave: list[InstallContext],
        graph: DependencyGraph,
        warnings: list[str],
    ) -> list[PackageResult]:
        collector = IndexWriteCollector()
        semaphore = asyncio.Semaphore(max(1, self.options.concurrency))
        stop = asyncio.Event()

        async def _guarded(context: InstallContext) -> PackageResult | None:
            async with semaphore:
                # fail_fast: contexts still waiting for a slot never start
                if stop.is_set():
                    return None
                result = await self._install(context, graph, collector)
                if not result.success and self.options.fail_fast:
                    stop.set()
                return result

        wave_results = await asyncio.gather(*(_guarded(context) for context in wave))

        flush = await collector.flush(self.workspace_root)
        warnings.extend(flush.warnings)
        return [result for result in wave_results if result is not None]

    async def _install(
        self,
        context: InstallContext,
        graph: DependencyGraph,
        collector: IndexWriteCollector,
    ) -> PackageResult:
        node = graph.nodes[context.identity]
        node.install_context = context
        node.state = NodeState.INSTALLING

        try:
            result = await asyncio.wait_for(
                self.pipeline.install(context, collector),
                timeout=self.options.task_timeout,
            )
        except TimeoutError:
            error = f"timed out after {self.options.task_timeout}s"
        except OpenPackageError as e:
            error = e.message
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        else:
            if result.success:
                node.state = NodeState.INSTALLED
                logger.info(f"Installed {node.display_name}")
                return PackageResult(id=node.id, success=True, data=result.data)
            error = result.error or "install failed"

        node.state = NodeState.FAILED
        logger.error(f"Failed to install {node.display_name}: {error}")
        return PackageResult(id=node.id, success=False, error=error)

    def _read_index(self, warnings: list[str]) -> WorkspaceIndex | None:
        try:
            return read_workspace_index(self.workspace_root)
        except OpenPackageError as e:
            message = f"Could not read workspace index, treating every package as new: {e.message}"
            logger.warning(message)
            warnings.append(message)
            return None

    def _summarize(self, results: list[PackageResult], graph: DependencyGraph | None, skipped: int) -> ExecutionSummary:
        return ExecutionSummary(
            total=graph.metadata.node_count if graph is not None else 0,
            installed=sum(1 for result in results if result.success),
            failed=sum(1 for result in results if not result.success),
            skipped=skipped,
        )

    def _create_dry_run_result(
        self,
        plan: InstallationPlan,
        graph: DependencyGraph,
        warnings: list[str],
    ) -> ExecutionResult:
        return ExecutionResult(
            success=True,
            summary=self._summarize([], graph, skipped=len(plan.skipped)),
            warnings=warnings,
            graph=graph,
            plan=plan,
        )

    def _create_final_result(
        self,
        results: list[PackageResult],
        plan: InstallationPlan,
        graph: DependencyGraph,
        warnings: list[str],
    ) -> ExecutionResult:
        summary = self._summarize(results, graph, skipped=len(plan.skipped))
        conflicts = self.conflicts.conflicts()
        for conflict in conflicts:
            logger.warning(conflict.message)
        return ExecutionResult(
            success=summary.failed == 0,
            results=results,
            summary=summary,
            warnings=warnings,
            conflicts=conflicts,
            error=f"{summary.failed} packages failed to install" if summary.failed else None,
            graph=graph,
            plan=plan,
        )
