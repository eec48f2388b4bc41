"""Installation planner - Turn a loaded graph into an ordered plan.

The planner decides what installs and in which order; it performs no I/O and
never mutates the graph. Dependencies always come before their dependents:
contexts are topologically ordered and grouped into waves, where every package
in a wave depends only on packages from earlier waves.
"""

import logging
from pathlib import Path

from pydantic import BaseModel
from pydantic import Field

from .graph import DependencyGraph
from .graph import ResolutionDependencyNode
from .identity import PackageIdentity
from .models import InstallContext
from .models import InstallMode
from .models import LoadedPackage
from .models import InstallOptions
from .workspace_index import WorkspaceIndex

logger = logging.getLogger(__name__)


class PlannerOptions(BaseModel):
    """
    Planning policy.

    Attributes:
        force: Reinstall packages already recorded at the same version
        mode: ``install`` or ``apply`` (apply re-projects everything it loaded)
    """

    force: bool = False
    mode: InstallMode = InstallMode.INSTALL


class SkippedPackage(BaseModel):
    id: PackageIdentity
    reason: str


class InstallationPlan(BaseModel):
    """Contexts in execution order, the same contexts grouped into waves, and what was skipped."""

    contexts: list[InstallContext] = Field(default_factory=list)
    waves: list[list[InstallContext]] = Field(default_factory=list)
    skipped: list[SkippedPackage] = Field(default_factory=list)


class InstallationPlanner:
    """
    Create installation plans.

    Args:
        options: Planning policy
        index: Current workspace index, used to skip packages that are already installed

    Example:
        >>> plan = InstallationPlanner(PlannerOptions(), index).create_plan(graph, workspace)
        >>> [[ctx.package.name for ctx in wave] for wave in plan.waves]
        [['pkg-b'], ['pkg-a']]
    """

    def __init__(self, options: PlannerOptions | None = None, index: WorkspaceIndex | None = None):
        self.options = options or PlannerOptions()
        self.index = index

    def create_plan(
        self,
        graph: DependencyGraph,
        workspace_root: Path,
        dry_run: bool = False,
        platforms: list[str] | None = None,
    ) -> InstallationPlan:
        """
        Plan the installation of every node in the graph.

        Priority is the 1-based position in install order, so packages closer
        to the workspace root outrank the dependencies they pull in. A
        declaration's explicit ``priority`` overrides it.

        Args:
            graph: Dependency graph after loading
            workspace_root: Workspace directory
            dry_run: Forwarded to every install context
            platforms: Explicit platforms (detected per workspace when None)

        Returns:
            InstallationPlan
        """
        plan = InstallationPlan()
        planned: list[tuple[ResolutionDependencyNode, LoadedPackage]] = []

        for identity in topological_order(graph):
            node = graph.nodes[identity]
            reason = self._skip_reason(node)
            if reason is not None:
                logger.debug(f"Skipping {node.display_name}: {reason}")
                plan.skipped.append(SkippedPackage(id=identity, reason=reason))
            elif node.loaded is not None:
                planned.append((node, node.loaded))

        install_options = InstallOptions(dry_run=dry_run, force=self.options.force, mode=self.options.mode)
        waves: dict[PackageIdentity, int] = {}
        for position, (node, package) in enumerate(planned, start=1):
            dependencies = graph.dependencies_of(node.id)
            waves[node.id] = max((waves[dep] + 1 for dep in dependencies if dep in waves), default=0)

            priority = node.declaration.priority if node.declaration.priority is not None else position
            context = InstallContext(
                identity=node.id,
                package=package,
                workspace_root=workspace_root,
                priority=priority,
                dependencies=[dep.name for dep in dependencies],
                platforms=platforms,
                options=install_options,
            )
            plan.contexts.append(context)
            wave = waves[node.id]
            while len(plan.waves) <= wave:
                plan.waves.append([])
            plan.waves[wave].append(context)

        logger.debug(f"Planned {len(plan.contexts)} packages in {len(plan.waves)} waves")
        return plan

    def _skip_reason(self, node: ResolutionDependencyNode) -> str | None:
        if node.loaded is None:
            return f"failed to load: {node.load_error or 'unknown error'}"

        if self.options.mode == InstallMode.INSTALL and not self.options.force and self.index is not None:
            entry = self.index.get_entry(node.loaded.name)
            if entry is not None and entry.version is not None and entry.version == node.loaded.version:
                return f"already installed at {entry.version}"
        return None


def topological_order(graph: DependencyGraph) -> list[PackageIdentity]:
    """
    Order nodes so every dependency precedes its dependents.

    Depth-first post-order over nodes in discovery order; edges that close a
    cycle are ignored, so cyclic nodes keep their discovery order.
    """
    order: list[PackageIdentity] = []
    done: set[PackageIdentity] = set()
    on_path: set[PackageIdentity] = set()

    def visit(identity: PackageIdentity) -> None:
        if identity in done or identity in on_path:
            return
        on_path.add(identity)
        for dependency in graph.dependencies_of(identity):
            if dependency in graph.nodes:
                visit(dependency)
        on_path.discard(identity)
        done.add(identity)
        order.append(identity)

    for identity in graph.nodes:
        visit(identity)
    return order
