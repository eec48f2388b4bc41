"""Dependency graph builder - Discover a workspace's transitive dependencies.

The builder reads the workspace manifest, resolves every declaration through an
injected source resolver and walks the dependency manifests depth-first in
declaration order. Nodes are deduplicated by ``PackageIdentity``; cycles are
recorded as warnings and never recursed into.
"""

import logging
from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .exceptions import ManifestError
from .exceptions import SourceResolutionError
from .identity import PackageIdentity
from .models import InstallContext
from .models import LoadedPackage
from .protocols import SourceResolverProtocol
from .schema import DependencyDeclaration
from .schema import extract_dependencies
from .schema import read_manifest
from .sources import LocalSourceResolver

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    PENDING = "pending"
    INSTALLING = "installing"
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ResolutionDependencyNode(BaseModel):
    """
    One unique package in the dependency graph.

    Created by the builder; ``loaded``/``load_error`` are set by the loader and
    ``state``/``install_context`` by the executor.
    """

    id: PackageIdentity
    declaration: DependencyDeclaration
    depth: int
    loaded: LoadedPackage | None = None
    load_error: str | None = None
    install_context: InstallContext | None = None
    state: NodeState = NodeState.PENDING

    @property
    def display_name(self) -> str:
        return self.id.display_name


class GraphEdge(BaseModel):
    """``parent`` declares ``child``; ``parent`` is None for the workspace manifest."""

    model_config = ConfigDict(frozen=True)

    parent: PackageIdentity | None
    child: PackageIdentity


class Cycle(BaseModel):
    """Ordered nodes forming a loop (the last node depends on the first)."""

    nodes: list[PackageIdentity]

    @property
    def description(self) -> str:
        names = [identity.display_name for identity in [*self.nodes, self.nodes[0]]]
        return " -> ".join(names)


class GraphMetadata(BaseModel):
    node_count: int = 0
    max_depth: int = 0
    warnings: list[str] = Field(default_factory=list)


class DependencyGraph(BaseModel):
    """Result of ``DependencyGraphBuilder.build()``; the node set never changes afterwards."""

    nodes: dict[PackageIdentity, ResolutionDependencyNode] = Field(default_factory=dict)
    edges: list[GraphEdge] = Field(default_factory=list)
    cycles: list[Cycle] = Field(default_factory=list)
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)

    def dependencies_of(self, identity: PackageIdentity) -> list[PackageIdentity]:
        """Direct dependencies in declaration order."""
        return [edge.child for edge in self.edges if edge.parent == identity]

    def dependents_of(self, identity: PackageIdentity) -> list[PackageIdentity | None]:
        """Direct dependents (None is the workspace manifest)."""
        return [edge.parent for edge in self.edges if edge.child == identity]

    def roots(self) -> list[PackageIdentity]:
        """Packages declared directly by the workspace manifest."""
        return [edge.child for edge in self.edges if edge.parent is None]

    def find_by_name(self, name: str) -> list[ResolutionDependencyNode]:
        return [node for node in self.nodes.values() if node.id.name == name]


class GraphOptions(BaseModel):
    """
    Graph discovery policy.

    Attributes:
        root_packages: Only follow these workspace dependencies (all when None)
        include_dev: Follow the workspace manifest's dev dependencies
    """

    root_packages: list[str] | None = None
    include_dev: bool = True


class DependencyGraphBuilder:
    """
    Build the dependency graph for a workspace.

    Args:
        workspace_root: Workspace directory (its manifest is the graph root, not a node)
        options: Discovery policy
        resolver: Source resolver for declarations (app-provided)

    Example:
        >>> builder = DependencyGraphBuilder(workspace, GraphOptions(), LocalSourceResolver())
        >>> graph = await builder.build()
        >>> [node.display_name for node in graph.nodes.values()]
        ['pkg-a@1.0.0', 'pkg-b@0.2.0']
    """

    def __init__(
        self,
        workspace_root: Path,
        options: GraphOptions | None,
        resolver: SourceResolverProtocol,
    ):
        self.workspace_root = workspace_root
        self.options = options or GraphOptions()
        self.resolver = resolver

        self._nodes: dict[PackageIdentity, ResolutionDependencyNode] = {}
        self._edges: list[GraphEdge] = []
        self._cycles: list[Cycle] = []
        self._warnings: list[str] = []
        self._path: list[PackageIdentity] = []

    async def build(self) -> DependencyGraph:
        """
        Discover every reachable package.

        Returns:
            DependencyGraph (cycles and unresolvable declarations are warnings)

        Raises:
            ManifestError: If the workspace manifest is invalid
        """
        self._nodes, self._edges, self._cycles, self._warnings, self._path = {}, [], [], [], []

        found = read_manifest(self.workspace_root)
        if found is None:
            message = f"No manifest found in {self.workspace_root}"
            logger.warning(message)
            return DependencyGraph(metadata=GraphMetadata(warnings=[message]))

        manifest, manifest_path = found
        declarations = extract_dependencies(manifest, manifest_path, depth=0, include_dev=self.options.include_dev)
        if self.options.root_packages is not None:
            wanted = set(self.options.root_packages)
            declarations = [declaration for declaration in declarations if declaration.name in wanted]
            for missing in sorted(wanted - {declaration.name for declaration in declarations}):
                self._warnings.append(f"Package '{missing}' is not declared in {manifest_path}")

        for declaration in declarations:
            await self._visit(declaration, parent=None, depth=1)

        graph = DependencyGraph(
            nodes=self._nodes,
            edges=self._edges,
            cycles=self._cycles,
            metadata=GraphMetadata(
                node_count=len(self._nodes),
                max_depth=self._max_depth(),
                warnings=self._warnings,
            ),
        )
        logger.debug(f"Built graph with {graph.metadata.node_count} nodes and {len(graph.cycles)} cycles")
        return graph

    async def _visit(self, declaration: DependencyDeclaration, parent: PackageIdentity | None, depth: int) -> None:
        try:
            source = await self.resolver.resolve(declaration)
        except SourceResolutionError as e:
            logger.warning(f"Could not resolve {declaration.name}: {e.message}")
            self._warnings.append(e.message)
            return

        identity = PackageIdentity.from_source(source)
        edge = GraphEdge(parent=parent, child=identity)
        if edge not in self._edges:
            self._edges.append(edge)

        if identity in self._path:
            cycle = Cycle(nodes=self._path[self._path.index(identity) :])
            if all(existing.nodes != cycle.nodes for existing in self._cycles):
                self._cycles.append(cycle)
                message = f"Circular dependency: {cycle.description}"
                logger.warning(message)
                self._warnings.append(message)
            return

        if identity in self._nodes:
            return

        self._nodes[identity] = ResolutionDependencyNode(id=identity, declaration=declaration, depth=depth)

        # Registry and git packages have no content root until loaded
        if source.content_root is None:
            return

        try:
            found = read_manifest(source.content_root)
        except ManifestError as e:
            logger.warning(f"Could not read manifest of {identity.display_name}: {e.message}")
            self._warnings.append(e.message)
            return
        if found is None:
            return

        manifest, manifest_path = found
        self._path.append(identity)
        try:
            for child in extract_dependencies(manifest, manifest_path, depth=depth, include_dev=False):
                await self._visit(child, parent=identity, depth=depth + 1)
        finally:
            self._path.pop()

    def _max_depth(self) -> int:
        """Length of the longest acyclic path from the workspace manifest."""
        children: dict[PackageIdentity, list[PackageIdentity]] = {}
        for edge in self._edges:
            if edge.parent is not None:
                children.setdefault(edge.parent, []).append(edge.child)

        heights: dict[PackageIdentity, int] = {}

        def height(identity: PackageIdentity, on_path: set[PackageIdentity]) -> int:
            if identity in heights:
                return heights[identity]
            on_path.add(identity)
            best = 0
            for child in children.get(identity, []):
                if child in on_path:
                    continue
                best = max(best, height(child, on_path))
            on_path.discard(identity)
            heights[identity] = best + 1
            return best + 1

        roots = [edge.child for edge in self._edges if edge.parent is None]
        return max((height(root, set()) for root in roots), default=0)


async def resolve_dependency_graph(
    workspace_root: Path,
    resolver: SourceResolverProtocol | None = None,
    options: GraphOptions | None = None,
) -> DependencyGraph:
    """
    Build the dependency graph for a workspace (convenience wrapper).

    Args:
        workspace_root: Workspace directory
        resolver: Source resolver (defaults to ``LocalSourceResolver``)
        options: Discovery policy

    Returns:
        DependencyGraph
    """
    return await DependencyGraphBuilder(workspace_root, options, resolver or LocalSourceResolver()).build()
