"""Package loader - Hydrate graph nodes with package contents.

Loading goes through an injected Source Loader (one per source kind). A node
that fails to load is left unloaded with its error recorded; it never stops the
other nodes from loading. Retries, if any, belong to the Source Loader.
"""

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

from .discovery import discover_package_files
from .exceptions import ManifestError
from .exceptions import OpenPackageError
from .exceptions import PackageLoadError
from .graph import DependencyGraph
from .graph import ResolutionDependencyNode
from .identity import PackageIdentity
from .identity import SourceType
from .models import DEFAULT_TASK_TIMEOUT
from .models import LoadedPackage
from .protocols import SourceLoaderProtocol
from .schema import read_manifest
from .utils import resolve_index_path
from .workspace_index import read_workspace_index

logger = logging.getLogger(__name__)


class LoaderOptions(BaseModel):
    """
    Loading policy.

    Attributes:
        concurrency: Maximum number of packages loading at once
        timeout: Seconds allowed per package (None disables the bound)
    """

    concurrency: int = 8
    timeout: float | None = DEFAULT_TASK_TIMEOUT


class PathSourceLoader:
    """Load a package from a local directory."""

    async def load(self, identity: PackageIdentity) -> LoadedPackage:
        """
        Load package contents from ``identity.content_root``.

        Raises:
            PackageLoadError: If the directory is missing or its manifest is invalid
        """
        content_root = identity.content_root
        if content_root is None or not content_root.is_dir():
            raise PackageLoadError(
                f"Package directory not found for {identity.display_name}: {content_root}",
                context={"package": identity.name, "path": str(content_root)},
            )
        return _load_directory(identity, content_root)


class WorkspaceIndexSourceLoader:
    """
    Load packages recorded in the workspace index ("apply" mode).

    The package directory is the ``path`` stored in the index entry.

    Args:
        workspace_root: Workspace whose index is consulted
    """

    def __init__(self, workspace_root: Path):
        self.workspace_root = workspace_root

    async def load(self, identity: PackageIdentity) -> LoadedPackage:
        """
        Raises:
            PackageLoadError: If the package is not in the index or its directory is gone
        """
        try:
            index = read_workspace_index(self.workspace_root)
        except OpenPackageError as e:
            raise PackageLoadError(f"Cannot read workspace index: {e.message}") from e

        entry = index.get_entry(identity.name)
        if entry is None:
            raise PackageLoadError(
                f"Package '{identity.name}' is not installed in this workspace",
                context={"package": identity.name},
            )

        content_root = resolve_index_path(entry.path, self.workspace_root)
        if not content_root.is_dir():
            raise PackageLoadError(
                f"Package directory for '{identity.name}' no longer exists: {content_root}",
                context={"package": identity.name, "path": str(content_root)},
            )
        loaded = _load_directory(identity, content_root)
        if loaded.version is None and entry.version:
            loaded = loaded.model_copy(update={"version": entry.version})
        return loaded


class CompositeSourceLoader:
    """
    Dispatch loading by ``identity.source_type``.

    Example:
        >>> loader = CompositeSourceLoader({SourceType.PATH: PathSourceLoader(), SourceType.REGISTRY: registry})
    """

    def __init__(self, loaders: Mapping[SourceType, SourceLoaderProtocol]):
        self.loaders = dict(loaders)

    async def load(self, identity: PackageIdentity) -> LoadedPackage:
        loader = self.loaders.get(identity.source_type)
        if loader is None:
            raise PackageLoadError(
                f"No source loader for {identity.source_type.value} package {identity.display_name}",
                context={"package": identity.name, "source_type": identity.source_type.value},
            )
        return await loader.load(identity)


def default_source_loader(workspace_root: Path) -> CompositeSourceLoader:
    """Loaders for the sources that need no network: local paths and the workspace index."""
    return CompositeSourceLoader(
        {
            SourceType.PATH: PathSourceLoader(),
            SourceType.WORKSPACE: WorkspaceIndexSourceLoader(workspace_root),
        }
    )


def _load_directory(identity: PackageIdentity, content_root: Path) -> LoadedPackage:
    try:
        found = read_manifest(content_root)
    except ManifestError as e:
        raise PackageLoadError(e.message, context=e.context) from e

    name, version = identity.name, identity.version
    if found is not None:
        manifest, _ = found
        version = manifest.version or version
        if manifest.name and manifest.name != identity.name:
            logger.debug(f"Manifest of {identity.name} declares name {manifest.name}; keeping {identity.name}")

    return LoadedPackage(
        name=name,
        version=version,
        content_root=content_root,
        files=discover_package_files(content_root),
    )


class PackageLoader:
    """
    Load every node of a graph concurrently.

    Args:
        source_loader: Source Loader (app-provided)
        options: Loading policy
    """

    def __init__(self, source_loader: SourceLoaderProtocol, options: LoaderOptions | None = None):
        self.source_loader = source_loader
        self.options = options or LoaderOptions()

    async def load_all(self, graph: DependencyGraph) -> int:
        """
        Load all nodes, setting ``node.loaded`` or ``node.load_error``.

        Returns:
            Number of nodes that loaded successfully
        """
        semaphore = asyncio.Semaphore(max(1, self.options.concurrency))

        async def _guarded(node: ResolutionDependencyNode) -> None:
            async with semaphore:
                await self.load_node(node)

        await asyncio.gather(*(_guarded(node) for node in graph.nodes.values()))
        return sum(1 for node in graph.nodes.values() if node.loaded is not None)

    async def load_node(self, node: ResolutionDependencyNode) -> bool:
        """Load one node; failures are recorded on the node, never raised."""
        try:
            node.loaded = await asyncio.wait_for(self.source_loader.load(node.id), timeout=self.options.timeout)
            node.load_error = None
            logger.debug(f"Loaded {node.display_name} ({len(node.loaded.files)} files)")
            return True
        except TimeoutError:
            node.load_error = f"timed out after {self.options.timeout}s"
        except OpenPackageError as e:
            node.load_error = e.message
        except Exception as e:
            node.load_error = f"{type(e).__name__}: {e}"

        logger.warning(f"Failed to load {node.display_name}: {node.load_error}")
        return False
