"""Protocols for the collaborators the installation core consumes.

The core never fetches anything itself: apps provide source resolvers, source
loaders and install pipelines. The library only requires these interfaces.
"""

from typing import TYPE_CHECKING
from typing import Protocol
from typing import runtime_checkable

if TYPE_CHECKING:
    from .identity import PackageIdentity
    from .identity import ResolvedSource
    from .index_collector import IndexWriteCollector
    from .models import CommandResult
    from .models import InstallContext
    from .models import LoadedPackage
    from .schema import DependencyDeclaration


@runtime_checkable
class VersionResolverProtocol(Protocol):
    """Turns a registry version range into a concrete version."""

    async def resolve_version(self, name: str, version_range: str | None) -> str | None:
        """Return the concrete version satisfying ``version_range``, or None if unknown."""
        ...


class SourceResolverProtocol(Protocol):
    """Resolves a dependency declaration to a concrete source.

    Example implementations:
    - LocalSourceResolver: path dependencies, registry/git passthrough
    - RegistrySourceResolver: queries a package registry (app-provided)
    """

    async def resolve(self, declaration: "DependencyDeclaration") -> "ResolvedSource":
        """Resolve a declaration.

        Raises:
            SourceResolutionError: If the declaration cannot be resolved
        """
        ...


class SourceLoaderProtocol(Protocol):
    """Loads package contents for an identity.

    One implementation per source kind (registry, local path, git, workspace index).
    Retry policy, if any, belongs to the implementation.
    """

    async def load(self, identity: "PackageIdentity") -> "LoadedPackage":
        """Load the package.

        Raises:
            PackageLoadError: If loading fails
        """
        ...


class InstallPipelineProtocol(Protocol):
    """Installs one package onto the workspace.

    Implementations must not write the workspace index directly; index updates
    go through the wave's collector.
    """

    async def install(self, context: "InstallContext", collector: "IndexWriteCollector") -> "CommandResult":
        """Install the package described by ``context``."""
        ...
