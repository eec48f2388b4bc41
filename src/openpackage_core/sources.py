"""Source resolver - Resolve dependency declarations to concrete sources.

Which registry to query and how version ranges are matched is app policy: the
resolver only knows local paths and passes registry/git declarations through,
asking an injected version resolver for a concrete version when one is given.
"""

import logging
from pathlib import Path

from .exceptions import ManifestError
from .exceptions import SourceResolutionError
from .identity import ResolvedSource
from .identity import SourceType
from .protocols import VersionResolverProtocol
from .schema import DependencyDeclaration
from .schema import read_manifest
from .utils import normalize_git_url
from .utils import resolve_declared_path

logger = logging.getLogger(__name__)


class LocalSourceResolver:
    """
    Resolve declarations without network access.

    - path: resolved against the declaring manifest's directory (``~`` expanded);
      the directory must exist. Version comes from the package's own manifest.
    - git: keyed by the normalized URL and ref; content is fetched by the loader
    - registry: keeps the declared range, or asks ``version_resolver`` for a
      concrete version

    Example:
        >>> resolver = LocalSourceResolver()
        >>> source = await resolver.resolve(declaration)
        >>> source.content_root
        PosixPath('/workspace/packages/pkg-a')
    """

    def __init__(self, version_resolver: VersionResolverProtocol | None = None, home: Path | None = None):
        self.version_resolver = version_resolver
        self.home = home

    async def resolve(self, declaration: DependencyDeclaration) -> ResolvedSource:
        """
        Resolve one declaration.

        Raises:
            SourceResolutionError: If a path dependency does not exist or its manifest is invalid
        """
        if declaration.url:
            return ResolvedSource(
                name=declaration.name,
                source_type=SourceType.GIT,
                version=declaration.version,
                url=normalize_git_url(declaration.url),
                ref=declaration.ref,
            )

        if declaration.path:
            return self._resolve_path(declaration, declaration.path)

        version = declaration.version
        if self.version_resolver is not None:
            concrete = await self.version_resolver.resolve_version(declaration.name, declaration.version)
            if concrete:
                logger.debug(f"Resolved {declaration.name}@{declaration.version or '*'} to {concrete}")
                version = concrete
        return ResolvedSource(name=declaration.name, source_type=SourceType.REGISTRY, version=version)

    def _resolve_path(self, declaration: DependencyDeclaration, path: str) -> ResolvedSource:
        content_root = resolve_declared_path(path, declaration.declared_in_dir, self.home)
        if not content_root.is_dir():
            raise SourceResolutionError(
                f"Path dependency '{declaration.name}' not found: {content_root}",
                context={"package": declaration.name, "path": str(content_root)},
            )

        version = declaration.version
        try:
            found = read_manifest(content_root)
        except ManifestError as e:
            raise SourceResolutionError(
                f"Invalid manifest for '{declaration.name}': {e.message}",
                context={"package": declaration.name, "path": str(content_root)},
            ) from e
        if found is not None:
            manifest, _ = found
            version = manifest.version or version

        return ResolvedSource(
            name=declaration.name,
            source_type=SourceType.PATH,
            version=version,
            content_root=content_root,
        )
