"""Package identity and canonical dependency keys.

Two graph nodes are the same package iff their identities are equal. The
identity is computed after source resolution; ``compute_dependency_key`` gives
a stable key for a declaration before it is resolved (used in diagnostics).
"""

from enum import Enum
from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict

from .schema import DependencyDeclaration
from .utils import normalize_git_url
from .utils import resolve_declared_path


class SourceType(str, Enum):
    """Where a package comes from."""

    REGISTRY = "registry"
    PATH = "path"
    GIT = "git"
    WORKSPACE = "workspace"


class ResolvedSource(BaseModel):
    """Concrete location of a declared dependency, as returned by a source resolver."""

    model_config = ConfigDict(frozen=True)

    name: str
    source_type: SourceType
    version: str | None = None
    content_root: Path | None = None
    url: str | None = None
    ref: str | None = None


class PackageIdentity(BaseModel):
    """Identity of a package in the dependency graph (dedup key)."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None
    content_root: Path | None = None
    source_type: SourceType = SourceType.REGISTRY
    url: str | None = None
    ref: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PackageIdentity):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def _key(self) -> tuple[str, str | None, str | None]:
        root = self.content_root.as_posix() if self.content_root is not None else None
        return (self.name, self.version, root)

    @property
    def display_name(self) -> str:
        """Name shown in logs and diagnostics."""
        return f"{self.name}@{self.version}" if self.version else self.name

    @classmethod
    def from_source(cls, source: ResolvedSource) -> "PackageIdentity":
        return cls(
            name=source.name,
            version=source.version,
            content_root=source.content_root,
            source_type=source.source_type,
            url=source.url,
            ref=source.ref,
        )


def compute_dependency_key(declaration: DependencyDeclaration) -> str:
    """
    Compute the canonical key of a declaration before it is resolved.

    - git: ``git:<normalized-url>#<ref>:<resource-path>``
    - path: ``path:<absolute-path>``
    - registry: ``registry:<name>:<range>``

    Args:
        declaration: Dependency declaration from a manifest

    Returns:
        Canonical key string

    Example:
        >>> compute_dependency_key(DependencyDeclaration(name="a", version="^1", declared_in=Path("/w/x.yml")))
        'registry:a:^1'
    """
    name = declaration.name.strip()

    if declaration.url:
        ref = declaration.ref or "default"
        resource_path = declaration.path or ""
        if not resource_path and name.startswith("gh@"):
            parts = [part for part in name[len("gh@") :].split("/") if part]
            if len(parts) > 2:
                resource_path = "/".join(parts[2:])
        return f"git:{normalize_git_url(declaration.url)}#{ref}:{resource_path}"

    if declaration.path:
        absolute = resolve_declared_path(declaration.path, declaration.declared_in_dir)
        return f"path:{absolute.as_posix()}"

    version = (declaration.version or "*").strip()
    return f"registry:{name}:{version}"
