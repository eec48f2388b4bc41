"""Package manifest schema - Parse openpackage.yml files.

A manifest lives at ``<root>/openpackage.yml`` for packages and at
``<workspace>/.openpackage/openpackage.yml`` for workspaces.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from .exceptions import ManifestError

MANIFEST_FILE = "openpackage.yml"
WORKSPACE_DIR = ".openpackage"


class ManifestDependency(BaseModel):
    """One dependency entry as written in a manifest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    version: str | None = None
    path: str | None = None
    url: str | None = Field(default=None, alias="git")
    ref: str | None = None
    priority: int | None = None


class DependencyDeclaration(BaseModel):
    """A dependency declaration plus where it was declared."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None
    path: str | None = None
    url: str | None = None
    ref: str | None = None
    priority: int | None = None
    is_dev: bool = False
    declared_in: Path
    depth: int = 0

    @property
    def declared_in_dir(self) -> Path:
        """Directory of the manifest that declared this dependency."""
        return self.declared_in.parent


class PackageManifest(BaseModel):
    """
    Package manifest from openpackage.yml.

    Only the fields needed for dependency discovery and version checks are
    modeled; unknown keys are ignored.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str | None = None
    version: str | None = None
    description: str = ""
    dependencies: list[ManifestDependency] = Field(default_factory=list)
    dev_dependencies: list[ManifestDependency] = Field(default_factory=list, alias="dev-dependencies")

    @classmethod
    def from_yaml(cls, manifest_path: Path) -> "PackageManifest":
        """
        Load a manifest from openpackage.yml.

        Accepts the legacy ``packages`` / ``dev-packages`` keys as aliases.

        Args:
            manifest_path: Path to the manifest file

        Returns:
            PackageManifest instance

        Raises:
            ManifestError: If the file is missing, not valid YAML, or has an invalid shape
        """
        if not manifest_path.exists():
            raise ManifestError(f"Manifest not found: {manifest_path}", context={"path": str(manifest_path)})

        try:
            with open(manifest_path, encoding="utf-8") as f:
                data: Any = yaml.safe_load(f)
        except (UnicodeDecodeError, yaml.YAMLError) as e:
            raise ManifestError(f"Invalid YAML in {manifest_path}: {e}", context={"path": str(manifest_path)}) from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest must be a mapping: {manifest_path}", context={"path": str(manifest_path)})

        if "dependencies" not in data and "packages" in data:
            data["dependencies"] = data["packages"]
        if "dev-dependencies" not in data and "dev-packages" in data:
            data["dev-dependencies"] = data["dev-packages"]

        # Entries without a name are ignored rather than rejected
        for key in ("dependencies", "dev-dependencies"):
            entries = data.get(key) or []
            data[key] = [entry for entry in entries if isinstance(entry, dict) and entry.get("name")]

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ManifestError(f"Invalid manifest {manifest_path}: {e}", context={"path": str(manifest_path)}) from e


def find_manifest(content_root: Path) -> Path | None:
    """Find the manifest for a content root.

    Tries ``openpackage.yml`` at the root, then ``.openpackage/openpackage.yml``
    (workspace style).

    Returns:
        Path to the manifest, or None if neither exists
    """
    for candidate in (content_root / MANIFEST_FILE, content_root / WORKSPACE_DIR / MANIFEST_FILE):
        if candidate.is_file():
            return candidate
    return None


def read_manifest(content_root: Path) -> tuple[PackageManifest, Path] | None:
    """Read the manifest at a content root, or None when the root has none."""
    manifest_path = find_manifest(content_root)
    if manifest_path is None:
        return None
    return PackageManifest.from_yaml(manifest_path), manifest_path


def extract_dependencies(
    manifest: PackageManifest,
    declared_in: Path,
    depth: int,
    include_dev: bool,
) -> list[DependencyDeclaration]:
    """
    Extract dependency declarations from a manifest.

    Dev dependencies are only honored at the root (depth 0).

    Args:
        manifest: Parsed manifest
        declared_in: Path of the manifest file that declares the dependencies
        depth: Depth of the declaring manifest in the dependency tree
        include_dev: Whether to include dev dependencies

    Returns:
        Declarations in manifest order
    """
    declarations = [_to_declaration(dep, declared_in, depth, is_dev=False) for dep in manifest.dependencies]
    if include_dev and depth == 0:
        declarations.extend(_to_declaration(dep, declared_in, depth, is_dev=True) for dep in manifest.dev_dependencies)
    return declarations


def _to_declaration(dep: ManifestDependency, declared_in: Path, depth: int, is_dev: bool) -> DependencyDeclaration:
    url = dep.url
    ref = dep.ref
    if url and "#" in url:
        url, embedded_ref = url.split("#", 1)
        ref = embedded_ref or ref

    return DependencyDeclaration(
        name=dep.name.strip(),
        version=dep.version,
        path=dep.path,
        url=url,
        ref=ref,
        priority=dep.priority,
        is_dev=is_dev,
        declared_in=declared_in,
        depth=depth,
    )
