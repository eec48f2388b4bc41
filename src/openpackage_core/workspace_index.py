"""Workspace index file management.

Tracks which source files each installed package mapped to which workspace
target paths, so status checks and uninstall can be precise.

Index format (YAML, ``.openpackage/openpackage.index.yml``):

    packages:
      my-rules:
        path: ../packages/my-rules
        version: 1.2.0
        dependencies: [base-rules]
        files:
          rules/typescript.md:
            - .claude/rules/typescript.md
            - .cursor/rules/typescript.mdc
          mcp.json:
            - target: .claude/settings.json
              merge: deep
              keys: [mcpServers.github]

Within one ``files[<source>]`` list, target paths are unique.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any
from typing import Literal

import yaml
from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from .exceptions import WorkspaceIndexError
from .schema import WORKSPACE_DIR
from .utils import normalize_path

logger = logging.getLogger(__name__)

INDEX_FILE = "openpackage.index.yml"

MergeStrategy = Literal["deep", "shallow", "replace", "composite"]


class FileMapping(BaseModel):
    """Target of a merged file, with the keys this package contributed."""

    target: str
    merge: MergeStrategy | None = None
    keys: list[str] | None = None


FileMappingValue = str | FileMapping


class WorkspaceIndexPackage(BaseModel):
    """Entry in the workspace index for one installed package."""

    path: str
    version: str | None = None
    dependencies: list[str] | None = None
    files: dict[str, list[FileMappingValue]] = Field(default_factory=dict)


class WorkspaceIndex(BaseModel):
    """The persisted workspace index document."""

    packages: dict[str, WorkspaceIndexPackage] = Field(default_factory=dict)

    def get_entry(self, name: str) -> WorkspaceIndexPackage | None:
        """
        Get index entry for a package.

        Args:
            name: Package name

        Returns:
            Entry or None if the package is not tracked
        """
        return self.packages.get(name)

    def is_installed(self, name: str) -> bool:
        """Check if a package is tracked in the index."""
        return name in self.packages


def get_index_path(workspace_root: Path) -> Path:
    """Location of the index file for a workspace."""
    return workspace_root / WORKSPACE_DIR / INDEX_FILE


def get_target_path(mapping: FileMappingValue) -> str:
    """Extract the target path from a mapping (bare string or ``FileMapping``)."""
    return mapping if isinstance(mapping, str) else mapping.target


def extract_all_target_paths(files: dict[str, list[FileMappingValue]]) -> list[str]:
    """All target paths referenced by a package's file mappings."""
    return [get_target_path(mapping) for mappings in files.values() for mapping in mappings]


def dedupe_mappings(mappings: list[FileMappingValue]) -> list[FileMappingValue]:
    """Deduplicate mappings by normalized target path (first occurrence wins,
    except that a keyed mapping replaces a bare string for the same target)."""
    by_target: dict[str, FileMappingValue] = {}
    for mapping in mappings:
        target = normalize_path(get_target_path(mapping))
        existing = by_target.get(target)
        if existing is None or (isinstance(existing, str) and isinstance(mapping, FileMapping)):
            by_target[target] = mapping
    return list(by_target.values())


def sort_mapping(files: dict[str, list[FileMappingValue]]) -> dict[str, list[FileMappingValue]]:
    """Sort source keys and their targets for stable output, deduplicating targets."""
    return {
        key: sorted(dedupe_mappings(list(files[key])), key=get_target_path)
        for key in sorted(files)
    }


def read_workspace_index(workspace_root: Path) -> WorkspaceIndex:
    """
    Read the workspace index.

    A missing file yields an empty index.

    Args:
        workspace_root: Workspace directory

    Returns:
        Parsed index

    Raises:
        WorkspaceIndexError: If the file exists but cannot be read or parsed
    """
    index_path = get_index_path(workspace_root)
    if not index_path.exists():
        return WorkspaceIndex()

    try:
        with open(index_path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise WorkspaceIndexError(f"Failed to read workspace index: {e}", context={"path": str(index_path)}) from e

    if data is None:
        return WorkspaceIndex()
    if not isinstance(data, dict):
        raise WorkspaceIndexError("Workspace index must be a mapping", context={"path": str(index_path)})

    data["packages"] = data.get("packages") or {}
    try:
        index = WorkspaceIndex.model_validate(data)
    except ValidationError as e:
        raise WorkspaceIndexError(f"Invalid workspace index: {e}", context={"path": str(index_path)}) from e

    logger.debug(f"Loaded {len(index.packages)} packages from workspace index")
    return index


def write_workspace_index(workspace_root: Path, index: WorkspaceIndex) -> None:
    """
    Write the workspace index atomically (temp file + replace).

    Raises:
        WorkspaceIndexError: If the file cannot be written
    """
    index_path = get_index_path(workspace_root)
    packages = {name: index.packages[name] for name in sorted(index.packages)}
    data = WorkspaceIndex(packages=packages).model_dump(mode="json", exclude_none=True)

    try:
        index_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=index_path.parent, prefix=f".{INDEX_FILE}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(tmp_name, index_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise WorkspaceIndexError(f"Failed to write workspace index: {e}", context={"path": str(index_path)}) from e

    logger.debug(f"Saved workspace index with {len(packages)} packages")
