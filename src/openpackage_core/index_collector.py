"""Index write collector.

Collects workspace index mutations while the packages of one wave install
concurrently, then applies them all in a single read-modify-write cycle.

Packages never write the index themselves: each records its updates here and
the wave owner calls ``flush()`` once every task in the wave has finished.
That is the only place the index file is read or written during a wave.
"""

import logging
from pathlib import Path
from typing import Annotated
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

from .exceptions import IndexMutationError
from .exceptions import WorkspaceIndexError
from .utils import format_path_for_index
from .utils import normalize_path
from .workspace_index import FileMappingValue
from .workspace_index import WorkspaceIndex
from .workspace_index import WorkspaceIndexPackage
from .workspace_index import dedupe_mappings
from .workspace_index import get_target_path
from .workspace_index import read_workspace_index
from .workspace_index import sort_mapping
from .workspace_index import write_workspace_index

logger = logging.getLogger(__name__)


class PackageEntryUpdate(BaseModel):
    """Create or replace a package entry."""

    type: Literal["upsert"] = "upsert"
    package_name: str
    path: str
    version: str | None = None
    files: dict[str, list[FileMappingValue]] = Field(default_factory=dict)
    dependencies: list[str] | None = None


class FileAugmentation(BaseModel):
    """Additively merge file mappings into an existing package entry."""

    type: Literal["augment-files"] = "augment-files"
    package_name: str
    files: dict[str, list[FileMappingValue]]


class EntrySnapshot(BaseModel):
    """Package entry used when a rename targets an entry not yet in the index."""

    path: str
    version: str | None = None
    files: dict[str, list[FileMappingValue]] = Field(default_factory=dict)


class FileMappingRename(BaseModel):
    """Relocate one target path within one source key of a package entry."""

    type: Literal["rename"] = "rename"
    package_name: str
    index_key: str
    old_target_path: str
    new_target_path: str
    entry_snapshot: EntrySnapshot | None = None


class DependencyUpdate(BaseModel):
    """Patch only version/dependencies of a package entry."""

    type: Literal["dependency-update"] = "dependency-update"
    package_name: str
    version: str | None = None
    content_root: str | None = None
    dependencies: list[str] | None = None


class PackageRemoval(BaseModel):
    """Drop a package entry (uninstall)."""

    type: Literal["remove"] = "remove"
    package_name: str


IndexMutation = Annotated[
    PackageEntryUpdate | FileAugmentation | FileMappingRename | DependencyUpdate | PackageRemoval,
    Field(discriminator="type"),
]


class FlushResult(BaseModel):
    """What happened during a flush. Mutations are never retried."""

    applied: int = 0
    skipped: int = 0
    discarded: int = 0
    written: bool = False
    warnings: list[str] = Field(default_factory=list)


class IndexWriteCollector:
    """
    Buffers index mutations for one installation wave.

    Guarantees at most one index read and one index write per flush, and
    isolates failures: a mutation that cannot be applied is skipped with a
    warning while the rest still apply.

    Example:
        >>> collector = IndexWriteCollector()
        >>> collector.record_dependency_update(package_name="a", version="1.0.0", content_root="pkgs/a")
        >>> result = await collector.flush(Path("/workspace"))
    """

    def __init__(self) -> None:
        self._mutations: list[IndexMutation] = []

    def record_package_update(
        self,
        package_name: str,
        path: str,
        files: dict[str, list[FileMappingValue]],
        version: str | None = None,
        dependencies: list[str] | None = None,
    ) -> None:
        """Record a full package entry upsert (creates or replaces the entry)."""
        self._mutations.append(
            PackageEntryUpdate(
                package_name=package_name,
                path=path,
                version=version,
                files=files,
                dependencies=dependencies,
            )
        )

    def record_file_augmentation(self, package_name: str, files: dict[str, list[FileMappingValue]]) -> None:
        """Record additive file mappings for an existing package (root files, etc.)."""
        self._mutations.append(FileAugmentation(package_name=package_name, files=files))

    def record_file_mapping_rename(
        self,
        package_name: str,
        index_key: str,
        old_target_path: str,
        new_target_path: str,
        entry_snapshot: EntrySnapshot | None = None,
    ) -> None:
        """Record a target path relocation."""
        self._mutations.append(
            FileMappingRename(
                package_name=package_name,
                index_key=index_key,
                old_target_path=old_target_path,
                new_target_path=new_target_path,
                entry_snapshot=entry_snapshot,
            )
        )

    def record_dependency_update(
        self,
        package_name: str,
        version: str | None = None,
        content_root: str | None = None,
        dependencies: list[str] | None = None,
    ) -> None:
        """Record a version/dependency patch for a package."""
        self._mutations.append(
            DependencyUpdate(
                package_name=package_name,
                version=version,
                content_root=content_root,
                dependencies=dependencies,
            )
        )

    def record_package_removal(self, package_name: str) -> None:
        """Record removal of a package entry."""
        self._mutations.append(PackageRemoval(package_name=package_name))

    @property
    def has_mutations(self) -> bool:
        """True if any mutations are buffered."""
        return bool(self._mutations)

    @property
    def mutations(self) -> list[IndexMutation]:
        """Buffered mutations in insertion order (copy)."""
        return list(self._mutations)

    async def flush(self, target_dir: Path) -> FlushResult:
        """
        Apply all buffered mutations in one read-modify-write cycle, then clear the buffer.

        The buffer is cleared whatever happens. If the index cannot be read the
        whole flush is skipped; if it cannot be written the in-memory result is
        lost. Both cases discard the buffered mutations and are reported in the
        returned ``FlushResult`` as data loss.

        Args:
            target_dir: Workspace directory containing the index

        Returns:
            FlushResult describing applied/skipped/discarded mutations
        """
        result = FlushResult()
        if not self._mutations:
            return result

        mutations, self._mutations = self._mutations, []

        try:
            index = read_workspace_index(target_dir)
        except WorkspaceIndexError as e:
            message = f"Could not read workspace index, discarding {len(mutations)} index updates: {e.message}"
            logger.warning(message)
            result.discarded = len(mutations)
            result.warnings.append(message)
            return result

        for mutation in mutations:
            try:
                index = apply_mutation(index, mutation, target_dir)
                result.applied += 1
            except IndexMutationError as e:
                message = f"Skipped index update ({mutation.type}) for {mutation.package_name}: {e.message}"
                logger.warning(message)
                result.skipped += 1
                result.warnings.append(message)

        try:
            write_workspace_index(target_dir, index)
            result.written = True
            logger.debug(f"Flushed {result.applied} index updates")
        except WorkspaceIndexError as e:
            message = f"Could not write workspace index, {result.applied} index updates lost: {e.message}"
            logger.warning(message)
            result.discarded = result.applied
            result.warnings.append(message)

        return result


def apply_mutation(
    index: WorkspaceIndex,
    mutation: IndexMutation,
    target_dir: Path,
) -> WorkspaceIndex:
    """
    Apply one mutation, returning a new index (the input is not modified).

    Args:
        index: Current index
        mutation: Mutation to apply
        target_dir: Workspace directory (for formatting stored paths)

    Returns:
        Updated copy of the index

    Raises:
        IndexMutationError: If the mutation cannot be applied
    """
    updated = index.model_copy(deep=True)
    packages = updated.packages

    if isinstance(mutation, PackageEntryUpdate):
        existing = packages.get(mutation.package_name)
        entry = existing.model_copy() if existing else WorkspaceIndexPackage(path="")
        entry.path = format_path_for_index(mutation.path, target_dir)
        entry.files = sort_mapping(mutation.files)
        if mutation.version:
            entry.version = mutation.version
        if mutation.dependencies:
            entry.dependencies = list(mutation.dependencies)
        packages[mutation.package_name] = entry

    elif isinstance(mutation, FileAugmentation):
        existing = packages.get(mutation.package_name)
        if existing is None:
            raise IndexMutationError(
                f"Package '{mutation.package_name}' is not in the index",
                context={"package": mutation.package_name},
            )
        files = dict(existing.files)
        for key, values in mutation.files.items():
            files[key] = dedupe_mappings([*files.get(key, []), *values])
        existing.files = files

    elif isinstance(mutation, FileMappingRename):
        entry = packages.get(mutation.package_name)
        if entry is None:
            if mutation.entry_snapshot is None:
                raise IndexMutationError(
                    f"Package '{mutation.package_name}' is not in the index and no snapshot was provided",
                    context={"package": mutation.package_name},
                )
            snapshot = mutation.entry_snapshot
            entry = WorkspaceIndexPackage(
                path=format_path_for_index(snapshot.path, target_dir),
                version=snapshot.version,
                files=sort_mapping(snapshot.files),
            )
            packages[mutation.package_name] = entry

        values = entry.files.get(mutation.index_key)
        if values is not None:
            old = normalize_path(mutation.old_target_path)
            new = normalize_path(mutation.new_target_path)
            for i, mapping in enumerate(values):
                if normalize_path(get_target_path(mapping)) == old:
                    values[i] = new if isinstance(mapping, str) else mapping.model_copy(update={"target": new})
                    break
            entry.files[mutation.index_key] = dedupe_mappings(values)

    elif isinstance(mutation, DependencyUpdate):
        existing = packages.get(mutation.package_name)
        if existing is not None:
            if mutation.version:
                existing.version = mutation.version
            if mutation.dependencies:
                existing.dependencies = list(mutation.dependencies)
        elif mutation.content_root:
            packages[mutation.package_name] = WorkspaceIndexPackage(
                path=format_path_for_index(mutation.content_root, target_dir),
                version=mutation.version,
                dependencies=list(mutation.dependencies) if mutation.dependencies else None,
                files={},
            )
        else:
            raise IndexMutationError(
                f"Package '{mutation.package_name}' is not in the index and no content root was provided",
                context={"package": mutation.package_name},
            )

    elif isinstance(mutation, PackageRemoval):
        if packages.pop(mutation.package_name, None) is None:
            raise IndexMutationError(
                f"Package '{mutation.package_name}' is not in the index",
                context={"package": mutation.package_name},
            )

    return updated
