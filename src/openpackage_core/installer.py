"""Flow-based package installation mechanism.

Projects a package's files onto every detected platform through the platform
flows, then records the resulting file mappings in the wave's index collector.

The installer does not know where packages come from or which packages to
install: the executor hands it one ``InstallContext`` at a time.
"""

import asyncio
import logging
import posixpath
from pathlib import Path

from pydantic import BaseModel
from pydantic import Field

from .conflicts import Conflict
from .conflicts import ConflictResolver
from .conflicts import order_by_priority
from .documents import parse_document
from .documents import render_document
from .exceptions import FlowError
from .exceptions import InstallError
from .exceptions import OpenPackageError
from .flows import Flow
from .flows import FlowContext
from .flows import FlowExecutor
from .flows import FlowResult
from .flows import WriteGuard
from .flows import remove_composite_section
from .index_collector import IndexWriteCollector
from .models import CommandResult
from .models import InstallContext
from .patterns import extract_captured_name
from .patterns import match_pattern
from .patterns import resolve_pattern
from .pipeline import delete_nested_key
from .pipeline import is_effectively_empty
from .platforms import PlatformRegistry
from .utils import expand_tilde_path
from .workspace_index import FileMapping
from .workspace_index import FileMappingValue
from .workspace_index import dedupe_mappings
from .workspace_index import get_target_path
from .workspace_index import read_workspace_index

logger = logging.getLogger(__name__)


class FlowInstallContext(BaseModel):
    """One package on one platform."""

    package_name: str
    package_root: Path
    workspace_root: Path
    platform: str
    package_version: str | None = None
    priority: int = 0
    dry_run: bool = False


class FlowInstallError(BaseModel):
    """A flow that failed for one source file."""

    flow_from: str
    source_path: str
    message: str


class FlowInstallResult(BaseModel):
    """Aggregated outcome of running flows."""

    success: bool = True
    files_processed: int = 0
    files_written: int = 0
    flow_results: list[FlowResult] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    errors: list[FlowInstallError] = Field(default_factory=list)

    def extend(self, other: "FlowInstallResult") -> None:
        self.success = self.success and other.success
        self.files_processed += other.files_processed
        self.files_written += other.files_written
        self.flow_results.extend(other.flow_results)
        self.errors.extend(other.errors)


def _flow_files(context: FlowInstallContext, registry: PlatformRegistry) -> tuple[str, list[tuple[Flow, FlowContext]]]:
    """Resolve every (flow, source file) pair for one package on one platform."""
    definition = registry.get(context.platform)
    variables = {
        "name": context.package_name,
        "version": context.package_version,
        "priority": context.priority,
        "platform": definition.id,
        "rootDir": definition.root_dir,
        "rootFile": definition.root_file,
    }

    pairs: list[tuple[Flow, FlowContext]] = []
    for flow in registry.flows_for(definition.id):
        pattern = resolve_pattern(flow.from_, variables)
        for source_path in match_pattern(pattern, context.package_root):
            captured = extract_captured_name(source_path, pattern)
            source_variables = {
                **variables,
                "sourcePath": source_path,
                "sourceDir": posixpath.dirname(source_path),
                "sourceFile": posixpath.basename(source_path),
            }
            if captured is not None:
                source_variables["capturedName"] = captured

            flow_context = FlowContext(
                workspace_root=context.workspace_root,
                package_root=context.package_root,
                platform=definition.id,
                package_name=context.package_name,
                variables=source_variables,
                dry_run=context.dry_run,
            )
            pairs.append((flow, flow_context))
    return definition.id, pairs


def _run_flow_file(executor: FlowExecutor, flow: Flow, flow_context: FlowContext, result: FlowInstallResult) -> None:
    """Run one flow for one source file; any failure becomes a per-file error."""
    source_path = str(flow_context.variables["sourcePath"])
    try:
        flow_result = executor.execute_flow(flow, flow_context)
    except Exception as e:
        if isinstance(e, FlowError):
            message = e.message
        elif isinstance(e, OSError):
            message = str(e)
        else:
            message = f"{type(e).__name__}: {e}"
        logger.error(f"Failed to execute flow for {source_path}: {message}")
        result.success = False
        result.errors.append(FlowInstallError(flow_from=flow.from_, source_path=source_path, message=message))
        return

    if flow_result.skipped:
        return
    result.files_processed += 1
    if not flow_context.dry_run:
        result.files_written += len(flow_result.targets)
    result.flow_results.append(flow_result)


def _log_processed(context: FlowInstallContext, platform: str, result: FlowInstallResult) -> None:
    if result.files_processed:
        logger.info(
            f"Processed {result.files_processed} files for {context.package_name} on {platform}"
            + (" (dry run)" if context.dry_run else f", wrote {result.files_written} files")
        )


def install_package_with_flows(
    context: FlowInstallContext,
    registry: PlatformRegistry,
    write_guard: WriteGuard | None = None,
) -> FlowInstallResult:
    """
    Execute every applicable flow for one package on one platform.

    A failure for one source file is recorded and the remaining files are
    still processed; ``success`` is False if any file failed.

    Args:
        context: Package and platform to install
        registry: Platform registry (global flows run before platform flows)
        write_guard: Optional guard consulted before whole-file writes

    Returns:
        FlowInstallResult
    """
    result = FlowInstallResult()
    platform, pairs = _flow_files(context, registry)
    if not pairs:
        logger.debug(f"No source files match the flows of platform {platform}")
        return result

    executor = FlowExecutor(write_guard=write_guard)
    for flow, flow_context in pairs:
        _run_flow_file(executor, flow, flow_context, result)

    _log_processed(context, platform, result)
    return result


async def install_package_with_flows_async(
    context: FlowInstallContext,
    registry: PlatformRegistry,
    write_guard: WriteGuard | None = None,
) -> FlowInstallResult:
    """
    Same as ``install_package_with_flows``, yielding to the event loop before each source file.

    Each file is processed without interruption, so shared merged targets are
    never read and written by two packages at once, while timeouts and other
    packages in the wave get a chance to run between files.
    """
    result = FlowInstallResult()
    platform, pairs = _flow_files(context, registry)

    executor = FlowExecutor(write_guard=write_guard)
    for flow, flow_context in pairs:
        await asyncio.sleep(0)
        _run_flow_file(executor, flow, flow_context, result)

    _log_processed(context, platform, result)
    return result


class PackageFlowInput(BaseModel):
    """A package to install with ``install_packages_with_flows``."""

    package_name: str
    package_root: Path
    package_version: str | None = None
    priority: int = 0


def install_packages_with_flows(
    packages: list[PackageFlowInput],
    workspace_root: Path,
    platform: str,
    registry: PlatformRegistry,
    dry_run: bool = False,
) -> FlowInstallResult:
    """
    Install several packages onto one platform with priority-based conflict resolution.

    Packages write in ascending priority order so the highest-priority package
    wins shared targets; every shared target is reported as a conflict.
    """
    aggregated = FlowInstallResult()
    resolver = ConflictResolver()

    for package in order_by_priority(packages, lambda p: p.priority, lambda p: p.package_name):
        context = FlowInstallContext(
            package_name=package.package_name,
            package_root=package.package_root,
            workspace_root=workspace_root,
            platform=platform,
            package_version=package.package_version,
            priority=package.priority,
            dry_run=dry_run,
        )

        def guard(path: str, name: str = package.package_name, priority: int = package.priority) -> bool:
            return resolver.claim(path, name, priority)

        aggregated.extend(install_package_with_flows(context, registry, write_guard=guard))

    aggregated.conflicts = resolver.conflicts()
    for conflict in aggregated.conflicts:
        logger.warning(conflict.message)
    return aggregated


def build_file_mappings(flow_results: list[FlowResult]) -> dict[str, list[FileMappingValue]]:
    """
    Build index file mappings from flow results.

    Deep/shallow merged targets record the keys this package contributed;
    composite targets record the merge strategy so uninstall removes only this
    package's section; everything else is a bare target path.
    """
    mappings: dict[str, list[FileMappingValue]] = {}
    for flow_result in flow_results:
        if not flow_result.success:
            continue
        for target in flow_result.targets:
            if flow_result.keys and flow_result.merge in ("deep", "shallow"):
                mapping: FileMappingValue = FileMapping(target=target, merge=flow_result.merge, keys=flow_result.keys)
            elif flow_result.merge == "composite":
                mapping = FileMapping(target=target, merge="composite")
            else:
                mapping = target
            mappings.setdefault(flow_result.source, []).append(mapping)
    return {source: dedupe_mappings(values) for source, values in mappings.items()}


class FlowInstallPipeline:
    """
    Install pipeline that runs platform flows for a package.

    Args:
        registry: Platform registry
        conflicts: Run-wide conflict resolver shared by every package

    Example:
        >>> pipeline = FlowInstallPipeline(PlatformRegistry.load(workspace), ConflictResolver())
        >>> result = await pipeline.install(context, collector)
    """

    def __init__(self, registry: PlatformRegistry, conflicts: ConflictResolver | None = None):
        self.registry = registry
        self.conflicts = conflicts or ConflictResolver()

    async def install(self, context: InstallContext, collector: IndexWriteCollector) -> CommandResult:
        """
        Install one package onto the detected (or requested) platforms.

        Records one ``upsert`` for the package in ``collector`` (skipped on dry
        runs). Never writes the index directly.
        """
        package = context.package
        try:
            platforms = context.platforms or self.registry.detect(context.workspace_root)
            if not platforms:
                logger.info(f"No platforms detected in {context.workspace_root}; nothing to project for {package.name}")

            result = FlowInstallResult()
            for platform in platforms:
                flow_context = FlowInstallContext(
                    package_name=package.name,
                    package_root=package.content_root,
                    workspace_root=context.workspace_root,
                    platform=platform,
                    package_version=package.version,
                    priority=context.priority,
                    dry_run=context.options.dry_run,
                )

                def guard(path: str) -> bool:
                    return self.conflicts.claim(path, package.name, context.priority)

                result.extend(await install_package_with_flows_async(flow_context, self.registry, write_guard=guard))
        except OpenPackageError as e:
            return CommandResult(success=False, error=e.message)

        if not context.options.dry_run:
            collector.record_package_update(
                package_name=package.name,
                path=str(package.content_root),
                version=package.version,
                files=build_file_mappings(result.flow_results),
                dependencies=context.dependencies,
            )

        data = {
            "platforms": platforms,
            "files_processed": result.files_processed,
            "files_written": result.files_written,
            "targets": sorted({target for r in result.flow_results for target in r.targets}),
        }
        if not result.success:
            failed = ", ".join(error.source_path for error in result.errors)
            return CommandResult(success=False, data=data, error=f"{len(result.errors)} files failed: {failed}")
        return CommandResult(success=True, data=data)


async def uninstall_package(
    package_name: str,
    workspace_root: Path,
    dry_run: bool = False,
) -> list[str]:
    """
    Remove a package's files from the workspace and drop its index entry.

    - Whole-file targets are deleted unless another installed package also maps them
    - Deep/shallow merged targets lose only this package's keys (the file is
      deleted when nothing remains)
    - Composite targets lose only this package's section

    Args:
        package_name: Package to remove
        workspace_root: Workspace directory
        dry_run: Report what would be removed without touching anything

    Returns:
        Target paths that were removed or edited

    Raises:
        InstallError: If the package is not installed or removal fails
    """
    index = read_workspace_index(workspace_root)
    entry = index.get_entry(package_name)
    if entry is None:
        raise InstallError(
            f"Package '{package_name}' is not installed in {workspace_root}",
            context={"package": package_name, "workspace": str(workspace_root)},
        )

    shared = {
        get_target_path(mapping)
        for name, other in index.packages.items()
        if name != package_name
        for mappings in other.files.values()
        for mapping in mappings
    }

    touched: list[str] = []
    try:
        logger.info(f"Uninstalling package: {package_name}")
        for mappings in entry.files.values():
            for mapping in mappings:
                target = get_target_path(mapping)
                target_file = Path(expand_tilde_path(target))
                if not target_file.is_absolute():
                    target_file = workspace_root / target_file
                if not target_file.exists():
                    continue

                if isinstance(mapping, FileMapping) and mapping.merge == "composite":
                    if not dry_run:
                        remaining = remove_composite_section(target_file.read_text(encoding="utf-8"), package_name)
                        if remaining.strip():
                            target_file.write_text(remaining, encoding="utf-8")
                        else:
                            target_file.unlink()
                elif isinstance(mapping, FileMapping) and mapping.keys:
                    if not dry_run:
                        document = parse_document(target_file.read_text(encoding="utf-8"), target_file)
                        for key in mapping.keys:
                            delete_nested_key(document.data, key)
                        if is_effectively_empty(document.data) and not document.body.strip():
                            target_file.unlink()
                        else:
                            target_file.write_text(render_document(document, target_file), encoding="utf-8")
                elif target in shared:
                    logger.debug(f"Keeping {target}: also mapped by another package")
                    continue
                elif not dry_run:
                    target_file.unlink()
                touched.append(target)

        if not dry_run:
            collector = IndexWriteCollector()
            collector.record_package_removal(package_name)
            await collector.flush(workspace_root)

        logger.info(f"Successfully uninstalled: {package_name}")
    except (OSError, UnicodeDecodeError, FlowError) as e:
        raise InstallError(f"Failed to uninstall package '{package_name}': {e}") from e

    return touched
