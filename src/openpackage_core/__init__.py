"""openpackage-core - Installation orchestration for AI-assistant configuration packages.

Resolves a workspace's dependency graph, plans the installation, projects each
package's files onto platform conventions through declarative flows, and
records the result in the workspace index.

This is library mechanism: apps inject policy (sources, loaders, platforms).
"""

from .conflicts import Conflict
from .conflicts import ConflictResolver
from .conflicts import order_by_priority
from .conflicts import resolve_conflicts
from .discovery import PackageResources
from .discovery import discover_package_files
from .discovery import discover_package_resources
from .exceptions import FlowError
from .exceptions import IndexMutationError
from .exceptions import InstallError
from .exceptions import ManifestError
from .exceptions import OpenPackageError
from .exceptions import PackageLoadError
from .exceptions import PlatformConfigError
from .exceptions import SourceResolutionError
from .exceptions import WorkspaceIndexError
from .executor import DependencyResolutionExecutor
from .executor import ExecutionResult
from .executor import ExecutionSummary
from .executor import ExecutorOptions
from .executor import PackageResult
from .flows import Flow
from .flows import FlowContext
from .flows import FlowExecutor
from .flows import FlowResult
from .flows import resolve_target
from .graph import Cycle
from .graph import DependencyGraph
from .graph import DependencyGraphBuilder
from .graph import GraphOptions
from .graph import NodeState
from .graph import ResolutionDependencyNode
from .graph import resolve_dependency_graph
from .identity import PackageIdentity
from .identity import ResolvedSource
from .identity import SourceType
from .identity import compute_dependency_key
from .index_collector import FlushResult
from .index_collector import IndexWriteCollector
from .index_collector import apply_mutation
from .installer import FlowInstallPipeline
from .installer import install_package_with_flows
from .installer import install_package_with_flows_async
from .installer import install_packages_with_flows
from .installer import uninstall_package
from .loader import CompositeSourceLoader
from .loader import LoaderOptions
from .loader import PackageLoader
from .loader import PathSourceLoader
from .loader import WorkspaceIndexSourceLoader
from .models import CommandResult
from .models import InstallContext
from .models import InstallMode
from .models import InstallOptions
from .models import LoadedPackage
from .patterns import extract_captured_name
from .patterns import match_pattern
from .patterns import pattern_to_regex
from .pipeline import apply_operations
from .planner import InstallationPlan
from .planner import InstallationPlanner
from .planner import PlannerOptions
from .platforms import PlatformDefinition
from .platforms import PlatformRegistry
from .protocols import InstallPipelineProtocol
from .protocols import SourceLoaderProtocol
from .protocols import SourceResolverProtocol
from .protocols import VersionResolverProtocol
from .schema import DependencyDeclaration
from .schema import PackageManifest
from .sources import LocalSourceResolver
from .workspace_index import FileMapping
from .workspace_index import WorkspaceIndex
from .workspace_index import WorkspaceIndexPackage
from .workspace_index import read_workspace_index
from .workspace_index import write_workspace_index

__all__ = [
    # Manifests and identity
    "PackageManifest",
    "DependencyDeclaration",
    "PackageIdentity",
    "ResolvedSource",
    "SourceType",
    "compute_dependency_key",
    # Graph
    "DependencyGraph",
    "DependencyGraphBuilder",
    "GraphOptions",
    "NodeState",
    "ResolutionDependencyNode",
    "Cycle",
    "resolve_dependency_graph",
    "LocalSourceResolver",
    # Loading
    "PackageLoader",
    "LoaderOptions",
    "PathSourceLoader",
    "WorkspaceIndexSourceLoader",
    "CompositeSourceLoader",
    "LoadedPackage",
    "PackageResources",
    "discover_package_files",
    "discover_package_resources",
    # Planning
    "InstallationPlanner",
    "InstallationPlan",
    "PlannerOptions",
    "InstallContext",
    "InstallOptions",
    "InstallMode",
    # Flows
    "Flow",
    "FlowContext",
    "FlowExecutor",
    "FlowResult",
    "resolve_target",
    "pattern_to_regex",
    "match_pattern",
    "extract_captured_name",
    "apply_operations",
    "PlatformDefinition",
    "PlatformRegistry",
    # Conflicts
    "Conflict",
    "ConflictResolver",
    "order_by_priority",
    "resolve_conflicts",
    # Workspace index
    "WorkspaceIndex",
    "WorkspaceIndexPackage",
    "FileMapping",
    "read_workspace_index",
    "write_workspace_index",
    "IndexWriteCollector",
    "FlushResult",
    "apply_mutation",
    # Installation
    "FlowInstallPipeline",
    "install_package_with_flows",
    "install_package_with_flows_async",
    "install_packages_with_flows",
    "uninstall_package",
    "DependencyResolutionExecutor",
    "ExecutorOptions",
    "ExecutionResult",
    "ExecutionSummary",
    "PackageResult",
    "CommandResult",
    # Protocols
    "SourceResolverProtocol",
    "SourceLoaderProtocol",
    "InstallPipelineProtocol",
    "VersionResolverProtocol",
    # Exceptions
    "OpenPackageError",
    "ManifestError",
    "SourceResolutionError",
    "PackageLoadError",
    "PlatformConfigError",
    "FlowError",
    "WorkspaceIndexError",
    "IndexMutationError",
    "InstallError",
]

__version__ = "0.1.0"
