"""Package installation exceptions.

Every error carries a human-readable message plus a context dict so callers
can render what failed and where.
"""


class OpenPackageError(Exception):
    """Base exception for package operations."""

    def __init__(self, message: str, context: dict | None = None):
        """Initialize with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dict with additional context (package names, paths, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ManifestError(OpenPackageError):
    """Invalid or unreadable package manifest."""


class SourceResolutionError(OpenPackageError):
    """Dependency declaration could not be resolved to a source."""


class PackageLoadError(OpenPackageError):
    """Source loader failed to load a package."""


class PlatformConfigError(OpenPackageError):
    """Invalid platform configuration or unknown platform."""


class FlowError(OpenPackageError):
    """Flow could not be executed for a source file."""


class WorkspaceIndexError(OpenPackageError):
    """Workspace index file could not be read or written."""


class IndexMutationError(OpenPackageError):
    """A single index mutation could not be applied."""


class InstallError(OpenPackageError):
    """Package installation or removal failed."""
