"""Data passed between the loader, the planner and the install pipeline."""

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .identity import PackageIdentity

DEFAULT_TASK_TIMEOUT = 300.0


class InstallMode(str, Enum):
    """``install`` fetches packages; ``apply`` re-projects packages already in the workspace index."""

    INSTALL = "install"
    APPLY = "apply"


class LoadedPackage(BaseModel):
    """Package contents as returned by a source loader (immutable)."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None
    content_root: Path
    files: list[str] = Field(default_factory=list)


class InstallOptions(BaseModel):
    """Options forwarded to the install pipeline."""

    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    force: bool = False
    mode: InstallMode = InstallMode.INSTALL


class InstallContext(BaseModel):
    """Everything the install pipeline needs for one package."""

    model_config = ConfigDict(frozen=True)

    identity: PackageIdentity
    package: LoadedPackage
    workspace_root: Path
    priority: int
    dependencies: list[str] = Field(default_factory=list)
    platforms: list[str] | None = None
    options: InstallOptions = Field(default_factory=InstallOptions)


class CommandResult(BaseModel):
    """Outcome of one install pipeline run."""

    success: bool
    data: Any = None
    error: str | None = None
