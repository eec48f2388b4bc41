"""Platform registry - where each AI coding tool expects its files.

Platform configuration is static, read-only data:

    global:
      flows: [...]            # applied on every platform, before platform flows
    platforms:
      claude:
        name: Claude Code
        rootDir: .claude
        rootFile: CLAUDE.md
        detection: [.claude, CLAUDE.md]
        flows: [...]

``PlatformRegistry.load()`` layers the built-in configuration, the user's
``~/.openpackage/platforms.yml`` and the workspace's
``.openpackage/platforms.yml``. The resulting registry is an ordinary value:
construct it once and pass it to whatever needs it.
"""

import logging
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from .exceptions import FlowError
from .exceptions import PlatformConfigError
from .flows import Flow
from .pipeline import deep_merge
from .schema import WORKSPACE_DIR

logger = logging.getLogger(__name__)

PLATFORMS_FILE = "platforms.yml"


class PlatformDefinition(BaseModel):
    """One platform's conventions (immutable)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    root_dir: str = Field(alias="rootDir")
    root_file: str | None = Field(default=None, alias="rootFile")
    detection: list[str] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
    enabled: bool = True
    flows: list[Flow] = Field(default_factory=list)

    def detection_paths(self) -> list[str]:
        """Workspace-relative paths whose presence means the platform is in use."""
        if self.detection:
            return list(self.detection)
        paths = [self.root_dir]
        if self.root_file:
            paths.append(self.root_file)
        return paths


class PlatformRegistry:
    """
    Read-only view of platform definitions plus global flows.

    Example:
        >>> registry = PlatformRegistry.load(workspace_root=Path.cwd())
        >>> registry.detect(Path.cwd())
        ['claude', 'cursor']
    """

    def __init__(self, platforms: Mapping[str, PlatformDefinition], global_flows: list[Flow] | None = None):
        self._platforms = dict(platforms)
        self._global_flows = list(global_flows or [])
        self._aliases = {alias: pid for pid, definition in self._platforms.items() for alias in definition.aliases}

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "PlatformRegistry":
        """
        Build a registry from a configuration mapping.

        Raises:
            PlatformConfigError: If the configuration is invalid
        """
        try:
            global_flows = [Flow.model_validate(flow) for flow in (config.get("global") or {}).get("flows") or []]
            platforms = {}
            for pid, definition in (config.get("platforms") or {}).items():
                if definition is None:
                    continue
                platforms[pid] = PlatformDefinition.model_validate({"id": pid, "name": pid, **definition})
        except (ValidationError, FlowError) as e:
            raise PlatformConfigError(f"Invalid platform configuration: {e}") from e
        return cls(platforms, global_flows)

    @classmethod
    def load(cls, workspace_root: Path | None = None, home: Path | None = None) -> "PlatformRegistry":
        """
        Load built-in configuration with user and workspace overrides merged on top.

        Args:
            workspace_root: Workspace whose ``.openpackage/platforms.yml`` overrides apply
            home: Home directory override (defaults to ``Path.home()``)

        Returns:
            PlatformRegistry
        """
        config = builtin_platform_config()
        layers = [(home or Path.home()) / WORKSPACE_DIR / PLATFORMS_FILE]
        if workspace_root is not None:
            layers.append(workspace_root / WORKSPACE_DIR / PLATFORMS_FILE)

        for layer in layers:
            overrides = _read_config(layer)
            if overrides:
                logger.debug(f"Applying platform overrides from {layer}")
                config = deep_merge(config, overrides)

        return cls.from_mapping(config)

    def ids(self, include_disabled: bool = False) -> list[str]:
        """Platform ids in configuration order."""
        return [pid for pid, definition in self._platforms.items() if include_disabled or definition.enabled]

    def resolve_alias(self, name: str) -> str:
        """Map an alias to its platform id (ids map to themselves)."""
        return name if name in self._platforms else self._aliases.get(name, name)

    def get(self, platform: str) -> PlatformDefinition:
        """
        Get a platform definition by id or alias.

        Raises:
            PlatformConfigError: If the platform is unknown
        """
        pid = self.resolve_alias(platform)
        if pid not in self._platforms:
            raise PlatformConfigError(f"Unknown platform: {platform}", context={"platform": platform})
        return self._platforms[pid]

    @property
    def global_flows(self) -> list[Flow]:
        return list(self._global_flows)

    def flows_for(self, platform: str) -> list[Flow]:
        """Global flows followed by the platform's own flows."""
        return [*self._global_flows, *self.get(platform).flows]

    def detect(self, workspace_root: Path) -> list[str]:
        """Enabled platforms whose detection paths exist in the workspace."""
        detected = []
        for pid in self.ids():
            definition = self._platforms[pid]
            if any((workspace_root / path).exists() for path in definition.detection_paths()):
                detected.append(pid)
        return detected


def builtin_platform_config() -> dict[str, Any]:
    """The platform configuration shipped with the package."""
    text = resources.files(__package__).joinpath(PLATFORMS_FILE).read_text(encoding="utf-8")
    return yaml.safe_load(text) or {}


def _read_config(path: Path) -> dict[str, Any] | None:
    if not path.is_file():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        raise PlatformConfigError(f"Failed to read platform config {path}: {e}", context={"path": str(path)}) from e
    if data is not None and not isinstance(data, dict):
        raise PlatformConfigError(f"Platform config must be a mapping: {path}", context={"path": str(path)})
    return data
