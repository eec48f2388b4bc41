"""Package file discovery - Convention over configuration.

A package's installable files are every regular file under its content root,
except hidden directories (``.git``, ``.openpackage``, ...) and the manifest
itself. Which of those files land where is decided later by platform flows.
"""

from pathlib import Path

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from .schema import MANIFEST_FILE


class PackageResources(BaseModel):
    """Discovered resources in a package, grouped by top-level directory (immutable)."""

    model_config = ConfigDict(frozen=True)

    rules: list[str] = Field(default_factory=list)
    agents: list[str] = Field(default_factory=list)
    commands: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)

    def has_resources(self) -> bool:
        """Check if any resources were discovered."""
        return bool(self.rules or self.agents or self.commands or self.skills)


def discover_package_files(content_root: Path) -> list[str]:
    """
    List a package's files as sorted content-root-relative POSIX paths.

    Args:
        content_root: Package directory

    Returns:
        Relative file paths (hidden directories and the manifest excluded)

    Example:
        >>> discover_package_files(Path("packages/pkg-a"))
        ['AGENTS.md', 'rules/typescript.md']
    """
    if not content_root.is_dir():
        return []

    files = []
    for path in content_root.rglob("*"):
        if not path.is_file():
            continue
        relative = path.relative_to(content_root)
        if any(part.startswith(".") for part in relative.parts[:-1]):
            continue
        if relative.as_posix() == MANIFEST_FILE:
            continue
        files.append(relative.as_posix())
    return sorted(files)


def discover_package_resources(content_root: Path) -> PackageResources:
    """
    Group a package's markdown resources by convention.

    Convention:
    - rules/ → rule .md files (recursive)
    - agents/ → agent .md files
    - commands/ → command .md files
    - skills/ → one entry per skill directory containing SKILL.md

    Args:
        content_root: Package directory

    Returns:
        PackageResources with discovered names (paths without the .md extension)
    """
    files = discover_package_files(content_root)

    def _stems(prefix: str, recursive: bool) -> list[str]:
        stems = []
        for file in files:
            if not file.startswith(prefix) or not file.endswith(".md"):
                continue
            name = file[len(prefix) : -len(".md")]
            if recursive or "/" not in name:
                stems.append(name)
        return stems

    skills = sorted({file.split("/")[1] for file in files if file.startswith("skills/") and file.endswith("/SKILL.md")})
    return PackageResources(
        rules=_stems("rules/", recursive=True),
        agents=_stems("agents/", recursive=False),
        commands=_stems("commands/", recursive=False),
        skills=skills,
    )
