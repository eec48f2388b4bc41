"""Path utilities shared by the index, the graph builder and the flow engine.

Index files store paths relative to the workspace when possible and in tilde
notation when they live under the user's home directory, so the same index
stays valid when a workspace or home directory moves.
"""

import posixpath
from pathlib import Path


def expand_tilde_path(value: str, home: Path | None = None) -> str:
    """Expand a leading ``~`` or ``~/`` to the home directory.

    Other inputs (including ``~user/...`` forms) are returned unchanged.

    Args:
        value: Path as written in a manifest or index
        home: Home directory override (defaults to ``Path.home()``)

    Returns:
        Expanded path string
    """
    if not value.startswith("~"):
        return value

    home_dir = home or Path.home()
    if value == "~":
        return str(home_dir)
    if value.startswith("~/"):
        return str(home_dir / value[2:])
    return value


def normalize_path(value: str) -> str:
    """Normalize a path for comparison and storage (forward slashes, no ``./``)."""
    normalized = posixpath.normpath(value.replace("\\", "/"))
    return "" if normalized == "." else normalized


def format_path_for_index(path: str | Path, workspace_root: Path, home: Path | None = None) -> str:
    """Format a path for storage in the workspace index.

    - Relative and tilde paths are normalized and kept as-is
    - Absolute paths under the workspace become workspace-relative
    - Absolute paths under the home directory become ``~/...``
    - Anything else stays absolute

    Args:
        path: Path to format
        workspace_root: Workspace root directory
        home: Home directory override

    Returns:
        Path string suitable for the index file

    Example:
        >>> format_path_for_index(Path("/ws/.claude/rules/a.md"), Path("/ws"))
        '.claude/rules/a.md'
    """
    raw = str(path)
    if raw.startswith("~"):
        return normalize_path(raw)

    candidate = Path(raw)
    if not candidate.is_absolute():
        return normalize_path(raw)

    resolved = Path(normalize_path(candidate.as_posix()))
    workspace = Path(normalize_path(workspace_root.as_posix()))
    if resolved == workspace or workspace in resolved.parents:
        relative = resolved.relative_to(workspace).as_posix()
        return relative if relative != "." else "./"

    home_dir = Path(normalize_path((home or Path.home()).as_posix()))
    if resolved == home_dir or home_dir in resolved.parents:
        relative = resolved.relative_to(home_dir).as_posix()
        return "~/" if relative == "." else f"~/{relative}"

    return resolved.as_posix()


def resolve_index_path(value: str, workspace_root: Path, home: Path | None = None) -> Path:
    """Inverse of ``format_path_for_index``: turn a stored path into an absolute one."""
    expanded = expand_tilde_path(value, home)
    candidate = Path(expanded)
    if candidate.is_absolute():
        return candidate
    return workspace_root / candidate


def resolve_declared_path(declared: str, declared_in_dir: Path, home: Path | None = None) -> Path:
    """Resolve a path dependency as written in a manifest to an absolute path.

    Relative paths are resolved against the directory of the declaring manifest.
    """
    expanded = Path(expand_tilde_path(declared, home))
    if not expanded.is_absolute():
        expanded = declared_in_dir / expanded
    return Path(normalize_path(expanded.as_posix()))


def normalize_git_url(url: str) -> str:
    """Normalize a git URL for stable identity keys.

    Rewrites ``git@host:path`` to ``https://host/path``, lowercases, and strips
    a trailing ``.git``.

    Example:
        >>> normalize_git_url("git@GitHub.com:Org/Repo.git")
        'https://github.com/org/repo'
    """
    normalized = url.strip()
    if normalized.startswith("git@") and ":" in normalized:
        host, _, rest = normalized[len("git@") :].partition(":")
        normalized = f"https://{host}/{rest}"

    normalized = normalized.lower()
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")]
    return normalized
