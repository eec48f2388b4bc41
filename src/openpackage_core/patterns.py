"""Flow source patterns.

A ``from`` pattern is a package-relative path that may contain:

- ``{name}``: captures one path segment (no ``/``); the captured value can be
  substituted into target paths
- ``*``: matches any run of characters; ``**`` also scans subdirectories
- ``{var}``: substituted from the flow variables before matching

``{name}`` is reserved: it is only ever substituted from an explicit capture,
never from ambient variables such as the package name.
"""

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

NAME_TOKEN = "{name}"
_TOKEN_RE = re.compile(r"\{(\w+)\}")
_SPLIT_RE = re.compile(r"(\{name\}|\*)")


def has_wildcards(pattern: str) -> bool:
    """True if the pattern needs a directory scan rather than an existence check."""
    return "*" in pattern or NAME_TOKEN in pattern


def pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a pattern into an anchored regular expression.

    ``{name}`` becomes a capturing group of non-separator characters, ``*``
    becomes ``.*``, everything else is matched literally.

    Example:
        >>> pattern_to_regex("rules/{name}.md").match("rules/typescript.md").group(1)
        'typescript'
    """
    parts = []
    for piece in _SPLIT_RE.split(pattern):
        if piece == NAME_TOKEN:
            parts.append("([^/]+)")
        elif piece == "*":
            parts.append(".*")
        elif piece:
            parts.append(re.escape(piece))
    return re.compile("^" + "".join(parts) + "$")


def resolve_pattern(pattern: str, variables: Mapping[str, Any], captured_name: str | None = None) -> str:
    """
    Substitute ``{token}`` occurrences from variables.

    ``{name}`` is only substituted when ``captured_name`` is given; unknown
    tokens are left untouched.

    Args:
        pattern: Pattern or target path template
        variables: Flow variables
        captured_name: Value captured by ``{name}`` in the source pattern

    Returns:
        Pattern with tokens substituted
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key == "name":
            return captured_name if captured_name is not None else match.group(0)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _TOKEN_RE.sub(_replace, pattern)


def extract_captured_name(source_path: str, pattern: str) -> str | None:
    """
    Extract the value captured by ``{name}`` from a matched source path.

    Example:
        >>> extract_captured_name("rules/typescript.md", "rules/{name}.md")
        'typescript'
    """
    if NAME_TOKEN not in pattern:
        return None
    match = pattern_to_regex(pattern).match(source_path)
    if match and match.group(1):
        return match.group(1)
    return None


def match_pattern(pattern: str, base_dir: Path) -> list[str]:
    """
    Find package files matching a pattern.

    Patterns without wildcards are existence-checked directly. Otherwise the
    static directory prefix is scanned: only that directory when the wildcards
    are confined to the file name, recursively when a directory segment
    contains one.

    Args:
        pattern: Package-relative pattern (variables already substituted)
        base_dir: Package content root

    Returns:
        Sorted package-relative POSIX paths of matching files
    """
    pattern = pattern.replace("\\", "/").lstrip("/")

    if not has_wildcards(pattern):
        candidate = base_dir / pattern
        return [pattern] if candidate.is_file() else []

    segments = pattern.split("/")
    static: list[str] = []
    for segment in segments[:-1]:
        if has_wildcards(segment):
            break
        static.append(segment)
    recursive = len(static) < len(segments) - 1 or "**" in pattern

    search_dir = base_dir.joinpath(*static) if static else base_dir
    if not search_dir.is_dir():
        return []

    regex = pattern_to_regex(pattern)
    matches = []
    if recursive:
        for dirpath, _dirnames, filenames in os.walk(search_dir):
            for filename in filenames:
                relative = Path(dirpath, filename).relative_to(base_dir).as_posix()
                if regex.match(relative):
                    matches.append(relative)
    else:
        for entry in search_dir.iterdir():
            if not entry.is_file():
                continue
            relative = entry.relative_to(base_dir).as_posix()
            if regex.match(relative):
                matches.append(relative)

    logger.debug(f"Pattern {pattern} matched {len(matches)} files in {base_dir}")
    return sorted(matches)
