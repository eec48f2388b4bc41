"""Write conflicts between packages targeting the same file.

Packages write in ascending priority order so the highest-priority package's
file lands last and wins. Equal priorities are broken by package name: the
lexicographically greater name ranks higher. Conflicts are reported, never
treated as errors.
"""

import logging
from collections.abc import Iterable
from typing import TypeVar

from pydantic import BaseModel
from pydantic import Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TargetWrite(BaseModel):
    """One package writing one target path."""

    path: str
    package: str
    priority: int


class Conflict(BaseModel):
    """A target path written by more than one package."""

    path: str
    winner: str
    winner_priority: int
    losers: list[str] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Conflict in {self.path}: {self.winner} (priority {self.winner_priority}) overwrites {', '.join(self.losers)}"


def rank(priority: int, package: str) -> tuple[int, str]:
    """Sort key for write order: lower ranks write first, the highest rank wins."""
    return (priority, package)


def order_by_priority(items: Iterable[T], priority_of, name_of) -> list[T]:
    """
    Order items for writing: ascending priority, ties by ascending name.

    Args:
        items: Items to order
        priority_of: Callable returning an item's priority
        name_of: Callable returning an item's package name

    Returns:
        New list in write order (winner last)
    """
    return sorted(items, key=lambda item: rank(priority_of(item), name_of(item)))


def resolve_conflicts(writes: Iterable[TargetWrite]) -> list[Conflict]:
    """
    Group writes by target path and pick a winner for every shared path.

    The result does not depend on the order of ``writes``.

    Args:
        writes: All resolved target writes

    Returns:
        Conflicts sorted by path
    """
    by_path: dict[str, dict[str, int]] = {}
    for write in writes:
        writers = by_path.setdefault(write.path, {})
        writers[write.package] = max(write.priority, writers.get(write.package, write.priority))

    conflicts = []
    for path in sorted(by_path):
        writers = by_path[path]
        if len(writers) < 2:
            continue
        ordered = sorted(writers.items(), key=lambda item: rank(item[1], item[0]), reverse=True)
        winner, winner_priority = ordered[0]
        conflicts.append(
            Conflict(
                path=path,
                winner=winner,
                winner_priority=winner_priority,
                losers=[package for package, _ in ordered[1:]],
            )
        )
    return conflicts


class ConflictResolver:
    """
    Tracks target claims across the packages of one installation run.

    Tasks in a wave run concurrently, so physical write order alone cannot
    guarantee the winner. Each whole-file write first claims its path; a claim
    that ranks below an existing claim is refused and the write is skipped.

    Example:
        >>> resolver = ConflictResolver()
        >>> resolver.claim(".claude/rules/a.md", "pkg-b", priority=5)
        True
        >>> resolver.claim(".claude/rules/a.md", "pkg-a", priority=1)
        False
        >>> resolver.conflicts()[0].winner
        'pkg-b'
    """

    def __init__(self) -> None:
        self._writes: dict[str, dict[str, int]] = {}

    def claim(self, path: str, package: str, priority: int) -> bool:
        """
        Claim a target path for a package.

        Returns:
            True if the package may write the path (it now ranks highest)
        """
        writers = self._writes.setdefault(path, {})
        best = max((rank(p, name) for name, p in writers.items() if name != package), default=None)
        writers[package] = max(priority, writers.get(package, priority))
        allowed = best is None or rank(writers[package], package) > best
        if not allowed:
            logger.debug(f"{package} (priority {priority}) loses {path} to a higher-priority package")
        return allowed

    def writes(self) -> list[TargetWrite]:
        """All recorded claims."""
        return [
            TargetWrite(path=path, package=package, priority=priority)
            for path, writers in self._writes.items()
            for package, priority in writers.items()
        ]

    def conflicts(self) -> list[Conflict]:
        """Conflicts among everything claimed so far."""
        return resolve_conflicts(self.writes())
