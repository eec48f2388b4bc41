"""Tests for package file discovery."""

import tempfile
from pathlib import Path

from openpackage_core import discover_package_files
from openpackage_core import discover_package_resources


def _make_package(root: Path) -> None:
    (root / "rules" / "lang").mkdir(parents=True)
    (root / "agents").mkdir()
    (root / "skills" / "review").mkdir(parents=True)
    (root / ".git").mkdir()

    (root / "openpackage.yml").write_text("name: pkg\n")
    (root / "AGENTS.md").write_text("# Agents\n")
    (root / "rules" / "style.md").write_text("style")
    (root / "rules" / "lang" / "python.md").write_text("python")
    (root / "agents" / "reviewer.md").write_text("reviewer")
    (root / "skills" / "review" / "SKILL.md").write_text("skill")
    (root / "skills" / "review" / "checklist.txt").write_text("check")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main")


def test_discover_package_files():
    """Test discovery skips hidden directories and the manifest."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _make_package(root)

        files = discover_package_files(root)

        assert files == [
            "AGENTS.md",
            "agents/reviewer.md",
            "rules/lang/python.md",
            "rules/style.md",
            "skills/review/SKILL.md",
            "skills/review/checklist.txt",
        ]


def test_discover_missing_directory():
    """Test discovery of a directory that does not exist."""
    with tempfile.TemporaryDirectory() as tmpdir:
        assert discover_package_files(Path(tmpdir) / "missing") == []


def test_discover_package_resources():
    """Test grouping resources by convention."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        _make_package(root)

        resources = discover_package_resources(root)

        assert resources.has_resources()
        assert resources.rules == ["lang/python", "style"]
        assert resources.agents == ["reviewer"]
        assert resources.commands == []
        assert resources.skills == ["review"]


def test_discover_empty_package():
    """Test a package with only a manifest has no resources."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "openpackage.yml").write_text("name: empty\n")

        assert discover_package_files(root) == []
        assert not discover_package_resources(root).has_resources()
