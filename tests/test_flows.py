"""Tests for flow targets and the flow executor."""

import json
import tempfile
from pathlib import Path

import pytest
from openpackage_core import Flow
from openpackage_core import FlowContext
from openpackage_core import FlowExecutor
from openpackage_core import resolve_target
from openpackage_core.exceptions import FlowError
from openpackage_core.flows import ListTarget
from openpackage_core.flows import LiteralTarget
from openpackage_core.flows import SwitchTarget
from openpackage_core.flows import parse_target
from openpackage_core.flows import remove_composite_section


def _context(workspace: Path, package: Path, source_path: str, **extra) -> FlowContext:
    variables = {"name": "pkg", "version": "1.0.0", "priority": 1, "platform": "claude", "sourcePath": source_path}
    variables.update(extra.pop("variables", {}))
    return FlowContext(
        workspace_root=workspace,
        package_root=package,
        platform=variables["platform"],
        package_name="pkg",
        variables=variables,
        **extra,
    )


def _dirs(tmpdir: str) -> tuple[Path, Path]:
    workspace = Path(tmpdir) / "ws"
    package = Path(tmpdir) / "pkg"
    workspace.mkdir()
    package.mkdir()
    return workspace, package


def test_parse_target_variants():
    """Test string, list and $switch spellings."""
    assert parse_target(".claude/a.md") == LiteralTarget(path=".claude/a.md")
    assert parse_target(["a", "b"]) == ListTarget(paths=["a", "b"])

    switch = parse_target({"$switch": {"field": "platform", "cases": [{"pattern": "claude", "value": "x"}]}})
    assert isinstance(switch, SwitchTarget)
    assert switch.cases[0].value == "x"

    with pytest.raises(FlowError):
        parse_target(42)


def test_resolve_switch_target_first_match_wins():
    """Test ordered case evaluation with default fallback."""
    target = parse_target(
        {
            "$switch": {
                "field": "platform",
                "cases": [
                    {"pattern": "cursor", "value": ".cursor/mcp.json"},
                    {"pattern": "c*", "value": ".{platform}/settings.json"},
                ],
                "default": ".mcp.json",
            }
        }
    )

    assert resolve_target(target, {"platform": "cursor"}) == [".cursor/mcp.json"]
    assert resolve_target(target, {"platform": "claude"}) == [".claude/settings.json"]
    assert resolve_target(target, {"platform": "opencode"}) == [".mcp.json"]


def test_resolve_switch_without_default_resolves_nothing():
    """Test a switch with no match and no default."""
    target = SwitchTarget(field="platform", cases=[])

    assert resolve_target(target, {"platform": "claude"}) == []


def test_flow_from_yaml_mapping():
    """Test the 'from' alias and target parsing on the model."""
    flow = Flow.model_validate({"from": "rules/{name}.md", "to": [".a/{name}.md", ".b/{name}.md"]})

    assert flow.from_ == "rules/{name}.md"
    assert resolve_target(flow.to, {}, "ts") == [".a/ts.md", ".b/ts.md"]
    assert not flow.is_structured


def test_copy_flow_with_captured_name():
    """Test a plain copy flow substitutes the captured name."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (package / "rules").mkdir()
        (package / "rules" / "typescript.md").write_text("# TS rules\n")

        flow = Flow.model_validate({"from": "rules/{name}.md", "to": ".cursor/rules/{name}.mdc"})
        context = _context(workspace, package, "rules/typescript.md", variables={"capturedName": "typescript"})
        result = FlowExecutor().execute_flow(flow, context)

        assert result.targets == [".cursor/rules/typescript.mdc"]
        assert (workspace / ".cursor/rules/typescript.mdc").read_text() == "# TS rules\n"
        assert result.keys == []


def test_dry_run_writes_nothing():
    """Test dry runs resolve targets without writing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (package / "AGENTS.md").write_text("agents")

        flow = Flow.model_validate({"from": "AGENTS.md", "to": "CLAUDE.md"})
        result = FlowExecutor().execute_flow(flow, _context(workspace, package, "AGENTS.md", dry_run=True))

        assert result.targets == ["CLAUDE.md"]
        assert not (workspace / "CLAUDE.md").exists()


def test_when_condition_skips_flow():
    """Test a 'when' mismatch skips the file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (package / "AGENTS.md").write_text("agents")

        flow = Flow.model_validate({"from": "AGENTS.md", "to": "AGENTS.md", "when": {"platform": "opencode"}})
        result = FlowExecutor().execute_flow(flow, _context(workspace, package, "AGENTS.md"))

        assert result.skipped
        assert not (workspace / "AGENTS.md").exists()


def test_deep_merge_flow_records_contributed_keys():
    """Test deep merge keeps existing content and reports only this package's keys."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (workspace / ".mcp.json").write_text(json.dumps({"mcpServers": {"existing": {"url": "e"}}}))
        (package / "mcp.json").write_text(json.dumps({"servers": {"github": {"url": "g"}}}))

        flow = Flow.model_validate(
            {
                "from": "mcp.json",
                "to": ".mcp.json",
                "merge": "deep",
                "map": [{"$rename": {"servers.*": "mcpServers.*"}}],
            }
        )
        result = FlowExecutor().execute_flow(flow, _context(workspace, package, "mcp.json"))

        merged = json.loads((workspace / ".mcp.json").read_text())
        assert merged == {"mcpServers": {"existing": {"url": "e"}, "github": {"url": "g"}}}
        assert result.merge == "deep"
        assert result.keys == ["mcpServers.github.url"]


def test_map_on_markdown_frontmatter():
    """Test map operations act on frontmatter and keep the body."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (package / "agents").mkdir()
        (package / "agents" / "reviewer.md").write_text("---\ntools:\n  read: true\n  bash: false\n---\nReview code.\n")

        flow = Flow.model_validate(
            {
                "from": "agents/{name}.md",
                "to": ".claude/agents/{name}.md",
                "map": [
                    {
                        "$transform": {
                            "field": "tools",
                            "steps": [{"filter": {"value": True}}, {"keys": True}, {"map": "capitalize"}, {"join": ", "}],
                        }
                    },
                    {"$set": {"package": "$$name"}},
                ],
            }
        )
        context = _context(workspace, package, "agents/reviewer.md", variables={"capturedName": "reviewer"})
        FlowExecutor().execute_flow(flow, context)

        content = (workspace / ".claude/agents/reviewer.md").read_text()
        assert content == "---\ntools: Read\npackage: pkg\n---\nReview code.\n"


def test_composite_sections_are_replaced_in_place():
    """Test composite merge keeps other packages' sections."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (workspace / "CLAUDE.md").write_text("# Project\n")
        (package / "AGENTS.md").write_text("Use tabs.\n")

        flow = Flow.model_validate({"from": "AGENTS.md", "to": "CLAUDE.md", "merge": "composite"})
        executor = FlowExecutor()
        executor.execute_flow(flow, _context(workspace, package, "AGENTS.md"))
        (package / "AGENTS.md").write_text("Use spaces.\n")
        result = executor.execute_flow(flow, _context(workspace, package, "AGENTS.md"))

        content = (workspace / "CLAUDE.md").read_text()
        assert content == "# Project\n\n<!-- package: pkg -->\nUse spaces.\n<!-- /package: pkg -->\n"
        assert result.merge == "composite"
        assert remove_composite_section(content, "pkg") == "# Project\n"


def test_write_guard_refuses_whole_file_writes():
    """Test a refused target is reported as superseded and left untouched."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (workspace / "CLAUDE.md").write_text("winner")
        (package / "AGENTS.md").write_text("loser")

        flow = Flow.model_validate({"from": "AGENTS.md", "to": "CLAUDE.md"})
        result = FlowExecutor(write_guard=lambda path: False).execute_flow(
            flow, _context(workspace, package, "AGENTS.md")
        )

        assert result.targets == []
        assert result.superseded == ["CLAUDE.md"]
        assert (workspace / "CLAUDE.md").read_text() == "winner"


def test_structured_flow_rejects_unstructured_source():
    """Test map/merge flows require a structured source."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace, package = _dirs(tmpdir)
        (package / "notes.txt").write_text("plain")

        flow = Flow.model_validate({"from": "notes.txt", "to": "notes.json", "merge": "deep"})

        with pytest.raises(FlowError):
            FlowExecutor().execute_flow(flow, _context(workspace, package, "notes.txt"))
