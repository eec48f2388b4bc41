"""Tests for flow-based installation and uninstall."""

import asyncio
import json
import tempfile
from pathlib import Path

import pytest
import yaml
from openpackage_core import ConflictResolver
from openpackage_core import FileMapping
from openpackage_core import FlowInstallPipeline
from openpackage_core import IndexWriteCollector
from openpackage_core import InstallContext
from openpackage_core import InstallError
from openpackage_core import InstallOptions
from openpackage_core import LoadedPackage
from openpackage_core import PackageIdentity
from openpackage_core import PlatformRegistry
from openpackage_core import install_package_with_flows
from openpackage_core import install_packages_with_flows
from openpackage_core import read_workspace_index
from openpackage_core import uninstall_package
from openpackage_core.flows import FlowResult
from openpackage_core.installer import FlowInstallContext
from openpackage_core.installer import PackageFlowInput
from openpackage_core.installer import build_file_mappings

REGISTRY_CONFIG = {
    "platforms": {
        "claude": {
            "rootDir": ".claude",
            "rootFile": "CLAUDE.md",
            "flows": [
                {"from": "rules/{name}.md", "to": ".claude/rules/{name}.md"},
                {"from": "mcp.json", "to": ".mcp.json", "merge": "deep"},
                {"from": "AGENTS.md", "to": "CLAUDE.md", "merge": "composite"},
                {"from": "settings.json", "to": ".claude/settings.json", "merge": "deep", "map": [{"$bad": 1}]},
            ],
        },
        "cursor": {
            "rootDir": ".cursor",
            "flows": [{"from": "rules/{name}.md", "to": ".cursor/rules/{name}.mdc"}],
        },
    }
}


def _registry() -> PlatformRegistry:
    return PlatformRegistry.from_mapping(REGISTRY_CONFIG)


def _make_package(root: Path, name: str, rule_text: str = "rule", server: str = "github") -> Path:
    package = root / name
    (package / "rules").mkdir(parents=True)
    (package / "openpackage.yml").write_text(f"name: {name}\nversion: 1.0.0\n")
    (package / "rules" / "style.md").write_text(rule_text)
    (package / "mcp.json").write_text(json.dumps({"mcpServers": {server: {"url": server}}}))
    (package / "AGENTS.md").write_text(f"{name} instructions\n")
    return package


def _install_context(workspace: Path, package: Path, name: str, priority: int = 1, **options) -> InstallContext:
    return InstallContext(
        identity=PackageIdentity(name=name, version="1.0.0", content_root=package),
        package=LoadedPackage(name=name, version="1.0.0", content_root=package),
        workspace_root=workspace,
        priority=priority,
        dependencies=["base"],
        platforms=["claude"],
        options=InstallOptions(**options),
    )


def test_install_package_with_flows():
    """Test flows run per matched file and targets are written."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")

        result = install_package_with_flows(
            FlowInstallContext(package_name="pkg-a", package_root=package, workspace_root=workspace, platform="claude"),
            _registry(),
        )

        assert result.success
        assert result.files_processed == 3
        assert (workspace / ".claude/rules/style.md").read_text() == "rule"
        assert json.loads((workspace / ".mcp.json").read_text()) == {"mcpServers": {"github": {"url": "github"}}}
        assert "pkg-a instructions" in (workspace / "CLAUDE.md").read_text()


def test_per_file_errors_do_not_stop_other_files():
    """Test one failing flow is recorded while the rest still install."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")
        (package / "settings.json").write_text("{}")

        result = install_package_with_flows(
            FlowInstallContext(package_name="pkg-a", package_root=package, workspace_root=workspace, platform="claude"),
            _registry(),
        )

        assert not result.success
        assert [error.source_path for error in result.errors] == ["settings.json"]
        assert (workspace / ".claude/rules/style.md").exists()


def _config_registry(yaml_map: list | None = None) -> PlatformRegistry:
    return PlatformRegistry.from_mapping(
        {
            "platforms": {
                "claude": {
                    "rootDir": ".claude",
                    "flows": [
                        {"from": "cfg/*.json", "to": "out/{sourceFile}", "merge": "deep"},
                        {"from": "cfg/*.yml", "to": "out/{sourceFile}", "merge": "deep", "map": yaml_map or []},
                    ],
                }
            }
        }
    )


def test_undecodable_source_is_a_per_file_error():
    """Test a non-UTF-8 source fails alone while its sibling is merged."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = Path(tmpdir) / "pkg-a"
        (package / "cfg").mkdir(parents=True)
        (package / "cfg" / "a.json").write_bytes(b'{"k": "\xff\xfe"}')
        (package / "cfg" / "b.json").write_text('{"k": "ok"}')

        result = install_package_with_flows(
            FlowInstallContext(package_name="pkg-a", package_root=package, workspace_root=workspace, platform="claude"),
            _config_registry(),
        )

        assert not result.success
        assert [error.source_path for error in result.errors] == ["cfg/a.json"]
        assert "not valid UTF-8" in result.errors[0].message
        assert result.files_processed == 1
        assert json.loads((workspace / "out/b.json").read_text()) == {"k": "ok"}
        assert not (workspace / "out/a.json").exists()


def test_undecodable_merge_target_is_a_per_file_error():
    """Test a non-UTF-8 existing target is reported instead of raised."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        (workspace / "out").mkdir(parents=True)
        (workspace / "out" / "a.json").write_bytes(b'{"k": "\xff"}')
        package = Path(tmpdir) / "pkg-a"
        (package / "cfg").mkdir(parents=True)
        (package / "cfg" / "a.json").write_text('{"k": "ok"}')

        result = install_package_with_flows(
            FlowInstallContext(package_name="pkg-a", package_root=package, workspace_root=workspace, platform="claude"),
            _config_registry(),
        )

        assert not result.success
        assert [error.source_path for error in result.errors] == ["cfg/a.json"]
        assert (workspace / "out" / "a.json").read_bytes() == b'{"k": "\xff"}'


def test_rename_over_integer_keys_installs():
    """Test a wildcard rename over a mapping with YAML integer keys still installs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = Path(tmpdir) / "pkg-a"
        (package / "cfg").mkdir(parents=True)
        (package / "cfg" / "servers.yml").write_text("servers:\n  1: x\n  github:\n    url: g\n")

        result = install_package_with_flows(
            FlowInstallContext(package_name="pkg-a", package_root=package, workspace_root=workspace, platform="claude"),
            _config_registry([{"$rename": {"servers.*": "mcp.*"}}]),
        )

        assert result.success
        assert result.files_processed == 1
        written = yaml.safe_load((workspace / "out/servers.yml").read_text())
        assert written["mcp"] == {"github": {"url": "g"}}
        assert written["servers"] == {1: "x"}


def test_install_packages_with_flows_highest_priority_wins():
    """Test shared targets go to the higher-priority package regardless of input order."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        workspace = root / "ws"
        workspace.mkdir()
        low = _make_package(root, "low", rule_text="low rule")
        high = _make_package(root, "high", rule_text="high rule")

        result = install_packages_with_flows(
            [
                PackageFlowInput(package_name="high", package_root=high, priority=5),
                PackageFlowInput(package_name="low", package_root=low, priority=1),
            ],
            workspace,
            "cursor",
            _registry(),
        )

        assert (workspace / ".cursor/rules/style.mdc").read_text() == "high rule"
        (conflict,) = result.conflicts
        assert conflict.path == ".cursor/rules/style.mdc"
        assert conflict.winner == "high"
        assert conflict.losers == ["low"]


def test_build_file_mappings():
    """Test bare targets for copies and mappings for merged files."""
    results = [
        FlowResult(source="rules/a.md", targets=[".claude/rules/a.md", ".cursor/rules/a.mdc"]),
        FlowResult(source="mcp.json", targets=[".mcp.json"], merge="deep", keys=["mcpServers.x.url"]),
        FlowResult(source="AGENTS.md", targets=["CLAUDE.md"], merge="composite"),
        FlowResult(source="broken.json", targets=["x.json"], success=False),
    ]

    mappings = build_file_mappings(results)

    assert mappings == {
        "rules/a.md": [".claude/rules/a.md", ".cursor/rules/a.mdc"],
        "mcp.json": [FileMapping(target=".mcp.json", merge="deep", keys=["mcpServers.x.url"])],
        "AGENTS.md": [FileMapping(target="CLAUDE.md", merge="composite")],
    }


@pytest.mark.asyncio
async def test_pipeline_records_upsert_in_collector():
    """Test the pipeline records the index entry instead of writing it."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")
        collector = IndexWriteCollector()

        result = await FlowInstallPipeline(_registry()).install(_install_context(workspace, package, "pkg-a"), collector)

        assert result.success
        assert result.data["platforms"] == ["claude"]
        assert not (workspace / ".openpackage").exists()
        (mutation,) = collector.mutations
        assert mutation.type == "upsert"
        assert mutation.package_name == "pkg-a"
        assert mutation.dependencies == ["base"]
        assert mutation.files["rules/style.md"] == [".claude/rules/style.md"]


@pytest.mark.asyncio
async def test_pipeline_yields_between_source_files():
    """Test the pipeline lets other tasks run while it processes files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")
        pipeline = FlowInstallPipeline(_registry())

        task = asyncio.create_task(pipeline.install(_install_context(workspace, package, "pkg-a"), IndexWriteCollector()))
        await asyncio.sleep(0)

        assert not task.done()
        result = await task
        assert result.success
        assert result.data["files_processed"] == 3


@pytest.mark.asyncio
async def test_pipeline_dry_run_records_nothing():
    """Test dry runs neither write files nor record index updates."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")
        collector = IndexWriteCollector()

        result = await FlowInstallPipeline(_registry()).install(
            _install_context(workspace, package, "pkg-a", dry_run=True), collector
        )

        assert result.success
        assert ".claude/rules/style.md" in result.data["targets"]
        assert not collector.has_mutations
        assert not (workspace / ".claude").exists()


@pytest.mark.asyncio
async def test_pipeline_unknown_platform_fails():
    """Test an unknown platform yields a failed result, not an exception."""
    with tempfile.TemporaryDirectory() as tmpdir:
        workspace = Path(tmpdir) / "ws"
        workspace.mkdir()
        package = _make_package(Path(tmpdir), "pkg-a")
        context = _install_context(workspace, package, "pkg-a").model_copy(update={"platforms": ["notepad"]})

        result = await FlowInstallPipeline(_registry()).install(context, IndexWriteCollector())

        assert not result.success
        assert "Unknown platform" in result.error


@pytest.mark.asyncio
async def test_pipeline_shared_conflicts_respect_priority():
    """Test a lower-priority package installed later does not overwrite."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        workspace = root / "ws"
        workspace.mkdir()
        high = _make_package(root, "high", rule_text="high rule")
        low = _make_package(root, "low", rule_text="low rule")
        pipeline = FlowInstallPipeline(_registry(), ConflictResolver())
        collector = IndexWriteCollector()

        await pipeline.install(_install_context(workspace, high, "high", priority=5), collector)
        await pipeline.install(_install_context(workspace, low, "low", priority=1), collector)

        assert (workspace / ".claude/rules/style.md").read_text() == "high rule"
        assert pipeline.conflicts.conflicts()[0].winner == "high"


@pytest.mark.asyncio
async def test_uninstall_removes_only_this_package():
    """Test uninstall deletes owned files and surgically edits shared ones."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        workspace = root / "ws"
        workspace.mkdir()
        pkg_a = _make_package(root, "pkg-a", server="github")
        pkg_b = _make_package(root, "pkg-b", server="linear")
        (pkg_b / "rules" / "style.md").rename(pkg_b / "rules" / "other.md")

        pipeline = FlowInstallPipeline(_registry())
        collector = IndexWriteCollector()
        await pipeline.install(_install_context(workspace, pkg_a, "pkg-a", priority=1), collector)
        await pipeline.install(_install_context(workspace, pkg_b, "pkg-b", priority=2), collector)
        await collector.flush(workspace)

        touched = await uninstall_package("pkg-a", workspace)

        assert ".claude/rules/style.md" in touched
        assert not (workspace / ".claude/rules/style.md").exists()
        assert (workspace / ".claude/rules/other.md").exists()
        assert json.loads((workspace / ".mcp.json").read_text()) == {"mcpServers": {"linear": {"url": "linear"}}}
        claude_md = (workspace / "CLAUDE.md").read_text()
        assert "pkg-a instructions" not in claude_md
        assert "pkg-b instructions" in claude_md
        assert list(read_workspace_index(workspace).packages) == ["pkg-b"]


@pytest.mark.asyncio
async def test_uninstall_dry_run_and_missing_package():
    """Test dry-run uninstall touches nothing; unknown packages raise."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        workspace = root / "ws"
        workspace.mkdir()
        package = _make_package(root, "pkg-a")
        collector = IndexWriteCollector()
        await FlowInstallPipeline(_registry()).install(_install_context(workspace, package, "pkg-a"), collector)
        await collector.flush(workspace)

        touched = await uninstall_package("pkg-a", workspace, dry_run=True)

        assert ".claude/rules/style.md" in touched
        assert (workspace / ".claude/rules/style.md").exists()
        assert read_workspace_index(workspace).is_installed("pkg-a")

        with pytest.raises(InstallError, match="not installed"):
            await uninstall_package("ghost", workspace)
