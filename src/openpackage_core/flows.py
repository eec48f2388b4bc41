"""Declarative flows: package file -> platform target path(s).

A flow maps files matching a ``from`` pattern onto one or more workspace
targets:

    - from: rules/{name}.md
      to: .cursor/rules/{name}.mdc
    - from: agents/*.md
      to: [.claude/agents/{sourceFile}, .opencode/agent/{sourceFile}]
    - from: mcp.yml
      to:
        $switch:
          field: platform
          cases:
            - {pattern: claude, value: .claude/settings.json}
          default: .mcp.json
      merge: deep
      map:
        - $rename: {"servers.*": "mcpServers.*"}

Plain flows copy the file. Flows with ``map`` or ``merge`` parse the file as a
structured document, transform it, and merge it into the target.
"""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from .documents import StructuredDocument
from .documents import is_structured
from .documents import parse_document
from .documents import read_document
from .documents import render_document
from .exceptions import FlowError
from .patterns import resolve_pattern
from .pipeline import apply_operations
from .pipeline import deep_merge
from .pipeline import extract_all_keys
from .pipeline import matches_case
from .utils import expand_tilde_path
from .utils import normalize_path
from .workspace_index import MergeStrategy

logger = logging.getLogger(__name__)

COMPOSITE_START = "<!-- package: {name} -->"
COMPOSITE_END = "<!-- /package: {name} -->"

# A write guard decides whether this package may overwrite a target path.
WriteGuard = Callable[[str], bool]


# ---------------------------------------------------------------------------
# Target variants
# ---------------------------------------------------------------------------


class LiteralTarget(BaseModel):
    """``to: path/{name}.md``"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["literal"] = "literal"
    path: str


class ListTarget(BaseModel):
    """``to: [a, b]``"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["list"] = "list"
    paths: list[str]


class SwitchCase(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: Any
    value: str | list[str]


class SwitchTarget(BaseModel):
    """``to: {$switch: {field, cases: [{pattern, value}], default}}``; first matching case wins."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["switch"] = "switch"
    field: str
    cases: list[SwitchCase] = Field(default_factory=list)
    default: str | list[str] | None = None


Target = LiteralTarget | ListTarget | SwitchTarget


def parse_target(raw: Any) -> Target:
    """
    Convert a raw ``to`` value into a target variant.

    Raises:
        FlowError: If the value is not a string, a list of strings, or a ``$switch`` object
    """
    if isinstance(raw, LiteralTarget | ListTarget | SwitchTarget):
        return raw
    if isinstance(raw, str):
        return LiteralTarget(path=raw)
    if isinstance(raw, list) and all(isinstance(item, str) for item in raw):
        return ListTarget(paths=raw)
    if isinstance(raw, dict) and "$switch" in raw:
        switch = raw["$switch"]
        if not isinstance(switch, dict) or not isinstance(switch.get("field"), str):
            raise FlowError("$switch requires a 'field' and 'cases'", context={"to": raw})
        return SwitchTarget(
            field=switch["field"],
            cases=[SwitchCase(**case) for case in switch.get("cases", [])],
            default=switch.get("default"),
        )
    raise FlowError(f"Invalid flow target: {raw!r}", context={"to": raw})


def resolve_target(target: Target, variables: dict[str, Any], captured_name: str | None = None) -> list[str]:
    """
    Resolve a target variant into concrete target paths.

    Args:
        target: Target variant
        variables: Flow variables used for ``{token}`` substitution and switch evaluation
        captured_name: Value captured by ``{name}`` in the source pattern

    Returns:
        Resolved paths (empty when a switch has no matching case and no default)
    """
    if isinstance(target, LiteralTarget):
        paths = [target.path]
    elif isinstance(target, ListTarget):
        paths = list(target.paths)
    else:
        field_name = target.field[2:] if target.field.startswith("$$") else target.field
        value = variables.get(field_name)
        chosen = target.default
        for case in target.cases:
            if matches_case(value, case.pattern):
                chosen = case.value
                break
        if chosen is None:
            return []
        paths = [chosen] if isinstance(chosen, str) else list(chosen)

    return [resolve_pattern(path, variables, captured_name) for path in paths]


# ---------------------------------------------------------------------------
# Flow model
# ---------------------------------------------------------------------------


class Flow(BaseModel):
    """A declarative from -> to rule. Static configuration, never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(alias="from")
    to: Target
    map: list[dict[str, Any]] | None = None
    merge: MergeStrategy | None = None
    when: dict[str, Any] | None = None

    @field_validator("to", mode="before")
    @classmethod
    def _parse_to(cls, value: Any) -> Target:
        return parse_target(value)

    @property
    def is_structured(self) -> bool:
        """True if the flow transforms documents rather than copying bytes."""
        return bool(self.map) or self.merge in ("deep", "shallow")


class FlowContext(BaseModel):
    """Per package x platform x source file execution context."""

    workspace_root: Path
    package_root: Path
    platform: str
    package_name: str
    direction: Literal["install", "save"] = "install"
    variables: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False


class FlowResult(BaseModel):
    """Outcome of one flow for one source file."""

    source: str
    targets: list[str] = Field(default_factory=list)
    superseded: list[str] = Field(default_factory=list)
    success: bool = True
    skipped: bool = False
    merge: MergeStrategy | None = None
    keys: list[str] = Field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class FlowExecutor:
    """
    Executes one flow for one source file.

    Writes land on disk immediately unless the context is a dry run. An
    optional write guard is consulted before overwriting a whole file so the
    caller can keep a higher-priority package's file in place; merged targets
    are never guarded because every package's contribution is kept.
    """

    def __init__(self, write_guard: WriteGuard | None = None):
        self.write_guard = write_guard

    def execute_flow(self, flow: Flow, context: FlowContext) -> FlowResult:
        """
        Execute a flow.

        Args:
            flow: Flow to execute
            context: Context; ``variables`` must include ``sourcePath``

        Returns:
            FlowResult (``skipped`` when the ``when`` condition excludes the file)

        Raises:
            FlowError: If the source cannot be read/transformed or a target cannot be written
        """
        variables = context.variables
        source_path = str(variables["sourcePath"])
        result = FlowResult(source=source_path, merge=flow.merge)

        if flow.when and any(variables.get(key) != expected for key, expected in flow.when.items()):
            result.skipped = True
            return result

        targets = resolve_target(flow.to, variables, variables.get("capturedName"))
        if not targets:
            result.skipped = True
            return result

        source_file = context.package_root / source_path
        if not source_file.is_file():
            raise FlowError(f"Source file not found: {source_path}", context={"source": source_path})

        document: StructuredDocument | None = None
        if flow.is_structured:
            if not is_structured(source_file):
                raise FlowError(
                    f"Flow with map/merge requires a JSON, YAML or markdown source: {source_path}",
                    context={"source": source_path},
                )
            document = read_document(source_file)
            if flow.map:
                document.data = apply_operations(document.data, flow.map, variables)

        for target in targets:
            normalized = normalize_path(target)
            target_file = _target_file(normalized, context.workspace_root)
            guarded = flow.merge not in ("deep", "shallow", "composite")
            if guarded and self.write_guard is not None and not self.write_guard(normalized):
                logger.debug(f"Skipping {normalized}: owned by a higher-priority package")
                result.superseded.append(normalized)
                continue

            try:
                if flow.merge == "composite":
                    content = _compose(source_file.read_text(encoding="utf-8"), target_file, context.package_name)
                elif document is not None:
                    content = _merge_document(document, target_file, flow.merge)
                else:
                    content = None

                if not context.dry_run:
                    target_file.parent.mkdir(parents=True, exist_ok=True)
                    if content is None:
                        target_file.write_bytes(source_file.read_bytes())
                    else:
                        target_file.write_text(content, encoding="utf-8")
            except UnicodeDecodeError as e:
                raise FlowError(
                    f"Cannot merge into {normalized}: {source_path} or the target is not valid UTF-8 ({e})",
                    context={"source": source_path, "target": normalized},
                ) from e
            except OSError as e:
                raise FlowError(f"Failed to write {normalized}: {e}", context={"target": normalized}) from e

            result.targets.append(normalized)

        if document is not None and flow.merge in ("deep", "shallow"):
            result.keys = extract_all_keys(document.data)
        return result


def _target_file(target: str, workspace_root: Path) -> Path:
    expanded = Path(expand_tilde_path(target))
    return expanded if expanded.is_absolute() else workspace_root / expanded


def _merge_document(document: StructuredDocument, target_file: Path, merge: MergeStrategy | None) -> str:
    merged = StructuredDocument(data=dict(document.data), body=document.body)
    if merge in ("deep", "shallow") and target_file.is_file():
        existing = parse_document(target_file.read_text(encoding="utf-8"), target_file)
        if merge == "deep":
            merged.data = deep_merge(existing.data, document.data)
        else:
            merged.data = {**existing.data, **document.data}
        merged.body = existing.body or document.body
    return render_document(merged, target_file)


def _compose(content: str, target_file: Path, package_name: str) -> str:
    """Insert or replace this package's marked section in a shared file."""
    start = COMPOSITE_START.format(name=package_name)
    end = COMPOSITE_END.format(name=package_name)
    section = f"{start}\n{content.rstrip()}\n{end}\n"

    existing = target_file.read_text(encoding="utf-8") if target_file.is_file() else ""
    begin = existing.find(start)
    finish = existing.find(end, begin + len(start)) if begin != -1 else -1
    if begin != -1 and finish != -1:
        return existing[:begin] + section + existing[finish + len(end) :].lstrip("\n")
    if existing and not existing.endswith("\n"):
        existing += "\n"
    return f"{existing}\n{section}" if existing else section


def remove_composite_section(content: str, package_name: str) -> str:
    """Remove this package's marked section from a shared file's content."""
    start = COMPOSITE_START.format(name=package_name)
    end = COMPOSITE_END.format(name=package_name)
    begin = content.find(start)
    finish = content.find(end, begin + len(start)) if begin != -1 else -1
    if begin == -1 or finish == -1:
        return content
    return (content[:begin].rstrip("\n") + "\n" + content[finish + len(end) :].lstrip("\n")).lstrip("\n")
