"""Structured document I/O for flows.

The format is chosen by file extension: ``.json`` is JSON, ``.yml``/``.yaml``
is YAML, and markdown-like files (``.md``, ``.mdc``) carry their document in
YAML frontmatter with the body preserved alongside.
"""

import json
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import FlowError

JSON_SUFFIXES = {".json"}
YAML_SUFFIXES = {".yml", ".yaml"}
MARKDOWN_SUFFIXES = {".md", ".mdc", ".markdown"}

FRONTMATTER_DELIMITER = "---"


@dataclass
class StructuredDocument:
    """A parsed document plus any non-structured body (markdown only)."""

    data: dict[str, Any] = field(default_factory=dict)
    body: str = ""


def is_structured(path: Path | str) -> bool:
    """True if the file format has a structured document the map pipeline can act on."""
    return Path(path).suffix.lower() in JSON_SUFFIXES | YAML_SUFFIXES | MARKDOWN_SUFFIXES


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split markdown into (frontmatter, body). Missing frontmatter yields ``{}``."""
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        return {}, text

    for i in range(1, len(lines)):
        if lines[i].strip() == FRONTMATTER_DELIMITER:
            data = yaml.safe_load("".join(lines[1:i])) or {}
            if not isinstance(data, dict):
                raise FlowError("Frontmatter must be a mapping")
            return data, "".join(lines[i + 1 :])
    return {}, text


def parse_document(text: str, path: Path | str) -> StructuredDocument:
    """
    Parse text according to the file extension of ``path``.

    Raises:
        FlowError: If the content is invalid or the format is not structured
    """
    suffix = Path(path).suffix.lower()
    try:
        if suffix in JSON_SUFFIXES:
            data = json.loads(text) if text.strip() else {}
            body = ""
        elif suffix in YAML_SUFFIXES:
            data = yaml.safe_load(text) or {}
            body = ""
        elif suffix in MARKDOWN_SUFFIXES:
            data, body = split_frontmatter(text)
        else:
            raise FlowError(f"Unsupported document format: {path}", context={"path": str(path)})
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FlowError(f"Failed to parse {path}: {e}", context={"path": str(path)}) from e

    if not isinstance(data, dict):
        raise FlowError(f"Document root must be an object: {path}", context={"path": str(path)})
    return StructuredDocument(data=data, body=body)


def read_document(path: Path) -> StructuredDocument:
    """Read and parse a document from disk."""
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise FlowError(f"{path} is not valid UTF-8: {e}", context={"path": str(path)}) from e
    return parse_document(text, path)


def render_document(document: StructuredDocument, path: Path | str) -> str:
    """Serialize a document for the file extension of ``path``."""
    suffix = Path(path).suffix.lower()
    if suffix in JSON_SUFFIXES:
        return json.dumps(document.data, indent=2, ensure_ascii=False) + "\n"
    if suffix in YAML_SUFFIXES:
        return yaml.safe_dump(document.data, default_flow_style=False, sort_keys=False, allow_unicode=True)

    if not document.data:
        return document.body
    frontmatter = yaml.safe_dump(document.data, default_flow_style=False, sort_keys=False, allow_unicode=True)
    return f"{FRONTMATTER_DELIMITER}\n{frontmatter}{FRONTMATTER_DELIMITER}\n{document.body}"
