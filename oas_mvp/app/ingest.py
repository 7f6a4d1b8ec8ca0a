"""Normalize workflow JSON from the formats users actually paste or upload.

Two shapes are recognized:

  - the export envelope produced by the "download workflow" button:
      {"version": "1.0", "data": {"workflows": [{"name", "description",
                                                  "diagramJson": {"nodes", "edges"}}]}}
  - a bare designer graph: {"nodes": [...], "edges": [...]}

Chat models like to return JSON wrapped in a JSON string, so one extra layer
of string encoding is unwrapped. Deeper nesting is rejected.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal

MalformedKind = Literal["syntax", "unrecognized_shape"]


class MalformedInput(ValueError):
    def __init__(self, kind: MalformedKind, detail: str = "") -> None:
        self.kind: MalformedKind = kind
        self.detail = detail
        msg = f"Malformed workflow input ({kind})"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


@dataclass
class ParsedWorkflow:
    raw_nodes: list[Any] = field(default_factory=list)
    raw_edges: list[Any] = field(default_factory=list)
    name: str | None = None
    description: str | None = None


def _loads(text: str | bytes) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedInput("syntax", str(e)) from e


def _as_list(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedInput("unrecognized_shape", f"{what} must be a list")
    return value


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _decode_envelope(obj: dict[str, Any]) -> ParsedWorkflow | None:
    if not obj.get("version"):
        return None
    data = obj.get("data")
    if not isinstance(data, dict):
        return None
    workflows = data.get("workflows")
    if not isinstance(workflows, list) or not workflows:
        return None
    first = workflows[0]
    if not isinstance(first, dict):
        return None
    diagram = first.get("diagramJson")
    if not isinstance(diagram, dict):
        return None

    return ParsedWorkflow(
        raw_nodes=_as_list(diagram.get("nodes"), "diagramJson.nodes"),
        raw_edges=_as_list(diagram.get("edges"), "diagramJson.edges"),
        name=_opt_str(first.get("name")),
        description=_opt_str(first.get("description")),
    )


def _decode_direct(obj: dict[str, Any]) -> ParsedWorkflow | None:
    if obj.get("nodes") is None and obj.get("edges") is None:
        return None
    return ParsedWorkflow(
        raw_nodes=_as_list(obj.get("nodes"), "nodes"),
        raw_edges=_as_list(obj.get("edges"), "edges"),
    )


def parse_workflow(text: str | bytes) -> ParsedWorkflow:
    """Parse `text` into a ParsedWorkflow or raise MalformedInput."""
    value = _loads(text)

    # Double-encoded payload: unwrap exactly one layer.
    if isinstance(value, str):
        value = _loads(value)

    if not isinstance(value, dict):
        raise MalformedInput("unrecognized_shape", f"expected an object, got {type(value).__name__}")

    for decode in (_decode_envelope, _decode_direct):
        parsed = decode(value)
        if parsed is not None:
            return parsed

    raise MalformedInput("unrecognized_shape", "expected an export envelope or nodes/edges")
