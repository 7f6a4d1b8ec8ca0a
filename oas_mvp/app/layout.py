"""Turn parsed raw nodes/edges into canonical designer nodes/edges.

Imported graphs often come from chat output or older exports: node types vary,
edge styling is inconsistent and positions are frequently missing. Everything
is normalized to `step` nodes and dashed `deletable` edges, and a simple
left-to-right layered layout fills in positions when any are missing.
"""

from __future__ import annotations

from collections import deque
from typing import Any

DEFAULT_NODE_TYPE = "step"
DEFAULT_EDGE_TYPE = "deletable"
DEFAULT_EDGE_STYLE = {
    "stroke": "#6366f1",
    "strokeWidth": 2,
    "strokeDasharray": "5,5",
}

NODE_WIDTH = 300
NODE_HEIGHT = 120
RANK_SPACING = 100
SIBLING_SPACING = 50
MARGIN = 50

NODE_DATA_FIELDS = ("label", "description", "instructions", "linkedAgentUrl", "skills", "outputs")


class InvalidWorkflowGraph(ValueError):
    pass


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def nodes_need_layout(nodes: list[dict[str, Any]]) -> bool:
    if not nodes:
        return False
    for node in nodes:
        pos = node.get("position")
        if not isinstance(pos, dict) or not _is_number(pos.get("x")) or not _is_number(pos.get("y")):
            return True
    return False


def _check_nodes(raw_nodes: list[Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for i, node in enumerate(raw_nodes):
        if not isinstance(node, dict):
            raise InvalidWorkflowGraph(f"node #{i + 1} must be an object")
        if node.get("id") in (None, ""):
            raise InvalidWorkflowGraph(f"node #{i + 1} is missing an id")
        out.append(node)
    return out


def _check_edges(raw_edges: list[Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for i, edge in enumerate(raw_edges):
        if not isinstance(edge, dict):
            raise InvalidWorkflowGraph(f"edge #{i + 1} must be an object")
        for key in ("source", "target"):
            if edge.get(key) in (None, ""):
                raise InvalidWorkflowGraph(f"edge #{i + 1} is missing {key}")
        out.append(edge)
    return out


def _node_data(node: dict[str, Any]) -> dict[str, Any]:
    data = node.get("data")
    if not isinstance(data, dict):
        data = {}
    out = {k: data.get(k) for k in NODE_DATA_FIELDS}
    out["label"] = str(data.get("label") or "")
    return out


def normalize_nodes(nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for node in nodes:
        pos = node.get("position") if isinstance(node.get("position"), dict) else {}
        out.append(
            {
                "id": str(node["id"]),
                "type": DEFAULT_NODE_TYPE,
                "position": {
                    "x": pos.get("x") if _is_number(pos.get("x")) else 0,
                    "y": pos.get("y") if _is_number(pos.get("y")) else 0,
                },
                "data": _node_data(node),
            }
        )
    return out


def normalize_edges(edges: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for i, edge in enumerate(edges):
        source = str(edge["source"])
        target = str(edge["target"])
        out.append(
            {
                "id": str(edge.get("id") or f"e-{source}-{target}-{i}"),
                "source": source,
                "target": target,
                "type": DEFAULT_EDGE_TYPE,
                "animated": True,
                "style": dict(DEFAULT_EDGE_STYLE),
            }
        )
    return out


def _ranks(node_ids: list[str], edges: list[dict[str, Any]]) -> dict[str, int]:
    """Longest-path rank for each node; nodes left over by a cycle go after the rest."""
    known = set(node_ids)
    succ: dict[str, list[str]] = {n: [] for n in node_ids}
    indeg: dict[str, int] = {n: 0 for n in node_ids}
    for e in edges:
        s, t = str(e["source"]), str(e["target"])
        # Dangling edges and self-loops do not affect placement.
        if s not in known or t not in known or s == t:
            continue
        succ[s].append(t)
        indeg[t] += 1

    rank: dict[str, int] = {n: 0 for n in node_ids}
    queue = deque(n for n in node_ids if indeg[n] == 0)
    placed: set[str] = set()
    while queue:
        n = queue.popleft()
        placed.add(n)
        for t in succ[n]:
            rank[t] = max(rank[t], rank[n] + 1)
            indeg[t] -= 1
            if indeg[t] == 0:
                queue.append(t)

    if len(placed) < len(node_ids):
        next_rank = max((rank[n] for n in placed), default=-1) + 1
        for n in node_ids:
            if n not in placed:
                rank[n] = next_rank
                next_rank += 1
    return rank


def apply_layered_layout(nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not nodes:
        return []

    normalized = normalize_nodes(nodes)
    ids = [n["id"] for n in normalized]
    rank = _ranks(ids, edges)

    slot: dict[int, int] = {}
    for n in normalized:
        r = rank[n["id"]]
        i = slot.get(r, 0)
        slot[r] = i + 1
        n["position"] = {
            "x": MARGIN + r * (NODE_WIDTH + RANK_SPACING),
            "y": MARGIN + i * (NODE_HEIGHT + SIBLING_SPACING),
        }
    return normalized


def process_imported_workflow(
    raw_nodes: list[Any] | None = None,
    raw_edges: list[Any] | None = None,
    force_layout: bool = False,
) -> dict[str, Any]:
    nodes = _check_nodes(list(raw_nodes or []))
    edges = _check_edges(list(raw_edges or []))

    if not nodes:
        return {"nodes": [], "edges": [], "layoutApplied": False}

    needs_layout = force_layout or nodes_need_layout(nodes)
    out_nodes = apply_layered_layout(nodes, edges) if needs_layout else normalize_nodes(nodes)

    return {
        "nodes": out_nodes,
        "edges": normalize_edges(edges),
        "layoutApplied": needs_layout,
    }
