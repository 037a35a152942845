"""Node type registry: metadata shapes and edge cardinality per node kind.

    kind          metadata                               outgoing edges
    root          none                                   >= 1
    dialogue      none                                   >= 1 (labels = trainee options)
    end           none                                   0
    logic         variable, operator (> < == != >= <=),  exactly 2, order_index 0 (true)
                  value                                  and 1 (false)
    state_update  variable, operator (add sub set mult), exactly 1
                  value
    random        none (weights live on the edges)       >= 1
    observation   none (internal note in text)           exactly 1

`validate()` is called by the authoring layer before any edge change is
persisted, and by `publish()` for every node of a scenario.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from therabot.errors import InvalidNodeShape
from therabot.models import (
    AUTOMATIC_KINDS,
    NODE_KINDS,
    Edge,
    LogicMetadata,
    Node,
    StateUpdateMetadata,
    node_adapter,
)


@dataclass(frozen=True)
class KindSpec:
    kind: str
    metadata: type[BaseModel] | None
    min_edges: int
    max_edges: int | None  # None = unbounded


REGISTRY: dict[str, KindSpec] = {
    "root": KindSpec("root", None, 1, None),
    "dialogue": KindSpec("dialogue", None, 1, None),
    "end": KindSpec("end", None, 0, 0),
    "logic": KindSpec("logic", LogicMetadata, 2, 2),
    "state_update": KindSpec("state_update", StateUpdateMetadata, 1, 1),
    "random": KindSpec("random", None, 1, None),
    "observation": KindSpec("observation", None, 1, 1),
}

if set(REGISTRY) != set(NODE_KINDS):
    raise RuntimeError(f"Registry does not cover node kinds: {sorted(set(NODE_KINDS) ^ set(REGISTRY))}")


def spec_for(kind: str) -> KindSpec:
    try:
        return REGISTRY[kind]
    except KeyError:
        raise InvalidNodeShape(None, f"Unknown node kind {kind!r}") from None


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def validate_metadata(kind: str, metadata: Any, node_id: str | None = None) -> BaseModel | None:
    """Parse raw metadata into the shape `kind` requires."""
    spec = spec_for(kind)
    if spec.metadata is None:
        if metadata:
            raise InvalidNodeShape(node_id, f"{kind} nodes take no metadata")
        return None
    if metadata is None:
        fields = ", ".join(spec.metadata.model_fields)
        raise InvalidNodeShape(node_id, f"{kind} nodes require metadata ({fields})")
    if isinstance(metadata, BaseModel):
        metadata = metadata.model_dump()
    try:
        return spec.metadata.model_validate(metadata)
    except ValidationError as e:
        raise InvalidNodeShape(node_id, f"invalid {kind} metadata: {_format_errors(e)}") from None


def make_node(
    scenario_id: str,
    kind: str,
    text: str = "",
    metadata: Any = None,
    x: float = 0,
    y: float = 0,
    node_id: str | None = None,
) -> Node:
    """Build a typed node, validating its metadata against the registry."""
    parsed = validate_metadata(kind, metadata, node_id)
    raw: dict[str, Any] = {
        "scenario_id": scenario_id,
        "kind": kind,
        "text": text,
        "metadata": parsed.model_dump() if parsed is not None else None,
        "x": x,
        "y": y,
    }
    if node_id is not None:
        raw["id"] = node_id
    return node_adapter.validate_python(raw)


def is_automatic(kind: str) -> bool:
    return kind in AUTOMATIC_KINDS


def validate(node: Node, edges: list[Edge]) -> None:
    """Check edge cardinality and per-kind edge rules for one node.

    Raises InvalidNodeShape naming the node on the first violation.
    """
    spec = spec_for(node.kind)
    validate_metadata(node.kind, node.metadata, node.id)

    for edge in edges:
        if edge.source_id != node.id:
            raise InvalidNodeShape(node.id, f"edge {edge.id} does not leave this node")

    count = len(edges)
    if count < spec.min_edges:
        raise InvalidNodeShape(
            node.id, f"{node.kind} nodes need at least {spec.min_edges} outgoing edge(s), found {count}"
        )
    if spec.max_edges is not None and count > spec.max_edges:
        if spec.max_edges == 0:
            raise InvalidNodeShape(node.id, f"{node.kind} nodes cannot have outgoing edges")
        raise InvalidNodeShape(
            node.id, f"{node.kind} nodes allow at most {spec.max_edges} outgoing edge(s), found {count}"
        )

    indexes = [e.order_index for e in edges]
    if len(set(indexes)) != len(indexes):
        raise InvalidNodeShape(node.id, "outgoing edges must have distinct order_index values")

    if node.kind == "logic" and sorted(indexes) != [0, 1]:
        raise InvalidNodeShape(node.id, "logic nodes need edges at order_index 0 (true) and 1 (false)")

    if node.kind == "random":
        _validate_weights(node, edges)


def _validate_weights(node: Node, edges: list[Edge]) -> None:
    weights = [e.weight for e in edges]
    if all(w is None for w in weights):
        return
    if any(w is None for w in weights):
        raise InvalidNodeShape(node.id, "either every random edge carries a weight or none does")
    if any(w < 0 for w in weights):
        raise InvalidNodeShape(node.id, "random edge weights cannot be negative")
    if sum(weights) <= 0:
        raise InvalidNodeShape(node.id, "random edge weights must not all be zero")
