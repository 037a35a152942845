"""Graph authoring: structural edits that keep scenario graphs well-formed.

Each operation holds the scenario's lock for its whole duration, so two
edits of the same scenario never interleave. Any graph edit marks the
scenario unpublished; publish() re-checks the full graph before trainees
can start it again.

Editing tolerates temporarily incomplete graphs (a dialogue node without
choices yet, a dangling edge left by delete_node). Only set_choices runs
per-node registry validation up front, and only publish() checks the whole
graph: reachability from the root, dangling edges, paths to an end node.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from therabot import registry
from therabot.errors import CannotDeleteRoot, InvalidNodeShape, UnknownTarget
from therabot.locks import KeyedLocks
from therabot.models import (
    ChoiceSpec,
    Edge,
    GraphExport,
    GraphImport,
    Issue,
    Node,
    Scenario,
    ValidationReport,
    node_adapter,
    utcnow,
)
from therabot.storage import Storage

logger = logging.getLogger(__name__)

_SCENARIO_FIELDS = {"name", "description", "initial_state", "correct_outcome"}


class Authoring:
    def __init__(self, storage: Storage, locks: KeyedLocks | None = None) -> None:
        self._storage = storage
        self._locks = locks if locks is not None else KeyedLocks()

    def _touch(self, scenario: Scenario) -> None:
        scenario.published = False
        scenario.updated_at = utcnow()
        self._storage.put_scenario(scenario)

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def create_scenario(
        self,
        name: str,
        description: str = "",
        initial_state: dict[str, float] | None = None,
        correct_outcome: str | None = None,
    ) -> Scenario:
        if correct_outcome is not None:
            self._storage.get_condition(correct_outcome)
        scenario = Scenario(
            name=name,
            description=description,
            initial_state=initial_state or {},
            correct_outcome=correct_outcome,
        )
        return self._storage.put_scenario(scenario)

    def get_scenario(self, scenario_id: str) -> Scenario:
        return self._storage.get_scenario(scenario_id)

    def list_scenarios(self, published_only: bool = False) -> list[Scenario]:
        scenarios = self._storage.list_scenarios()
        if published_only:
            return [s for s in scenarios if s.published]
        return scenarios

    def update_scenario(self, scenario_id: str, fields: dict[str, Any]) -> Scenario:
        """Update name, description, initial_state or correct_outcome. Other keys are ignored."""
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            if fields.get("correct_outcome") is not None:
                self._storage.get_condition(fields["correct_outcome"])
            data = scenario.model_dump()
            for key, value in fields.items():
                if key in _SCENARIO_FIELDS:
                    data[key] = value
            data["updated_at"] = utcnow()
            updated = Scenario.model_validate(data)
            return self._storage.put_scenario(updated)

    def delete_scenario(self, scenario_id: str) -> None:
        with self._locks.hold(scenario_id):
            self._storage.delete_scenario(scenario_id)
        logger.info("Deleted scenario %s", scenario_id)

    # ------------------------------------------------------------------
    # Nodes and choices
    # ------------------------------------------------------------------

    def create_node(
        self,
        scenario_id: str,
        kind: str,
        text: str = "",
        metadata: Any = None,
        x: float = 0,
        y: float = 0,
    ) -> Node:
        """Create a node. The first root node becomes the scenario's entry point."""
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            if kind == "root" and scenario.root_node_id is not None:
                logger.warning("Rejected second root node in scenario %s", scenario_id)
                raise InvalidNodeShape(None, "Scenario already has a root node")
            node = registry.make_node(scenario_id, kind, text, metadata, x, y)
            self._storage.put_node(node)
            if kind == "root":
                scenario.root_node_id = node.id
            self._touch(scenario)
            return node

    def update_node(
        self,
        scenario_id: str,
        node_id: str,
        text: str | None = None,
        metadata: Any = None,
        x: float | None = None,
        y: float | None = None,
    ) -> Node:
        """Edit text, metadata or position. A node's kind never changes."""
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            node = self._storage.get_node(scenario_id, node_id)
            data = node.model_dump()
            if text is not None:
                data["text"] = text
            if metadata is not None:
                parsed = registry.validate_metadata(node.kind, metadata, node.id)
                data["metadata"] = parsed.model_dump() if parsed is not None else None
            if x is not None:
                data["x"] = x
            if y is not None:
                data["y"] = y
            updated = node_adapter.validate_python(data)
            self._storage.put_node(updated)
            self._touch(scenario)
            return updated

    def set_choices(
        self,
        scenario_id: str,
        node_id: str,
        choices: list[ChoiceSpec | dict[str, Any]],
    ) -> list[Edge]:
        """Replace every outgoing edge of a node.

        Targets must be existing nodes of the same scenario other than the
        root. Missing order indexes default to list position. A choice `id`
        naming one of the node's current edges keeps that id, and each id may
        appear once per call. The assembled edge set is validated against
        the registry before it is written.
        """
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            node = self._storage.get_node(scenario_id, node_id)
            existing_ids = {e.id for e in self._storage.get_outgoing_edges(scenario_id, node_id)}
            claimed: set[str] = set()

            edges: list[Edge] = []
            for i, raw in enumerate(choices):
                spec = ChoiceSpec.model_validate(raw)
                if spec.id is not None:
                    if spec.id in claimed:
                        raise InvalidNodeShape(node_id, f"choice id {spec.id!r} is used more than once")
                    claimed.add(spec.id)
                if not self._storage.has_node(scenario_id, spec.target_id):
                    logger.warning("Rejected choice to unknown node %s in scenario %s", spec.target_id, scenario_id)
                    raise UnknownTarget(f"Target node {spec.target_id!r} does not exist in this scenario")
                if spec.target_id == scenario.root_node_id:
                    raise InvalidNodeShape(node_id, "the root node cannot be the target of a choice")
                edge = Edge(
                    scenario_id=scenario_id,
                    source_id=node_id,
                    target_id=spec.target_id,
                    label=spec.label,
                    order_index=spec.order_index if spec.order_index is not None else i,
                    weight=spec.weight,
                )
                if spec.id is not None and spec.id in existing_ids:
                    edge.id = spec.id
                edges.append(edge)

            registry.validate(node, edges)
            self._storage.replace_edges(scenario_id, node_id, edges)
            self._touch(scenario)
            return sorted(edges, key=lambda e: e.order_index)

    def replace_node(self, scenario_id: str, old_id: str, new_id: str) -> Scenario:
        """Repoint every edge into `old_id`, and the root pointer, at `new_id`.

        `old_id` is left in place, orphaned, for the caller to delete.
        """
        if old_id == new_id:
            raise InvalidNodeShape(old_id, "cannot replace a node with itself")
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            self._storage.get_node(scenario_id, old_id)
            self._storage.get_node(scenario_id, new_id)

            sources = {e.source_id for e in self._storage.get_incoming_edges(scenario_id, old_id)}
            for source_id in sorted(sources):
                edges = self._storage.get_outgoing_edges(scenario_id, source_id)
                for edge in edges:
                    if edge.target_id == old_id:
                        edge.target_id = new_id
                self._storage.replace_edges(scenario_id, source_id, edges)

            if scenario.root_node_id == old_id:
                scenario.root_node_id = new_id
            self._touch(scenario)
            logger.info(
                "Replaced node %s with %s in scenario %s (%d source node(s) repointed)",
                old_id, new_id, scenario_id, len(sources),
            )
            return scenario

    def delete_node(self, scenario_id: str, node_id: str) -> None:
        """Remove a node and its outgoing edges; incoming edges are not repaired."""
        with self._locks.hold(scenario_id):
            scenario = self._storage.get_scenario(scenario_id)
            if scenario.root_node_id == node_id:
                logger.warning("Rejected deletion of root node %s in scenario %s", node_id, scenario_id)
                raise CannotDeleteRoot(
                    f"Node {node_id} is the root of scenario {scenario_id}; replace it first"
                )
            self._storage.delete_node(scenario_id, node_id)
            self._touch(scenario)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def validate_graph(self, scenario_id: str) -> ValidationReport:
        """Run every publish-time check without changing the scenario."""
        scenario = self._storage.get_scenario(scenario_id)
        nodes = {n.id: n for n in self._storage.list_nodes(scenario_id)}
        edges = {nid: self._storage.get_outgoing_edges(scenario_id, nid) for nid in nodes}
        report = ValidationReport(scenario_id=scenario_id)
        issues = report.issues

        root_id = scenario.root_node_id
        if root_id is None:
            issues.append(Issue(message="Scenario has no root node"))
        elif root_id not in nodes:
            issues.append(Issue(node_id=root_id, message="Root node does not exist"))

        for node in nodes.values():
            try:
                registry.validate(node, edges[node.id])
            except InvalidNodeShape as e:
                issues.append(Issue(node_id=node.id, message=str(e)))
            for edge in edges[node.id]:
                if edge.target_id not in nodes:
                    issues.append(Issue(
                        node_id=node.id,
                        message=f"Edge {edge.label!r} targets missing node {edge.target_id}",
                    ))
                elif edge.target_id == root_id:
                    issues.append(Issue(node_id=node.id, message=f"Edge {edge.label!r} targets the root node"))

        ends = [nid for nid, n in nodes.items() if n.kind == "end"]
        if not ends:
            issues.append(Issue(message="Scenario has no end node"))

        if root_id in nodes:
            reachable = _reachable(root_id, {nid: [e.target_id for e in es] for nid, es in edges.items()})
            for nid in nodes:
                if nid not in reachable:
                    issues.append(Issue(node_id=nid, message="Node is not reachable from the root"))

        if ends:
            reverse: dict[str, list[str]] = {}
            for nid, es in edges.items():
                for e in es:
                    reverse.setdefault(e.target_id, []).append(nid)
            finishing = set()
            for end_id in ends:
                finishing |= _reachable(end_id, reverse)
            for nid, node in nodes.items():
                if node.kind != "end" and nid not in finishing:
                    issues.append(Issue(node_id=nid, message="No path from this node reaches an end node"))

        return report

    def publish(self, scenario_id: str) -> ValidationReport:
        """Validate the whole graph and mark the scenario live if it passes."""
        with self._locks.hold(scenario_id):
            report = self.validate_graph(scenario_id)
            scenario = self._storage.get_scenario(scenario_id)
            scenario.published = report.ok
            scenario.updated_at = utcnow()
            self._storage.put_scenario(scenario)
        if report.ok:
            logger.info("Published scenario %s", scenario_id)
        else:
            logger.info("Scenario %s failed publish with %d issue(s)", scenario_id, len(report.issues))
        return report

    # ------------------------------------------------------------------
    # Bulk import / export
    # ------------------------------------------------------------------

    def export_graph(self, scenario_id: str) -> GraphExport:
        scenario = self._storage.get_scenario(scenario_id)
        nodes = self._storage.list_nodes(scenario_id)
        edges: list[Edge] = []
        for node in nodes:
            edges.extend(self._storage.get_outgoing_edges(scenario_id, node.id))
        return GraphExport(scenario=scenario, nodes=nodes, edges=edges)

    def import_graph(self, payload: GraphImport, scenario_id: str | None = None) -> Scenario:
        """Build a whole graph from client-side refs.

        With `scenario_id`, the existing scenario's graph is replaced and its
        metadata overwritten; otherwise a new scenario is created. Everything
        is validated in memory before the first write.
        """
        refs = [n.ref for n in payload.nodes]
        if len(set(refs)) != len(refs):
            raise InvalidNodeShape(None, "Node refs must be unique")
        roots = [n for n in payload.nodes if n.kind == "root"]
        if len(roots) != 1:
            raise InvalidNodeShape(None, f"A scenario needs exactly one root node, found {len(roots)}")
        if payload.correct_outcome is not None:
            self._storage.get_condition(payload.correct_outcome)

        target_scenario = Scenario(
            name=payload.name,
            description=payload.description,
            initial_state=payload.initial_state,
            correct_outcome=payload.correct_outcome,
        )
        if scenario_id is not None:
            target_scenario.id = scenario_id

        ids: dict[str, str] = {}
        nodes: list[Node] = []
        for raw in payload.nodes:
            node = registry.make_node(target_scenario.id, raw.kind, raw.text, raw.metadata, raw.x, raw.y)
            ids[raw.ref] = node.id
            nodes.append(node)

        edges: dict[str, list[Edge]] = {}
        for raw in payload.nodes:
            source_id = ids[raw.ref]
            for i, choice in enumerate(raw.choices):
                if choice.target_ref not in ids:
                    raise UnknownTarget(f"Choice on {raw.ref!r} targets unknown node {choice.target_ref!r}")
                edges.setdefault(source_id, []).append(Edge(
                    scenario_id=target_scenario.id,
                    source_id=source_id,
                    target_id=ids[choice.target_ref],
                    label=choice.label,
                    order_index=i,
                    weight=choice.weight,
                ))
        target_scenario.root_node_id = ids[roots[0].ref]

        if scenario_id is None:
            return self._write_graph(target_scenario, nodes, edges)
        with self._locks.hold(scenario_id):
            existing = self._storage.get_scenario(scenario_id)
            target_scenario.created_at = existing.created_at
            self._storage.clear_graph(scenario_id)
            return self._write_graph(target_scenario, nodes, edges)

    def _write_graph(self, scenario: Scenario, nodes: list[Node], edges: dict[str, list[Edge]]) -> Scenario:
        self._storage.put_scenario(scenario)
        for node in nodes:
            self._storage.put_node(node)
        for source_id, source_edges in edges.items():
            self._storage.replace_edges(scenario.id, source_id, source_edges)
        logger.info("Imported scenario %s with %d node(s)", scenario.id, len(nodes))
        return scenario


def _reachable(start: str, adjacency: dict[str, list[str]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen
