"""JSON file storage.

All state is stored in JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON. Every lookup is keyed by id, so reading a
node, a node's outgoing edges or a node's incoming sources touches exactly
one file.

Directory layout:

    {base}/
      settings.json                  ← app settings (see therabot.config)
      conditions/
        {condition_id}.json          ← one Condition per file
      scenarios/
        {scenario_id}.json           ← scenario metadata
        {scenario_id}/
          nodes/{node_id}.json       ← one Node per file
          edges/{source_id}.json     ← outgoing edges of one node, by order_index
          incoming/{target_id}.json  ← ids of nodes with an edge into target
      sessions/
        {session_id}.json            ← Session including transcript
      trainees/
        {trainee_id}.json            ← ids of the trainee's sessions, oldest first

Files are written to a temporary sibling and moved into place, so readers
never see a partial file. Read-modify-write updates (edge lists, the
incoming index, trainee indexes) hold a lock keyed by the file's path.

The store does no validation beyond referential existence; graph rules are
enforced by therabot.registry and therabot.authoring.
"""

from __future__ import annotations

import json
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from therabot.errors import NotFound, StorageError
from therabot.locks import KeyedLocks
from therabot.models import (
    Condition,
    Edge,
    Node,
    Scenario,
    Session,
    new_id,
    node_adapter,
)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._scenario_root = base_path / "scenarios"
        self._session_root = base_path / "sessions"
        self._trainee_root = base_path / "trainees"
        self._condition_root = base_path / "conditions"
        for path in (self._scenario_root, self._session_root, self._trainee_root, self._condition_root):
            path.mkdir(parents=True, exist_ok=True)
        self._file_locks = KeyedLocks()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _check_id(self, value: str, what: str) -> str:
        # ids become file names; anything else cannot exist on disk
        if not _SAFE_ID.match(value) or value.startswith("."):
            raise NotFound(f"{what} {value!r} not found")
        return value

    def _scenario_file(self, scenario_id: str) -> Path:
        return self._scenario_root / f"{self._check_id(scenario_id, 'Scenario')}.json"

    def _scenario_dir(self, scenario_id: str) -> Path:
        return self._scenario_root / self._check_id(scenario_id, "Scenario")

    def _node_file(self, scenario_id: str, node_id: str) -> Path:
        return self._scenario_dir(scenario_id) / "nodes" / f"{self._check_id(node_id, 'Node')}.json"

    def _edges_file(self, scenario_id: str, source_id: str) -> Path:
        return self._scenario_dir(scenario_id) / "edges" / f"{self._check_id(source_id, 'Node')}.json"

    def _incoming_file(self, scenario_id: str, target_id: str) -> Path:
        return self._scenario_dir(scenario_id) / "incoming" / f"{self._check_id(target_id, 'Node')}.json"

    def _session_file(self, session_id: str) -> Path:
        return self._session_root / f"{self._check_id(session_id, 'Session')}.json"

    def _trainee_file(self, trainee_id: str) -> Path:
        return self._trainee_root / f"{self._check_id(trainee_id, 'Trainee')}.json"

    def _condition_file(self, condition_id: str) -> Path:
        return self._condition_root / f"{self._check_id(condition_id, 'Condition')}.json"

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path.name}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_name(f"{path.name}.{new_id()}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2))
            tmp.replace(path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageError(f"Cannot write {path.name}: {e}") from e

    def _update_json(self, path: Path, change: Callable[[Any], Any]) -> Any:
        """Apply `change` to a file's contents under that file's lock.

        `change` receives None for a missing file and may return None to
        delete it. Returns the previous contents.
        """
        with self._file_locks.hold(str(path)):
            current = self._read_json(path) if path.is_file() else None
            updated = change(current)
            if updated is None:
                path.unlink(missing_ok=True)
            else:
                self._write_json(path, updated)
            return current

    # ------------------------------------------------------------------
    # Scenarios
    # ------------------------------------------------------------------

    def put_scenario(self, scenario: Scenario) -> Scenario:
        self._write_json(self._scenario_file(scenario.id), scenario.model_dump())
        (self._scenario_dir(scenario.id) / "nodes").mkdir(parents=True, exist_ok=True)
        (self._scenario_dir(scenario.id) / "edges").mkdir(parents=True, exist_ok=True)
        return scenario

    def get_scenario(self, scenario_id: str) -> Scenario:
        path = self._scenario_file(scenario_id)
        if not path.is_file():
            raise NotFound(f"Scenario {scenario_id!r} not found")
        return Scenario.model_validate(self._read_json(path))

    def has_scenario(self, scenario_id: str) -> bool:
        try:
            return self._scenario_file(scenario_id).is_file()
        except NotFound:
            return False

    def list_scenarios(self) -> list[Scenario]:
        return [
            Scenario.model_validate(self._read_json(path))
            for path in sorted(self._scenario_root.glob("*.json"))
        ]

    def delete_scenario(self, scenario_id: str) -> None:
        """Delete a scenario together with its whole graph."""
        path = self._scenario_file(scenario_id)
        if not path.is_file():
            raise NotFound(f"Scenario {scenario_id!r} not found")
        path.unlink()
        graph_dir = self._scenario_dir(scenario_id)
        if graph_dir.is_dir():
            shutil.rmtree(graph_dir)

    def clear_graph(self, scenario_id: str) -> None:
        """Drop every node and edge of a scenario, keeping its metadata."""
        graph_dir = self._scenario_dir(scenario_id)
        if graph_dir.is_dir():
            shutil.rmtree(graph_dir)
        (graph_dir / "nodes").mkdir(parents=True)
        (graph_dir / "edges").mkdir(parents=True)

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def put_node(self, node: Node) -> Node:
        if not self.has_scenario(node.scenario_id):
            raise NotFound(f"Scenario {node.scenario_id!r} not found")
        self._write_json(self._node_file(node.scenario_id, node.id), node.model_dump())
        return node

    def get_node(self, scenario_id: str, node_id: str) -> Node:
        path = self._node_file(scenario_id, node_id)
        if not path.is_file():
            raise NotFound(f"Node {node_id!r} not found")
        return node_adapter.validate_python(self._read_json(path))

    def has_node(self, scenario_id: str, node_id: str) -> bool:
        try:
            return self._node_file(scenario_id, node_id).is_file()
        except NotFound:
            return False

    def list_nodes(self, scenario_id: str) -> list[Node]:
        node_dir = self._scenario_dir(scenario_id) / "nodes"
        return [
            node_adapter.validate_python(self._read_json(path))
            for path in sorted(node_dir.glob("*.json"))
        ]

    def delete_node(self, scenario_id: str, node_id: str) -> None:
        """Remove a node and its outgoing edges. Incoming edges are left as-is."""
        path = self._node_file(scenario_id, node_id)
        if not path.is_file():
            raise NotFound(f"Node {node_id!r} not found")
        path.unlink()
        self.delete_edges_from(scenario_id, node_id)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def get_outgoing_edges(self, scenario_id: str, node_id: str) -> list[Edge]:
        """Edges leaving `node_id`, ordered by order_index."""
        path = self._edges_file(scenario_id, node_id)
        if not path.is_file():
            return []
        edges = [Edge.model_validate(e) for e in self._read_json(path)]
        return sorted(edges, key=lambda e: e.order_index)

    def put_edge(self, edge: Edge) -> Edge:
        """Upsert an edge by id into its source node's edge list."""
        if not self.has_node(edge.scenario_id, edge.source_id):
            raise NotFound(f"Node {edge.source_id!r} not found")

        def upsert(edges: list[Edge]) -> list[Edge]:
            kept = [e for e in edges if e.id != edge.id]
            return kept + [edge]

        self._update_edges(edge.scenario_id, edge.source_id, upsert)
        return edge

    def replace_edges(self, scenario_id: str, source_id: str, edges: list[Edge]) -> None:
        """Swap the whole outgoing edge list of a node in one write."""
        if not self.has_node(scenario_id, source_id):
            raise NotFound(f"Node {source_id!r} not found")
        self._update_edges(scenario_id, source_id, lambda _: edges)

    def delete_edges_from(self, scenario_id: str, node_id: str) -> None:
        self._update_edges(scenario_id, node_id, lambda _: [])

    def _update_edges(
        self,
        scenario_id: str,
        source_id: str,
        change: Callable[[list[Edge]], list[Edge]],
    ) -> None:
        new_targets: set[str] = set()

        def apply(raw: list[dict] | None) -> list[dict] | None:
            current = [Edge.model_validate(e) for e in raw or []]
            updated = sorted(change(current), key=lambda e: e.order_index)
            new_targets.update(e.target_id for e in updated)
            return [e.model_dump() for e in updated] or None

        previous = self._update_json(self._edges_file(scenario_id, source_id), apply)
        old_targets = {e["target_id"] for e in previous or []}
        for target_id in old_targets - new_targets:
            self._update_incoming(scenario_id, target_id, source_id, present=False)
        for target_id in new_targets - old_targets:
            self._update_incoming(scenario_id, target_id, source_id, present=True)

    def _update_incoming(self, scenario_id: str, target_id: str, source_id: str, present: bool) -> None:
        def apply(sources: list[str] | None) -> list[str] | None:
            remaining = {s for s in sources or [] if s != source_id}
            if present:
                remaining.add(source_id)
            return sorted(remaining) or None

        self._update_json(self._incoming_file(scenario_id, target_id), apply)

    def get_incoming_edges(self, scenario_id: str, node_id: str) -> list[Edge]:
        """Edges of the scenario whose target is `node_id`."""
        path = self._incoming_file(scenario_id, node_id)
        if not path.is_file():
            return []
        return [
            edge
            for source_id in self._read_json(path)
            for edge in self.get_outgoing_edges(scenario_id, source_id)
            if edge.target_id == node_id
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def put_session(self, session: Session) -> Session:
        path = self._session_file(session.id)
        index_path = self._trainee_file(session.trainee_id)
        self._write_json(path, session.model_dump())

        def add(ids: list[str] | None) -> list[str]:
            ids = ids or []
            return ids if session.id in ids else ids + [session.id]

        self._update_json(index_path, add)
        return session

    def get_session(self, session_id: str) -> Session:
        path = self._session_file(session_id)
        if not path.is_file():
            raise NotFound(f"Session {session_id!r} not found")
        return Session.model_validate(self._read_json(path))

    def list_sessions_for_trainee(self, trainee_id: str) -> list[Session]:
        """Sessions of one trainee, oldest first."""
        index_path = self._trainee_file(trainee_id)
        if not index_path.is_file():
            return []
        return [self.get_session(sid) for sid in self._read_json(index_path)]

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def list_conditions(self) -> list[Condition]:
        """The diagnosis catalog, ordered by name."""
        conditions = [
            Condition.model_validate(self._read_json(path))
            for path in self._condition_root.glob("*.json")
        ]
        return sorted(conditions, key=lambda c: (c.name, c.id))

    def get_condition(self, condition_id: str) -> Condition:
        path = self._condition_file(condition_id)
        if not path.is_file():
            raise NotFound(f"Condition {condition_id!r} not found")
        return Condition.model_validate(self._read_json(path))

    def put_condition(self, condition: Condition) -> Condition:
        """Upsert a condition by id."""
        self._write_json(self._condition_file(condition.id), condition.model_dump())
        return condition
