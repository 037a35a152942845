"""Traversal engine: walks a scenario graph one trainee turn at a time.

advance(session, chosen_edge_id) runs the state machine:

  1. If an edge is chosen, it must leave the current root/dialogue node.
     The trainee turn (edge label) is appended and the cursor moves to the
     edge's target.
  2. Automatic nodes are resolved in a loop until a dialogue or end node:
       state_update  apply add/sub/set/mult to a variable, follow its edge
       logic         compare a variable, follow order_index 0 (true) or 1
       random        weighted draw from the injected RNG
       observation   log a hidden transcript entry, follow its edge
     Unset variables read as 0. The loop is capped at max_auto_steps and
     raises GraphCycleError past it.
  3. A dialogue node appends a bot turn and returns its choices.
  4. An end node appends the final bot turn and closes the session.

The engine is the only writer of Session.variables, current_node_id,
transcript and ended_at. A successful step updates the session object in
place and a failed one leaves it untouched; the caller decides whether to
persist it (see therabot.sessions).
"""

from __future__ import annotations

import logging
import operator
import random
from collections.abc import Callable
from typing import Protocol

from therabot.errors import (
    GraphCycleError,
    InvalidChoice,
    MalformedGraph,
    NotFound,
    SessionEnded,
)
from therabot.models import (
    AUTOMATIC_KINDS,
    Choice,
    Edge,
    Node,
    Session,
    Speaker,
    TraversalResult,
    Turn,
    utcnow,
)
from therabot.registry import is_automatic
from therabot.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_MAX_AUTO_STEPS = 1000

# Session fields written by advance().
_ENGINE_FIELDS = ("current_node_id", "variables", "transcript", "ended_at")

_COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
    ">=": operator.ge,
    "<=": operator.le,
}

_MUTATIONS: dict[str, Callable[[float, float], float]] = {
    "add": operator.add,
    "sub": operator.sub,
    "set": lambda _current, value: value,
    "mult": operator.mul,
}


class RandomSource(Protocol):
    def random(self) -> float: ...


def append_turn(
    session: Session,
    speaker: Speaker,
    text: str,
    node_id: str,
    edge_id: str | None = None,
    visible: bool = True,
) -> Turn:
    turn = Turn(
        seq=len(session.transcript) + 1,
        speaker=speaker,
        text=text,
        node_id=node_id,
        edge_id=edge_id,
        visible=visible,
    )
    session.transcript.append(turn)
    return turn


class Engine:
    def __init__(
        self,
        storage: Storage,
        rng: RandomSource | None = None,
        max_auto_steps: int = DEFAULT_MAX_AUTO_STEPS,
    ) -> None:
        self._storage = storage
        self._rng = rng if rng is not None else random.Random()
        self.max_auto_steps = max_auto_steps

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def advance(self, session: Session, chosen_edge_id: str | None = None) -> TraversalResult:
        """Apply one trainee step to `session`.

        The step runs on a copy; `session` is only updated if it succeeds,
        so a raised error leaves it exactly as it was passed in.
        """
        working = session.model_copy(deep=True)
        result = self._advance(working, chosen_edge_id)
        for field in _ENGINE_FIELDS:
            setattr(session, field, getattr(working, field))
        return result

    def _advance(self, session: Session, chosen_edge_id: str | None) -> TraversalResult:
        if not session.active:
            if chosen_edge_id is not None:
                raise SessionEnded(f"Session {session.id} has already ended")
            return self.present(session)

        node = self._storage.get_node(session.scenario_id, session.current_node_id)
        moved = not session.transcript

        if chosen_edge_id is not None:
            node = self._take_choice(session, node, chosen_edge_id)
            moved = True

        try:
            landed = self._run_automatic(session, node)
        except (MalformedGraph, GraphCycleError) as e:
            logger.error(
                "Data integrity alert: scenario=%s session=%s: %s",
                session.scenario_id, session.id, e,
            )
            raise
        moved = moved or landed.id != node.id

        if landed.kind == "end":
            append_turn(session, "bot", landed.text, landed.id)
            session.ended_at = utcnow()
            logger.info("Session %s reached end node %s", session.id, landed.id)
            return self._result(session, landed, [])

        if moved:
            append_turn(session, "bot", landed.text, landed.id)
        edges = self._storage.get_outgoing_edges(session.scenario_id, landed.id)
        return self._result(session, landed, edges)

    def present(self, session: Session) -> TraversalResult:
        """Describe the session's current node without moving it."""
        node = self._storage.get_node(session.scenario_id, session.current_node_id)
        if not session.active or node.kind == "end":
            return self._result(session, node, [])
        edges = self._storage.get_outgoing_edges(session.scenario_id, node.id)
        return self._result(session, node, edges)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _result(self, session: Session, node: Node, edges: list[Edge]) -> TraversalResult:
        return TraversalResult(
            session_id=session.id,
            node_id=node.id,
            text=node.text,
            choices=[Choice(id=e.id, label=e.label) for e in edges],
            terminal=node.kind == "end",
        )

    def _take_choice(self, session: Session, node: Node, edge_id: str) -> Node:
        if node.kind not in ("root", "dialogue"):
            raise InvalidChoice(f"Node {node.id} ({node.kind}) does not accept choices")
        edges = self._storage.get_outgoing_edges(session.scenario_id, node.id)
        edge = next((e for e in edges if e.id == edge_id), None)
        if edge is None:
            raise InvalidChoice(f"Choice {edge_id!r} does not belong to node {node.id}")
        append_turn(session, "trainee", edge.label, node.id, edge.id)
        return self._follow(session, node, edge)

    def _follow(self, session: Session, node: Node, edge: Edge) -> Node:
        try:
            target = self._storage.get_node(session.scenario_id, edge.target_id)
        except NotFound:
            raise MalformedGraph(node.id, f"edge {edge.id} targets missing node {edge.target_id}") from None
        session.current_node_id = target.id
        return target

    def _run_automatic(self, session: Session, node: Node) -> Node:
        steps = 0
        while is_automatic(node.kind):
            steps += 1
            if steps > self.max_auto_steps:
                raise GraphCycleError(
                    f"Automatic nodes did not reach a dialogue or end node within "
                    f"{self.max_auto_steps} steps (last node {node.id})"
                )
            edges = self._storage.get_outgoing_edges(session.scenario_id, node.id)
            edge = _STEPS[node.kind](self, session, node, edges)
            logger.debug("session=%s %s node %s -> %s", session.id, node.kind, node.id, edge.target_id)
            node = self._follow(session, node, edge)
        return node

    def _single_edge(self, node: Node, edges: list[Edge]) -> Edge:
        if len(edges) != 1:
            raise MalformedGraph(node.id, f"{node.kind} node needs exactly 1 outgoing edge, found {len(edges)}")
        return edges[0]

    def _step_state_update(self, session: Session, node: Node, edges: list[Edge]) -> Edge:
        meta = node.metadata
        current = session.variables.get(meta.variable, 0)
        session.variables[meta.variable] = _MUTATIONS[meta.operator](current, meta.value)
        return self._single_edge(node, edges)

    def _step_logic(self, session: Session, node: Node, edges: list[Edge]) -> Edge:
        by_index = {e.order_index: e for e in edges}
        if 0 not in by_index or 1 not in by_index:
            raise MalformedGraph(node.id, "logic node is missing its true (0) or false (1) edge")
        meta = node.metadata
        current = session.variables.get(meta.variable, 0)
        outcome = _COMPARISONS[meta.operator](current, meta.value)
        return by_index[0] if outcome else by_index[1]

    def _step_random(self, session: Session, node: Node, edges: list[Edge]) -> Edge:
        if not edges:
            raise MalformedGraph(node.id, "random node has no outgoing edges")
        weights = [e.weight for e in edges]
        if all(w is None for w in weights):
            weights = [1.0] * len(edges)
        elif any(w is None or w < 0 for w in weights):
            raise MalformedGraph(node.id, "random node mixes weighted and unweighted edges")
        total = sum(weights)
        if total <= 0:
            raise MalformedGraph(node.id, "random node weights sum to zero")

        draw = self._rng.random()
        cumulative = 0.0
        for edge, weight in zip(edges, weights):
            cumulative += weight / total
            if draw < cumulative:
                return edge
        # float rounding can leave the cumulative sum just below 1.0
        return next(e for e, w in zip(reversed(edges), reversed(weights)) if w > 0)

    def _step_observation(self, session: Session, node: Node, edges: list[Edge]) -> Edge:
        append_turn(session, "observation", node.text, node.id, visible=False)
        return self._single_edge(node, edges)


_STEPS: dict[str, Callable[[Engine, Session, Node, list[Edge]], Edge]] = {
    "state_update": Engine._step_state_update,
    "logic": Engine._step_logic,
    "random": Engine._step_random,
    "observation": Engine._step_observation,
}

if set(_STEPS) != set(AUTOMATIC_KINDS):
    raise RuntimeError(f"No traversal step for: {sorted(set(AUTOMATIC_KINDS) - set(_STEPS))}")
