import pytest

from therabot.authoring import Authoring
from therabot.engine import Engine
from therabot.models import Condition, Edge, Node, Scenario, Session
from therabot.registry import make_node
from therabot.sessions import SessionService
from therabot.storage import Storage


class FixedRandom:
    """Stand-in RNG returning `draws` in order; the last draw repeats."""

    def __init__(self, *draws: float) -> None:
        self.draws = list(draws) or [0.0]
        self.calls = 0

    def random(self) -> float:
        idx = min(self.calls, len(self.draws) - 1)
        self.calls += 1
        return self.draws[idx]


class GraphBuilder:
    """Writes nodes and edges straight to storage, bypassing authoring checks.

    Lets engine tests build graphs that authoring would reject (one-edge
    logic nodes, automatic cycles, dangling edges).
    """

    def __init__(self, storage: Storage, initial_state: dict[str, float] | None = None) -> None:
        self.storage = storage
        self.scenario = storage.put_scenario(
            Scenario(name="Test", initial_state=initial_state or {})
        )

    def node(self, kind: str, text: str = "", metadata: dict | None = None) -> Node:
        node = self.storage.put_node(make_node(self.scenario.id, kind, text, metadata))
        if kind == "root":
            self.scenario.root_node_id = node.id
            self.storage.put_scenario(self.scenario)
        return node

    def edge(
        self,
        source: Node,
        target: Node,
        label: str = "",
        order_index: int | None = None,
        weight: float | None = None,
    ) -> Edge:
        if order_index is None:
            order_index = len(self.storage.get_outgoing_edges(self.scenario.id, source.id))
        return self.storage.put_edge(Edge(
            scenario_id=self.scenario.id,
            source_id=source.id,
            target_id=target.id,
            label=label,
            order_index=order_index,
            weight=weight,
        ))

    def session(self, start: Node | None = None, **variables: float) -> Session:
        return Session(
            scenario_id=self.scenario.id,
            trainee_id="trainee-1",
            current_node_id=start.id if start else self.scenario.root_node_id,
            variables={**self.scenario.initial_state, **variables},
        )


@pytest.fixture
def graph(storage) -> GraphBuilder:
    return GraphBuilder(storage)


@pytest.fixture
def storage(tmp_path) -> Storage:
    """Fresh JSON store under a per-test directory."""
    return Storage(tmp_path / "data")


@pytest.fixture
def authoring(storage) -> Authoring:
    return Authoring(storage)


@pytest.fixture
def rng() -> FixedRandom:
    """Deterministic RNG shared with the `engine` fixture; set `rng.draws` in a test."""
    return FixedRandom(0.0)


@pytest.fixture
def engine(storage, rng) -> Engine:
    return Engine(storage, rng=rng)


@pytest.fixture
def sessions(storage, engine) -> SessionService:
    return SessionService(storage, engine)


@pytest.fixture
def conditions(storage) -> dict[str, Condition]:
    gad = storage.put_condition(Condition(name="Generalized Anxiety Disorder"))
    mdd = storage.put_condition(Condition(name="Major Depressive Disorder"))
    return {"gad": gad, "mdd": mdd}
