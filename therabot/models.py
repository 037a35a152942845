"""Core domain models.

The engine, the authoring layer and the storage layer all operate on these
types. Pydantic is used for validation and serialisation at every data
boundary.

Nodes are a discriminated union on `kind`. Only `logic` and `state_update`
carry metadata; the random branch weights live on the outgoing edges.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, computed_field

NodeKind = Literal[
    "root",
    "dialogue",
    "end",
    "logic",
    "state_update",
    "random",
    "observation",
]

NODE_KINDS: tuple[str, ...] = (
    "root",
    "dialogue",
    "end",
    "logic",
    "state_update",
    "random",
    "observation",
)

# Resolved by the engine without trainee input.
AUTOMATIC_KINDS: tuple[str, ...] = ("logic", "state_update", "random", "observation")

ComparisonOperator = Literal[">", "<", "==", "!=", ">=", "<="]
MutationOperator = Literal["add", "sub", "set", "mult"]

Speaker = Literal["bot", "trainee", "observation"]


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class LogicMetadata(BaseModel):
    """`variables[variable] <operator> value` picks edge 0 (true) or 1 (false)."""

    variable: str = Field(min_length=1)
    operator: ComparisonOperator
    value: float


class StateUpdateMetadata(BaseModel):
    """Applies `operator` with `value` to `variables[variable]`."""

    variable: str = Field(min_length=1)
    operator: MutationOperator
    value: float


class _NodeBase(BaseModel):
    id: str = Field(default_factory=new_id)
    scenario_id: str
    text: str = ""
    x: float = 0
    y: float = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_terminal(self) -> bool:
        return self.kind == "end"  # type: ignore[attr-defined]


class RootNode(_NodeBase):
    kind: Literal["root"] = "root"
    metadata: None = None


class DialogueNode(_NodeBase):
    kind: Literal["dialogue"] = "dialogue"
    metadata: None = None


class EndNode(_NodeBase):
    kind: Literal["end"] = "end"
    metadata: None = None


class LogicNode(_NodeBase):
    kind: Literal["logic"] = "logic"
    metadata: LogicMetadata


class StateUpdateNode(_NodeBase):
    kind: Literal["state_update"] = "state_update"
    metadata: StateUpdateMetadata


class RandomNode(_NodeBase):
    kind: Literal["random"] = "random"
    metadata: None = None


class ObservationNode(_NodeBase):
    """Internal note for reviewers; `text` is logged but never shown to the trainee."""

    kind: Literal["observation"] = "observation"
    metadata: None = None


Node = Annotated[
    Union[
        RootNode,
        DialogueNode,
        EndNode,
        LogicNode,
        StateUpdateNode,
        RandomNode,
        ObservationNode,
    ],
    Field(discriminator="kind"),
]

node_adapter: TypeAdapter[Node] = TypeAdapter(Node)


class Edge(BaseModel):
    """A labeled transition between two nodes of the same scenario.

    `label` is the trainee's option text on human-facing sources and a
    branch tag ("true"/"false", an outcome name) on automatic ones.
    `weight` is only read when the source is a random node.
    """

    id: str = Field(default_factory=new_id)
    scenario_id: str
    source_id: str
    target_id: str
    label: str = ""
    order_index: int = 0
    weight: float | None = None


class Scenario(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    root_node_id: str | None = None
    initial_state: dict[str, float] = Field(default_factory=dict)
    correct_outcome: str | None = None  # condition id
    published: bool = False
    created_at: str = Field(default_factory=utcnow)
    updated_at: str = Field(default_factory=utcnow)


class Condition(BaseModel):
    """A diagnosis a trainee can submit as a session outcome."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class Turn(BaseModel):
    """A single entry in a session's append-only transcript."""

    seq: int
    speaker: Speaker
    text: str
    node_id: str
    edge_id: str | None = None
    visible: bool = True
    ts: str = Field(default_factory=utcnow)


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    scenario_id: str
    trainee_id: str
    current_node_id: str
    variables: dict[str, float] = Field(default_factory=dict)
    transcript: list[Turn] = Field(default_factory=list)
    started_at: str = Field(default_factory=utcnow)
    ended_at: str | None = None
    submitted_outcome: str | None = None
    outcome_correct: bool | None = None

    @property
    def active(self) -> bool:
        return self.ended_at is None


class Choice(BaseModel):
    """An option the trainee can pick at a dialogue node."""

    id: str
    label: str


class TraversalResult(BaseModel):
    session_id: str
    node_id: str
    text: str
    choices: list[Choice] = Field(default_factory=list)
    terminal: bool = False


class OutcomeResult(BaseModel):
    correct: bool
    feedback: str


class TraineeStats(BaseModel):
    total_started: int
    total_completed: int
    total_diagnoses: int
    correct_diagnoses: int
    accuracy: int  # percent, rounded
    recent_sessions: list[Session]


# ---------------------------------------------------------------------------
# Authoring inputs and publish reports
# ---------------------------------------------------------------------------

class ChoiceSpec(BaseModel):
    """One outgoing edge in a set_choices call; `id` keeps an existing edge's id."""

    id: str | None = None
    label: str = ""
    target_id: str
    order_index: int | None = None
    weight: float | None = None


class Issue(BaseModel):
    node_id: str | None = None
    message: str


class ValidationReport(BaseModel):
    scenario_id: str
    issues: list[Issue] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ok(self) -> bool:
        return not self.issues


class ImportChoice(BaseModel):
    label: str = ""
    target_ref: str
    weight: float | None = None


class ImportNode(BaseModel):
    """A node in a bulk graph payload; `ref` is a client-side id."""

    ref: str
    kind: NodeKind
    text: str = ""
    metadata: dict | None = None
    x: float = 0
    y: float = 0
    choices: list[ImportChoice] = Field(default_factory=list)


class GraphImport(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    correct_outcome: str | None = None
    initial_state: dict[str, float] = Field(default_factory=dict)
    nodes: list[ImportNode]


class GraphExport(BaseModel):
    scenario: Scenario
    nodes: list[Node]
    edges: list[Edge]
