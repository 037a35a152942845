"""Pydantic request bodies for API endpoints."""

from pydantic import BaseModel, Field

from therabot.models import ChoiceSpec, NodeKind


class CreateScenario(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    initial_state: dict[str, float] = Field(default_factory=dict)
    correct_outcome: str | None = None


class UpdateScenario(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    initial_state: dict[str, float] | None = None
    correct_outcome: str | None = None


class CreateNode(BaseModel):
    kind: NodeKind
    text: str = ""
    metadata: dict | None = None
    x: float = 0
    y: float = 0


class UpdateNode(BaseModel):
    text: str | None = None
    metadata: dict | None = None
    x: float | None = None
    y: float | None = None


class SetChoices(BaseModel):
    choices: list[ChoiceSpec]


class ReplaceNode(BaseModel):
    new_node_id: str


class StartSession(BaseModel):
    scenario_id: str


class AdvanceBody(BaseModel):
    choice_id: str | None = None


class SubmitOutcome(BaseModel):
    outcome_id: str


class CreateCondition(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class UpdateSettings(BaseModel):
    max_auto_steps: int | None = Field(default=None, ge=1)
    require_published: bool | None = None
    show_observations: bool | None = None
    recent_sessions: int | None = Field(default=None, ge=0)
