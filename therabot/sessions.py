"""Trainee sessions: start, advance, outcome submission and history.

Every read-modify-write of a session happens under that session's lock:
the session is loaded, advanced by the engine and written back before the
lock is released, so two near-simultaneous choices cannot both act on the
same cursor. If the engine raises, nothing is written and the stored
session is unchanged.
"""

from __future__ import annotations

import logging

from therabot.engine import Engine
from therabot.errors import (
    AlreadySubmitted,
    NotFound,
    ScenarioNotPublished,
    SessionNotEnded,
)
from therabot.locks import KeyedLocks
from therabot.models import (
    OutcomeResult,
    Session,
    TraineeStats,
    TraversalResult,
    Turn,
)
from therabot.storage import Storage

logger = logging.getLogger(__name__)

CORRECT_FEEDBACK = "Diagnosis matches the scenario's correct condition. Well done."
INCORRECT_FEEDBACK = "Diagnosis incorrect. The patient is actually suffering from {name}."


class SessionService:
    def __init__(
        self,
        storage: Storage,
        engine: Engine,
        locks: KeyedLocks | None = None,
        require_published: bool = True,
        show_observations: bool = False,
        recent_sessions: int = 5,
    ) -> None:
        self._storage = storage
        self._engine = engine
        self._locks = locks if locks is not None else KeyedLocks()
        self.require_published = require_published
        self.show_observations = show_observations
        self.recent_sessions = recent_sessions

    def start_session(self, scenario_id: str, trainee_id: str) -> Session:
        """Seed variables, place the cursor at the root and surface the first node."""
        scenario = self._storage.get_scenario(scenario_id)
        if self.require_published and not scenario.published:
            raise ScenarioNotPublished(f"Scenario {scenario_id} is not published")
        if scenario.root_node_id is None:
            raise NotFound(f"Scenario {scenario_id} has no root node")

        session = Session(
            scenario_id=scenario_id,
            trainee_id=trainee_id,
            current_node_id=scenario.root_node_id,
            variables=dict(scenario.initial_state),
        )
        with self._locks.hold(session.id):
            self._engine.advance(session)
            self._storage.put_session(session)
        logger.info("Trainee %s started session %s on scenario %s", trainee_id, session.id, scenario_id)
        return session

    def get_session(self, session_id: str) -> Session:
        return self._storage.get_session(session_id)

    def current(self, session_id: str) -> TraversalResult:
        """The node the session is waiting on, without advancing."""
        return self._engine.present(self._storage.get_session(session_id))

    def advance(self, session_id: str, chosen_edge_id: str | None = None) -> TraversalResult:
        with self._locks.hold(session_id):
            session = self._storage.get_session(session_id)
            was_active = session.active
            result = self._engine.advance(session, chosen_edge_id)
            if was_active:
                self._storage.put_session(session)
        return result

    def submit_outcome(self, session_id: str, outcome_id: str) -> OutcomeResult:
        """Record the trainee's diagnosis once. A second call raises AlreadySubmitted."""
        with self._locks.hold(session_id):
            session = self._storage.get_session(session_id)
            if session.submitted_outcome is not None:
                raise AlreadySubmitted(f"Session {session_id} already has a submitted outcome")
            if session.active:
                raise SessionNotEnded(f"Session {session_id} has not reached an end node yet")
            condition = self._storage.get_condition(outcome_id)
            scenario = self._storage.get_scenario(session.scenario_id)

            correct = scenario.correct_outcome == condition.id
            session.submitted_outcome = condition.id
            session.outcome_correct = correct
            self._storage.put_session(session)

        logger.info("Session %s outcome %s correct=%s", session_id, outcome_id, correct)
        if correct:
            return OutcomeResult(correct=True, feedback=CORRECT_FEEDBACK)
        return OutcomeResult(
            correct=False,
            feedback=INCORRECT_FEEDBACK.format(name=self._condition_name(scenario.correct_outcome)),
        )

    def _condition_name(self, condition_id: str | None) -> str:
        if condition_id is None:
            return "Unknown Condition"
        try:
            return self._storage.get_condition(condition_id).name
        except NotFound:
            return "Unknown Condition"

    def visible_transcript(self, session: Session) -> list[Turn]:
        """Transcript as shown to the trainee (observations hidden unless enabled)."""
        if self.show_observations:
            return list(session.transcript)
        return [t for t in session.transcript if t.visible]

    def history(self, trainee_id: str) -> list[Session]:
        """The trainee's sessions, newest first."""
        sessions = self._storage.list_sessions_for_trainee(trainee_id)
        return sorted(sessions, key=lambda s: s.started_at, reverse=True)

    def stats(self, trainee_id: str) -> TraineeStats:
        sessions = self.history(trainee_id)
        completed = [s for s in sessions if s.ended_at is not None]
        diagnosed = [s for s in sessions if s.submitted_outcome is not None]
        correct = [s for s in diagnosed if s.outcome_correct]
        accuracy = round(len(correct) / len(diagnosed) * 100) if diagnosed else 0
        return TraineeStats(
            total_started=len(sessions),
            total_completed=len(completed),
            total_diagnoses=len(diagnosed),
            correct_diagnoses=len(correct),
            accuracy=accuracy,
            recent_sessions=sessions[: self.recent_sessions],
        )
