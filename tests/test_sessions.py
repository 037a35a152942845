"""Tests for SessionService: start, persistence, outcomes, history and locking."""

import random
import threading

import pytest

from therabot.engine import Engine
from therabot.errors import (
    AlreadySubmitted,
    InvalidChoice,
    NotFound,
    ScenarioNotPublished,
    SessionEnded,
    SessionNotEnded,
)
from therabot.sessions import CORRECT_FEEDBACK, SessionService
from therabot.storage import Storage


class Case:
    """root -> observation -> dialogue -> end, published."""

    def __init__(self, authoring, correct_outcome=None, publish=True):
        self.scenario = authoring.create_scenario(
            "Case", initial_state={"rapport": 3}, correct_outcome=correct_outcome
        )
        sid = self.scenario.id
        self.root = authoring.create_node(sid, "root", "Hello")
        self.note = authoring.create_node(sid, "observation", "Asked an open question")
        self.talk = authoring.create_node(sid, "dialogue", "It's been a rough month.")
        self.end = authoring.create_node(sid, "end", "Thanks.")
        [self.go] = authoring.set_choices(sid, self.root.id, [{"label": "What brings you in?", "target_id": self.note.id}])
        authoring.set_choices(sid, self.note.id, [{"target_id": self.talk.id}])
        [self.bye] = authoring.set_choices(sid, self.talk.id, [{"label": "Let's stop.", "target_id": self.end.id}])
        if publish:
            assert authoring.publish(sid).ok

    def finish(self, sessions, trainee_id="trainee-1"):
        session = sessions.start_session(self.scenario.id, trainee_id)
        sessions.advance(session.id, self.go.id)
        sessions.advance(session.id, self.bye.id)
        return session.id


@pytest.fixture
def case(authoring, conditions):
    return Case(authoring, correct_outcome=conditions["gad"].id)


class TestStart:
    def test_unpublished_scenario_rejected(self, authoring, sessions) -> None:
        draft = Case(authoring, publish=False)
        with pytest.raises(ScenarioNotPublished):
            sessions.start_session(draft.scenario.id, "trainee-1")

    def test_unpublished_allowed_when_not_required(self, authoring, sessions) -> None:
        draft = Case(authoring, publish=False)
        sessions.require_published = False
        session = sessions.start_session(draft.scenario.id, "trainee-1")
        assert session.current_node_id == draft.root.id

    def test_missing_scenario(self, sessions) -> None:
        with pytest.raises(NotFound):
            sessions.start_session("nope", "trainee-1")

    def test_seeds_variables_and_presents_root(self, case, sessions) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")

        stored = sessions.get_session(session.id)
        assert stored.variables == {"rapport": 3}
        assert stored.current_node_id == case.root.id
        assert [t.text for t in stored.transcript] == ["Hello"]
        current = sessions.current(session.id)
        assert [c.id for c in current.choices] == [case.go.id]


class TestAdvance:
    def test_choice_is_persisted(self, case, sessions) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")

        result = sessions.advance(session.id, case.go.id)

        assert result.text == "It's been a rough month."
        assert sessions.get_session(session.id).current_node_id == case.talk.id

    def test_invalid_choice_leaves_session_unchanged(self, case, sessions) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")
        before = sessions.get_session(session.id)

        with pytest.raises(InvalidChoice):
            sessions.advance(session.id, case.bye.id)

        assert sessions.get_session(session.id) == before

    def test_reload_continues_identically(self, case, sessions, storage, rng) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")
        sessions.advance(session.id, case.go.id)

        reopened = Storage(storage.base_path)
        other = SessionService(reopened, Engine(reopened, rng=rng))

        assert other.current(session.id) == sessions.current(session.id)
        assert other.advance(session.id, case.bye.id).terminal is True

    def test_ended_session_rejects_choice(self, case, sessions) -> None:
        session_id = case.finish(sessions)
        with pytest.raises(SessionEnded):
            sessions.advance(session_id, case.bye.id)

    def test_concurrent_choices_only_one_applies(self, case, sessions) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")
        barrier = threading.Barrier(2)
        outcomes: list[str] = []

        def choose():
            barrier.wait()
            try:
                sessions.advance(session.id, case.go.id)
                outcomes.append("ok")
            except InvalidChoice:
                outcomes.append("rejected")

        threads = [threading.Thread(target=choose) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["ok", "rejected"]
        transcript = sessions.get_session(session.id).transcript
        assert [t.speaker for t in transcript].count("trainee") == 1


class TestOutcome:
    def test_before_end(self, case, sessions, conditions) -> None:
        session = sessions.start_session(case.scenario.id, "trainee-1")
        with pytest.raises(SessionNotEnded):
            sessions.submit_outcome(session.id, conditions["gad"].id)

    def test_correct(self, case, sessions, conditions) -> None:
        session_id = case.finish(sessions)

        result = sessions.submit_outcome(session_id, conditions["gad"].id)

        assert result.correct is True
        assert result.feedback == CORRECT_FEEDBACK
        stored = sessions.get_session(session_id)
        assert stored.submitted_outcome == conditions["gad"].id
        assert stored.outcome_correct is True

    def test_incorrect_names_actual_condition(self, case, sessions, conditions) -> None:
        session_id = case.finish(sessions)

        result = sessions.submit_outcome(session_id, conditions["mdd"].id)

        assert result.correct is False
        assert "Generalized Anxiety Disorder" in result.feedback

    def test_second_submission_keeps_first(self, case, sessions, conditions) -> None:
        session_id = case.finish(sessions)
        sessions.submit_outcome(session_id, conditions["mdd"].id)

        with pytest.raises(AlreadySubmitted):
            sessions.submit_outcome(session_id, conditions["gad"].id)

        stored = sessions.get_session(session_id)
        assert stored.submitted_outcome == conditions["mdd"].id
        assert stored.outcome_correct is False

    def test_unknown_condition(self, case, sessions) -> None:
        session_id = case.finish(sessions)
        with pytest.raises(NotFound):
            sessions.submit_outcome(session_id, "nope")

    def test_scenario_without_correct_outcome(self, authoring, sessions, conditions) -> None:
        plain = Case(authoring)
        session_id = plain.finish(sessions)

        result = sessions.submit_outcome(session_id, conditions["gad"].id)

        assert result.correct is False
        assert "Unknown Condition" in result.feedback


class TestTranscript:
    def test_observations_hidden_by_default(self, case, sessions) -> None:
        session_id = case.finish(sessions)
        session = sessions.get_session(session_id)

        visible = sessions.visible_transcript(session)

        assert "observation" not in [t.speaker for t in visible]
        assert len(visible) == len(session.transcript) - 1

    def test_observations_shown_when_enabled(self, case, sessions) -> None:
        session_id = case.finish(sessions)
        sessions.show_observations = True
        session = sessions.get_session(session_id)
        assert sessions.visible_transcript(session) == session.transcript


class TestHistory:
    def test_only_own_sessions_newest_first(self, case, sessions) -> None:
        first = sessions.start_session(case.scenario.id, "alice")
        second = sessions.start_session(case.scenario.id, "alice")
        sessions.start_session(case.scenario.id, "bob")

        history = sessions.history("alice")

        assert {s.id for s in history} == {first.id, second.id}
        started = [s.started_at for s in history]
        assert started == sorted(started, reverse=True)

    def test_stats(self, case, sessions, conditions) -> None:
        right = case.finish(sessions, "alice")
        wrong = case.finish(sessions, "alice")
        case.finish(sessions, "alice")
        sessions.start_session(case.scenario.id, "alice")
        sessions.submit_outcome(right, conditions["gad"].id)
        sessions.submit_outcome(wrong, conditions["mdd"].id)

        stats = sessions.stats("alice")

        assert stats.total_started == 4
        assert stats.total_completed == 3
        assert stats.total_diagnoses == 2
        assert stats.correct_diagnoses == 1
        assert stats.accuracy == 50
        assert len(stats.recent_sessions) == 4

    def test_recent_sessions_limit(self, case, sessions) -> None:
        for _ in range(3):
            sessions.start_session(case.scenario.id, "alice")
        sessions.recent_sessions = 2
        assert len(sessions.stats("alice").recent_sessions) == 2

    def test_stats_for_new_trainee(self, sessions) -> None:
        stats = sessions.stats("nobody")
        assert stats.total_started == 0
        assert stats.accuracy == 0

    def test_concurrent_starts_all_recorded(self, case, sessions) -> None:
        count = 16
        barrier = threading.Barrier(count)
        errors: list[Exception] = []
        started: list[str] = []

        def start():
            barrier.wait()
            try:
                started.append(sessions.start_session(case.scenario.id, "t1").id)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=start) for _ in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(s.id for s in sessions.history("t1")) == sorted(started)
        assert len(started) == count


class Branching:
    """root -> state_update -> logic -> random -> dialogue -> end, built through authoring.

    The open question raises rapport to 5 and reaches the random node; the
    closed one drops it to 2 and takes the logic node's false branch.
    """

    def __init__(self, authoring):
        self.scenario = authoring.create_scenario("Branching", initial_state={"rapport": 3})
        sid = self.scenario.id
        root = authoring.create_node(sid, "root", "Hello")
        warm = authoring.create_node(sid, "state_update", metadata={"variable": "rapport", "operator": "add", "value": 2})
        cold = authoring.create_node(sid, "state_update", metadata={"variable": "rapport", "operator": "sub", "value": 1})
        note = authoring.create_node(sid, "observation", "Rapport checked")
        check = authoring.create_node(sid, "logic", metadata={"variable": "rapport", "operator": ">=", "value": 4})
        mood = authoring.create_node(sid, "random")
        calm = authoring.create_node(sid, "dialogue", "Calm")
        tense = authoring.create_node(sid, "dialogue", "Tense")
        guarded = authoring.create_node(sid, "dialogue", "Guarded")
        end = authoring.create_node(sid, "end", "Goodbye")

        self.open, self.closed = authoring.set_choices(sid, root.id, [
            {"label": "How have you been feeling?", "target_id": warm.id},
            {"label": "Are you anxious?", "target_id": cold.id},
        ])
        authoring.set_choices(sid, warm.id, [{"target_id": note.id}])
        authoring.set_choices(sid, cold.id, [{"target_id": note.id}])
        authoring.set_choices(sid, note.id, [{"target_id": check.id}])
        authoring.set_choices(sid, check.id, [
            {"target_id": mood.id, "order_index": 0},
            {"target_id": guarded.id, "order_index": 1},
        ])
        authoring.set_choices(sid, mood.id, [
            {"target_id": calm.id, "weight": 3},
            {"target_id": tense.id, "weight": 1},
        ])
        for node in (calm, tense, guarded):
            authoring.set_choices(sid, node.id, [{"label": "Let's stop here.", "target_id": end.id}])
        assert authoring.publish(sid).ok


def _spoken(session):
    return [(t.speaker, t.text) for t in session.transcript]


class TestReload:
    def test_replay_after_reopen_matches(self, authoring, storage) -> None:
        case = Branching(authoring)
        first = SessionService(storage, Engine(storage, rng=random.Random(7)))
        played = []
        for i in range(6):
            session = first.start_session(case.scenario.id, "trainee-1")
            path = [(case.open, case.closed)[i % 2].id]
            reply = first.advance(session.id, path[0])
            path.append(reply.choices[0].id)
            assert first.advance(session.id, path[1]).terminal is True
            played.append((path, first.get_session(session.id)))

        reopened = Storage(storage.base_path)
        second = SessionService(reopened, Engine(reopened, rng=random.Random(7)))
        for path, original in played:
            session = second.start_session(case.scenario.id, "trainee-1")
            for edge_id in path:
                second.advance(session.id, edge_id)
            replayed = second.get_session(session.id)

            assert _spoken(replayed) == _spoken(original)
            assert replayed.variables == original.variables
            assert replayed.ended_at is not None

        draws = random.Random(7)
        expected = ["Calm" if draws.random() < 0.75 else "Tense" for _ in range(3)]
        assert [s.transcript[3].text for _, s in played[::2]] == expected
        assert [s.transcript[3].text for _, s in played[1::2]] == ["Guarded"] * 3
        assert [s.variables["rapport"] for _, s in played] == [5, 2] * 3
