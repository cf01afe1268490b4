"""
Test Diagnostic Session Engine

State machine, boundaries, retries, expiry, identity binding and
per-session serialization. The oracle is scripted and the clock is
injected, so no model is needed.

Run from project root:
    pytest tests/test_diagnostic_engine.py
"""

import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from conftest import ScriptedOracle, answer_up_to, question_id_for
from intake.contracts import Recommendation
from intake.core.diagnostic_engine import DiagnosticSessionEngine
from intake.errors import (
    AnswerOutOfOrder,
    InvariantViolation,
    OracleError,
    SessionNotFound,
    Unauthorized,
    UnknownQuestion,
    ValidationError,
)
from intake.results import Expired, Found, NotFound
from intake.session_store import FileSessionStore

OWNER = "patient@example.com"
STRANGER = "someone.else@example.com"


@pytest.fixture
def file_store(tmp_path, clock):
    return FileSessionStore(str(tmp_path / "sessions"), clock=clock)


@pytest.fixture
def file_engine(oracle, file_store, clock):
    """Engine over a store that never evicts on its own"""
    return DiagnosticSessionEngine(oracle, file_store, clock=clock)


def load(engine, session_id):
    lookup = engine.lookup_session(session_id)
    assert isinstance(lookup, Found)
    return lookup.session


class TestEngineInit:

    def test_rejects_oracle_without_methods(self, store):
        with pytest.raises(TypeError, match="generate_artifact"):
            DiagnosticSessionEngine(Mock(spec=['generate_phase_questions']), store)

    def test_rejects_store_without_keys(self, oracle):
        with pytest.raises(TypeError, match="keys"):
            DiagnosticSessionEngine(oracle, Mock(spec=['get', 'put', 'remove']))

    def test_rejects_recommendation_store_without_save(self, oracle, store):
        with pytest.raises(TypeError, match="save"):
            DiagnosticSessionEngine(oracle, store, recommendation_store=Mock(spec=[]))


class TestStartSession:

    def test_creates_phase_one_session(self, engine, oracle, clock):
        session = engine.start_session("headache")

        assert session.phase == 1
        assert session.cursor == 1
        assert [q.id for q in session.questions] == ["q1_1", "q1_2", "q1_3", "q1_4", "q1_5"]
        assert session.answers == []
        assert session.expires_at == clock() + engine.ttl
        assert oracle.phase_calls == [(1, "headache", [])]
        assert engine.is_session_valid(session.session_id)

    def test_empty_symptoms_mean_generic_interview(self, engine):
        session = engine.start_session("")

        assert session.initial_text is None
        assert len(session.questions) == 5

    def test_identity_binds_session(self, engine):
        session = engine.start_session("cold hands", identity=OWNER)

        assert session.identity == OWNER
        assert load(engine, session.session_id).identity == OWNER

    def test_symptoms_too_long_rejected_before_oracle(self, engine, oracle):
        with pytest.raises(ValidationError, match="1000"):
            engine.start_session("x" * 1001)

        assert oracle.phase_calls == []

    def test_invalid_identity_rejected(self, engine, oracle):
        with pytest.raises(ValidationError):
            engine.start_session("headache", identity="not-an-email")

        assert oracle.phase_calls == []

    def test_oracle_failure_creates_nothing(self, engine, oracle, store):
        oracle.fail_phases = {1}

        with pytest.raises(OracleError):
            engine.start_session("headache")

        assert len(store) == 0

    def test_wrong_question_count_creates_nothing(self, engine, oracle, store):
        oracle.question_count = 4

        with pytest.raises(OracleError, match="Expected 5"):
            engine.start_session("headache")

        assert len(store) == 0

    def test_unexpected_oracle_exception_reported_as_oracle_error(self, store, clock):
        broken = Mock(spec=['generate_phase_questions', 'generate_artifact'])
        broken.generate_phase_questions.side_effect = KeyError("questions")
        engine = DiagnosticSessionEngine(broken, store, clock=clock)

        with pytest.raises(OracleError):
            engine.start_session("headache")


class TestSubmitAnswer:

    def test_first_answer_advances_cursor(self, engine):
        session = engine.start_session("headache")

        outcome = engine.submit_answer(session.session_id, "q1_1", True)

        assert outcome.has_more_questions is True
        assert outcome.next_question.id == "q1_2"
        assert outcome.current_question == 2
        assert outcome.total_questions == 15
        assert outcome.phase == 1
        assert outcome.recommendation is None

        stored = load(engine, session.session_id)
        assert stored.cursor == 2
        assert [(a.question_id, a.value) for a in stored.answers] == [("q1_1", True)]

    def test_invariants_hold_after_every_answer(self, engine):
        session = engine.start_session("headache")

        for number in range(1, 15):
            engine.submit_answer(session.session_id, question_id_for(number), number % 3 == 0)
            stored = load(engine, session.session_id)
            assert len(stored.questions) == stored.phase * 5
            assert stored.cursor == len(stored.answers) + 1

    def test_no_generation_before_boundary(self, engine, oracle):
        session = engine.start_session("headache")

        answer_up_to(engine, session.session_id, 4)

        assert len(oracle.phase_calls) == 1
        assert load(engine, session.session_id).phase == 1

    def test_crossing_into_question_six_generates_phase_two_once(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)

        outcome = engine.submit_answer(session.session_id, "q1_5", True)

        assert len(oracle.phase_calls) == 2
        assert oracle.phase_calls[1] == (2, "headache", ["q1_1", "q1_2", "q1_3", "q1_4", "q1_5"])
        assert outcome.phase == 2
        assert outcome.current_question == 6
        assert outcome.next_question.id == "q2_1"

        stored = load(engine, session.session_id)
        assert stored.phase == 2
        assert len(stored.questions) == 10

    def test_crossing_into_question_eleven_generates_phase_three(self, engine, oracle):
        session = engine.start_session("headache")

        outcome = answer_up_to(engine, session.session_id, 10)

        assert [call[0] for call in oracle.phase_calls] == [1, 2, 3]
        assert len(oracle.phase_calls[2][2]) == 10
        assert outcome.phase == 3
        assert outcome.next_question.id == "q3_1"
        assert len(load(engine, session.session_id).questions) == 15

    def test_resending_same_answer_is_idempotent(self, engine):
        session = engine.start_session("headache")

        first = engine.submit_answer(session.session_id, "q1_1", True)
        second = engine.submit_answer(session.session_id, "q1_1", True)

        assert first == second
        stored = load(engine, session.session_id)
        assert len(stored.answers) == 1
        assert stored.cursor == 2

    def test_resending_last_answer_overwrites_value(self, engine):
        session = engine.start_session("headache")
        engine.submit_answer(session.session_id, "q1_1", True)

        engine.submit_answer(session.session_id, "q1_1", False)

        stored = load(engine, session.session_id)
        assert [(a.question_id, a.value) for a in stored.answers] == [("q1_1", False)]

    def test_resending_boundary_answer_does_not_regenerate(self, engine, oracle):
        session = engine.start_session("headache")
        first = answer_up_to(engine, session.session_id, 5)

        second = engine.submit_answer(session.session_id, "q1_5", False)

        assert len(oracle.phase_calls) == 2
        assert second.next_question == first.next_question
        assert load(engine, session.session_id).answers[-1].value is False

    def test_answering_earlier_question_rejected(self, engine):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 2)

        with pytest.raises(AnswerOutOfOrder) as exc_info:
            engine.submit_answer(session.session_id, "q1_1", False)

        assert exc_info.value.expected_question_id == "q1_3"
        assert isinstance(exc_info.value, InvariantViolation)

    def test_answering_ahead_of_cursor_rejected(self, engine):
        session = engine.start_session("headache")

        with pytest.raises(AnswerOutOfOrder):
            engine.submit_answer(session.session_id, "q1_3", True)

    def test_unknown_question_rejected(self, engine):
        session = engine.start_session("headache")

        with pytest.raises(UnknownQuestion):
            engine.submit_answer(session.session_id, "q9_9", True)
        with pytest.raises(UnknownQuestion):
            engine.submit_answer(session.session_id, "q2_1", True)

    @pytest.mark.parametrize("value", ["yes", 1, None])
    def test_non_boolean_answer_rejected(self, engine, value):
        session = engine.start_session("headache")

        with pytest.raises(ValidationError):
            engine.submit_answer(session.session_id, "q1_1", value)

    def test_malformed_session_id_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.submit_answer("not-a-uuid", "q1_1", True)
        with pytest.raises(ValidationError):
            engine.submit_answer("00000000-0000-0000-0000-000000000000", "q1_1", True)

    def test_unknown_session_not_found(self, engine):
        with pytest.raises(SessionNotFound) as exc_info:
            engine.submit_answer("3f2b8c1e-2d4a-4f6b-9a7c-1e2d3f4a5b6c", "q1_1", True)

        assert exc_info.value.expired is False


class TestPhaseGenerationFailure:

    def test_failed_boundary_keeps_triggering_answer(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)
        oracle.fail_phases = {2}

        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q1_5", True)

        stored = load(engine, session.session_id)
        assert stored.phase == 1
        assert stored.cursor == 6
        assert len(stored.answers) == 5
        assert len(stored.questions) == 5

    def test_resubmitting_trigger_retries_generation(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)
        oracle.fail_phases = {2}
        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q1_5", True)

        oracle.fail_phases = set()
        outcome = engine.submit_answer(session.session_id, "q1_5", True)

        assert outcome.phase == 2
        assert outcome.next_question.id == "q2_1"
        stored = load(engine, session.session_id)
        assert len(stored.answers) == 5
        assert len(stored.questions) == 10

    def test_other_answers_rejected_while_phase_pending(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)
        oracle.fail_phases = {2}
        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q1_5", True)

        with pytest.raises(AnswerOutOfOrder) as exc_info:
            engine.submit_answer(session.session_id, "q1_4", True)

        assert exc_info.value.expected_question_id == "q1_5"

    def test_complete_pending_phase(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)
        oracle.fail_phases = {2}
        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q1_5", True)

        oracle.fail_phases = set()
        status = engine.complete_pending_phase(session.session_id)

        assert status.phase == 2
        assert status.current_question.id == "q2_1"
        assert status.current_question_number == 6

    def test_complete_pending_phase_noop_when_nothing_pending(self, engine, oracle):
        session = engine.start_session("headache")

        status = engine.complete_pending_phase(session.session_id)

        assert status.phase == 1
        assert len(oracle.phase_calls) == 1

    def test_complete_pending_phase_failure_changes_nothing(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)
        oracle.fail_phases = {2}
        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q1_5", True)
        before = load(engine, session.session_id)

        with pytest.raises(OracleError):
            engine.complete_pending_phase(session.session_id)

        assert load(engine, session.session_id) == before


class TestCompletion:

    def test_full_interview_produces_one_artifact(self, engine, oracle):
        session = engine.start_session("headache")

        outcome = answer_up_to(engine, session.session_id, 15)

        assert outcome.has_more_questions is False
        assert outcome.next_question is None
        assert outcome.recommendation.syndrome == "Spleen Qi Deficiency"
        assert outcome.current_question == 16
        assert outcome.phase == 3
        assert len(oracle.artifact_calls) == 1
        assert oracle.artifact_calls[0] == ("headache", [n % 2 == 1 for n in range(1, 16)])
        assert engine.is_session_valid(session.session_id) is False
        assert isinstance(engine.lookup_session(session.session_id), NotFound)

    def test_artifact_failure_keeps_session(self, engine, oracle):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 14)
        oracle.fail_artifact = True

        with pytest.raises(OracleError):
            engine.submit_answer(session.session_id, "q3_5", True)

        assert engine.is_session_valid(session.session_id)
        stored = load(engine, session.session_id)
        assert stored.cursor == 16
        assert len(stored.answers) == 15

        oracle.fail_artifact = False
        outcome = engine.submit_answer(session.session_id, "q3_5", True)

        assert outcome.recommendation is not None
        assert len(oracle.artifact_calls) == 2
        assert engine.is_session_valid(session.session_id) is False

    def test_resending_final_answer_replays_result(self, engine, oracle):
        session = engine.start_session("headache")
        first = answer_up_to(engine, session.session_id, 15)

        second = engine.submit_answer(session.session_id, "q3_5", True)

        assert second == first
        assert len(oracle.artifact_calls) == 1

    def test_different_final_answer_after_completion_not_found(self, engine):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 15)

        with pytest.raises(SessionNotFound):
            engine.submit_answer(session.session_id, "q3_5", False)

    def test_receipt_lapses_after_retention(self, engine, clock):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 15)

        clock.advance(minutes=6)

        with pytest.raises(SessionNotFound):
            engine.submit_answer(session.session_id, "q3_5", True)

    def test_identity_bound_result_is_saved_once(self, oracle, store, clock):
        saved = Mock(spec=['save'])
        saved.save.return_value = Mock(recommendation_id="rec-1")
        engine = DiagnosticSessionEngine(oracle, store, recommendation_store=saved, clock=clock)
        session = engine.start_session("headache", identity=OWNER)

        outcome = answer_up_to(engine, session.session_id, 15, identity=OWNER)
        engine.submit_answer(session.session_id, "q3_5", True, OWNER)

        saved.save.assert_called_once()
        identity, recommendation = saved.save.call_args[0]
        assert identity == OWNER
        assert isinstance(recommendation, Recommendation)
        assert outcome.recommendation_id == "rec-1"

    def test_anonymous_result_is_not_saved(self, oracle, store, clock):
        saved = Mock(spec=['save'])
        engine = DiagnosticSessionEngine(oracle, store, recommendation_store=saved, clock=clock)
        session = engine.start_session("headache")

        outcome = answer_up_to(engine, session.session_id, 15)

        saved.save.assert_not_called()
        assert outcome.recommendation_id is None

    def test_save_failure_does_not_fail_completion(self, oracle, store, clock):
        saved = Mock(spec=['save'])
        saved.save.side_effect = OSError("disk full")
        engine = DiagnosticSessionEngine(oracle, store, recommendation_store=saved, clock=clock)
        session = engine.start_session("headache", identity=OWNER)

        outcome = answer_up_to(engine, session.session_id, 15, identity=OWNER)

        assert outcome.has_more_questions is False
        assert outcome.recommendation is not None
        assert outcome.recommendation_id is None


class TestExpiry:

    def test_session_valid_at_exact_expiry(self, engine, clock):
        session = engine.start_session("headache")

        clock.advance(hours=1)

        assert engine.is_session_valid(session.session_id)

    def test_expired_but_not_evicted_behaves_as_absent(self, file_engine, file_store, clock):
        session = file_engine.start_session("headache")
        clock.advance(hours=1, seconds=1)

        with pytest.raises(SessionNotFound) as exc_info:
            file_engine.submit_answer(session.session_id, "q1_1", True)

        assert exc_info.value.expired is True
        assert file_store.keys() == []

    def test_is_session_valid_evicts_expired_entry(self, file_engine, file_store, clock):
        session = file_engine.start_session("headache")
        clock.advance(hours=2)

        assert file_engine.is_session_valid(session.session_id) is False
        assert file_store.keys() == []

    def test_lookup_reports_expired_variant(self, file_engine, clock):
        session = file_engine.start_session("headache")
        clock.advance(hours=1, minutes=1)

        lookup = file_engine.lookup_session(session.session_id)

        assert isinstance(lookup, Expired)
        assert lookup.expired_at == session.expires_at

    def test_answering_slides_expiry(self, engine, clock):
        session = engine.start_session("headache")

        clock.advance(minutes=50)
        engine.submit_answer(session.session_id, "q1_1", True)
        clock.advance(minutes=50)

        assert engine.is_session_valid(session.session_id)
        assert load(engine, session.session_id).expires_at == clock() + timedelta(minutes=10)

    def test_is_session_valid_rejects_malformed_ids(self, engine):
        assert engine.is_session_valid("not-a-uuid") is False
        assert engine.is_session_valid(None) is False

    def test_non_canonical_ids_rejected_on_file_backend(self, file_engine):
        session = file_engine.start_session()
        variants = [
            "{" + session.session_id + "}",
            "urn:uuid:" + session.session_id,
            session.session_id.replace("-", ""),
        ]

        for variant in variants:
            assert file_engine.is_session_valid(variant) is False
            with pytest.raises(ValidationError):
                file_engine.submit_answer(variant, "q1_1", True)
            with pytest.raises(ValidationError):
                file_engine.get_status(variant)
            with pytest.raises(ValidationError):
                file_engine.lookup_session(variant)

        assert file_engine.is_session_valid(session.session_id)
        assert load(file_engine, session.session_id).answers == []


class TestStatus:

    def test_status_reports_progress_and_time_remaining(self, engine, clock):
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 6)
        clock.advance(minutes=10)

        status = engine.get_status(session.session_id)

        assert status.phase == 2
        assert status.phase_description == "organ-system specialization"
        assert status.current_question_number == 7
        assert status.answered_count == 6
        assert status.current_question.id == "q2_2"
        assert status.seconds_remaining == 50 * 60

    def test_status_does_not_refresh_expiry(self, engine, clock):
        session = engine.start_session("headache")
        clock.advance(minutes=30)

        engine.get_status(session.session_id)

        assert load(engine, session.session_id).expires_at == session.expires_at

    def test_status_of_missing_session(self, engine):
        with pytest.raises(SessionNotFound):
            engine.get_status("3f2b8c1e-2d4a-4f6b-9a7c-1e2d3f4a5b6c")


class TestIdentityBinding:

    def test_mismatched_identity_unauthorized(self, engine):
        session = engine.start_session("headache", identity=OWNER)

        with pytest.raises(Unauthorized):
            engine.submit_answer(session.session_id, "q1_1", True, STRANGER)
        with pytest.raises(Unauthorized):
            engine.get_status(session.session_id, STRANGER)

        assert load(engine, session.session_id).answers == []

    def test_owner_accepted_case_insensitively(self, engine):
        session = engine.start_session("headache", identity=OWNER)

        outcome = engine.submit_answer(session.session_id, "q1_1", True, OWNER.upper())

        assert outcome.current_question == 2

    def test_bound_session_accepts_caller_without_identity(self, engine):
        session = engine.start_session("headache", identity=OWNER)

        outcome = engine.submit_answer(session.session_id, "q1_1", True)

        assert outcome.current_question == 2

    def test_unbound_session_accepts_any_identity(self, engine):
        session = engine.start_session("headache")

        outcome = engine.submit_answer(session.session_id, "q1_1", True, STRANGER)

        assert outcome.current_question == 2


class TestClearExpiredSessions:

    def test_memory_store_sweep_removes_only_lapsed(self, engine, clock):
        old = engine.start_session("headache")
        clock.advance(minutes=30)
        fresh = engine.start_session("insomnia")
        clock.advance(minutes=31)

        removed = engine.clear_expired_sessions()

        assert removed == 1
        assert engine.is_session_valid(fresh.session_id)
        assert isinstance(engine.lookup_session(old.session_id), NotFound)

    def test_file_store_scan_removes_only_lapsed(self, file_engine, file_store, clock):
        old = file_engine.start_session("headache")
        clock.advance(minutes=30)
        fresh = file_engine.start_session("insomnia")
        clock.advance(minutes=31)

        removed = file_engine.clear_expired_sessions()

        assert removed == 1
        assert file_store.keys() == [f"diagnostic_session_{fresh.session_id}"]
        assert old.session_id not in " ".join(file_store.keys())

    def test_file_store_scan_removes_lapsed_receipts(self, file_engine, file_store, clock):
        session = file_engine.start_session("headache")
        answer_up_to(file_engine, session.session_id, 15)
        assert file_store.keys() == [f"diagnostic_result_{session.session_id}"]

        clock.advance(minutes=6)

        assert file_engine.clear_expired_sessions() == 1
        assert file_store.keys() == []

    def test_sweep_failures_are_not_raised(self, oracle, clock):
        broken_store = Mock(spec=['get', 'put', 'remove', 'keys'])
        broken_store.keys.side_effect = OSError("disk gone")
        engine = DiagnosticSessionEngine(oracle, broken_store, clock=clock)

        assert engine.clear_expired_sessions() == 0


class TestConcurrency:

    def test_racing_boundary_answers_generate_phase_once(self, store, clock):
        oracle = ScriptedOracle(delay=0.2)
        engine = DiagnosticSessionEngine(oracle, store, clock=clock)
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)

        barrier = threading.Barrier(2)
        outcomes, errors = [], []

        def submit():
            barrier.wait()
            try:
                outcomes.append(engine.submit_answer(session.session_id, "q1_5", True))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert len(outcomes) == 2
        assert [call[0] for call in oracle.phase_calls] == [1, 2]
        assert all(o.next_question.id == "q2_1" for o in outcomes)

        stored = load(engine, session.session_id)
        assert len(stored.answers) == 5
        assert len(stored.questions) == 10

    def test_racing_boundary_answers_on_file_backend(self, file_store, clock):
        """One process over the file store gets the same serialization as memory"""
        oracle = ScriptedOracle(delay=0.2)
        engine = DiagnosticSessionEngine(oracle, file_store, clock=clock)
        session = engine.start_session("headache")
        answer_up_to(engine, session.session_id, 4)

        barrier = threading.Barrier(2)
        outcomes, errors = [], []

        def submit():
            barrier.wait()
            try:
                outcomes.append(engine.submit_answer(session.session_id, "q1_5", False))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert [call[0] for call in oracle.phase_calls] == [1, 2]
        assert {o.next_question.id for o in outcomes} == {"q2_1"}
        assert len(load(engine, session.session_id).questions) == 10
