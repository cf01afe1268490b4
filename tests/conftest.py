"""
Shared fixtures: injectable clock, scripted oracle, engine wiring.

Run from project root:
    pytest tests/
"""

import os
import sys
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from intake.contracts import Question, Recommendation
from intake.core.diagnostic_engine import DiagnosticSessionEngine
from intake.errors import OracleError
from intake.session_store import InMemorySessionStore


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class ScriptedOracle:
    """
    Deterministic oracle double.

    Records every call; fail_phases / fail_artifact make the next calls
    raise OracleError until cleared. delay widens race windows.
    """

    def __init__(self, delay=0.0):
        self.delay = delay
        self.fail_phases = set()
        self.fail_artifact = False
        self.question_count = 5
        self.phase_calls = []
        self.artifact_calls = []
        self._lock = threading.Lock()

    def generate_phase_questions(self, phase, initial_text, prior_answers):
        with self._lock:
            self.phase_calls.append((phase, initial_text, [a.question_id for a in prior_answers]))
        if self.delay:
            time.sleep(self.delay)
        if phase in self.fail_phases:
            raise OracleError(f"phase {phase} unavailable")
        return tuple(
            Question(id=f"q{phase}_{i}", text=f"Phase {phase} question {i}?")
            for i in range(1, self.question_count + 1)
        )

    def generate_artifact(self, initial_text, all_answers):
        with self._lock:
            self.artifact_calls.append((initial_text, [a.value for a in all_answers]))
        if self.fail_artifact:
            raise OracleError("artifact unavailable")
        yes = sum(1 for a in all_answers if a.value)
        return Recommendation(
            recommendation_text=f"Eat warm food. {yes} yes answers.",
            syndrome="Spleen Qi Deficiency",
        )


def question_id_for(number):
    """1-based question number -> canonical id"""
    phase = (number - 1) // 5 + 1
    return f"q{phase}_{(number - 1) % 5 + 1}"


def answer_up_to(engine, session_id, count, identity=None, value=None):
    """
    Answer questions 1..count in order; value None alternates True/False

    Returns the last AnswerOutcome.
    """
    outcome = None
    for number in range(1, count + 1):
        answer = value if value is not None else (number % 2 == 1)
        outcome = engine.submit_answer(session_id, question_id_for(number), answer, identity)
    return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return ScriptedOracle()


@pytest.fixture
def store(clock):
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def engine(oracle, store, clock):
    return DiagnosticSessionEngine(oracle, store, clock=clock)
