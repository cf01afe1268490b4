"""
Utility helpers for the diagnostic interview

Identifier generation, clock access and the phase arithmetic shared by the
engine, the accessor and the HTTP layer.
"""

import uuid
from datetime import datetime, timezone

from intake.config import NUMBER_OF_PHASES, QUESTIONS_PER_PHASE, TOTAL_QUESTIONS

PHASE_DESCRIPTIONS = {
    1: "baseline constitutional patterns",
    2: "organ-system specialization",
    3: "syndrome differentiation",
}


def generate_session_id():
    """
    Generate unique session identifier

    Returns:
        str: Canonical UUID4 string

    Examples:
        >>> generate_session_id()
        '1c0b6f1e-8a4e-4c52-9b0e-6a8f3f0f2d11'
    """
    return str(uuid.uuid4())


def utc_now():
    """Timezone-aware current time (the default engine clock)"""
    return datetime.now(timezone.utc)


def phase_description(phase):
    """
    Human-readable focus of a phase

    Pure function of the phase number; never cached on a session.

    Raises:
        ValueError: If phase is not 1, 2 or 3
    """
    try:
        return PHASE_DESCRIPTIONS[phase]
    except KeyError:
        raise ValueError(f"Phase must be between 1 and {NUMBER_OF_PHASES}, got {phase}") from None


def phase_for_question_number(question_number):
    """
    Phase a 1-based question number belongs to

    Examples:
        >>> phase_for_question_number(5)
        1
        >>> phase_for_question_number(6)
        2
    """
    if question_number < 1 or question_number > TOTAL_QUESTIONS:
        raise ValueError(f"Question number must be between 1 and {TOTAL_QUESTIONS}, got {question_number}")
    return (question_number - 1) // QUESTIONS_PER_PHASE + 1


def expected_question_id(phase, index):
    """Question id the oracle is asked to use, e.g. (2, 4) -> 'q2_4'"""
    return f"q{phase}_{index}"
