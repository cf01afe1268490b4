"""
Result types returned by the diagnostic engine and session accessor.

Session lookups are explicit variants (Found | NotFound | Expired) so that
callers must handle each case instead of catching an exception type.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from intake.contracts import DiagnosticSession, Question, Recommendation
from intake.utils.helpers import phase_description


@dataclass(frozen=True)
class Found:
    """Live session (a private copy, safe to mutate)"""
    session: DiagnosticSession


@dataclass(frozen=True)
class NotFound:
    """No session stored under this id"""
    session_id: str


@dataclass(frozen=True)
class Expired:
    """
    Session was stored but its TTL lapsed.

    The entry has already been evicted by the time this is returned.
    """
    session_id: str
    expired_at: datetime


SessionLookup = Union[Found, NotFound, Expired]


@dataclass(frozen=True)
class AnswerOutcome:
    """
    Result of one successful answer submission.

    Exactly one of next_question / recommendation is set:
    - next_question while has_more_questions is True
    - recommendation once the 15th answer has been processed

    Attributes:
        session_id: Session the answer was recorded in
        has_more_questions: False only on completion
        next_question: Question to show next
        recommendation: Final artifact (completion only)
        current_question: 1-based number of the next question (16 when done)
        total_questions: Always 15
        phase: Phase the session is in after this answer
        recommendation_id: Id of the saved copy (identity-bound sessions only)
    """
    session_id: str
    has_more_questions: bool
    current_question: int
    total_questions: int
    phase: int
    next_question: Optional[Question] = None
    recommendation: Optional[Recommendation] = None
    recommendation_id: Optional[str] = None

    def to_json(self) -> dict:
        return {
            'session_id': self.session_id,
            'has_more_questions': self.has_more_questions,
            'next_question': self.next_question.to_json() if self.next_question else None,
            'recommendation': self.recommendation.to_json() if self.recommendation else None,
            'recommendation_id': self.recommendation_id,
            'current_question': self.current_question,
            'total_questions': self.total_questions,
            'phase': self.phase,
            'phase_description': phase_description(self.phase),
        }


@dataclass(frozen=True)
class SessionStatus:
    """
    Read-only view of a live session for display and expiry warnings.

    phase_description is derived on construction, never stored on the session.
    """
    session_id: str
    phase: int
    phase_description: str
    current_question_number: int
    answered_count: int
    total_questions: int
    current_question: Optional[Question]
    expires_at: datetime
    seconds_remaining: int

    @staticmethod
    def from_session(session: DiagnosticSession, now: datetime) -> "SessionStatus":
        remaining = max(0, int((session.expires_at - now).total_seconds()))
        return SessionStatus(
            session_id=session.session_id,
            phase=session.phase,
            phase_description=phase_description(session.phase),
            current_question_number=session.cursor,
            answered_count=session.answered_count,
            total_questions=session.total_questions,
            current_question=session.current_question(),
            expires_at=session.expires_at,
            seconds_remaining=remaining,
        )

    def to_json(self) -> dict:
        return {
            'session_id': self.session_id,
            'phase': self.phase,
            'phase_description': self.phase_description,
            'current_question_number': self.current_question_number,
            'answered_count': self.answered_count,
            'total_questions': self.total_questions,
            'current_question': self.current_question.to_json() if self.current_question else None,
            'expires_at': self.expires_at.isoformat(),
            'seconds_remaining': self.seconds_remaining,
        }
