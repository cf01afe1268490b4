"""
Semantic contracts for the diagnostic interview.

Immutable data structures passed between the engine, the oracle client,
the stores and the HTTP layer, plus the one mutable record: the session.

Design principles:
- Frozen dataclasses for everything a collaborator receives
- Sessions travel through the store as JSON-safe dicts (to_json/from_json)
- No validation logic here (see intake.utils.validation)

Contents:
- Question: one yes/no question generated by the oracle
- Answer: one recorded answer
- Recommendation: the final artifact (text + syndrome label)
- DiagnosticSession: the in-progress interview record
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from intake.config import TOTAL_QUESTIONS

QUESTION_KIND_YES_NO = "yes_no"


@dataclass(frozen=True)
class Question:
    """
    Immutable question produced by the oracle.

    Attributes:
        id: Identifier unique within the session, e.g. 'q2_4'
        text: Question text shown to the user
        kind: Answer type. Only 'yes_no' exists today.
    """
    id: str
    text: str
    kind: str = QUESTION_KIND_YES_NO

    def to_json(self) -> dict:
        return {'id': self.id, 'text': self.text, 'kind': self.kind}

    @staticmethod
    def from_json(data: dict) -> "Question":
        return Question(id=data['id'], text=data['text'], kind=data.get('kind', QUESTION_KIND_YES_NO))


@dataclass(frozen=True)
class Answer:
    """
    Immutable answer record.

    question_text is carried alongside the id so the oracle can be given
    readable context without a second lookup.
    """
    question_id: str
    question_text: str
    value: bool
    answered_at: datetime

    def to_json(self) -> dict:
        return {
            'question_id': self.question_id,
            'question_text': self.question_text,
            'value': self.value,
            'answered_at': self.answered_at.isoformat(),
        }

    @staticmethod
    def from_json(data: dict) -> "Answer":
        return Answer(
            question_id=data['question_id'],
            question_text=data['question_text'],
            value=bool(data['value']),
            answered_at=datetime.fromisoformat(data['answered_at']),
        )


@dataclass(frozen=True)
class Recommendation:
    """
    Final artifact of a completed interview.

    Attributes:
        recommendation_text: Derived recommendation document
        syndrome: Classification label chosen by the oracle
    """
    recommendation_text: str
    syndrome: str

    def to_json(self) -> dict:
        return {'recommendation_text': self.recommendation_text, 'syndrome': self.syndrome}

    @staticmethod
    def from_json(data: dict) -> "Recommendation":
        return Recommendation(recommendation_text=data['recommendation_text'], syndrome=data['syndrome'])


@dataclass
class DiagnosticSession:
    """
    Mutable record of one in-progress interview.

    Only the engine mutates a session, and only on a private copy
    rehydrated from the store. Nothing a caller holds is ever the stored
    object itself.

    CRITICAL: cursor is 1-indexed
    - cursor is the number of the next unanswered question (1..16)
    - answers are stored 0-indexed: answers[cursor - 2] is the last one
    - cursor - 1 == len(answers) at all times
    """
    session_id: str
    created_at: datetime
    expires_at: datetime
    identity: Optional[str] = None
    initial_text: Optional[str] = None
    phase: int = 1
    cursor: int = 1
    questions: List[Question] = field(default_factory=list)
    answers: List[Answer] = field(default_factory=list)

    @property
    def total_questions(self) -> int:
        return TOTAL_QUESTIONS

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    @property
    def is_terminal(self) -> bool:
        return self.cursor > TOTAL_QUESTIONS

    @property
    def awaiting_phase_generation(self) -> bool:
        """True when the next question number has no question generated yet"""
        return not self.is_terminal and self.cursor > len(self.questions)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def current_question(self) -> Optional[Question]:
        """Question at the cursor, or None if not generated / interview over"""
        if self.cursor <= len(self.questions):
            return self.questions[self.cursor - 1]
        return None

    def last_answer(self) -> Optional[Answer]:
        return self.answers[-1] if self.answers else None

    def find_question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None

    def to_json(self) -> Dict[str, Any]:
        """Serialize to JSON-safe dict (new containers, no shared references)"""
        return {
            'session_id': self.session_id,
            'identity': self.identity,
            'initial_text': self.initial_text,
            'phase': self.phase,
            'cursor': self.cursor,
            'questions': [q.to_json() for q in self.questions],
            'answers': [a.to_json() for a in self.answers],
            'created_at': self.created_at.isoformat(),
            'expires_at': self.expires_at.isoformat(),
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "DiagnosticSession":
        data = copy.deepcopy(data)
        return DiagnosticSession(
            session_id=data['session_id'],
            identity=data.get('identity'),
            initial_text=data.get('initial_text'),
            phase=int(data['phase']),
            cursor=int(data['cursor']),
            questions=[Question.from_json(q) for q in data.get('questions', [])],
            answers=[Answer.from_json(a) for a in data.get('answers', [])],
            created_at=datetime.fromisoformat(data['created_at']),
            expires_at=datetime.fromisoformat(data['expires_at']),
        )
