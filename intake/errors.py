"""
Error taxonomy for the diagnostic interview.

Every failure surfaced to a caller is one of these. The `code` attribute is
stable and is what the HTTP layer reports; the message is human readable.

- ValidationError: malformed input, caller-fixable, never retried
- SessionNotFound: session absent or expired, caller must restart
- Unauthorized: caller identity does not own the session/record
- OracleError: question/artifact generation failed, safe to retry
- InvariantViolation: stale client or programming defect, not retried
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for all interview errors"""

    code = "intake_error"


class ValidationError(IntakeError):
    code = "validation_error"


class SessionNotFound(IntakeError):
    code = "session_not_found"

    def __init__(self, session_id: Optional[str], expired: bool = False):
        self.session_id = session_id
        self.expired = expired
        if session_id is None:
            message = "No active diagnostic session."
        else:
            reason = "expired" if expired else "was not found"
            message = f"Diagnostic session {session_id} {reason}."
        super().__init__(f"{message} Please start a new interview.")


class Unauthorized(IntakeError):
    code = "unauthorized"


class OracleError(IntakeError):
    code = "oracle_error"


class InvariantViolation(IntakeError):
    code = "invariant_violation"


class UnknownQuestion(InvariantViolation):
    """Question id is not part of the session's current question set"""

    def __init__(self, session_id: str, question_id: str):
        self.session_id = session_id
        self.question_id = question_id
        super().__init__(f"Question {question_id} was not found in session {session_id}")


class AnswerOutOfOrder(InvariantViolation):
    """Question exists but is neither the next one nor the last one answered"""

    def __init__(self, session_id: str, question_id: str, expected_question_id: str):
        self.session_id = session_id
        self.question_id = question_id
        self.expected_question_id = expected_question_id
        super().__init__(
            f"Question {question_id} cannot be answered now in session {session_id}; "
            f"expected {expected_question_id}"
        )
