"""
Session Accessor - One entry point for both identity models

Anonymous callers keep the session id themselves and pass it back on
every call. Signed-in callers are addressed by identity: the accessor
remembers which session belongs to whom and lets them address questions
by number ("question #7").

Rules:
- At most one live session per identity; starting again returns it
- A remembered session that expired is replaced by a new one
- Asking for a question number whose phase is still missing generates
  that phase on demand
- The identity -> session index lives only here; the periodic sweep
  prunes entries whose session is gone
"""

import logging
from typing import Dict, Optional

from intake.config import TOTAL_QUESTIONS
from intake.contracts import DiagnosticSession, Question
from intake.errors import InvariantViolation, SessionNotFound, ValidationError
from intake.results import AnswerOutcome, Expired, Found, SessionStatus
from intake.utils.keyed_lock import KeyedLock
from intake.utils.validation import validate_user_id

logger = logging.getLogger(__name__)


class SessionAccessor:
    """Facade over DiagnosticSessionEngine"""

    def __init__(self, engine):
        self.engine = engine
        # casefolded identity -> session id
        self._sessions_by_identity: Dict[str, str] = {}
        self._locks = KeyedLock()

    # ==================== ANONYMOUS (BY SESSION ID) ====================

    def start(self, initial_text: Optional[str] = None, identity: Optional[str] = None) -> SessionStatus:
        """
        Start an interview, or resume the caller's live one if signed in

        Returns:
            SessionStatus of the new or existing session
        """
        if not identity:
            session = self.engine.start_session(initial_text)
            return self._status_of(session)
        return self.get_or_create(identity, initial_text)

    def submit_answer(self, session_id: str, question_id: str, value: bool,
                      identity: Optional[str] = None) -> AnswerOutcome:
        outcome = self.engine.submit_answer(session_id, question_id, value, identity)
        if not outcome.has_more_questions and identity:
            self._forget(identity, session_id)
        return outcome

    def get_status(self, session_id: str, identity: Optional[str] = None) -> SessionStatus:
        return self.engine.get_status(session_id, identity)

    # ==================== AUTHENTICATED (BY IDENTITY) ====================

    def get_or_create(self, identity: str, initial_text: Optional[str] = None) -> SessionStatus:
        """
        Return the identity's live session, starting one if there is none

        initial_text is only used when a new session is started.
        """
        validate_user_id(identity)
        key = identity.casefold()

        with self._locks.hold(key):
            existing = self._sessions_by_identity.get(key)
            if existing is not None:
                try:
                    status = self.engine.get_status(existing, identity)
                    logger.info(f"Resuming session {existing} for user: {identity}")
                    return status
                except SessionNotFound:
                    logger.info(f"Remembered session {existing} for user {identity} is gone; starting a new one")
                    del self._sessions_by_identity[key]

            session = self.engine.start_session(initial_text, identity)
            self._sessions_by_identity[key] = session.session_id
            return self._status_of(session)

    def current_session_id(self, identity: str) -> Optional[str]:
        """Remembered session id for identity (may have expired since)"""
        validate_user_id(identity)
        return self._sessions_by_identity.get(identity.casefold())

    def get_status_for(self, identity: str) -> SessionStatus:
        session_id = self._require_session_id(identity)
        try:
            return self.engine.get_status(session_id, identity)
        except SessionNotFound:
            self._forget(identity, session_id)
            raise

    def get_question(self, identity: str, number: int) -> Question:
        """
        Question by 1-based number within the identity's live session

        Raises:
            ValidationError: number outside 1..15
            SessionNotFound: No live session for identity
            InvariantViolation: Question belongs to a phase not reached yet
            OracleError: On-demand phase generation failed
        """
        if isinstance(number, bool) or not isinstance(number, int) or number < 1 or number > TOTAL_QUESTIONS:
            raise ValidationError(f"Question number must be between 1 and {TOTAL_QUESTIONS}")

        session_id = self._require_session_id(identity)
        session = self._load(identity, session_id)

        if number > len(session.questions):
            logger.info(f"Question #{number} not generated yet for session {session_id}; completing pending phase")
            self.engine.complete_pending_phase(session_id, identity)
            session = self._load(identity, session_id)

        if number > len(session.questions):
            raise InvariantViolation(
                f"Question #{number} is not available yet; answer question #{session.cursor} first"
            )
        return session.questions[number - 1]

    def answer_question(self, identity: str, number: int, value: bool) -> AnswerOutcome:
        """Answer question #number of the identity's live session"""
        question = self.get_question(identity, number)
        session_id = self._require_session_id(identity)
        return self.submit_answer(session_id, question.id, value, identity)

    # ==================== MAINTENANCE ====================

    def clear_expired_sessions(self) -> int:
        """
        Sweep the engine's store, then drop identity entries left pointing
        at sessions that are gone

        Returns:
            Number of expired store entries removed
        """
        removed = self.engine.clear_expired_sessions()
        self.prune_stale_identities()
        return removed

    def prune_stale_identities(self) -> int:
        """Forget remembered sessions that are no longer live; returns how many"""
        pruned = 0
        for key, session_id in self._sessions_by_identity.copy().items():
            with self._locks.hold(key):
                if self._sessions_by_identity.get(key) != session_id:
                    continue
                if not self.engine.is_session_valid(session_id):
                    del self._sessions_by_identity[key]
                    pruned += 1

        if pruned:
            logger.info(f"Pruned {pruned} stale identity entries")
        return pruned

    # ==================== INTERNALS ====================

    def _require_session_id(self, identity: str) -> str:
        session_id = self.current_session_id(identity)
        if session_id is None:
            raise SessionNotFound(None)
        return session_id

    def _load(self, identity: str, session_id: str) -> DiagnosticSession:
        lookup = self.engine.lookup_session(session_id)
        if not isinstance(lookup, Found):
            self._forget(identity, session_id)
            raise SessionNotFound(session_id, expired=isinstance(lookup, Expired))
        return lookup.session

    def _forget(self, identity: str, session_id: str) -> None:
        key = identity.casefold()
        with self._locks.hold(key):
            if self._sessions_by_identity.get(key) == session_id:
                del self._sessions_by_identity[key]
                logger.info(f"Forgot session {session_id} for user: {identity}")

    def _status_of(self, session: DiagnosticSession) -> SessionStatus:
        return SessionStatus.from_session(session, self.engine.clock())
