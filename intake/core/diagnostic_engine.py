"""
Diagnostic Session Engine - Three-phase yes/no interview state machine

Responsibilities:
- Create sessions with their first five questions
- Record answers (append, or overwrite of the last one on retry)
- Generate phase 2 / phase 3 questions at the 6th / 11th question
- Generate the final recommendation after the 15th answer and evict the session
- Expiry: lazy eviction on access plus a maintenance sweep

State machine:
    AwaitingPhase1Generation -> Phase1Active -> Phase2Generation -> Phase2Active
    -> Phase3Generation -> Phase3Active -> Completing -> Terminal

Design principles:
- Functional core: every operation rehydrates a private copy from the store,
  decides, then commits with a single put/remove
- One in-flight mutating operation per session id (per-key locks);
  different sessions never wait on each other
- Phase generation runs inside the answer submission that crosses the
  boundary, never in the background
- Oracle failures are never turned into "skip this phase"

Retry semantics:
- Re-submitting the most recently answered question overwrites it, so a
  client that lost a response can resend the same answer safely
- If generation fails at a phase boundary the triggering answer stays
  recorded; resending it re-runs the generation
- If the recommendation fails the session is kept; resending the 15th
  answer retries. After success a short-lived receipt lets the same
  resend return the same recommendation.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from intake.config import QUESTIONS_PER_PHASE, RESULT_RETENTION, SESSION_TTL, TOTAL_QUESTIONS
from intake.contracts import Answer, DiagnosticSession, Question, Recommendation
from intake.errors import (
    AnswerOutOfOrder,
    IntakeError,
    OracleError,
    SessionNotFound,
    Unauthorized,
    UnknownQuestion,
    ValidationError,
)
from intake.results import AnswerOutcome, Expired, Found, NotFound, SessionLookup, SessionStatus
from intake.utils.helpers import generate_session_id, utc_now
from intake.utils.keyed_lock import KeyedLock
from intake.utils.validation import (
    validate_question_id,
    validate_session_id,
    validate_symptoms,
    validate_user_id,
)

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "diagnostic_session_"
RESULT_KEY_PREFIX = "diagnostic_result_"

# cursor value -> (phase it must be in, phase to generate)
PHASE_BOUNDARIES = {
    QUESTIONS_PER_PHASE + 1: (1, 2),
    2 * QUESTIONS_PER_PHASE + 1: (2, 3),
}


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    """Identities are email addresses; compare case-insensitively"""
    return (a or "").casefold() == (b or "").casefold()


class DiagnosticSessionEngine:
    """
    Drives interviews through their three phases

    Collaborators:
    - oracle: generate_phase_questions() / generate_artifact()
    - store: SessionStore (get / put / remove / keys, optional sweep)
    - recommendation_store: optional, save(identity, recommendation);
      called once per completed identity-bound session
    """

    def __init__(
        self,
        oracle,
        store,
        recommendation_store=None,
        clock: Callable[[], datetime] = utc_now,
        ttl: timedelta = SESSION_TTL,
        result_retention: timedelta = RESULT_RETENTION
    ):
        """
        Raises:
            TypeError: If a collaborator lacks a required method
        """
        self._validate_collaborators(oracle, store, recommendation_store)

        self.oracle = oracle
        self.store = store
        self.recommendation_store = recommendation_store
        self.clock = clock
        self.ttl = ttl
        self.result_retention = result_retention
        self._locks = KeyedLock()

        logger.info(
            f"Diagnostic Session Engine initialized "
            f"(store={type(store).__name__}, ttl={ttl}, persistence={'on' if recommendation_store else 'off'})"
        )

    def _validate_collaborators(self, oracle, store, recommendation_store):
        for method in ('generate_phase_questions', 'generate_artifact'):
            if not callable(getattr(oracle, method, None)):
                raise TypeError(f"oracle must have callable {method}() method")

        for method in ('get', 'put', 'remove', 'keys'):
            if not callable(getattr(store, method, None)):
                raise TypeError(f"store must have callable {method}() method")

        if recommendation_store is not None and not callable(getattr(recommendation_store, 'save', None)):
            raise TypeError("recommendation_store must have callable save() method")

    # ========================
    # Public operations
    # ========================

    def start_session(self, initial_text: Optional[str] = None, identity: Optional[str] = None) -> DiagnosticSession:
        """
        Create a session with its five phase 1 questions

        The session becomes visible only after generation succeeded.

        Args:
            initial_text: Optional free-text symptoms (<= 1000 chars)
            identity: Optional caller identity (email); binds the session

        Returns:
            DiagnosticSession: phase=1, cursor=1, 5 questions

        Raises:
            ValidationError: Bad symptoms text or identity format
            OracleError: Generation failed; nothing was stored
        """
        validate_symptoms(initial_text)
        if identity:
            validate_user_id(identity)

        logger.info(f"Starting new diagnostic session for user: {identity or 'anonymous'}")

        questions = self._generate_questions(1, initial_text, [])

        now = self.clock()
        session = DiagnosticSession(
            session_id=generate_session_id(),
            identity=identity or None,
            initial_text=initial_text or None,
            phase=1,
            cursor=1,
            questions=questions,
            answers=[],
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put(self._session_key(session.session_id), session.to_json(), self.ttl)

        logger.info(
            f"Diagnostic session created: {session.session_id}, "
            f"phase: {session.phase}, questions: {len(session.questions)}"
        )
        return session

    def submit_answer(
        self,
        session_id: str,
        question_id: str,
        value: bool,
        identity: Optional[str] = None
    ) -> AnswerOutcome:
        """
        Record one yes/no answer and move the interview forward

        Returns:
            AnswerOutcome with the next question, or with the recommendation
            after the 15th answer

        Raises:
            ValidationError: Malformed ids or non-boolean value
            SessionNotFound: No live session (expired counts as absent)
            Unauthorized: Session is bound to a different identity
            UnknownQuestion: question_id is not in the session's question set
            AnswerOutOfOrder: question is neither the next one nor the last answered
            OracleError: Phase or recommendation generation failed (retryable)
        """
        validate_session_id(session_id)
        validate_question_id(question_id)
        if identity:
            validate_user_id(identity)
        if not isinstance(value, bool):
            raise ValidationError("Answer must be true or false")

        with self._locks.hold(session_id):
            lookup = self.lookup_session(session_id)

            if not isinstance(lookup, Found):
                replay = self._replay_completion(session_id, question_id, value, identity)
                if replay is not None:
                    return replay
                raise SessionNotFound(session_id, expired=isinstance(lookup, Expired))

            session = lookup.session
            self._authorize(session, identity)

            question = session.find_question(question_id)
            if question is None:
                logger.warning(f"Unknown question {question_id} for session {session_id}")
                raise UnknownQuestion(session_id, question_id)

            logger.info(f"Processing answer for session: {session_id}, question: {question_id}")
            logger.debug(f"Session {session_id}: {question_id} = {value}")

            self._record_answer(session, question, value)
            return self._advance(session)

    def lookup_session(self, session_id: str) -> SessionLookup:
        """
        Fetch a private copy of a session

        Returns:
            Found(session) | NotFound(session_id) | Expired(session_id, expired_at)

        An entry found past its expires_at is evicted before Expired is
        returned, whether or not the store had dropped it yet.

        Raises:
            ValidationError: session_id is not a canonical UUID string
        """
        validate_session_id(session_id)
        key = self._session_key(session_id)
        raw = self.store.get(key)
        if raw is None:
            return NotFound(session_id)

        session = DiagnosticSession.from_json(raw)
        if session.is_expired(self.clock()):
            self.store.remove(key)
            logger.warning(f"Session {session_id} expired at {session.expires_at.isoformat()}; evicted")
            return Expired(session_id, session.expires_at)

        return Found(session)

    def is_session_valid(self, session_id: str) -> bool:
        """
        True iff a session exists and has not expired

        Side effect: evicts an expired entry it encounters.
        """
        try:
            validate_session_id(session_id)
        except ValidationError:
            return False

        with self._locks.hold(session_id):
            return isinstance(self.lookup_session(session_id), Found)

    def get_status(self, session_id: str, identity: Optional[str] = None) -> SessionStatus:
        """
        Progress and time remaining for a live session (read-only, TTL not refreshed)

        Raises:
            SessionNotFound, Unauthorized, ValidationError
        """
        validate_session_id(session_id)

        with self._locks.hold(session_id):
            lookup = self.lookup_session(session_id)
            if not isinstance(lookup, Found):
                raise SessionNotFound(session_id, expired=isinstance(lookup, Expired))
            self._authorize(lookup.session, identity)
            return SessionStatus.from_session(lookup.session, self.clock())

    def complete_pending_phase(self, session_id: str, identity: Optional[str] = None) -> SessionStatus:
        """
        Generate a phase whose triggering answer is recorded but whose
        questions are missing (a boundary generation that failed earlier)

        No-op when nothing is pending. Nothing is committed on failure.

        Raises:
            SessionNotFound, Unauthorized, OracleError
        """
        validate_session_id(session_id)

        with self._locks.hold(session_id):
            lookup = self.lookup_session(session_id)
            if not isinstance(lookup, Found):
                raise SessionNotFound(session_id, expired=isinstance(lookup, Expired))

            session = lookup.session
            self._authorize(session, identity)

            next_phase = self._pending_phase(session)
            if next_phase is not None:
                self._extend_phase(session, next_phase)
                self._persist(session)

            return SessionStatus.from_session(session, self.clock())

    def clear_expired_sessions(self) -> int:
        """
        Maintenance sweep

        Uses the store's own eviction when it has one, otherwise scans every
        session and receipt and removes the lapsed ones under their per-key
        lock. Never raises: failures are logged.

        Returns:
            int: Entries removed
        """
        try:
            if getattr(self.store, 'evicts_expired', False):
                removed = self.store.sweep()
            else:
                removed = self._scan_and_remove()
        except Exception as e:
            logger.error(f"Expired session sweep failed: {type(e).__name__}: {e}")
            return 0

        logger.info(f"Expired sessions cleanup completed: {removed} removed")
        return removed

    # ========================
    # Answer recording
    # ========================

    def _authorize(self, session: DiagnosticSession, identity: Optional[str]) -> None:
        """Bound sessions reject a different identity; anonymous callers and unbound sessions pass"""
        if session.identity and identity and not same_identity(session.identity, identity):
            logger.warning(f"Identity {identity} denied access to session {session.session_id}")
            raise Unauthorized("You do not have access to this diagnostic session")

    def _record_answer(self, session: DiagnosticSession, question: Question, value: bool) -> None:
        """
        Append the answer for the question at the cursor, or overwrite the
        most recent answer when the same question is resent

        Raises:
            AnswerOutOfOrder: Any other question
        """
        answer = Answer(
            question_id=question.id,
            question_text=question.text,
            value=value,
            answered_at=self.clock(),
        )

        last = session.last_answer()
        if last is not None and last.question_id == question.id:
            session.answers[-1] = answer
            logger.info(f"Session {session.session_id}: overwrote answer to {question.id}")
            return

        current = session.current_question()
        if current is not None and current.id == question.id:
            session.answers.append(answer)
            session.cursor += 1
            return

        expected = current.id if current is not None else last.question_id
        logger.warning(f"Session {session.session_id}: out-of-order answer to {question.id}, expected {expected}")
        raise AnswerOutOfOrder(session.session_id, question.id, expected)

    def _advance(self, session: DiagnosticSession) -> AnswerOutcome:
        """Apply boundary / completion rules, commit, and build the response"""
        if session.is_terminal:
            return self._complete(session)

        next_phase = self._pending_phase(session)
        if next_phase is not None:
            try:
                self._extend_phase(session, next_phase)
            except OracleError:
                # Triggering answer stays recorded; resending it retries generation
                self._persist(session)
                raise

        self._persist(session)

        return AnswerOutcome(
            session_id=session.session_id,
            has_more_questions=True,
            next_question=session.current_question(),
            current_question=session.cursor,
            total_questions=TOTAL_QUESTIONS,
            phase=session.phase,
        )

    # ========================
    # Phase generation
    # ========================

    def _pending_phase(self, session: DiagnosticSession) -> Optional[int]:
        if not session.awaiting_phase_generation:
            return None
        boundary = PHASE_BOUNDARIES.get(session.cursor)
        if boundary is None:
            return None
        required_phase, next_phase = boundary
        return next_phase if session.phase == required_phase else None

    def _extend_phase(self, session: DiagnosticSession, next_phase: int) -> None:
        logger.info(f"Generating phase {next_phase} questions for session: {session.session_id}")

        questions = self._generate_questions(next_phase, session.initial_text, session.answers)

        known_ids = {q.id for q in session.questions}
        if any(q.id in known_ids for q in questions):
            raise OracleError(f"Phase {next_phase} questions reuse existing question ids")

        session.questions.extend(questions)
        session.phase = next_phase

        logger.info(
            f"Phase {next_phase} questions generated for session: {session.session_id}, "
            f"questions added: {len(questions)}"
        )

    def _generate_questions(self, phase: int, initial_text: Optional[str], answers: List[Answer]) -> List[Question]:
        try:
            questions = list(self.oracle.generate_phase_questions(phase, initial_text, list(answers)))
        except IntakeError:
            raise
        except Exception as e:
            logger.error(f"Oracle crashed generating phase {phase}: {type(e).__name__}: {e}")
            raise OracleError(f"Question generation for phase {phase} failed: {e}") from e

        if len(questions) != QUESTIONS_PER_PHASE:
            raise OracleError(f"Expected {QUESTIONS_PER_PHASE} questions for phase {phase}, got {len(questions)}")
        return questions

    # ========================
    # Completion
    # ========================

    def _complete(self, session: DiagnosticSession) -> AnswerOutcome:
        logger.info(f"All questions answered for session: {session.session_id}. Generating recommendation.")

        try:
            recommendation = self.oracle.generate_artifact(session.initial_text, list(session.answers))
        except IntakeError as e:
            self._persist(session)
            if isinstance(e, OracleError):
                raise
            raise OracleError(f"Recommendation generation failed: {e}") from e
        except Exception as e:
            self._persist(session)
            logger.error(f"Oracle crashed generating recommendation: {type(e).__name__}: {e}")
            raise OracleError(f"Recommendation generation failed: {e}") from e

        recommendation_id = self._save_recommendation(session, recommendation)

        self.store.remove(self._session_key(session.session_id))
        self._store_receipt(session, recommendation, recommendation_id)

        logger.info(f"Diagnostic session completed: {session.session_id}, syndrome: {recommendation.syndrome}")

        return AnswerOutcome(
            session_id=session.session_id,
            has_more_questions=False,
            recommendation=recommendation,
            recommendation_id=recommendation_id,
            current_question=session.cursor,
            total_questions=TOTAL_QUESTIONS,
            phase=session.phase,
        )

    def _save_recommendation(self, session: DiagnosticSession, recommendation: Recommendation) -> Optional[str]:
        """Hand the result to the persistence collaborator; anonymous results are never saved"""
        if self.recommendation_store is None or not session.identity:
            return None
        try:
            record = self.recommendation_store.save(session.identity, recommendation)
        except Exception as e:
            logger.error(
                f"Failed to save recommendation for user {session.identity} "
                f"(session {session.session_id}): {type(e).__name__}: {e}"
            )
            return None
        return getattr(record, 'recommendation_id', None)

    def _store_receipt(self, session: DiagnosticSession, recommendation: Recommendation,
                       recommendation_id: Optional[str]) -> None:
        last = session.last_answer()
        receipt = {
            'session_id': session.session_id,
            'identity': session.identity,
            'question_id': last.question_id,
            'value': last.value,
            'phase': session.phase,
            'cursor': session.cursor,
            'recommendation': recommendation.to_json(),
            'recommendation_id': recommendation_id,
            'expires_at': (self.clock() + self.result_retention).isoformat(),
        }
        self.store.put(self._result_key(session.session_id), receipt, self.result_retention)

    def _replay_completion(self, session_id: str, question_id: str, value: bool,
                           identity: Optional[str]) -> Optional[AnswerOutcome]:
        """Same final answer resent after completion -> same recommendation"""
        key = self._result_key(session_id)
        receipt = self.store.get(key)
        if receipt is None:
            return None

        if self.clock() > datetime.fromisoformat(receipt['expires_at']):
            self.store.remove(key)
            return None

        if receipt['question_id'] != question_id or receipt['value'] != value:
            return None

        if receipt['identity'] and identity and not same_identity(receipt['identity'], identity):
            raise Unauthorized("You do not have access to this diagnostic session")

        logger.info(f"Replaying completed result for session {session_id}")
        return AnswerOutcome(
            session_id=session_id,
            has_more_questions=False,
            recommendation=Recommendation.from_json(receipt['recommendation']),
            recommendation_id=receipt.get('recommendation_id'),
            current_question=receipt['cursor'],
            total_questions=TOTAL_QUESTIONS,
            phase=receipt['phase'],
        )

    # ========================
    # Store access
    # ========================

    def _persist(self, session: DiagnosticSession) -> None:
        """Commit the session with a refreshed (sliding) expiry"""
        session.expires_at = self.clock() + self.ttl
        self.store.put(self._session_key(session.session_id), session.to_json(), self.ttl)

    def _scan_and_remove(self) -> int:
        removed = 0
        for prefix in (SESSION_KEY_PREFIX, RESULT_KEY_PREFIX):
            for key in self.store.keys(prefix):
                session_id = key[len(prefix):]
                try:
                    with self._locks.hold(session_id):
                        raw = self.store.get(key)
                        if raw is not None and self._entry_expired(prefix, raw):
                            if self.store.remove(key):
                                removed += 1
                except Exception as e:
                    logger.error(f"Failed to sweep entry {key}: {type(e).__name__}: {e}")
        return removed

    def _entry_expired(self, prefix: str, raw: Dict[str, Any]) -> bool:
        now = self.clock()
        if prefix == SESSION_KEY_PREFIX:
            return DiagnosticSession.from_json(raw).is_expired(now)
        return now > datetime.fromisoformat(raw['expires_at'])

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    @staticmethod
    def _result_key(session_id: str) -> str:
        return f"{RESULT_KEY_PREFIX}{session_id}"
