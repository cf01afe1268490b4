"""
Question Oracle - Phase question and recommendation generation

Responsibilities:
- Ask the model for exactly five yes/no questions per phase
- Ask the model for the final recommendation once 15 answers exist
- Parse and check the model's JSON replies
- Report every failure (call error, timeout, bad JSON, wrong shape) as OracleError

Contract:
- generate_phase_questions(phase, initial_text, prior_answers) -> 5 Questions
  Never truncates or pads: any other count is an error.
- generate_artifact(initial_text, all_answers) -> Recommendation
  Precondition: exactly 15 answers.
- Both calls see the entire answer history, not just the latest phase.

Design principles:
- Stateless with respect to sessions (safe to share across threads)
- Question ids are assigned here ('q{phase}_{n}'), so they are unique
  within a session whatever the model writes in its id fields
"""

import json
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

from intake.config import QUESTIONS_PER_PHASE, TOTAL_QUESTIONS
from intake.contracts import QUESTION_KIND_YES_NO, Answer, Question, Recommendation
from intake.errors import OracleError, ValidationError
from intake.utils.helpers import expected_question_id
from intake.utils.prompt_builder import build_phase_prompt, build_recommendation_prompt
from intake.utils.validation import validate_phase, validate_recommendation_text

logger = logging.getLogger(__name__)

# Legacy numeric encoding of the yes/no kind
YES_NO_KINDS = {QUESTION_KIND_YES_NO, "yes/no", "yesno", 0, "0"}


class QuestionOracle:
    """Generate interview content through an LLM client"""

    def __init__(
        self,
        llm_client,
        timeout_seconds: Optional[float] = 120.0,
        question_max_tokens: int = 512,
        recommendation_max_tokens: int = 2048,
        temperature: float = 0.2
    ) -> None:
        """
        Args:
            llm_client: Object with callable generate_json(prompt, max_tokens,
                temperature, max_time) and is_loaded()
            timeout_seconds: Wall-clock budget per model call
            question_max_tokens: Token cap for phase question replies
            recommendation_max_tokens: Token cap for the recommendation reply
            temperature: Sampling temperature for both calls

        Raises:
            TypeError: If llm_client lacks the required methods
            RuntimeError: If the client's model is not loaded
        """
        if not callable(getattr(llm_client, 'generate_json', None)):
            raise TypeError("llm_client must have callable generate_json() method")
        if not callable(getattr(llm_client, 'is_loaded', None)):
            raise TypeError("llm_client must have callable is_loaded() method")
        if not llm_client.is_loaded():
            raise RuntimeError("LLM client model not loaded")

        self.llm_client = llm_client
        self.timeout_seconds = timeout_seconds
        self.question_max_tokens = question_max_tokens
        self.recommendation_max_tokens = recommendation_max_tokens
        self.temperature = temperature

        logger.info(f"Question Oracle initialized (timeout={timeout_seconds}s)")

    # ==================== PUBLIC API ====================

    def generate_phase_questions(
        self,
        phase: int,
        initial_text: Optional[str],
        prior_answers: Sequence[Answer]
    ) -> Tuple[Question, ...]:
        """
        Generate the five questions of one phase

        Args:
            phase: 1, 2 or 3
            initial_text: Symptoms text captured at session start
            prior_answers: Every answer recorded so far, in order

        Returns:
            Tuple of exactly 5 Question

        Raises:
            ValidationError: If phase is out of range
            OracleError: If the call fails or the reply has the wrong shape
        """
        validate_phase(phase)

        logger.info(f"Generating phase {phase} questions with {len(prior_answers)} previous answers")

        prompt = build_phase_prompt(phase, initial_text, prior_answers)
        payload = self._call(prompt, self.question_max_tokens, f"phase {phase} questions")
        questions = self._parse_phase_questions(payload, phase)

        logger.info(f"Generated {len(questions)} questions for phase {phase}")
        return questions

    def generate_artifact(
        self,
        initial_text: Optional[str],
        all_answers: Sequence[Answer]
    ) -> Recommendation:
        """
        Generate the final recommendation

        Raises:
            OracleError: If fewer/more than 15 answers are supplied (before any
                model call), or if the call fails or the reply is malformed
        """
        if len(all_answers) != TOTAL_QUESTIONS:
            raise OracleError(
                f"Exactly {TOTAL_QUESTIONS} answers are required for a recommendation, "
                f"got {len(all_answers)}"
            )

        logger.info(f"Generating recommendation from {len(all_answers)} answers")

        prompt = build_recommendation_prompt(initial_text, all_answers)
        payload = self._call(prompt, self.recommendation_max_tokens, "recommendation")
        recommendation = self._parse_recommendation(payload)

        logger.info(f"Generated recommendation for syndrome: {recommendation.syndrome}")
        return recommendation

    # ==================== INTERNALS ====================

    def _call(self, prompt: str, max_tokens: int, purpose: str) -> Dict[str, Any]:
        """Run one model call and decode its JSON object reply"""
        try:
            raw = self.llm_client.generate_json(
                prompt=prompt,
                max_tokens=max_tokens,
                temperature=self.temperature,
                max_time=self.timeout_seconds
            )
        except Exception as e:
            logger.error(f"Model call for {purpose} failed: {type(e).__name__}: {e}")
            raise OracleError(f"Generation of {purpose} failed: {e}") from e

        if not raw or not str(raw).strip():
            logger.error(f"Model returned empty reply for {purpose}")
            raise OracleError(f"Model returned an empty reply for {purpose}")

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON for {purpose}: {raw[:200]!r}")
            raise OracleError(f"Model returned invalid JSON for {purpose}") from e

        if not isinstance(payload, dict):
            raise OracleError(f"Model reply for {purpose} is not a JSON object")
        return payload

    def _parse_phase_questions(self, payload: Dict[str, Any], phase: int) -> Tuple[Question, ...]:
        reported_phase = payload.get('phase', phase)
        if reported_phase != phase:
            raise OracleError(f"Expected phase {phase}, got {reported_phase}")

        items = payload.get('questions')
        if not isinstance(items, list):
            raise OracleError("Model reply has no 'questions' list")
        if len(items) != QUESTIONS_PER_PHASE:
            raise OracleError(f"Expected {QUESTIONS_PER_PHASE} questions, got {len(items)}")

        questions = []
        for index, item in enumerate(items, 1):
            if not isinstance(item, dict):
                raise OracleError(f"Question {index} is not an object")

            text = item.get('text', item.get('questionText'))
            if not isinstance(text, str) or not text.strip():
                raise OracleError(f"Question {index} has no text")

            kind = item.get('kind', item.get('questionType', QUESTION_KIND_YES_NO))
            # False == 0, so booleans must be refused before the membership test
            if isinstance(kind, bool) or not isinstance(kind, (str, int)) or kind not in YES_NO_KINDS:
                raise OracleError(f"Question {index} has unsupported kind {kind!r}")

            questions.append(Question(id=expected_question_id(phase, index), text=text.strip()))

        return tuple(questions)

    def _parse_recommendation(self, payload: Dict[str, Any]) -> Recommendation:
        text = payload.get('recommendation_text', payload.get('recommendationText'))
        syndrome = payload.get('syndrome', payload.get('tcmSyndrome'))

        try:
            validate_recommendation_text(text)
        except ValidationError as e:
            raise OracleError(f"Model returned an unusable recommendation: {e}") from e

        if not isinstance(syndrome, str) or not syndrome.strip():
            raise OracleError("Model reply has no syndrome label")

        return Recommendation(recommendation_text=text.strip(), syndrome=syndrome.strip())
