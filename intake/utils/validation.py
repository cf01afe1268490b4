"""
Input validation for the diagnostic interview.

Pure checks with consistent messages. Every function returns None on
success and raises ValidationError otherwise; rejected input is logged at
warning level.

Contents:
- validate_symptoms(): optional free text, bounded length
- validate_user_id(): required, email address
- validate_recommendation_text(): required, bounded length
- validate_pagination(): page >= 1, 1 <= limit <= 50
- validate_session_id(): well-formed, non-nil UUID
- validate_question_id(): required
- validate_phase(): 1..3
"""

import logging
import re
import uuid
from typing import Optional

from intake.config import (
    MAX_PAGE_LIMIT,
    MAX_RECOMMENDATION_LENGTH,
    MAX_SYMPTOMS_LENGTH,
    MIN_PAGE_LIMIT,
    MIN_PAGE_NUMBER,
    NUMBER_OF_PHASES,
)
from intake.errors import ValidationError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", re.IGNORECASE)


def validate_symptoms(symptoms: Optional[str]) -> None:
    """
    Validate initial symptoms text.

    Symptoms are optional; None and "" are valid and mean a generic
    interview.
    """
    if not symptoms:
        return

    if not isinstance(symptoms, str):
        logger.warning(f"Symptoms validation failed: expected str, got {type(symptoms).__name__}")
        raise ValidationError("Symptoms must be text")

    if len(symptoms) > MAX_SYMPTOMS_LENGTH:
        logger.warning(f"Symptoms validation failed: text too long ({len(symptoms)} > {MAX_SYMPTOMS_LENGTH})")
        raise ValidationError(f"Symptoms description cannot exceed {MAX_SYMPTOMS_LENGTH} characters")


def validate_user_id(user_id: Optional[str]) -> None:
    """User ids are the email addresses issued by the auth provider"""
    if user_id is None or not isinstance(user_id, str) or not user_id.strip():
        logger.warning("UserId validation failed: null or empty")
        raise ValidationError("User identifier is required")

    if not EMAIL_PATTERN.match(user_id):
        logger.warning(f"UserId validation failed: invalid email format for {user_id!r}")
        raise ValidationError("User identifier must be a valid email address")


def validate_recommendation_text(text: Optional[str]) -> None:
    if text is None or not isinstance(text, str) or not text.strip():
        logger.warning("Recommendation text validation failed: null or empty")
        raise ValidationError("Recommendation text is required")

    if len(text) > MAX_RECOMMENDATION_LENGTH:
        logger.warning(
            f"Recommendation text validation failed: text too long "
            f"({len(text)} > {MAX_RECOMMENDATION_LENGTH})"
        )
        raise ValidationError(f"Recommendation text cannot exceed {MAX_RECOMMENDATION_LENGTH} characters")


def validate_pagination(page: int, limit: int) -> None:
    if isinstance(page, bool) or not isinstance(page, int) or page < MIN_PAGE_NUMBER:
        logger.warning(f"Pagination validation failed: invalid page number {page!r}")
        raise ValidationError(f"Page number must be greater than or equal to {MIN_PAGE_NUMBER}")

    if isinstance(limit, bool) or not isinstance(limit, int) or limit < MIN_PAGE_LIMIT or limit > MAX_PAGE_LIMIT:
        logger.warning(f"Pagination validation failed: invalid limit {limit!r}")
        raise ValidationError(f"Limit must be between {MIN_PAGE_LIMIT} and {MAX_PAGE_LIMIT}")


def validate_session_id(session_id: Optional[str]) -> None:
    """
    Session ids are UUID strings; the nil UUID is rejected.

    Examples:
        >>> validate_session_id('550e8400-e29b-41d4-a716-446655440000')
        >>> validate_session_id('00000000-0000-0000-0000-000000000000')
        Traceback (most recent call last):
        ...
        intake.errors.ValidationError: Diagnostic session identifier is invalid
    """
    if session_id is None or not isinstance(session_id, str) or not session_id.strip():
        logger.warning("SessionId validation failed: null or empty")
        raise ValidationError("Diagnostic session identifier is required")

    try:
        parsed = uuid.UUID(session_id)
    except ValueError:
        logger.warning(f"SessionId validation failed: not a UUID ({session_id!r})")
        raise ValidationError("Diagnostic session identifier is invalid") from None

    # uuid.UUID also accepts braces, urn:uuid: and bare hex; store keys need the dashed form
    if str(parsed) != session_id.lower():
        logger.warning(f"SessionId validation failed: not in canonical form ({session_id!r})")
        raise ValidationError("Diagnostic session identifier is invalid")

    if parsed.int == 0:
        logger.warning("SessionId validation failed: nil UUID")
        raise ValidationError("Diagnostic session identifier is invalid")


def validate_question_id(question_id: Optional[str]) -> None:
    if question_id is None or not isinstance(question_id, str) or not question_id.strip():
        logger.warning("QuestionId validation failed: null or empty")
        raise ValidationError("Question identifier is required")


def validate_phase(phase: int) -> None:
    if isinstance(phase, bool) or not isinstance(phase, int) or phase < 1 or phase > NUMBER_OF_PHASES:
        logger.warning(f"Phase validation failed: {phase!r}")
        raise ValidationError(f"Diagnostic phase must be between 1 and {NUMBER_OF_PHASES}")
