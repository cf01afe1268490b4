"""
Recommendation persistence.

Completed interviews of signed-in users are kept as one JSON file per
recommendation, grouped by owner.

Layout:
    outputs/recommendations/
        USER-<hash of email>/
            REC-<uuid>.json
            ...

Design:
- Write-once records (a saved recommendation is never edited)
- Ownership enforced on every read and delete
- Listing is paginated and sorted by generation date
"""

import hashlib
import json
import logging
import math
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from intake.contracts import Recommendation
from intake.errors import Unauthorized, ValidationError
from intake.utils.helpers import utc_now
from intake.utils.validation import validate_pagination, validate_recommendation_text, validate_user_id

logger = logging.getLogger(__name__)


class SortOrder(str, Enum):
    DATE_DESC = "date_desc"
    DATE_ASC = "date_asc"


@dataclass(frozen=True)
class RecommendationRecord:
    """One saved recommendation"""
    recommendation_id: str
    user_id: str
    syndrome: str
    recommendation_text: str
    date_generated: datetime

    def to_json(self) -> dict:
        return {
            'recommendation_id': self.recommendation_id,
            'user_id': self.user_id,
            'syndrome': self.syndrome,
            'recommendation_text': self.recommendation_text,
            'date_generated': self.date_generated.isoformat(),
        }

    @staticmethod
    def from_json(data: dict) -> "RecommendationRecord":
        return RecommendationRecord(
            recommendation_id=data['recommendation_id'],
            user_id=data['user_id'],
            syndrome=data['syndrome'],
            recommendation_text=data['recommendation_text'],
            date_generated=datetime.fromisoformat(data['date_generated']),
        )


@dataclass(frozen=True)
class PagedResult:
    """One page of a user's recommendations"""
    page: int
    limit: int
    total_count: int
    items: List[RecommendationRecord] = field(default_factory=list)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.limit)

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    def to_json(self) -> dict:
        return {
            'items': [item.to_json() for item in self.items],
            'total_count': self.total_count,
            'page': self.page,
            'limit': self.limit,
            'total_pages': self.total_pages,
            'has_next_page': self.has_next_page,
            'has_previous_page': self.has_previous_page,
        }


class RecommendationStore:
    """JSON-file repository of saved recommendations"""

    def __init__(self, base_dir: str = "outputs/recommendations",
                 clock: Callable[[], datetime] = utc_now):
        """
        Args:
            base_dir: Root directory for all users' records
            clock: Source of date_generated timestamps
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        logger.info(f"RecommendationStore initialized: {self.base_dir}")

    def save(self, user_id: str, recommendation: Recommendation) -> RecommendationRecord:
        """
        Save a completed interview's recommendation.

        Raises:
            ValidationError: Bad user id, empty/oversized text, missing syndrome
        """
        validate_user_id(user_id)
        validate_recommendation_text(recommendation.recommendation_text)
        if not recommendation.syndrome or not recommendation.syndrome.strip():
            raise ValidationError("TCM syndrome is required")

        logger.info(f"Saving recommendation for user: {user_id}, syndrome: {recommendation.syndrome}")

        record = RecommendationRecord(
            recommendation_id=str(uuid.uuid4()),
            user_id=user_id,
            syndrome=recommendation.syndrome,
            recommendation_text=recommendation.recommendation_text,
            date_generated=self._clock(),
        )

        user_dir = self._user_dir(user_id)
        user_dir.mkdir(exist_ok=True)
        filepath = user_dir / f"REC-{record.recommendation_id}.json"

        fd, tmp_name = tempfile.mkstemp(dir=user_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_json(), f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, filepath)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Recommendation saved successfully: {record.recommendation_id}")
        return record

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 10,
                      sort: SortOrder = SortOrder.DATE_DESC) -> PagedResult:
        """
        One page of a user's recommendations, newest first by default.

        Returns:
            PagedResult: items may be empty when page is past the end
        """
        validate_user_id(user_id)
        validate_pagination(page, limit)

        logger.info(f"Getting recommendations for user: {user_id}, page: {page}, limit: {limit}, sort: {sort.value}")

        records = [self._load(path) for path in self._user_dir(user_id).glob("REC-*.json")]
        records.sort(key=lambda r: r.date_generated, reverse=(sort == SortOrder.DATE_DESC))

        start = (page - 1) * limit
        return PagedResult(
            page=page,
            limit=limit,
            total_count=len(records),
            items=records[start:start + limit],
        )

    def get(self, recommendation_id: str, user_id: str) -> Optional[RecommendationRecord]:
        """
        Returns:
            The record, or None if it does not exist

        Raises:
            Unauthorized: Record belongs to another user
        """
        validate_user_id(user_id)
        path = self._find(recommendation_id)
        if path is None:
            return None

        record = self._load(path)
        self._check_owner(record, user_id)
        return record

    def delete(self, recommendation_id: str, user_id: str) -> bool:
        """
        Returns:
            bool: False if the record did not exist

        Raises:
            Unauthorized: Record belongs to another user
        """
        validate_user_id(user_id)
        path = self._find(recommendation_id)
        if path is None:
            return False

        self._check_owner(self._load(path), user_id)
        path.unlink()
        logger.info(f"Recommendation deleted: {recommendation_id} (user {user_id})")
        return True

    def _user_dir(self, user_id: str) -> Path:
        digest = hashlib.sha256(user_id.casefold().encode('utf-8')).hexdigest()[:16]
        return self.base_dir / f"USER-{digest}"

    def _find(self, recommendation_id: str) -> Optional[Path]:
        try:
            canonical = str(uuid.UUID(recommendation_id))
        except (TypeError, ValueError):
            logger.warning(f"RecommendationId validation failed: {recommendation_id!r}")
            raise ValidationError("Recommendation identifier is invalid") from None

        matches = list(self.base_dir.glob(f"USER-*/REC-{canonical}.json"))
        return matches[0] if matches else None

    def _check_owner(self, record: RecommendationRecord, user_id: str) -> None:
        if record.user_id.casefold() != user_id.casefold():
            logger.warning(f"User {user_id} denied access to recommendation {record.recommendation_id}")
            raise Unauthorized("You do not have access to this recommendation")

    @staticmethod
    def _load(path: Path) -> RecommendationRecord:
        with open(path, 'r', encoding='utf-8') as f:
            return RecommendationRecord.from_json(json.load(f))
