"""
Pydantic models for review items, review log entries and user settings.
"""

from __future__ import annotations

import uuid
from enum import Enum, IntEnum
from uuid import UUID
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import DEFAULT_DAILY_TARGET, MAX_DAILY_TARGET


class Score(IntEnum):
    """
    Recall-quality scale, worst to best.
    """

    Forgot = 0
    Hard = 1
    Good = 2
    Perfect = 3


class ItemKind(str, Enum):
    """
    What the learner recorded: a corrected mistake or an improved expression.
    """

    MISTAKE = "mistake"
    EXPRESSION = "expression"


class MistakeCategory(str, Enum):
    GRAMMAR = "grammar"
    VOCABULARY = "vocabulary"
    COLLOCATION = "collocation"
    TENSE = "tense"
    PRONUNCIATION = "pronunciation"
    UNCATEGORIZED = "uncategorized"


class ItemStatus(str, Enum):
    ACTIVE = "active"
    RETIRED = "retired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Ensures the given datetime is UTC. Assumes UTC if naive."""
    if ts.tzinfo is None or ts.tzinfo.utcoffset(ts) is None:
        return ts.replace(tzinfo=timezone.utc)
    if ts.tzinfo != timezone.utc:
        return ts.astimezone(timezone.utc)
    return ts


class ReviewItem(BaseModel):
    """
    A sentence pair scheduled for review.

    `original_text` is the incorrect sentence (mistakes) or the original
    phrasing (expressions); `corrected_text` is what the learner should
    recall. Scheduling fields are owned by the engine; the database only
    stores what the engine returns.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    id: UUID = Field(
        default_factory=uuid.uuid4,
        description="Stable identifier; also seeds deterministic fuzzing.",
    )
    kind: ItemKind = Field(default=ItemKind.MISTAKE)
    category: MistakeCategory = Field(default=MistakeCategory.UNCATEGORIZED)
    original_text: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        description="Incorrect sentence or original expression.",
    )
    corrected_text: str = Field(
        ...,
        min_length=1,
        max_length=2048,
        description="Corrected sentence or improved expression.",
    )
    explanation: Optional[str] = Field(
        default=None,
        max_length=4096,
        description="Optional note on why the correction is better.",
    )
    status: ItemStatus = Field(default=ItemStatus.ACTIVE)
    stage: int = Field(
        default=0,
        ge=0,
        description="Ordinal into the interval ladder.",
    )
    last_score: Optional[Score] = Field(
        default=None,
        description="Last recall-quality score; None if never reviewed.",
    )
    consecutive_hard_count: int = Field(default=0, ge=0)
    previous_interval: Optional[int] = Field(
        default=None,
        ge=1,
        description="Last raw (pre-fuzz) interval in days.",
    )
    review_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utcnow)
    last_reviewed_at: Optional[datetime] = None
    next_review_at: Optional[datetime] = Field(
        default=None,
        description="When the item is next due; None before first scheduling.",
    )
    health_check_at: Optional[datetime] = Field(
        default=None,
        description="Long-horizon re-verification date for mastered items.",
    )

    @field_validator("original_text", "corrected_text")
    @classmethod
    def strip_and_require_text(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Text must not be blank.")
        return stripped

    @field_validator(
        "created_at", "last_reviewed_at", "next_review_at", "health_check_at"
    )
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @property
    def is_retired(self) -> bool:
        return self.status == ItemStatus.RETIRED

    @property
    def due_at(self) -> Optional[datetime]:
        """The earlier of the next review and a pending health check."""
        if self.health_check_at is None:
            return self.next_review_at
        if self.next_review_at is None:
            return self.health_check_at
        return min(self.next_review_at, self.health_check_at)

    def is_due(self, at: datetime) -> bool:
        """True if the item is active and due (review or health check) at or before `at`."""
        if self.is_retired:
            return False
        due_at = self.due_at
        if due_at is None:
            return True
        return due_at <= ensure_utc(at)


class ReviewLog(BaseModel):
    """
    Immutable record of one review event and the engine's decision.
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    review_id: Optional[int] = Field(
        default=None,
        description="Auto-incrementing PK from reviews table (None if new).",
    )
    item_id: UUID
    session_uuid: Optional[UUID] = None
    ts: datetime = Field(default_factory=_utcnow)
    score: Score
    stage_before: int = Field(..., ge=0)
    stage_after: int = Field(..., ge=0)
    raw_interval: int = Field(..., ge=1)
    final_interval: int = Field(..., ge=1)
    next_review_at: datetime
    health_check_at: Optional[datetime] = None
    requeue_in_session: bool = False
    resp_ms: Optional[int] = Field(
        default=None,
        ge=0,
        description="Time to reveal the answer in ms (nullable if not captured).",
    )

    @field_validator("ts", "next_review_at", "health_check_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)


class UserSettings(BaseModel):
    """Per-learner settings stored alongside the items."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    daily_target: int = Field(
        default=DEFAULT_DAILY_TARGET,
        ge=1,
        le=MAX_DAILY_TARGET,
        description="How many items the learner wants to review per day.",
    )
    updated_at: datetime = Field(default_factory=_utcnow)
