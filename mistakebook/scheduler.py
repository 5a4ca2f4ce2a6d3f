# mistakebook/scheduler.py

"""
Defines the BaseScheduler abstract class and the LadderScheduler, which turns
one (item, score) pair into the item's next scheduling state.
"""

import logging
import random
from abc import ABC, abstractmethod
import datetime
from dataclasses import dataclass
from typing import Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from .fuzzing import LoadForecast, apply_fuzz
from .ladder import IntervalLadder
from .models import ReviewItem, Score, ensure_utc
from .transitions import compute_transition

logger = logging.getLogger(__name__)


@dataclass
class SchedulerOutput:
    next_review_at: datetime.datetime
    new_stage: int
    new_previous_interval: int
    new_consecutive_hard_count: int
    health_check_at: Optional[datetime.datetime]
    requeue_in_session: bool
    raw_interval: int
    final_interval: int
    fuzz_offset: int


class BaseScheduler(ABC):
    """
    Abstract base class for all schedulers in mistakebook.
    """

    @abstractmethod
    def compute_next_review(
        self,
        item: ReviewItem,
        score: Union[Score, int],
        load_forecast: Optional[LoadForecast] = None,
        review_ts: Optional[datetime.datetime] = None,
    ) -> SchedulerOutput:
        """
        Computes the next scheduling state of an item from its current state
        and a new score.

        Args:
            item: The ReviewItem holding the current stage, counters and
                previous interval.
            score: The recall-quality score (0=Forgot, 1=Hard, 2=Good, 3=Perfect).
            load_forecast: Optional date -> count snapshot of items already due.
            review_ts: The timestamp of the review; defaults to now (UTC).

        Returns:
            A SchedulerOutput with the fields the caller must persist.

        Raises:
            ValueError: If the score is invalid.
        """
        pass


class SchedulerConfig(BaseModel):
    """Configuration for the ladder scheduler."""

    ladder: IntervalLadder = Field(default_factory=IntervalLadder)
    seed: Optional[int] = Field(
        default=None,
        description="Seed for the health-check random source; None for entropy.",
    )


class LadderScheduler(BaseScheduler):
    """
    Stage-ladder scheduler with diminishing growth past the last rung and
    load-aware fuzzing of the resulting date.
    """

    def __init__(self, config: Optional[SchedulerConfig] = None):
        if config is None:
            config = SchedulerConfig()
        self.config = config
        self._rng = random.Random(config.seed)

    @property
    def ladder(self) -> IntervalLadder:
        return self.config.ladder

    def validate_score(self, score: Union[Score, int]) -> Score:
        """Maps an int or Score to Score and validates it."""
        try:
            return Score(score)
        except ValueError:
            raise ValueError(
                f"Invalid score: {score}. Must be 0-3 "
                "(0=Forgot, 1=Hard, 2=Good, 3=Perfect)."
            ) from None

    def compute_next_review(
        self,
        item: ReviewItem,
        score: Union[Score, int],
        load_forecast: Optional[LoadForecast] = None,
        review_ts: Optional[datetime.datetime] = None,
    ) -> SchedulerOutput:
        """
        Computes the next review of an item: stage transition, then fuzzing.
        """
        validated_score = self.validate_score(score)
        now = ensure_utc(review_ts or datetime.datetime.now(datetime.timezone.utc))

        transition = compute_transition(
            stage=item.stage,
            score=validated_score,
            previous_interval=item.previous_interval,
            consecutive_hard_count=item.consecutive_hard_count,
            now=now,
            ladder=self.ladder,
            rng=self._rng,
        )
        fuzz = apply_fuzz(
            transition.raw_interval,
            item_key=item.id,
            today=now.date(),
            forecast=load_forecast,
        )

        logger.debug(
            f"Item {item.id}: score={validated_score.name} "
            f"stage {item.stage}->{transition.new_stage} "
            f"raw={transition.raw_interval} final={fuzz.final_interval} "
            f"requeue={transition.requeue_in_session}"
        )

        return SchedulerOutput(
            next_review_at=now + datetime.timedelta(days=fuzz.final_interval),
            new_stage=transition.new_stage,
            new_previous_interval=transition.raw_interval,
            new_consecutive_hard_count=transition.consecutive_hard_count,
            health_check_at=transition.health_check_at,
            requeue_in_session=transition.requeue_in_session,
            raw_interval=transition.raw_interval,
            final_interval=fuzz.final_interval,
            fuzz_offset=fuzz.offset,
        )

    def initial_schedule(
        self,
        item_id: UUID,
        created_at: Optional[datetime.datetime] = None,
        load_forecast: Optional[LoadForecast] = None,
    ) -> SchedulerOutput:
        """
        Schedules a brand-new item by running the engine once with the
        lowest score from stage 0.
        """
        seed_item = ReviewItem.model_construct(
            id=item_id,
            stage=0,
            consecutive_hard_count=0,
            previous_interval=None,
        )
        return self.compute_next_review(
            seed_item,
            Score.Forgot,
            load_forecast=load_forecast,
            review_ts=created_at,
        )
