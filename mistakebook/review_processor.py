"""
Shared review processing logic for mistakebook.

The ReviewProcessor wires the scheduling engine to the database. Every
review and every item creation goes through it so that the CLI, the
session runner and the importer all follow the same steps:
1. Timestamp handling
2. Load forecast refresh
3. Scheduler computation
4. Review log creation
5. Atomic persistence
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, Optional, Union
from uuid import UUID

from .constants import DEFAULT_FORECAST_HORIZON_DAYS
from .db.database import MistakeDatabase
from .exceptions import ItemNotFoundError
from .fuzzing import LoadForecast, fuzz_radius
from .models import ItemKind, MistakeCategory, ReviewItem, ReviewLog, Score, ensure_utc
from .scheduler import LadderScheduler, SchedulerOutput

logger = logging.getLogger(__name__)


@dataclass
class ReviewResult:
    """The stored item after a review, plus what the engine decided."""

    item: ReviewItem
    output: SchedulerOutput
    log: ReviewLog


class ReviewProcessor:
    """
    Processes reviews and item creation with consistent logic across the
    CLI, review sessions and batch import.
    """

    def __init__(
        self,
        db_manager: MistakeDatabase,
        scheduler: LadderScheduler,
        horizon_days: int = DEFAULT_FORECAST_HORIZON_DAYS,
    ):
        """
        Args:
            db_manager: Database facade used for forecasts and persistence.
            scheduler: Engine computing each item's next state.
            horizon_days: Minimum number of forecast days fetched per decision.
        """
        self.db_manager = db_manager
        self.scheduler = scheduler
        self.horizon_days = horizon_days

    def forecast_horizon(self) -> int:
        """
        Days of forecast needed so that every fuzz candidate of the longest
        possible raw interval is covered.
        """
        ladder = self.scheduler.ladder
        longest = max(ladder.final_step, ladder.max_interval)
        return max(self.horizon_days, longest + fuzz_radius(longest) + 1)

    def fetch_forecast(self, ts: datetime) -> Dict[date, int]:
        return self.db_manager.get_load_forecast(
            self.forecast_horizon(), today=ensure_utc(ts).date()
        )

    def process_review(
        self,
        item: ReviewItem,
        score: Union[Score, int],
        reviewed_at: Optional[datetime] = None,
        session_uuid: Optional[UUID] = None,
        resp_ms: Optional[int] = None,
        use_forecast: bool = True,
    ) -> ReviewResult:
        """
        Process one review of an item.

        Args:
            item: The item being reviewed, in its current stored state.
            score: Recall quality (0=Forgot, 1=Hard, 2=Good, 3=Perfect).
            reviewed_at: Review timestamp (defaults to now, UTC).
            session_uuid: Session the review belongs to, if any.
            resp_ms: Time to reveal the answer, if measured.
            use_forecast: Balance against the stored load forecast; when
                False the hash-based offset is used instead.

        Returns:
            ReviewResult with the item as stored after the update.

        Raises:
            ValueError: If the score is invalid or the item is retired.
            DatabaseError: If persistence fails.
        """
        # Step 1: Handle timestamp
        ts = ensure_utc(reviewed_at or datetime.now(timezone.utc))
        validated_score = self.scheduler.validate_score(score)
        if item.is_retired:
            raise ValueError(f"Item {item.id} is retired and cannot be reviewed.")

        logger.debug(f"Processing review for item {item.id} with score {validated_score.name}")

        try:
            # Step 2: Fresh forecast, so consecutive reviews see each other
            forecast: Optional[LoadForecast] = self.fetch_forecast(ts) if use_forecast else None

            # Step 3: Compute next state
            output = self.scheduler.compute_next_review(
                item, validated_score, load_forecast=forecast, review_ts=ts
            )

            # Step 4: Build the log entry and the updated item
            log = ReviewLog(
                item_id=item.id,
                session_uuid=session_uuid,
                ts=ts,
                score=validated_score,
                stage_before=item.stage,
                stage_after=output.new_stage,
                raw_interval=output.raw_interval,
                final_interval=output.final_interval,
                next_review_at=output.next_review_at,
                health_check_at=output.health_check_at,
                requeue_in_session=output.requeue_in_session,
                resp_ms=resp_ms,
            )
            updated = item.model_copy(
                update={
                    "stage": output.new_stage,
                    "last_score": validated_score,
                    "consecutive_hard_count": output.new_consecutive_hard_count,
                    "previous_interval": output.new_previous_interval,
                    "review_count": item.review_count + 1,
                    "last_reviewed_at": ts,
                    "next_review_at": output.next_review_at,
                    "health_check_at": output.health_check_at,
                }
            )

            # Step 5: Persist atomically
            stored = self.db_manager.apply_review(log, updated)
        except Exception:
            logger.exception(f"Failed to process review for item {item.id}")
            raise

        logger.debug(
            f"Review processed for item {item.id}. Next review: "
            f"{stored.next_review_at}, stage {item.stage}->{stored.stage}"
        )
        return ReviewResult(item=stored, output=output, log=log)

    def process_review_by_id(
        self,
        item_id: UUID,
        score: Union[Score, int],
        reviewed_at: Optional[datetime] = None,
        session_uuid: Optional[UUID] = None,
        resp_ms: Optional[int] = None,
        use_forecast: bool = True,
    ) -> ReviewResult:
        """
        Fetch an item by id, then process the review.

        Raises:
            ItemNotFoundError: If no item has this id.
        """
        item = self.db_manager.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(f"Item {item_id} not found.")
        return self.process_review(
            item,
            score,
            reviewed_at=reviewed_at,
            session_uuid=session_uuid,
            resp_ms=resp_ms,
            use_forecast=use_forecast,
        )

    def create_item(
        self,
        original_text: str,
        corrected_text: str,
        explanation: Optional[str] = None,
        kind: ItemKind = ItemKind.MISTAKE,
        category: MistakeCategory = MistakeCategory.UNCATEGORIZED,
        created_at: Optional[datetime] = None,
        load_forecast: Optional[LoadForecast] = None,
    ) -> ReviewItem:
        """
        Create, schedule and store a new item.

        The engine runs once with the lowest score from stage 0, which puts
        the first review a day or so out. When `load_forecast` is omitted a
        fresh one is read from the database.

        Raises:
            pydantic.ValidationError: If the texts are blank or too long.
            ItemOperationError: If the insert fails.
        """
        ts = ensure_utc(created_at or datetime.now(timezone.utc))
        item = ReviewItem(
            kind=kind,
            category=category,
            original_text=original_text,
            corrected_text=corrected_text,
            explanation=explanation or None,
            created_at=ts,
        )
        forecast = load_forecast if load_forecast is not None else self.fetch_forecast(ts)
        output = self.scheduler.initial_schedule(item.id, created_at=ts, load_forecast=forecast)
        item.stage = output.new_stage
        item.previous_interval = output.new_previous_interval
        item.next_review_at = output.next_review_at

        self.db_manager.add_item(item)
        logger.info(f"Created {kind.value} item {item.id}, first review {item.next_review_at.date()}")
        return item
