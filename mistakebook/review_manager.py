"""
This module defines the ReviewSessionManager class, which is responsible for
running one review session. It builds the queue from the database, hands
each review to the ReviewProcessor and reinserts items the engine flags for
another look in the same session.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

from . import config as mistakebook_config
from .models import ReviewItem, Score, ensure_utc
from .db.database import MistakeDatabase
from .priority import rank_by_priority
from .review_processor import ReviewProcessor, ReviewResult
from .scheduler import LadderScheduler

# Initialize logger
logger = logging.getLogger(__name__)


class QueueMode(str, Enum):
    """Which due items a session is built from."""

    TODAY = "today"
    BACKLOG = "backlog"
    CONTINUE = "continue"


class ReviewSessionManager:
    """
    Manages a review session.

    This class is responsible for:
    - Building the session queue for a queue mode.
    - Providing items one by one for review.
    - Processing reviews and requeueing items that need another look.
    - Reporting session statistics.
    """

    def __init__(
        self,
        db_manager: MistakeDatabase,
        scheduler: LadderScheduler,
        settings: Optional[mistakebook_config.Settings] = None,
    ):
        self.db = db_manager
        self.scheduler = scheduler
        self.settings = settings or mistakebook_config.settings
        self.session_uuid = uuid4()
        self.review_queue: List[ReviewItem] = []
        self.session_start_time = datetime.now(timezone.utc)

        self.review_processor = ReviewProcessor(
            db_manager, scheduler, horizon_days=self.settings.forecast_horizon_days
        )

        self._initial_count = 0
        self._reviewed = 0
        self._requeued = 0
        self._requeue_counts: Counter = Counter()
        self._score_counts: Counter = Counter()

    def _session_cap(self, mode: QueueMode, limit: Optional[int]) -> Optional[int]:
        if limit is not None:
            return limit
        if mode == QueueMode.TODAY:
            return self.db.get_settings(self.settings.default_daily_target).daily_target
        if mode == QueueMode.CONTINUE:
            return self.settings.continue_batch_size
        return None

    def initialize_session(
        self,
        mode: Union[QueueMode, str] = QueueMode.TODAY,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ReviewItem]:
        """
        Fetch due items for the mode, rank them by priority and fill the queue.

        Modes:
            today: everything due before tomorrow (overdue included), capped
                at the daily target.
            backlog: only items overdue from earlier days, uncapped.
            continue: everything due before tomorrow, capped at the continue
                batch size.

        An explicit `limit` replaces the mode's cap.

        Returns:
            The queue, highest priority first.
        """
        mode = QueueMode(mode)
        current = ensure_utc(now or datetime.now(timezone.utc))
        today = current.date()
        logger.info(f"Initializing {mode.value} review session {self.session_uuid}")

        if mode == QueueMode.BACKLOG:
            due_items = self.db.get_due_items(current, overdue_only=True)
        else:
            start_of_tomorrow = datetime.combine(
                today + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc
            )
            due_items = self.db.get_due_items(start_of_tomorrow)

        ranked = rank_by_priority(due_items, today)
        cap = self._session_cap(mode, limit)
        if cap is not None:
            ranked = ranked[:cap]

        self.review_queue = ranked
        self._initial_count = len(ranked)
        logger.info(
            f"Initialized session with {len(ranked)} of {len(due_items)} due items."
        )
        return list(self.review_queue)

    def get_next_item(self) -> Optional[ReviewItem]:
        """
        Retrieves the next item to be reviewed, or None once the queue is empty.
        """
        if not self.review_queue:
            logger.info("Review queue is empty. Session may be complete.")
            return None
        return self.review_queue[0]

    def _get_item_from_queue(self, item_id: UUID) -> Optional[ReviewItem]:
        for item in self.review_queue:
            if item.id == item_id:
                return item
        return None

    def _remove_item_from_queue(self, item_id: UUID) -> None:
        for index, item in enumerate(self.review_queue):
            if item.id == item_id:
                del self.review_queue[index]
                return

    def _requeue(self, item: ReviewItem) -> bool:
        """Reinsert the item a few positions back, within the per-item cap."""
        if self._requeue_counts[item.id] >= self.settings.max_requeues_per_item:
            logger.debug(f"Item {item.id} reached its requeue cap; not requeued.")
            return False
        position = min(self.settings.requeue_gap, len(self.review_queue))
        self.review_queue.insert(position, item)
        self._requeue_counts[item.id] += 1
        self._requeued += 1
        logger.debug(f"Requeued item {item.id} at position {position}.")
        return True

    def submit_review(
        self,
        item_id: UUID,
        score: Union[Score, int],
        reviewed_at: Optional[datetime] = None,
        resp_ms: Optional[int] = None,
    ) -> ReviewResult:
        """
        Submit a review for an item in the current session.

        The item leaves the queue; if the engine asks for a same-session
        repeat it comes back `requeue_gap` positions later.

        Raises:
            ValueError: If the item is not in the session queue or the score
                is invalid.
        """
        item = self._get_item_from_queue(item_id)
        if item is None:
            raise ValueError(f"Item {item_id} not found in the current review session.")

        try:
            result = self.review_processor.process_review(
                item,
                score,
                reviewed_at=reviewed_at,
                session_uuid=self.session_uuid,
                resp_ms=resp_ms,
            )
        except Exception as e:
            logger.error(f"Failed to submit review for item {item_id}: {e}")
            raise

        self._remove_item_from_queue(item_id)
        self._reviewed += 1
        self._score_counts[result.log.score.name] += 1
        if result.output.requeue_in_session:
            self._requeue(result.item)
        return result

    def get_session_stats(self) -> Dict[str, Any]:
        """
        Returns:
            dict with total (initial queue size), reviewed (submissions,
            repeats included), requeued, remaining, and scores (count per
            score name).
        """
        return {
            "total": self._initial_count,
            "reviewed": self._reviewed,
            "requeued": self._requeued,
            "remaining": len(self.review_queue),
            "scores": {score.name: self._score_counts.get(score.name, 0) for score in Score},
        }
