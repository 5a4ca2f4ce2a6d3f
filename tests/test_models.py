import uuid
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from mistakebook.models import (
    ItemKind,
    ItemStatus,
    MistakeCategory,
    ReviewItem,
    ReviewLog,
    Score,
    UserSettings,
    ensure_utc,
)


class TestReviewItem:
    def test_minimal_item_defaults(self):
        item = ReviewItem(original_text="I am agree.", corrected_text="I agree.")
        assert isinstance(item.id, uuid.UUID)
        assert item.kind == ItemKind.MISTAKE
        assert item.category == MistakeCategory.UNCATEGORIZED
        assert item.status == ItemStatus.ACTIVE
        assert item.stage == 0
        assert item.last_score is None
        assert item.consecutive_hard_count == 0
        assert item.previous_interval is None
        assert item.review_count == 0
        assert item.next_review_at is None
        assert item.created_at.tzinfo == timezone.utc

    def test_texts_are_stripped(self):
        item = ReviewItem(original_text="  I am agree. ", corrected_text="\tI agree.\n")
        assert item.original_text == "I am agree."
        assert item.corrected_text == "I agree."

    @pytest.mark.parametrize("field", ["original_text", "corrected_text"])
    def test_blank_text_is_rejected(self, field):
        data = {"original_text": "a", "corrected_text": "b", field: "   "}
        with pytest.raises(ValidationError):
            ReviewItem(**data)

    def test_text_length_limit(self):
        with pytest.raises(ValidationError):
            ReviewItem(original_text="x" * 2049, corrected_text="ok")

    @pytest.mark.parametrize(
        "field, value",
        [("stage", -1), ("consecutive_hard_count", -1), ("previous_interval", 0), ("review_count", -2)],
    )
    def test_negative_counters_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            ReviewItem(original_text="a", corrected_text="b", **{field: value})

    def test_extra_fields_are_forbidden(self):
        with pytest.raises(ValidationError):
            ReviewItem(original_text="a", corrected_text="b", deck="nope")

    def test_naive_timestamps_become_utc(self):
        naive = datetime(2024, 1, 1, 12, 0)
        item = ReviewItem(original_text="a", corrected_text="b", created_at=naive, next_review_at=naive)
        assert item.created_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert item.next_review_at.tzinfo == timezone.utc

    def test_offset_timestamps_are_converted(self):
        plus_two = timezone(timedelta(hours=2))
        item = ReviewItem(
            original_text="a",
            corrected_text="b",
            next_review_at=datetime(2024, 1, 1, 12, 0, tzinfo=plus_two),
        )
        assert item.next_review_at == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert item.next_review_at.tzinfo == timezone.utc

    def test_assignment_is_validated(self):
        item = ReviewItem(original_text="a", corrected_text="b")
        with pytest.raises(ValidationError):
            item.stage = -3

    def test_is_due(self, fixed_now):
        item = ReviewItem(original_text="a", corrected_text="b", next_review_at=fixed_now)
        assert item.is_due(fixed_now)
        assert not item.is_due(fixed_now - timedelta(seconds=1))

    def test_health_check_makes_item_due_early(self, fixed_now):
        item = ReviewItem(
            original_text="a",
            corrected_text="b",
            next_review_at=fixed_now + timedelta(days=120),
            health_check_at=fixed_now + timedelta(days=70),
        )
        assert item.due_at == fixed_now + timedelta(days=70)
        assert not item.is_due(fixed_now + timedelta(days=69))
        assert item.is_due(fixed_now + timedelta(days=80))

    def test_unscheduled_item_is_due(self, fixed_now):
        assert ReviewItem(original_text="a", corrected_text="b").is_due(fixed_now)

    def test_retired_item_is_never_due(self, fixed_now):
        item = ReviewItem(
            original_text="a",
            corrected_text="b",
            status=ItemStatus.RETIRED,
            next_review_at=fixed_now - timedelta(days=3),
        )
        assert item.is_retired
        assert not item.is_due(fixed_now)


class TestReviewLog:
    def _log(self, **overrides):
        data = dict(
            item_id=uuid.uuid4(),
            score=Score.Good,
            stage_before=0,
            stage_after=1,
            raw_interval=3,
            final_interval=4,
            next_review_at=datetime(2024, 3, 14, tzinfo=timezone.utc),
        )
        data.update(overrides)
        return ReviewLog(**data)

    def test_defaults(self):
        log = self._log()
        assert log.review_id is None
        assert log.session_uuid is None
        assert log.requeue_in_session is False
        assert log.health_check_at is None
        assert log.ts.tzinfo == timezone.utc

    def test_int_score_is_coerced(self):
        assert self._log(score=0).score == Score.Forgot

    @pytest.mark.parametrize(
        "field, value",
        [("score", 7), ("raw_interval", 0), ("final_interval", 0), ("resp_ms", -5), ("stage_after", -1)],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            self._log(**{field: value})


class TestUserSettings:
    def test_default_target(self):
        assert UserSettings().daily_target == 50

    @pytest.mark.parametrize("target", [0, -1, 1001])
    def test_target_bounds(self, target):
        with pytest.raises(ValidationError):
            UserSettings(daily_target=target)


def test_score_scale():
    assert [s.value for s in Score] == [0, 1, 2, 3]
    assert Score(3).name == "Perfect"


def test_ensure_utc_keeps_utc_untouched():
    ts = datetime(2024, 5, 5, tzinfo=timezone.utc)
    assert ensure_utc(ts) is ts
