import uuid
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from mistakebook.constants import RETIRED_SENTINEL
from mistakebook.db import MistakeDatabase
from mistakebook.db import db_utils
from mistakebook.db.database import normalize_text
from mistakebook.exceptions import (
    DatabaseConnectionError,
    ItemNotFoundError,
    ItemOperationError,
    MarshallingError,
    ReviewOperationError,
)
from mistakebook.models import (
    ItemKind,
    ItemStatus,
    MistakeCategory,
    ReviewItem,
    ReviewLog,
    Score,
    UserSettings,
)

UTC = timezone.utc


def _log_for(item: ReviewItem, ts: datetime, score: Score = Score.Good, **overrides) -> ReviewLog:
    data = dict(
        item_id=item.id,
        ts=ts,
        score=score,
        stage_before=item.stage,
        stage_after=item.stage + 1,
        raw_interval=3,
        final_interval=3,
        next_review_at=ts + timedelta(days=3),
    )
    data.update(overrides)
    return ReviewLog(**data)


def _reviewed(item: ReviewItem, log: ReviewLog) -> ReviewItem:
    return item.model_copy(
        update={
            "stage": log.stage_after,
            "last_score": log.score,
            "previous_interval": log.raw_interval,
            "review_count": item.review_count + 1,
            "last_reviewed_at": log.ts,
            "next_review_at": log.next_review_at,
        }
    )


class TestConnectionAndSchema:
    def test_memory_path_is_recognised(self):
        db = MistakeDatabase(":MEMORY:")
        assert str(db.db_path_resolved) == ":memory:"

    def test_file_path_is_resolved(self, db_path_file):
        db = MistakeDatabase(db_path_file)
        assert db.db_path_resolved == db_path_file.resolve()
        assert db.read_only is False

    def test_context_manager_creates_schema(self, db_path_file):
        with MistakeDatabase(db_path_file) as db:
            assert db.get_items() == []
        assert db_path_file.exists()

    def test_initialize_schema_is_idempotent(self, initialized_db_manager):
        initialized_db_manager.initialize_schema()
        assert initialized_db_manager.get_items() == []

    def test_force_recreate_on_memory_drops_data(self, memory_db, sample_item1):
        memory_db.add_item(sample_item1)
        memory_db.initialize_schema(force_recreate_tables=True)
        assert memory_db.get_items() == []

    def test_force_recreate_refuses_file_with_data(self, db_path_file, sample_item1, monkeypatch):
        from mistakebook import config

        monkeypatch.setattr(config.settings, "testing_mode", False)
        with MistakeDatabase(db_path_file) as db:
            db.add_item(sample_item1)
            with pytest.raises(ValueError, match="Refusing to drop"):
                db.initialize_schema(force_recreate_tables=True)

    def test_read_only_rejects_writes(self, db_path_file, sample_item1):
        with MistakeDatabase(db_path_file) as db:
            db.add_item(sample_item1)
        with MistakeDatabase(db_path_file, read_only=True) as ro_db:
            assert ro_db.get_item(sample_item1.id) is not None
            with pytest.raises(DatabaseConnectionError):
                ro_db.retire_item(sample_item1.id)
            with pytest.raises(DatabaseConnectionError):
                ro_db.initialize_schema(force_recreate_tables=True)

    def test_reconnects_after_close(self, initialized_db_manager, sample_item1):
        initialized_db_manager.add_item(sample_item1)
        initialized_db_manager.close_connection()
        if str(initialized_db_manager.db_path_resolved) != ":memory:":
            assert initialized_db_manager.get_item(sample_item1.id) is not None


class TestItemOperations:
    def test_add_and_get_round_trip(self, initialized_db_manager, sample_item1):
        initialized_db_manager.add_item(sample_item1)
        fetched = initialized_db_manager.get_item(sample_item1.id)
        assert fetched == sample_item1
        assert fetched.next_review_at.tzinfo == UTC

    def test_get_missing_item_returns_none(self, initialized_db_manager):
        assert initialized_db_manager.get_item(uuid.uuid4()) is None

    def test_unscheduled_item_is_rejected(self, initialized_db_manager):
        item = ReviewItem(original_text="a", corrected_text="b")
        with pytest.raises(ItemOperationError, match="scheduled"):
            initialized_db_manager.add_item(item)

    def test_duplicate_id_is_rejected_atomically(self, initialized_db_manager, sample_item1, make_item):
        initialized_db_manager.add_item(sample_item1)
        other = make_item()
        clash = sample_item1.model_copy(update={"original_text": "Different text."})
        with pytest.raises(ItemOperationError):
            initialized_db_manager.add_items_batch([other, clash])
        assert initialized_db_manager.get_item(other.id) is None

    def test_batch_insert(self, initialized_db_manager, make_item):
        items = [make_item(due_in_days=i) for i in range(5)]
        assert initialized_db_manager.add_items_batch(items) == 5
        assert initialized_db_manager.add_items_batch([]) == 0
        assert len(initialized_db_manager.get_items()) == 5

    def test_get_items_filters(self, initialized_db_manager, sample_item1, sample_item2):
        initialized_db_manager.add_items_batch([sample_item1, sample_item2])
        db = initialized_db_manager
        assert [i.id for i in db.get_items()] == [sample_item1.id, sample_item2.id]
        assert [i.id for i in db.get_items(kind=ItemKind.EXPRESSION)] == [sample_item2.id]
        assert [i.id for i in db.get_items(category=MistakeCategory.GRAMMAR)] == [sample_item1.id]
        assert db.get_items(status=ItemStatus.RETIRED) == []
        assert len(db.get_items(limit=1)) == 1
        assert db.get_items(limit=0) == []

    def test_get_all_original_texts(self, initialized_db_manager, sample_item1):
        initialized_db_manager.add_item(sample_item1)
        texts = initialized_db_manager.get_all_original_texts()
        assert texts == {normalize_text(sample_item1.original_text): sample_item1.id}

    def test_normalize_text(self):
        assert normalize_text("  She  DON'T\tlike apples. ") == "she don't like apples."


class TestDueItems:
    @pytest.fixture
    def populated(self, memory_db, make_item, fixed_now):
        items = {
            "overdue": make_item(due_in_days=-2),
            "earlier_today": make_item(due_in_days=-0.25),
            "later_today": make_item(due_in_days=0.5),
            "tomorrow": make_item(due_in_days=1),
            "retired": make_item(due_in_days=-3, status=ItemStatus.RETIRED),
        }
        memory_db.add_items_batch(list(items.values()))
        return memory_db, items

    def test_due_before_cutoff(self, populated, fixed_now):
        db, items = populated
        due = db.get_due_items(fixed_now)
        assert [i.id for i in due] == [items["overdue"].id, items["earlier_today"].id]

    def test_due_until_end_of_day(self, populated, fixed_now):
        db, items = populated
        end_of_day = datetime.combine(fixed_now.date() + timedelta(days=1), datetime.min.time(), tzinfo=UTC)
        due_ids = {i.id for i in db.get_due_items(end_of_day)}
        assert due_ids == {items["overdue"].id, items["earlier_today"].id, items["later_today"].id}

    def test_overdue_only_excludes_today(self, populated, fixed_now):
        db, items = populated
        assert [i.id for i in db.get_due_items(fixed_now, overdue_only=True)] == [items["overdue"].id]

    def test_pending_health_check_makes_item_due(self, memory_db, make_item, fixed_now):
        checked = make_item(
            due_in_days=120, stage=8, health_check_at=fixed_now + timedelta(days=70)
        )
        memory_db.add_item(checked)
        assert memory_db.get_due_items(fixed_now + timedelta(days=60)) == []
        assert [i.id for i in memory_db.get_due_items(fixed_now + timedelta(days=80))] == [checked.id]

    def test_health_checks_sort_by_check_date(self, memory_db, make_item, fixed_now):
        overdue = make_item(due_in_days=-2)
        checked = make_item(due_in_days=90, health_check_at=fixed_now - timedelta(days=3))
        retired = make_item(
            due_in_days=90,
            status=ItemStatus.RETIRED,
            health_check_at=fixed_now - timedelta(days=5),
        )
        memory_db.add_items_batch([overdue, checked, retired])
        assert [i.id for i in memory_db.get_due_items(fixed_now)] == [checked.id, overdue.id]

    def test_limit(self, populated, fixed_now):
        db, items = populated
        assert [i.id for i in db.get_due_items(fixed_now, limit=1)] == [items["overdue"].id]
        assert db.get_due_items(fixed_now, limit=0) == []

    def test_scheduled_between(self, populated, fixed_now):
        db, items = populated
        today = fixed_now.date()
        between = db.get_items_scheduled_between(today, today + timedelta(days=1))
        assert {i.id for i in between} == {
            items["earlier_today"].id,
            items["later_today"].id,
            items["tomorrow"].id,
        }


class TestStatusChanges:
    def test_retire_parks_item_at_sentinel(self, initialized_db_manager, sample_item1):
        initialized_db_manager.add_item(sample_item1)
        retired = initialized_db_manager.retire_item(sample_item1.id)
        assert retired.status == ItemStatus.RETIRED
        assert retired.next_review_at == RETIRED_SENTINEL
        assert retired.stage == sample_item1.stage
        far_future = datetime(9000, 1, 1, tzinfo=UTC)
        assert initialized_db_manager.get_due_items(far_future) == []

    def test_reactivate(self, initialized_db_manager, sample_item1, fixed_now):
        initialized_db_manager.add_item(sample_item1)
        initialized_db_manager.retire_item(sample_item1.id)
        active = initialized_db_manager.reactivate_item(sample_item1.id, next_review_at=fixed_now)
        assert active.status == ItemStatus.ACTIVE
        assert active.next_review_at == fixed_now

    def test_reactivate_defaults_to_now(self, initialized_db_manager, sample_item1):
        initialized_db_manager.add_item(sample_item1)
        before = datetime.now(UTC)
        active = initialized_db_manager.reactivate_item(sample_item1.id)
        assert active.next_review_at >= before.replace(microsecond=0)

    @pytest.mark.parametrize("operation", ["retire_item", "reactivate_item", "delete_item"])
    def test_missing_item_raises(self, initialized_db_manager, operation):
        with pytest.raises(ItemNotFoundError):
            getattr(initialized_db_manager, operation)(uuid.uuid4())

    def test_delete_removes_history(self, initialized_db_manager, sample_item1, fixed_now):
        db = initialized_db_manager
        db.add_item(sample_item1)
        log = _log_for(sample_item1, fixed_now)
        db.apply_review(log, _reviewed(sample_item1, log))
        db.delete_item(sample_item1.id)
        assert db.get_item(sample_item1.id) is None
        assert db.get_reviews_for_item(sample_item1.id) == []

    def test_update_next_review_dates(self, initialized_db_manager, sample_item1, sample_item2, fixed_now):
        db = initialized_db_manager
        db.add_items_batch([sample_item1, sample_item2])
        new_date = fixed_now + timedelta(days=5)
        assert db.update_next_review_dates({sample_item1.id: new_date}) == 1
        assert db.get_item(sample_item1.id).next_review_at == new_date
        assert db.get_item(sample_item2.id).next_review_at == sample_item2.next_review_at
        assert db.update_next_review_dates({}) == 0

    def test_update_next_review_dates_unknown_id_writes_nothing(self, initialized_db_manager, sample_item1, fixed_now):
        db = initialized_db_manager
        db.add_item(sample_item1)
        with pytest.raises(ItemNotFoundError):
            db.update_next_review_dates(
                {sample_item1.id: fixed_now + timedelta(days=9), uuid.uuid4(): fixed_now}
            )
        assert db.get_item(sample_item1.id).next_review_at == sample_item1.next_review_at


class TestReviews:
    def test_apply_review_is_persisted(self, initialized_db_manager, sample_item1, fixed_now):
        db = initialized_db_manager
        db.add_item(sample_item1)
        session = uuid.uuid4()
        log = _log_for(sample_item1, fixed_now, session_uuid=session, resp_ms=1500)
        stored = db.apply_review(log, _reviewed(sample_item1, log))

        assert log.review_id is not None
        assert stored.stage == 1
        assert stored.last_score == Score.Good
        assert stored.review_count == 1
        assert stored.last_reviewed_at == fixed_now
        assert stored.next_review_at == fixed_now + timedelta(days=3)

        history = db.get_reviews_for_item(sample_item1.id)
        assert len(history) == 1
        assert history[0] == log
        assert db.get_reviews_for_session(session) == [log]

    def test_reviews_are_ordered(self, initialized_db_manager, sample_item1, fixed_now):
        db = initialized_db_manager
        db.add_item(sample_item1)
        current = sample_item1
        for day in range(3):
            log = _log_for(current, fixed_now + timedelta(days=day))
            current = db.apply_review(log, _reviewed(current, log))
        newest_first = db.get_reviews_for_item(sample_item1.id)
        oldest_first = db.get_reviews_for_item(sample_item1.id, order_by_ts_desc=False)
        assert [r.ts for r in newest_first] == [r.ts for r in reversed(oldest_first)]
        assert oldest_first[0].ts == fixed_now

    def test_mismatched_ids_are_rejected(self, initialized_db_manager, sample_item1, sample_item2, fixed_now):
        db = initialized_db_manager
        db.add_items_batch([sample_item1, sample_item2])
        log = _log_for(sample_item1, fixed_now)
        with pytest.raises(ReviewOperationError):
            db.apply_review(log, sample_item2)

    def test_review_of_missing_item_writes_nothing(self, initialized_db_manager, sample_item1, fixed_now):
        db = initialized_db_manager
        log = _log_for(sample_item1, fixed_now)
        with pytest.raises(ItemNotFoundError):
            db.apply_review(log, _reviewed(sample_item1, log))
        assert db.get_reviews_for_item(sample_item1.id) == []
        assert log.review_id is None


class TestForecastAndCalendar:
    def test_calendar_counts_are_zero_filled(self, memory_db, make_item, fixed_now):
        memory_db.add_items_batch(
            [
                make_item(due_in_days=1),
                make_item(due_in_days=1.2),
                make_item(due_in_days=3),
                make_item(due_in_days=2, status=ItemStatus.RETIRED),
            ]
        )
        today = fixed_now.date()
        counts = memory_db.get_calendar_counts(today, today + timedelta(days=4))
        assert counts == {
            today: 0,
            today + timedelta(days=1): 2,
            today + timedelta(days=2): 0,
            today + timedelta(days=3): 1,
            today + timedelta(days=4): 0,
        }

    def test_inverted_range_is_empty(self, memory_db):
        assert memory_db.get_calendar_counts(date(2024, 3, 5), date(2024, 3, 1)) == {}

    def test_load_forecast_window(self, memory_db, make_item, fixed_now):
        memory_db.add_items_batch([make_item(due_in_days=0), make_item(due_in_days=13), make_item(due_in_days=14)])
        today = fixed_now.date()
        forecast = memory_db.get_load_forecast(14, today=today)
        assert len(forecast) == 14
        assert min(forecast) == today
        assert max(forecast) == today + timedelta(days=13)
        assert forecast[today] == 1
        assert forecast[today + timedelta(days=13)] == 1
        assert sum(forecast.values()) == 2
        assert memory_db.get_load_forecast(0, today=today) == {}


class TestSettings:
    def test_defaults_when_nothing_stored(self, initialized_db_manager):
        assert initialized_db_manager.get_settings().daily_target == 50
        assert initialized_db_manager.get_settings(default_daily_target=30).daily_target == 30

    def test_update_and_overwrite(self, initialized_db_manager):
        db = initialized_db_manager
        db.update_settings(UserSettings(daily_target=25))
        assert db.get_settings().daily_target == 25
        db.update_settings(UserSettings(daily_target=40))
        stored = db.get_settings(default_daily_target=99)
        assert stored.daily_target == 40
        assert stored.updated_at.tzinfo == UTC


class TestStats:
    def test_empty_database(self, memory_db, fixed_now):
        stats = memory_db.get_database_stats(today=fixed_now.date())
        assert stats["total_items"] == 0
        assert stats["total_reviews"] == 0
        assert stats["by_kind"] == {}

    def test_counts(self, memory_db, sample_item1, sample_item2, make_item, fixed_now):
        retired = make_item(status=ItemStatus.RETIRED)
        memory_db.add_items_batch([sample_item1, sample_item2, retired])
        log = _log_for(sample_item2, fixed_now)
        memory_db.apply_review(log, _reviewed(sample_item2, log))

        stats = memory_db.get_database_stats(today=fixed_now.date())
        assert stats["total_items"] == 3
        assert stats["active_items"] == 2
        assert stats["retired_items"] == 1
        assert stats["total_reviews"] == 1
        assert stats["reviews_today"] == 1
        assert stats["due_today"] == 1  # sample_item1 is overdue; sample_item2 moved out
        assert stats["by_kind"] == {"mistake": 1, "expression": 1}
        assert stats["by_category"] == {"grammar": 1, "vocabulary": 1}


class TestMarshalling:
    def test_timestamps_are_stored_naive_utc(self):
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert db_utils.to_db_timestamp(aware) == datetime(2024, 1, 1, 17, 0)
        assert db_utils.to_db_timestamp(None) is None
        assert db_utils.from_db_timestamp(datetime(2024, 1, 1, 17, 0)) == datetime(2024, 1, 1, 17, 0, tzinfo=UTC)

    def test_item_params_follow_column_order(self, sample_item1):
        params = db_utils.item_to_db_params(sample_item1)
        assert len(params) == len(db_utils.ITEM_COLUMNS)
        row = dict(zip(db_utils.ITEM_COLUMNS, params))
        assert row["kind"] == "mistake"
        assert row["category"] == "grammar"
        assert row["next_review_at"].tzinfo is None

    def test_bad_row_raises_marshalling_error(self, sample_item1):
        row = dict(zip(db_utils.ITEM_COLUMNS, db_utils.item_to_db_params(sample_item1)))
        row["kind"] = "flashcard"
        with pytest.raises(MarshallingError):
            db_utils.db_row_to_item(row)

    def test_review_params_follow_column_order(self, sample_item1, fixed_now):
        params = db_utils.review_log_to_db_params_tuple(_log_for(sample_item1, fixed_now))
        assert len(params) == len(db_utils.REVIEW_INSERT_COLUMNS)


class TestBackups:
    def test_backup_of_missing_file_is_noop(self, tmp_path):
        missing = tmp_path / "nothing.db"
        assert db_utils.backup_database(missing) == missing
        assert db_utils.find_latest_backup(missing) is None

    def test_backup_and_find_latest(self, tmp_path: Path):
        db_file = tmp_path / "mistakes.db"
        db_file.write_bytes(b"v1")
        first = db_utils.backup_database(db_file)
        db_file.write_bytes(b"v2")
        second = db_utils.backup_database(db_file)
        assert first != second
        assert first.parent == tmp_path / "backups"
        assert db_utils.find_latest_backup(db_file) == second
        assert second.read_bytes() == b"v2"
