import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator

import pytest

from mistakebook.db import MistakeDatabase
from mistakebook.ladder import IntervalLadder
from mistakebook.models import ItemKind, MistakeCategory, ReviewItem
from mistakebook.scheduler import LadderScheduler, SchedulerConfig

FIXED_NOW = datetime(2024, 3, 10, 9, 30, tzinfo=timezone.utc)


# each test runs with cwd in its temp dir, so no stray .env is picked up
@pytest.fixture(autouse=True)
def go_to_tmpdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    yield


# --- Database Fixtures ---
@pytest.fixture
def db_path_memory() -> str:
    return ":memory:"


@pytest.fixture
def db_path_file(tmp_path: Path) -> Path:
    return tmp_path / "test_mistakes.db"


@pytest.fixture(params=["memory", "file"])
def db_manager(
    request, db_path_memory: str, db_path_file: Path
) -> Generator[MistakeDatabase, None, None]:
    """
    A MistakeDatabase, either in-memory or file-backed. The connection is
    closed and any file removed on teardown.
    """
    if request.param == "memory":
        db_man = MistakeDatabase(db_path_memory)
    else:
        db_man = MistakeDatabase(db_path_file)
    try:
        yield db_man
    finally:
        db_man.close_connection()
        if request.param == "file" and db_path_file.exists():
            try:
                db_path_file.unlink()
            except OSError as e:
                logging.warning(f"Error removing temporary DB file in test fixture teardown: {e}")


@pytest.fixture
def initialized_db_manager(db_manager: MistakeDatabase) -> MistakeDatabase:
    db_manager.initialize_schema()
    return db_manager


@pytest.fixture
def memory_db() -> Generator[MistakeDatabase, None, None]:
    db = MistakeDatabase(":memory:")
    db.initialize_schema()
    try:
        yield db
    finally:
        db.close_connection()


# --- Time and engine fixtures ---
@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def wide_ladder() -> IntervalLadder:
    """The eight-rung ladder used by the worked examples."""
    return IntervalLadder(steps=(1, 3, 7, 14, 30, 60, 120, 240), max_interval=120)


@pytest.fixture
def scheduler() -> LadderScheduler:
    return LadderScheduler(SchedulerConfig(seed=42))


# --- Item fixtures ---
@pytest.fixture
def make_item() -> Callable[..., ReviewItem]:
    """
    Factory for scheduled items. Keyword arguments override the defaults;
    `due_in_days` sets next_review_at relative to FIXED_NOW.
    """

    def _make(due_in_days: float = 0, **overrides) -> ReviewItem:
        fields = dict(
            original_text="I have went to the store.",
            corrected_text="I have gone to the store.",
            kind=ItemKind.MISTAKE,
            category=MistakeCategory.TENSE,
            created_at=FIXED_NOW - timedelta(days=30),
            next_review_at=FIXED_NOW + timedelta(days=due_in_days),
        )
        fields.update(overrides)
        return ReviewItem(**fields)

    return _make


@pytest.fixture
def sample_item1() -> ReviewItem:
    return ReviewItem(
        id="11111111-1111-1111-1111-111111111111",
        original_text="She don't like apples.",
        corrected_text="She doesn't like apples.",
        explanation="Third person singular takes 'does'.",
        category=MistakeCategory.GRAMMAR,
        created_at=datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
        next_review_at=datetime(2024, 3, 9, 10, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def sample_item2() -> ReviewItem:
    return ReviewItem(
        id="22222222-2222-2222-2222-222222222222",
        kind=ItemKind.EXPRESSION,
        original_text="I am very very tired.",
        corrected_text="I am exhausted.",
        category=MistakeCategory.VOCABULARY,
        created_at=datetime(2024, 3, 2, 10, 0, tzinfo=timezone.utc),
        next_review_at=datetime(2024, 3, 12, 10, 0, tzinfo=timezone.utc),
    )
