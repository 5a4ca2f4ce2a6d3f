"""
Defines the database schema for mistakebook using a SQL string constant.
This keeps the schema definition separate from the database connection and
operation logic.

All timestamps are stored as naive UTC TIMESTAMP values; db_utils converts
at the boundary.
"""

DB_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS review_items (
        id UUID PRIMARY KEY,
        kind VARCHAR NOT NULL DEFAULT 'mistake',
        category VARCHAR NOT NULL DEFAULT 'uncategorized',
        original_text VARCHAR NOT NULL,
        corrected_text VARCHAR NOT NULL,
        explanation VARCHAR,
        status VARCHAR NOT NULL DEFAULT 'active',
        stage INTEGER NOT NULL DEFAULT 0,
        last_score INTEGER,
        consecutive_hard_count INTEGER NOT NULL DEFAULT 0,
        previous_interval INTEGER,
        review_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        last_reviewed_at TIMESTAMP,
        next_review_at TIMESTAMP NOT NULL,
        health_check_at TIMESTAMP,
        CHECK (kind IN ('mistake', 'expression')),
        CHECK (status IN ('active', 'retired')),
        CHECK (stage >= 0),
        CHECK (last_score IS NULL OR (last_score >= 0 AND last_score <= 3))
    );

    CREATE SEQUENCE IF NOT EXISTS review_seq;

    CREATE TABLE IF NOT EXISTS reviews (
        review_id INTEGER PRIMARY KEY DEFAULT nextval('review_seq'),
        item_id UUID NOT NULL,
        session_uuid UUID,
        ts TIMESTAMP NOT NULL,
        score INTEGER NOT NULL CHECK (score >= 0 AND score <= 3),
        stage_before INTEGER NOT NULL,
        stage_after INTEGER NOT NULL,
        raw_interval INTEGER NOT NULL,
        final_interval INTEGER NOT NULL,
        next_review_at TIMESTAMP NOT NULL,
        health_check_at TIMESTAMP,
        requeue_in_session BOOLEAN NOT NULL DEFAULT FALSE,
        resp_ms INTEGER
    );

    CREATE TABLE IF NOT EXISTS user_settings (
        settings_id INTEGER PRIMARY KEY CHECK (settings_id = 1),
        daily_target INTEGER NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_reviews_item_id ON reviews (item_id);
    CREATE INDEX IF NOT EXISTS idx_reviews_session_uuid ON reviews (session_uuid);
    CREATE INDEX IF NOT EXISTS idx_reviews_ts ON reviews (ts);
"""
