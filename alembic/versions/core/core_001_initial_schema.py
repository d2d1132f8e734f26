"""initial_schema

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name TEXT NOT NULL DEFAULT '',
            timezone TEXT NOT NULL DEFAULT 'UTC',
            preferences JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS kids (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            keywords TEXT[] NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_kids_user ON kids (user_id, created_at, id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendars (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            provider TEXT NOT NULL
                CHECK (provider IN ('GOOGLE', 'MICROSOFT', 'EXCHANGE', 'PROTON_ICS')),
            name TEXT NOT NULL DEFAULT '',
            external_id TEXT,
            credentials JSONB NOT NULL DEFAULT '{}',
            ics_url TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sync_token TEXT,
            last_sync_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_calendars_user ON calendars (user_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            calendar_id UUID NOT NULL REFERENCES calendars (id) ON DELETE CASCADE,
            external_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '(No title)',
            description TEXT,
            location TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            kid_id UUID REFERENCES kids (id) ON DELETE SET NULL,
            raw JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_calendar_events_external UNIQUE (calendar_id, external_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_time
        ON calendar_events (calendar_id, start_time, end_time)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL REFERENCES users (id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            priority TEXT NOT NULL DEFAULT 'MEDIUM'
                CHECK (priority IN ('URGENT', 'HIGH', 'MEDIUM', 'LOW')),
            status TEXT NOT NULL DEFAULT 'TODO'
                CHECK (status IN ('TODO', 'IN_PROGRESS', 'DONE', 'CANCELLED')),
            due_date TIMESTAMPTZ,
            scheduled_start TIMESTAMPTZ,
            scheduled_end TIMESTAMPTZ,
            estimated_mins INTEGER CHECK (estimated_mins IS NULL OR estimated_mins > 0),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_tasks_user_schedule
        ON tasks (user_id, status, scheduled_start)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS tasks")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS calendars")
    op.execute("DROP TABLE IF EXISTS kids")
    op.execute("DROP TABLE IF EXISTS users")
