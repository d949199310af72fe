"""people_tables

Revision ID: core_001
Revises:
Create Date: 2026-03-02 00:00:00.000000

Creates the person aggregate: people, their ordered multi-value child rows,
groups and relationships.  ``user_id`` is an opaque reference to the host
application's users.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None

_CHILD_TABLES: dict[str, str] = {
    "person_phone_numbers": """
            type TEXT NOT NULL DEFAULT 'other',
            number TEXT NOT NULL
    """,
    "person_emails": """
            type TEXT NOT NULL DEFAULT 'other',
            email TEXT NOT NULL
    """,
    "person_addresses": """
            type TEXT NOT NULL DEFAULT 'home',
            street_line1 TEXT,
            street_line2 TEXT,
            locality TEXT,
            region TEXT,
            postal_code TEXT,
            country TEXT
    """,
    "person_urls": """
            type TEXT NOT NULL DEFAULT 'personal',
            url TEXT NOT NULL
    """,
    "person_im_handles": """
            protocol TEXT NOT NULL,
            handle TEXT NOT NULL
    """,
    "person_locations": """
            type TEXT NOT NULL DEFAULT 'other',
            latitude DOUBLE PRECISION NOT NULL,
            longitude DOUBLE PRECISION NOT NULL,
            label TEXT
    """,
    "person_custom_fields": """
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            type TEXT
    """,
    "person_important_dates": """
            title TEXT NOT NULL,
            date DATE NOT NULL,
            reminder_enabled BOOLEAN NOT NULL DEFAULT false,
            reminder_type TEXT CHECK (reminder_type IN ('ONCE', 'RECURRING')),
            reminder_interval INTEGER,
            reminder_interval_unit TEXT
                CHECK (reminder_interval_unit IN ('DAYS', 'WEEKS', 'MONTHS', 'YEARS')),
            last_reminder_sent TIMESTAMPTZ
    """,
}


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS relationship_types (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            inverse_type_id UUID REFERENCES relationship_types (id) ON DELETE SET NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, name)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS people (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            uid TEXT,
            name TEXT,
            surname TEXT,
            middle_name TEXT,
            second_last_name TEXT,
            prefix TEXT,
            suffix TEXT,
            nickname TEXT,
            organization TEXT,
            job_title TEXT,
            gender TEXT,
            anniversary DATE,
            last_contact DATE,
            notes TEXT,
            photo TEXT,
            carddav_sync_enabled BOOLEAN NOT NULL DEFAULT true,
            relationship_to_user_id UUID
                REFERENCES relationship_types (id) ON DELETE SET NULL,
            contact_reminder_enabled BOOLEAN NOT NULL DEFAULT false,
            contact_reminder_interval INTEGER,
            contact_reminder_interval_unit TEXT
                CHECK (contact_reminder_interval_unit IN ('DAYS', 'WEEKS', 'MONTHS', 'YEARS')),
            last_contact_reminder_sent TIMESTAMPTZ,
            deleted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, uid)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_people_user_active
            ON people (user_id) WHERE deleted_at IS NULL
    """)

    for table, columns in _CHILD_TABLES.items():
        op.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                person_id UUID NOT NULL REFERENCES people (id) ON DELETE CASCADE,
                position INTEGER NOT NULL DEFAULT 0,
                {columns.strip()}
            )
        """)
        op.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_person ON {table} (person_id)")

    op.execute("""
        CREATE TABLE IF NOT EXISTS groups (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, name)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS person_groups (
            person_id UUID NOT NULL REFERENCES people (id) ON DELETE CASCADE,
            group_id UUID NOT NULL REFERENCES groups (id) ON DELETE CASCADE,
            PRIMARY KEY (person_id, group_id)
        )
    """)

    # Directed edges; merges re-point either endpoint.
    op.execute("""
        CREATE TABLE IF NOT EXISTS relationships (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            person_id UUID NOT NULL REFERENCES people (id) ON DELETE CASCADE,
            related_person_id UUID NOT NULL REFERENCES people (id) ON DELETE CASCADE,
            relationship_type_id UUID REFERENCES relationship_types (id) ON DELETE SET NULL,
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            deleted_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_relationships_person ON relationships (person_id)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_relationships_related ON relationships (related_person_id)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS relationships")
    op.execute("DROP TABLE IF EXISTS person_groups")
    op.execute("DROP TABLE IF EXISTS groups")
    for table in reversed(list(_CHILD_TABLES)):
        op.execute(f"DROP TABLE IF EXISTS {table}")
    op.execute("DROP TABLE IF EXISTS people")
    op.execute("DROP TABLE IF EXISTS relationship_types")
