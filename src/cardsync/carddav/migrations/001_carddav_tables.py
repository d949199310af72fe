"""carddav_tables

Revision ID: carddav_001
Revises:
Create Date: 2026-03-02 00:00:00.000000

Creates the CardDAV sync state.

Tables:
  - carddav_connections      one server connection per user, with the sync lease
  - carddav_mappings         person <-> remote vCard links (one per person)
  - carddav_conflicts        local/remote snapshots awaiting a resolution
  - carddav_pending_imports  remote or uploaded cards staged for import
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "carddav_001"
down_revision = None
branch_labels = ("carddav",)
depends_on = ("core_001",)


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS carddav_connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL UNIQUE,
            server_url TEXT NOT NULL,
            username TEXT NOT NULL,
            password TEXT NOT NULL,
            provider TEXT,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            auto_sync_interval INTEGER NOT NULL DEFAULT 43200,
            last_sync_at TIMESTAMPTZ,
            auto_export_new BOOLEAN NOT NULL DEFAULT true,
            import_mode TEXT NOT NULL DEFAULT 'manual'
                CHECK (import_mode IN ('manual', 'notify', 'auto')),
            last_error TEXT,
            last_error_at TIMESTAMPTZ,
            sync_in_progress BOOLEAN NOT NULL DEFAULT false,
            sync_started_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    # local_version is the fingerprint of the person as of the last sync.
    op.execute("""
        CREATE TABLE IF NOT EXISTS carddav_mappings (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            connection_id UUID NOT NULL REFERENCES carddav_connections (id) ON DELETE CASCADE,
            person_id UUID NOT NULL UNIQUE REFERENCES people (id) ON DELETE CASCADE,
            uid TEXT NOT NULL,
            href TEXT NOT NULL,
            etag TEXT,
            sync_status TEXT NOT NULL DEFAULT 'synced'
                CHECK (sync_status IN ('synced', 'pending', 'conflict')),
            local_version TEXT,
            last_synced_at TIMESTAMPTZ,
            last_local_change TIMESTAMPTZ,
            last_remote_change TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (connection_id, uid)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS carddav_conflicts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            mapping_id UUID NOT NULL REFERENCES carddav_mappings (id) ON DELETE CASCADE,
            local_version JSONB NOT NULL,
            remote_version JSONB NOT NULL,
            remote_etag TEXT,
            remote_href TEXT,
            detected_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            resolved_at TIMESTAMPTZ,
            resolution TEXT CHECK (resolution IN ('keep_local', 'keep_remote', 'merged')),
            resolved_by TEXT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_carddav_conflicts_open
            ON carddav_conflicts (mapping_id) WHERE resolved_at IS NULL
    """)

    # Remote rows are keyed by (connection_id, uid); uploads by (uploaded_by_user_id, uid).
    op.execute("""
        CREATE TABLE IF NOT EXISTS carddav_pending_imports (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            connection_id UUID REFERENCES carddav_connections (id) ON DELETE CASCADE,
            uploaded_by_user_id TEXT,
            uid TEXT NOT NULL,
            href TEXT NOT NULL,
            etag TEXT,
            vcard_data TEXT NOT NULL,
            display_name TEXT NOT NULL,
            discovered_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (connection_id, uid),
            CHECK (connection_id IS NOT NULL OR uploaded_by_user_id IS NOT NULL)
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_carddav_pending_imports_upload
            ON carddav_pending_imports (uploaded_by_user_id, uid)
            WHERE connection_id IS NULL
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS carddav_pending_imports")
    op.execute("DROP TABLE IF EXISTS carddav_conflicts")
    op.execute("DROP TABLE IF EXISTS carddav_mappings")
    op.execute("DROP TABLE IF EXISTS carddav_connections")
