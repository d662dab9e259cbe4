"""baseline schema

Revision ID: 0001
Revises:
Create Date: 2026-09-01 12:00:00.000000

Hey future me - this is the FIRST migration, it creates everything from scratch:

- artists / tracks: the Spotify catalog cache, keyed by Spotify's own ids
- artist_popularity_snapshots / track_popularity_snapshots: one row per owner per UTC day
  (taken_on + UNIQUE constraint enforce that)
- event_log: append-only interaction log, also holds cron_execution summaries
- ingest_requests: claim/ack queue of artists discovered on first view
- cron_locks: named leases with owner token and fencing counter

tracks.artist_id has NO foreign key on purpose (tracks can arrive before their artist).
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "artists",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("popularity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spi", sa.Float(), nullable=False, server_default="0"),
        sa.Column("image_url", sa.String(512), nullable=True),
        sa.Column("spotify_url", sa.String(512), nullable=True),
        sa.Column("genres", sa.JSON(), nullable=False),
        sa.Column("followers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_artists_name_lower", "artists", [sa.text("lower(name)")])
    op.create_index("ix_artists_updated_at", "artists", ["updated_at"])

    op.create_table(
        "tracks",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("artist_id", sa.String(64), nullable=True),
        sa.Column("album", sa.String(255), nullable=True),
        sa.Column("image_url", sa.String(512), nullable=True),
        sa.Column("preview_url", sa.String(512), nullable=True),
        sa.Column("spotify_url", sa.String(512), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("popularity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spi", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tracks_artist_id", "tracks", ["artist_id"])
    op.create_index("ix_tracks_name_lower", "tracks", [sa.text("lower(name)")])

    op.create_table(
        "artist_popularity_snapshots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("artist_id", sa.String(64), nullable=False),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("taken_on", sa.Date(), nullable=False),
        sa.Column("popularity", sa.Integer(), nullable=False),
        sa.UniqueConstraint("artist_id", "taken_on", name="uq_artist_snapshot_day"),
    )
    op.create_index(
        "ix_artist_snapshots_artist_taken",
        "artist_popularity_snapshots",
        ["artist_id", "taken_at"],
    )

    op.create_table(
        "track_popularity_snapshots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("track_id", sa.String(64), nullable=False),
        sa.Column("taken_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("taken_on", sa.Date(), nullable=False),
        sa.Column("popularity", sa.Integer(), nullable=False),
        sa.UniqueConstraint("track_id", "taken_on", name="uq_track_snapshot_day"),
    )
    op.create_index(
        "ix_track_snapshots_track_taken",
        "track_popularity_snapshots",
        ["track_id", "taken_at"],
    )

    op.create_table(
        "event_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("artist_id", sa.String(64), nullable=True),
        sa.Column("artist_name", sa.String(255), nullable=True),
        sa.Column("track_id", sa.String(64), nullable=True),
        sa.Column("track_name", sa.String(255), nullable=True),
        sa.Column("input", sa.Text(), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_event_log_artist_id", "event_log", ["artist_id"])
    op.create_index("ix_event_log_track_id", "event_log", ["track_id"])
    op.create_index("ix_event_log_type_created", "event_log", ["type", "created_at"])

    op.create_table(
        "ingest_requests",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("artist_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(50), nullable=False, server_default="auto_first_view"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ingest_requests_artist_id", "ingest_requests", ["artist_id"])
    op.create_index(
        "ix_ingest_requests_status_created", "ingest_requests", ["status", "created_at"]
    )

    op.create_table(
        "cron_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("owner", sa.String(100), nullable=False),
        sa.Column("fencing_token", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("cron_locks")
    op.drop_index("ix_ingest_requests_status_created", table_name="ingest_requests")
    op.drop_index("ix_ingest_requests_artist_id", table_name="ingest_requests")
    op.drop_table("ingest_requests")
    op.drop_index("ix_event_log_type_created", table_name="event_log")
    op.drop_index("ix_event_log_track_id", table_name="event_log")
    op.drop_index("ix_event_log_artist_id", table_name="event_log")
    op.drop_table("event_log")
    op.drop_index("ix_track_snapshots_track_taken", table_name="track_popularity_snapshots")
    op.drop_table("track_popularity_snapshots")
    op.drop_index("ix_artist_snapshots_artist_taken", table_name="artist_popularity_snapshots")
    op.drop_table("artist_popularity_snapshots")
    op.drop_index("ix_tracks_name_lower", table_name="tracks")
    op.drop_index("ix_tracks_artist_id", table_name="tracks")
    op.drop_table("tracks")
    op.drop_index("ix_artists_updated_at", table_name="artists")
    op.drop_index("ix_artists_name_lower", table_name="artists")
    op.drop_table("artists")
