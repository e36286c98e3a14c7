"""initial_schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:12:41.118203

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

identity_status = sa.Enum("PROCESSING", "COMPLETED", "FAILED", name="identitystatus")
identity_source = sa.Enum("SEEDREAM", "ANCHOR", "VARIANT", name="identitysource")
generation_state = sa.Enum("GENERATING", "DONE", name="generationstate")
media_type = sa.Enum("PHOTO", "VIDEO", "FRAME", name="mediatype")
media_source = sa.Enum("INSTAGRAM", "UPLOAD", "EXTRACTED", name="mediasource")


def upgrade() -> None:
    """Create identities, generation_batches, media_items and api_usage_logs."""
    op.create_table(
        "identities",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("source_photos", sa.JSON(), nullable=False),
        sa.Column("generated_image_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("status", identity_status, nullable=False),
        sa.Column("src", identity_source, nullable=False),
        sa.Column("gen_id", sa.Uuid(), nullable=True),
        sa.Column("gen_st", generation_state, nullable=True),
        sa.Column(
            "instagram_username", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_identities_status", "identities", ["status"])
    op.create_index("ix_identities_src", "identities", ["src"])
    op.create_index("ix_identities_gen_id", "identities", ["gen_id"])
    op.create_index("ix_identities_gen_st", "identities", ["gen_st"])
    op.create_index("ix_identities_instagram_username", "identities", ["instagram_username"])

    op.create_table(
        "generation_batches",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "instagram_username", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("src", sqlmodel.sql.sqltypes.AutoString(length=8), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(length=8), nullable=False),
        sa.Column("total", sa.Integer(), nullable=False),
        sa.Column("completed", sa.Integer(), nullable=False),
        sa.Column("failed", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    # At most one in-flight batch per (username, stage)
    op.create_index(
        "uq_generation_batches_in_flight",
        "generation_batches",
        ["instagram_username", "src"],
        unique=True,
        postgresql_where=sa.text("status = 'gen'"),
        sqlite_where=sa.text("status = 'gen'"),
    )

    op.create_table(
        "media_items",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("type", media_type, nullable=False),
        sa.Column("source", media_source, nullable=False),
        sa.Column("url", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("thumbnail_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("caption", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("instagram_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column(
            "instagram_username", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("parent_video_id", sa.Uuid(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["parent_video_id"], ["media_items.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_media_items_type", "media_items", ["type"])
    op.create_index("ix_media_items_source", "media_items", ["source"])
    op.create_index("ix_media_items_instagram_username", "media_items", ["instagram_username"])
    op.create_index("ix_media_items_display_order", "media_items", ["display_order"])

    op.create_table(
        "api_usage_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("api", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column("endpoint", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("units", sa.Integer(), nullable=False),
        sa.Column("cost_usd", sa.Float(), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_api_usage_logs_session_id", "api_usage_logs", ["session_id"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_index("ix_api_usage_logs_session_id", table_name="api_usage_logs")
    op.drop_table("api_usage_logs")

    op.drop_index("ix_media_items_display_order", table_name="media_items")
    op.drop_index("ix_media_items_instagram_username", table_name="media_items")
    op.drop_index("ix_media_items_source", table_name="media_items")
    op.drop_index("ix_media_items_type", table_name="media_items")
    op.drop_table("media_items")

    op.drop_index("uq_generation_batches_in_flight", table_name="generation_batches")
    op.drop_table("generation_batches")

    op.drop_index("ix_identities_instagram_username", table_name="identities")
    op.drop_index("ix_identities_gen_st", table_name="identities")
    op.drop_index("ix_identities_gen_id", table_name="identities")
    op.drop_index("ix_identities_src", table_name="identities")
    op.drop_index("ix_identities_status", table_name="identities")
    op.drop_table("identities")

    bind = op.get_bind()
    for enum_type in (media_source, media_type, generation_state, identity_source, identity_status):
        enum_type.drop(bind, checkfirst=True)
