"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("credits", sa.Numeric(12, 2), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "audio_files",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("location_ref", sa.String(), nullable=False),
        sa.Column("original_filename", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audio_files_user_id"), "audio_files", ["user_id"], unique=False)
    op.create_index(op.f("ix_audio_files_status"), "audio_files", ["status"], unique=False)
    op.create_index(op.f("ix_audio_files_created_at"), "audio_files", ["created_at"], unique=False)

    op.create_table(
        "transcriptions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("audio_file_id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("language", sa.String(), nullable=True),
        sa.Column("cost_credits", sa.Numeric(12, 2), nullable=False),
        sa.Column("is_public", sa.Boolean(), nullable=False),
        sa.Column("share_token", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["audio_file_id"], ["audio_files.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_transcriptions_user_id"), "transcriptions", ["user_id"], unique=False)
    op.create_index(op.f("ix_transcriptions_audio_file_id"), "transcriptions", ["audio_file_id"], unique=True)
    op.create_index(op.f("ix_transcriptions_share_token"), "transcriptions", ["share_token"], unique=True)

    op.create_table(
        "summaries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("transcription_id", sa.String(), nullable=False),
        sa.Column("short_summary", sa.Text(), nullable=True),
        sa.Column("long_summary", sa.Text(), nullable=True),
        sa.Column("bullet_points", sa.Text(), nullable=True),
        sa.Column("keywords", sa.Text(), nullable=True),
        sa.Column("sentiment", sa.String(), nullable=True),
        sa.Column("language", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["transcription_id"], ["transcriptions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_summaries_transcription_id"), "summaries", ["transcription_id"], unique=True)

    op.create_table(
        "credit_purchases",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("external_payment_id", sa.String(), nullable=False),
        sa.Column("amount_credits", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_purchases_user_id"), "credit_purchases", ["user_id"], unique=False)
    op.create_index(op.f("ix_credit_purchases_external_payment_id"), "credit_purchases", ["external_payment_id"], unique=True)
    op.create_index(op.f("ix_credit_purchases_created_at"), "credit_purchases", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_credit_purchases_created_at"), table_name="credit_purchases")
    op.drop_index(op.f("ix_credit_purchases_external_payment_id"), table_name="credit_purchases")
    op.drop_index(op.f("ix_credit_purchases_user_id"), table_name="credit_purchases")
    op.drop_table("credit_purchases")
    op.drop_index(op.f("ix_summaries_transcription_id"), table_name="summaries")
    op.drop_table("summaries")
    op.drop_index(op.f("ix_transcriptions_share_token"), table_name="transcriptions")
    op.drop_index(op.f("ix_transcriptions_audio_file_id"), table_name="transcriptions")
    op.drop_index(op.f("ix_transcriptions_user_id"), table_name="transcriptions")
    op.drop_table("transcriptions")
    op.drop_index(op.f("ix_audio_files_created_at"), table_name="audio_files")
    op.drop_index(op.f("ix_audio_files_status"), table_name="audio_files")
    op.drop_index(op.f("ix_audio_files_user_id"), table_name="audio_files")
    op.drop_table("audio_files")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
