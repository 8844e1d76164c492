"""Initial schema creation

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_baseline"
down_revision = None
branch_labels = None
depends_on = None

WORD_STATUSES = (
    "pending",
    "visible",
    "protected",
    "flagged",
    "redacted",
    "admin_redacted",
    "admin_removed",
    "linebreak",
)


def upgrade() -> None:
    bind = op.get_bind()
    is_pg = bind.dialect.name == "postgresql"

    # position_counter (single row, id=1)
    op.create_table(
        "position_counter",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("last_position", sa.Integer(), nullable=False, server_default="0"),
    )
    op.execute("INSERT INTO position_counter (id, last_position) VALUES (1, 0)")

    # words (the story)
    position_unique = sa.UniqueConstraint("position", name="uq_words_position")
    if is_pg:
        # Shifts may pass through duplicates inside one transaction
        position_unique = sa.UniqueConstraint(
            "position",
            name="uq_words_position",
            deferrable=True,
            initially="DEFERRED",
        )
    op.create_table(
        "words",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("content", sa.String(length=20), nullable=True),
        sa.Column("content_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("flag_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(*WORD_STATUSES, name="word_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_reference", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=True),
        position_unique,
        sa.CheckConstraint(
            "flag_count >= 0 AND flag_count <= 20", name="ck_words_flag_count"
        ),
    )
    op.create_index("ix_words_status", "words", ["status"])
    op.create_index("ix_words_payment_reference", "words", ["payment_reference"])

    # word_flags (one per fingerprint per word)
    op.create_table(
        "word_flags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "word_id",
            sa.String(length=36),
            sa.ForeignKey("words.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("word_id", "fingerprint", name="uq_word_flag_fingerprint"),
    )
    op.create_index("ix_word_flags_word_id", "word_flags", ["word_id"])
    op.create_index("ix_word_flags_fingerprint", "word_flags", ["fingerprint"])

    # checkouts (one per payment intent)
    op.create_table(
        "checkouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("payment_reference", sa.String(length=255), nullable=False, unique=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("cart_actions", sa.JSON(), nullable=False),
        sa.Column("results", sa.JSON(), nullable=True),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("refund_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_checkouts_status",
        ),
    )


def downgrade() -> None:
    op.drop_table("checkouts")
    op.drop_index("ix_word_flags_fingerprint", table_name="word_flags")
    op.drop_index("ix_word_flags_word_id", table_name="word_flags")
    op.drop_table("word_flags")
    op.drop_index("ix_words_payment_reference", table_name="words")
    op.drop_index("ix_words_status", table_name="words")
    op.drop_table("words")
    sa.Enum(name="word_status").drop(op.get_bind(), checkfirst=True)
    op.drop_table("position_counter")
