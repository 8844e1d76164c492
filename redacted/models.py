import enum
import uuid
from typing import assert_never

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

from .helpers import _utcnow_naive

db = SQLAlchemy()


class WordStatus(str, enum.Enum):
    PENDING = "pending"
    VISIBLE = "visible"
    PROTECTED = "protected"
    FLAGGED = "flagged"
    REDACTED = "redacted"
    ADMIN_REDACTED = "admin_redacted"
    ADMIN_REMOVED = "admin_removed"
    LINEBREAK = "linebreak"


class CheckoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def discloses_content(status: WordStatus) -> bool:
    """Whether a word in ``status`` may have its text served to readers."""
    match status:
        case WordStatus.VISIBLE | WordStatus.PROTECTED | WordStatus.FLAGGED:
            return True
        case (
            WordStatus.PENDING
            | WordStatus.REDACTED
            | WordStatus.ADMIN_REDACTED
            | WordStatus.ADMIN_REMOVED
            | WordStatus.LINEBREAK
        ):
            return False
        case _:
            assert_never(status)


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Word(db.Model):
    __tablename__ = "words"
    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    # NULL while pending; unique among set values (deferrable on PostgreSQL)
    position = db.Column(db.Integer, nullable=True)
    # Stored even while hidden so uncover/restore can bring the text back
    content = db.Column(db.String(20), nullable=True)
    content_length = db.Column(db.Integer, nullable=False, default=0)
    flag_count = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(WordStatus, name="word_status", values_callable=_enum_values),
        nullable=False,
        default=WordStatus.PENDING,
        index=True,
    )
    payment_reference = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow_naive)
    fingerprint = db.Column(db.String(64), nullable=True)

    flags = db.relationship(
        "WordFlag", back_populates="word", cascade="all, delete-orphan"
    )

    __table_args__ = (
        db.UniqueConstraint("position", name="uq_words_position"),
        db.CheckConstraint(
            "flag_count >= 0 AND flag_count <= 20", name="ck_words_flag_count"
        ),
    )

    def __repr__(self):
        return f"<Word {self.id} pos={self.position} {self.status.value}>"


class WordFlag(db.Model):
    __tablename__ = "word_flags"
    id = db.Column(db.Integer, primary_key=True)
    word_id = db.Column(
        db.String(36),
        db.ForeignKey("words.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    fingerprint = db.Column(db.String(64), index=True, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow_naive)

    word = db.relationship("Word", back_populates="flags")

    __table_args__ = (
        db.UniqueConstraint("word_id", "fingerprint", name="uq_word_flag_fingerprint"),
    )


class Checkout(db.Model):
    __tablename__ = "checkouts"
    id = db.Column(db.Integer, primary_key=True)
    payment_reference = db.Column(db.String(255), unique=True, nullable=False)
    status = db.Column(
        db.String(16), nullable=False, default=CheckoutStatus.PENDING.value
    )  # pending|processing|completed|failed
    cart_actions = db.Column(db.JSON, nullable=False)
    results = db.Column(db.JSON, nullable=True)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    refund_amount = db.Column(
        db.Numeric(10, 2), nullable=False, default=0, server_default="0"
    )
    created_at = db.Column(db.DateTime, nullable=False, default=_utcnow_naive)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_checkouts_status",
        ),
    )


class PositionCounter(db.Model):
    __tablename__ = "position_counter"
    # Single row (id=1); the only source of new story positions
    id = db.Column(db.Integer, primary_key=True)
    last_position = db.Column(db.Integer, nullable=False, default=0)


def configure_sqlite(engine) -> None:
    """Apply the connection settings SQLite needs for our transaction usage.

    Notes:
        - ``foreign_keys=ON`` so flag rows cascade with their word.
        - pysqlite defers ``BEGIN`` on its own; emitting it ourselves keeps
          SAVEPOINTs inside reconciliation correct.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA busy_timeout = 5000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")
