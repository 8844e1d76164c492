"""
Word ledger: every mutation of a word's position, status or flag count.

Nothing outside this module writes those columns directly. Each operation
checks its guard against the per-status transition table, mutates, and
flushes; committing is left to the caller so a route can commit a single
admin action and the reconciliation engine can group a whole paid batch.

Position rules:
  - New positions come from the single-row ``position_counter`` table.
  - Shifts (insert / reorder) never leave two rows on one position, even
    between statements: the shifted range is parked on negated values first
    and flipped back afterwards.
"""

import enum
from dataclasses import dataclass
from typing import assert_never

import sqlalchemy as sa
from flask import current_app

from .helpers import _utcnow_naive
from .models import (
    Checkout,
    CheckoutStatus,
    PositionCounter,
    Word,
    WordFlag,
    WordStatus,
    db,
    discloses_content,
)

MAX_FLAG_COUNT = 20
FLAG_RATE_LIMIT = 100
OPACITY_CEILING = 0.80
LINEBREAK_MIN_SPACING = 10

COUNTER_ID = 1


class Transition(str, enum.Enum):
    PUBLISH = "publish"
    FLAG = "flag"
    ADMIN_FLAG = "admin_flag"
    ADMIN_UNFLAG = "admin_unflag"
    REDACT = "redact"
    UNCOVER = "uncover"
    ADMIN_UNCOVER = "admin_uncover"
    ADMIN_REDACT = "admin_redact"
    ADMIN_REMOVE = "admin_remove"
    RESTORE = "restore"
    PROTECT = "protect"
    UNPROTECT = "unprotect"
    EDIT = "edit"
    REORDER = "reorder"
    DELETE = "delete"


def can_apply(transition: Transition, status: WordStatus) -> bool:
    """Outgoing transitions allowed from each status."""
    T = Transition
    match status:
        case WordStatus.PENDING:
            allowed = {T.PUBLISH, T.ADMIN_REMOVE, T.DELETE}
        case WordStatus.VISIBLE | WordStatus.FLAGGED:
            allowed = {
                T.FLAG,
                T.ADMIN_FLAG,
                T.ADMIN_UNFLAG,
                T.REDACT,
                T.ADMIN_REDACT,
                T.ADMIN_REMOVE,
                T.PROTECT,
                T.EDIT,
                T.REORDER,
                T.DELETE,
            }
        case WordStatus.PROTECTED:
            allowed = {
                T.ADMIN_FLAG,
                T.ADMIN_UNFLAG,
                T.UNPROTECT,
                T.ADMIN_REMOVE,
                T.EDIT,
                T.REORDER,
                T.DELETE,
            }
        case WordStatus.REDACTED:
            allowed = {
                T.UNCOVER,
                T.ADMIN_UNCOVER,
                T.ADMIN_REDACT,
                T.ADMIN_REMOVE,
                T.EDIT,
                T.REORDER,
                T.DELETE,
            }
        case WordStatus.ADMIN_REDACTED:
            allowed = {T.ADMIN_UNCOVER, T.ADMIN_REMOVE, T.EDIT, T.REORDER, T.DELETE}
        case WordStatus.ADMIN_REMOVED:
            allowed = {T.RESTORE, T.REORDER, T.DELETE}
        case WordStatus.LINEBREAK:
            allowed = {T.ADMIN_REMOVE, T.REORDER, T.DELETE}
        case _:
            assert_never(status)
    return transition in allowed


def compute_opacity(flag_count: int) -> float:
    """Fade applied by readers: 0.04 at one flag up to 0.80 at the ceiling."""
    return (flag_count / MAX_FLAG_COUNT) * OPACITY_CEILING


def serialize_word(word: Word) -> dict:
    """The only place deciding what a reader receives for a word."""
    return {
        "id": word.id,
        "position": word.position,
        "content": word.content if discloses_content(word.status) else None,
        "content_length": word.content_length,
        "flag_count": word.flag_count,
        "opacity": compute_opacity(word.flag_count),
        "status": word.status.value,
    }


# --- Reads ---


def get_story() -> list[dict]:
    """Every published word in story order, hidden text stripped."""
    rows = (
        Word.query.filter(
            Word.status != WordStatus.PENDING, Word.position.isnot(None)
        )
        .order_by(Word.position.asc())
        .all()
    )
    return [serialize_word(w) for w in rows]


def get_word_count() -> int:
    return Word.query.filter(Word.status != WordStatus.PENDING).count()


def get_word(word_id: str) -> Word | None:
    if not word_id:
        return None
    return Word.query.filter_by(id=word_id).first()


def story_stats() -> dict:
    readable = (
        WordStatus.VISIBLE,
        WordStatus.FLAGGED,
        WordStatus.PROTECTED,
    )
    word_count = Word.query.filter(
        Word.status.notin_(
            (WordStatus.PENDING, WordStatus.LINEBREAK, WordStatus.ADMIN_REMOVED)
        )
    ).count()
    redaction_count = Word.query.filter(
        Word.status.in_((WordStatus.REDACTED, WordStatus.ADMIN_REDACTED))
    ).count()
    flagged_count = Word.query.filter(Word.status == WordStatus.FLAGGED).count()
    gross, refunded = (
        db.session.query(
            db.func.coalesce(db.func.sum(Checkout.total_amount), 0),
            db.func.coalesce(db.func.sum(Checkout.refund_amount), 0),
        )
        .filter(Checkout.status == CheckoutStatus.COMPLETED.value)
        .one()
    )
    longest = (
        Word.query.filter(Word.status.in_(readable))
        .order_by(db.func.length(Word.content).desc(), Word.position.asc())
        .first()
    )
    top_rows = (
        db.session.query(Word.content, db.func.count(Word.id))
        .filter(Word.status.in_(readable), db.func.length(Word.content) > 3)
        .group_by(Word.content)
        .order_by(db.func.count(Word.id).desc(), Word.content.asc())
        .limit(5)
        .all()
    )
    return {
        "word_count": int(word_count),
        "redaction_count": int(redaction_count),
        "flagged_count": int(flagged_count),
        "money_spent": round(float(gross) - float(refunded), 2),
        "longest_word": longest.content if longest else None,
        "top_words": [{"word": w, "count": int(c)} for w, c in top_rows],
    }


# --- Position counter ---


def ensure_position_counter() -> PositionCounter:
    """Create the counter row if missing, seeded past the highest position."""
    counter = db.session.get(PositionCounter, COUNTER_ID)
    if counter is None:
        top = db.session.query(db.func.max(Word.position)).scalar() or 0
        counter = PositionCounter(id=COUNTER_ID, last_position=int(top))
        db.session.add(counter)
        db.session.commit()
    return counter


def _lock_counter() -> PositionCounter:
    counter = (
        PositionCounter.query.filter_by(id=COUNTER_ID).with_for_update().first()
    )
    if counter is None:
        top = db.session.query(db.func.max(Word.position)).scalar() or 0
        counter = PositionCounter(id=COUNTER_ID, last_position=int(top))
        db.session.add(counter)
        db.session.flush()
    return counter


def _next_position() -> int:
    """Take the next story slot; the row lock serialises concurrent publishers."""
    _lock_counter()
    db.session.execute(
        sa.update(PositionCounter)
        .where(PositionCounter.id == COUNTER_ID)
        .values(last_position=PositionCounter.last_position + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(
        sa.select(PositionCounter.last_position).where(
            PositionCounter.id == COUNTER_ID
        )
    ).scalar_one()


def _sync_counter() -> None:
    """Keep the counter at or above the highest stored position."""
    top = db.session.query(db.func.max(Word.position)).scalar() or 0
    db.session.execute(
        sa.update(PositionCounter)
        .where(
            PositionCounter.id == COUNTER_ID,
            PositionCounter.last_position < top,
        )
        .values(last_position=top)
        .execution_options(synchronize_session=False)
    )


def _shift_positions(start: int, end: int | None, delta: int) -> None:
    """Move every position in [start, end] by ``delta`` within the transaction."""
    db.session.flush()
    in_range = Word.position >= start
    if end is not None:
        in_range = sa.and_(in_range, Word.position <= end)
    # Park the range on negated targets, which cannot collide with anything
    db.session.execute(
        sa.update(Word)
        .where(in_range)
        .values(position=-(Word.position + delta))
        .execution_options(synchronize_session=False)
    )
    db.session.execute(
        sa.update(Word)
        .where(Word.position < 0)
        .values(position=-Word.position)
        .execution_options(synchronize_session=False)
    )
    db.session.expire_all()


def _lock_word(word_id: str) -> Word | None:
    if not word_id:
        return None
    return Word.query.filter_by(id=word_id).with_for_update().first()


def _transition(word_id: str, transition: Transition) -> Word | None:
    """Load a word for update if ``transition`` is legal from its status."""
    word = _lock_word(word_id)
    if word is None or not can_apply(transition, word.status):
        return None
    return word


# --- Paid lifecycle ---


def create_pending_word(content: str, payment_reference: str | None) -> Word:
    """Record a paid word; it gets no position until the payment confirms."""
    word = Word(
        content=content,
        content_length=len(content),
        status=WordStatus.PENDING,
        payment_reference=payment_reference,
    )
    db.session.add(word)
    db.session.flush()
    return word


def publish_word(word_id: str) -> bool:
    """pending -> visible, taking the next position at confirmation time."""
    word = _transition(word_id, Transition.PUBLISH)
    if word is None:
        return False
    word.position = _next_position()
    word.status = WordStatus.VISIBLE
    word.created_at = _utcnow_naive()
    db.session.flush()
    current_app.logger.info("[ledger] published word=%s pos=%s", word.id, word.position)
    return True


def redact_word(word_id: str) -> bool:
    """visible/flagged -> redacted. Fails on stale targets."""
    word = _transition(word_id, Transition.REDACT)
    if word is None:
        return False
    word.status = WordStatus.REDACTED
    word.flag_count = 0
    db.session.flush()
    return True


def uncover_word(word_id: str) -> bool:
    """redacted -> visible. Admin redactions are out of reach here."""
    word = _transition(word_id, Transition.UNCOVER)
    if word is None:
        return False
    word.status = WordStatus.VISIBLE
    word.flag_count = 0
    db.session.flush()
    return True


# --- Moderation ---


class FlagOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    CEILING = "ceiling"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    NOT_FLAGGABLE = "not_flaggable"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FlagResult:
    outcome: FlagOutcome
    flag_count: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in (FlagOutcome.ACCEPTED, FlagOutcome.CEILING)

    @property
    def opacity(self) -> float:
        return compute_opacity(self.flag_count)


def flag_word(word_id: str, fingerprint: str) -> FlagResult:
    """Record one anonymous flag; one per fingerprint per word, ever.

    At the ceiling the flag is a no-op: no record is written, so that
    fingerprint could still flag the word later if the count drops.
    """
    word = _lock_word(word_id)
    if word is None:
        return FlagResult(FlagOutcome.NOT_FOUND)
    if not can_apply(Transition.FLAG, word.status):
        return FlagResult(FlagOutcome.NOT_FLAGGABLE, word.flag_count)
    if word.flag_count >= MAX_FLAG_COUNT:
        return FlagResult(FlagOutcome.CEILING, word.flag_count)

    exists = (
        db.session.query(WordFlag.id)
        .filter(WordFlag.word_id == word.id, WordFlag.fingerprint == fingerprint)
        .first()
    )
    if exists:
        return FlagResult(FlagOutcome.DUPLICATE, word.flag_count)

    total = (
        db.session.query(db.func.count(WordFlag.id))
        .filter(WordFlag.fingerprint == fingerprint)
        .scalar()
    )
    if int(total or 0) >= FLAG_RATE_LIMIT:
        return FlagResult(FlagOutcome.RATE_LIMITED, word.flag_count)

    db.session.add(
        WordFlag(word_id=word.id, fingerprint=fingerprint, created_at=_utcnow_naive())
    )
    word.flag_count = min(word.flag_count + 1, MAX_FLAG_COUNT)
    if word.status == WordStatus.VISIBLE:
        word.status = WordStatus.FLAGGED
    db.session.flush()
    return FlagResult(FlagOutcome.ACCEPTED, word.flag_count)


def admin_flag_word(word_id: str) -> bool:
    """Add a flag without dedup or rate limiting."""
    word = _transition(word_id, Transition.ADMIN_FLAG)
    if word is None:
        return False
    word.flag_count = min(word.flag_count + 1, MAX_FLAG_COUNT)
    if word.status == WordStatus.VISIBLE:
        word.status = WordStatus.FLAGGED
    db.session.flush()
    return True


def admin_unflag_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.ADMIN_UNFLAG)
    if word is None or word.flag_count <= 0:
        return False
    word.flag_count = max(word.flag_count - 1, 0)
    if word.flag_count == 0 and word.status == WordStatus.FLAGGED:
        word.status = WordStatus.VISIBLE
    db.session.flush()
    return True


# --- Admin status overrides ---


def admin_redact_word(word_id: str) -> bool:
    """Redaction that a paid uncover cannot reverse."""
    word = _transition(word_id, Transition.ADMIN_REDACT)
    if word is None:
        return False
    word.status = WordStatus.ADMIN_REDACTED
    word.flag_count = 0
    db.session.flush()
    return True


def admin_uncover_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.ADMIN_UNCOVER)
    if word is None:
        return False
    word.status = WordStatus.VISIBLE
    word.flag_count = 0
    db.session.flush()
    return True


def admin_remove_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.ADMIN_REMOVE)
    if word is None:
        return False
    word.status = WordStatus.ADMIN_REMOVED
    word.flag_count = 0
    db.session.flush()
    return True


def admin_restore_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.RESTORE)
    if word is None:
        return False
    word.status = WordStatus.VISIBLE
    word.flag_count = 0
    db.session.flush()
    return True


def admin_protect_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.PROTECT)
    if word is None:
        return False
    word.status = WordStatus.PROTECTED
    db.session.flush()
    return True


def admin_unprotect_word(word_id: str) -> bool:
    word = _transition(word_id, Transition.UNPROTECT)
    if word is None:
        return False
    word.status = WordStatus.FLAGGED if word.flag_count > 0 else WordStatus.VISIBLE
    db.session.flush()
    return True


def admin_edit_word(word_id: str, content: str) -> bool:
    """Replace a word's text outright; there is no edit history."""
    word = _transition(word_id, Transition.EDIT)
    if word is None:
        return False
    word.content = content
    word.content_length = len(content)
    db.session.flush()
    return True


def admin_delete_word(word_id: str) -> bool:
    """Hard delete; flag records go with the word."""
    word = _transition(word_id, Transition.DELETE)
    if word is None:
        return False
    db.session.delete(word)
    db.session.flush()
    current_app.logger.info("[ledger] deleted word=%s", word_id)
    return True


# --- Admin structure edits ---


def admin_write_words(content: str) -> list[str]:
    """Append each whitespace-separated token as a visible word."""
    ids: list[str] = []
    for token in content.split():
        word = Word(
            content=token,
            content_length=len(token),
            status=WordStatus.VISIBLE,
            position=_next_position(),
        )
        db.session.add(word)
        db.session.flush()
        ids.append(word.id)
    return ids


def admin_insert_words_at(content: str, position: int) -> list[str]:
    """Insert tokens starting at ``position``, pushing later words back."""
    tokens = content.split()
    if not tokens:
        return []
    _lock_counter()
    _shift_positions(position, None, len(tokens))
    ids: list[str] = []
    for offset, token in enumerate(tokens):
        word = Word(
            content=token,
            content_length=len(token),
            status=WordStatus.VISIBLE,
            position=position + offset,
        )
        db.session.add(word)
        db.session.flush()
        ids.append(word.id)
    _sync_counter()
    return ids


def admin_insert_linebreak(position: int) -> str | None:
    """Insert a line break marker, or None if another one is too close."""
    _lock_counter()
    nearby = Word.query.filter(
        Word.status == WordStatus.LINEBREAK,
        Word.position.isnot(None),
        db.func.abs(Word.position - position) < LINEBREAK_MIN_SPACING,
    ).first()
    if nearby is not None:
        return None
    _shift_positions(position, None, 1)
    marker = Word(
        content=None,
        content_length=0,
        status=WordStatus.LINEBREAK,
        position=position,
    )
    db.session.add(marker)
    db.session.flush()
    _sync_counter()
    return marker.id


def admin_reorder_word(word_id: str, new_position: int) -> bool:
    """Move a word, sliding the words in between by one slot."""
    _lock_counter()
    word = _transition(word_id, Transition.REORDER)
    if word is None or word.position is None:
        return False
    top = db.session.query(db.func.max(Word.position)).scalar() or 0
    target = max(1, min(int(new_position), int(top)))
    old = word.position
    if target == old:
        return True
    # Off the board while the range slides
    word.position = None
    if target < old:
        _shift_positions(target, old - 1, 1)
    else:
        _shift_positions(old + 1, target, -1)
    word.position = target
    db.session.flush()
    current_app.logger.info(
        "[ledger] reordered word=%s from=%s to=%s", word_id, old, target
    )
    return True
