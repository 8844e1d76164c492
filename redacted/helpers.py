import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from flask import request

# Word content rules
MIN_WORD_LENGTH = 1
MAX_WORD_LENGTH = 20
ADMIN_MAX_CONTENT_LENGTH = 500

# Letters plus the punctuation set chosen for the story. Digits, @, #, ^ and
# brackets of every kind are deliberately absent.
WORD_PATTERN = re.compile(r"[a-zA-Z`~!$%&*_\-+=:;\"'<,>.?/|\\]+")


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime (no tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None = None


def validate_word(word: str | None) -> ValidationResult:
    """Validate a submitted word against the length and character rules."""
    if not word or len(word) < MIN_WORD_LENGTH:
        return ValidationResult(False, "Word must be at least 1 character.")
    if len(word) > MAX_WORD_LENGTH:
        return ValidationResult(
            False, f"Word must be {MAX_WORD_LENGTH} characters or fewer."
        )
    if not WORD_PATTERN.fullmatch(word):
        return ValidationResult(
            False,
            "Word contains disallowed characters. Numbers and certain symbols "
            "are not permitted.",
        )
    return ValidationResult(True)


def validate_admin_content(content: str | None) -> ValidationResult:
    """Admin writes skip the character allowlist but keep the length limits.

    Content is split on whitespace; every resulting token becomes one word.
    """
    text = (content or "").strip()
    if not text or len(text) > ADMIN_MAX_CONTENT_LENGTH:
        return ValidationResult(
            False, f"Content must be 1-{ADMIN_MAX_CONTENT_LENGTH} characters."
        )
    for token in text.split():
        if len(token) > MAX_WORD_LENGTH:
            return ValidationResult(
                False,
                f"Each word must be {MAX_WORD_LENGTH} characters or fewer: {token!r}",
            )
    return ValidationResult(True)


def session_fingerprint(ip: str, visitor_id: str) -> str:
    """Combine the network address and device token into a stable pseudonym.

    Only used to deduplicate and rate limit flags, never for payments.
    """
    return hashlib.sha256(f"{ip}:{visitor_id}".encode("utf-8")).hexdigest()


def client_ip() -> str:
    """Peer address of the current request.

    Forwarding headers are only honored through ProxyFix, which create_app
    installs when TRUSTED_PROXY_HOPS is set, so remote_addr is already the
    client as seen by the outermost trusted proxy.
    """
    return request.remote_addr or "127.0.0.1"


def _pick(data: dict, *keys: str):
    """Return the first present value among alternative key spellings.

    Clients send camelCase (wordId) while our own payloads use snake_case.
    """
    for k in keys:
        v = data.get(k)
        if v not in (None, ""):
            return v
    return None


def to_decimal(value) -> Decimal | None:
    """Parse a JSON number or numeric string into a two-place Decimal."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))
