"""Pure transforms from webhook / operator input into canonical ledger values.

None of these functions raise on bad input: an unparseable value becomes an
empty string or ``None`` so a single bad field never aborts a whole event.
"""
import logging
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"

COUNTRY_CODE = "81"
TRUNK_PREFIX = "0"
MOBILE_PREFIXES = ("70", "80", "90")

_NON_DIGIT = re.compile(r"\D")
_CIVIL_DATETIME = re.compile(
    r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_FULLWIDTH_ALNUM = re.compile(r"[Ａ-Ｚａ-ｚ０-９]")
_WHITESPACE = re.compile(r"[\s　]+")

# Closed set; anything else is left unclassified
CARRIER_BY_DIGITS = {
    12: "yamato",
    11: "japanpost",
}


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_phone(raw: Any) -> str:
    digits = _NON_DIGIT.sub("", _text(raw))
    if not digits:
        return ""

    if digits.startswith(COUNTRY_CODE):
        digits = TRUNK_PREFIX + digits[len(COUNTRY_CODE):]

    if not digits.startswith(TRUNK_PREFIX) and digits.startswith(MOBILE_PREFIXES):
        digits = TRUNK_PREFIX + digits

    return digits


def normalize_email(raw: Any) -> str:
    return _text(raw).lower()


def normalize_name(raw: Any) -> str:
    """Fold full-width ASCII to half-width and drop every kind of space."""
    s = _text(raw)
    if not s:
        return ""
    s = _FULLWIDTH_ALNUM.sub(lambda m: chr(ord(m.group(0)) - 0xFEE0), s)
    return _WHITESPACE.sub("", s)


def normalize_postal(raw: Any) -> str:
    digits = _NON_DIGIT.sub("", _text(raw))
    if not digits:
        return ""
    if len(digits) > 7:
        digits = digits[-7:]
    return digits.zfill(7)


def normalize_key(raw: Any) -> str:
    """Clean an identifier that may have round-tripped through a spreadsheet."""
    s = _text(raw)
    if s.endswith(".0"):
        s = s[:-2]
    return _WHITESPACE.sub("", s)


def normalize_amount(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    cleaned = re.sub(r"[^\d.\-]", "", _text(raw))
    if not cleaned:
        return None
    try:
        return int(Decimal(cleaned))
    except InvalidOperation:
        logger.debug(f"Unparseable amount: {raw!r}")
        return None


def to_utc_iso(value: Any, tz: str = DEFAULT_TIMEZONE) -> Optional[str]:
    """Convert a date-like value into a UTC ISO-8601 string (``...Z``).

    Naive values and civil ``YYYY/MM/DD HH:mm:ss`` strings are read in ``tz``;
    ISO strings carrying an offset keep it. Returns ``None`` when the value
    cannot be parsed.
    """
    if value is None or value == "":
        return None

    zone = ZoneInfo(tz)
    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        s = _text(value)
        if not s:
            return None
        match = _CIVIL_DATETIME.match(s)
        try:
            if match:
                y, mo, d, hh, mm, ss = match.groups()
                parsed = datetime(
                    int(y), int(mo), int(d), int(hh or 0), int(mm or 0), int(ss or 0)
                )
            else:
                parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    try:
        return parsed.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    except (ValueError, OverflowError):
        # Shifting to UTC pushed the value outside years 1-9999
        logger.debug(f"Timestamp out of range: {value!r}")
        return None


def parse_utc_iso(value: Any) -> Optional[datetime]:
    """Inverse of :func:`to_utc_iso`, returning a naive UTC datetime."""
    s = _text(value)
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def infer_carrier(tracking_number: Any) -> Optional[str]:
    compact = re.sub(r"[\s\-]", "", _text(tracking_number))
    if not compact.isdigit():
        return None
    return CARRIER_BY_DIGITS.get(len(compact))


def format_tracking_number(tracking_number: Any) -> str:
    s = _text(tracking_number)
    digits = _NON_DIGIT.sub("", s)
    if len(digits) == 12:
        return f"{digits[:4]}-{digits[4:8]}-{digits[8:]}"
    return s
