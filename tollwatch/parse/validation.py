"""Input validation and normalization for search requests."""
import logging
import re
from datetime import date, datetime
from typing import Any, Optional

from tollwatch.errors import InputError
from tollwatch.parse.models import Jurisdiction, SearchQuery, TollNotice

logger = logging.getLogger(__name__)

PLATE_PATTERN = re.compile(r"^[A-Z0-9]{4,7}$")
NOTICE_HINT_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,100}$")
MARKUP_CHARS = re.compile(r"[<>\"'&]")

# Shapes the portal is known to emit; must match toll_notice_date() in SQL
PORTAL_DATE_FORMATS = (
    (re.compile(r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$"), "%Y-%m-%d"),
    (re.compile(r"^[0-9]{1,2}/[0-9]{1,2}/[0-9]{4}$"), "%d/%m/%Y"),
)


def normalize_plate(raw: Optional[str]) -> str:
    """Uppercase, drop separators, and validate a licence plate."""
    if not raw or not raw.strip():
        raise InputError("Missing required field: licence plate")
    if MARKUP_CHARS.search(raw):
        raise InputError("Invalid license plate format")
    plate = re.sub(r"[\s-]+", "", raw.strip().upper())
    if not PLATE_PATTERN.match(plate):
        raise InputError("Invalid license plate format")
    return plate


def parse_jurisdiction(raw: Optional[str]) -> Jurisdiction:
    if not raw or not raw.strip():
        raise InputError("Missing required field: state")
    try:
        return Jurisdiction(raw.strip().upper())
    except ValueError:
        raise InputError(f"Invalid state code: {raw.strip()[:10]}") from None


def normalize_notice_hint(raw: Optional[str]) -> Optional[str]:
    if raw is None or not raw.strip():
        return None
    hint = raw.strip()
    if not NOTICE_HINT_PATTERN.match(hint):
        raise InputError("Invalid toll notice number")
    return hint


def build_query(
    plate: Optional[str],
    jurisdiction: Optional[str],
    notice_number_hint: Optional[str] = None,
    is_two_wheeler: bool = False,
) -> SearchQuery:
    """Validate raw caller input into an immutable SearchQuery."""
    return SearchQuery(
        plate=normalize_plate(plate),
        jurisdiction=parse_jurisdiction(jurisdiction),
        notice_number_hint=normalize_notice_hint(notice_number_hint),
        is_two_wheeler=bool(is_two_wheeler),
    )


def parse_portal_date(text: Optional[str]) -> Optional[date]:
    """Parse a loosely formatted portal date; None when the format is unknown."""
    if not text:
        return None
    text = text.strip()
    for pattern, fmt in PORTAL_DATE_FORMATS:
        if not pattern.match(text):
            continue
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            return None
    return None


def is_overdue(notice: TollNotice | dict[str, Any], today: date) -> bool:
    """Unpaid and due strictly before today. Unparseable due dates are never overdue."""
    if isinstance(notice, TollNotice):
        is_paid, due_date = notice.is_paid, notice.due_date
    else:
        is_paid, due_date = bool(notice.get("is_paid")), notice.get("due_date")
    if is_paid:
        return False
    due = parse_portal_date(due_date)
    return due is not None and due < today
