import re
from datetime import datetime, timezone
from typing import Any, Optional

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}

# "March 3", "Monday, March 3", "March 3, 2025"
MONTH_FIRST = re.compile(r"^(?:[A-Za-z]+,\s*)?([A-Za-z]+)\s+(\d{1,2})(?:,\s*(\d{4}))?$")
# "3 March", "3 March 2025"
DAY_FIRST = re.compile(r"^(\d{1,2})\s+([A-Za-z]+)(?:\s+(\d{4}))?$")
# "3/14 9:05 AM" inside control messages
CONTROL_TIME = re.compile(r"(\d{1,2})/(\d{1,2})\s+(\d{1,2}):(\d{2})\s*(AM|PM)", re.IGNORECASE)

# ids above this are epoch milliseconds
EPOCH_MS_FLOOR = 100_000_000_000


def parse_timestamp(val: Any) -> Optional[float]:
    """
    Best-effort timestamp normalization to epoch milliseconds.
    Accepts epoch seconds/milliseconds (int, float or numeric string) and
    ISO-like strings; naive ISO values are read as local time.
    """
    if val is None or val == "":
        return None
    if isinstance(val, bool):
        return None
    if isinstance(val, (int, float)):
        num = float(val)
        return num if num > EPOCH_MS_FLOOR else num * 1000
    if not isinstance(val, str):
        return None
    text = val.strip()
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return parse_timestamp(float(text))
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt.timestamp() * 1000


def epoch_from_id(mid: Optional[str]) -> Optional[float]:
    if not mid or not mid.isdigit():
        return None
    value = int(mid)
    return float(value) if value > EPOCH_MS_FLOOR else None


def to_iso(ms: float) -> str:
    return datetime.fromtimestamp(ms / 1000, timezone.utc).isoformat().replace("+00:00", "Z")


def start_of_local_day(ms: float) -> float:
    dt = datetime.fromtimestamp(ms / 1000)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0).timestamp() * 1000


def year_of(ms: float) -> int:
    return datetime.fromtimestamp(ms / 1000).year


def day_label(ms: float) -> str:
    dt = datetime.fromtimestamp(ms / 1000)
    return f"{dt:%A}, {dt:%B} {dt.day}, {dt.year}"


def _build_local_date(day: str, month: str, year: Optional[str], year_hint: Optional[int]) -> Optional[float]:
    month_idx = MONTHS.get(month.lower())
    if not month_idx:
        return None
    if year:
        y = int(year)
    elif year_hint:
        y = int(year_hint)
    else:
        y = datetime.now().year
    try:
        return datetime(y, month_idx, int(day)).timestamp() * 1000
    except ValueError:
        return None


def parse_date_divider_text(text: str, year_hint: Optional[int] = None) -> Optional[float]:
    if not text:
        return None
    clean = " ".join(text.split())
    m = MONTH_FIRST.match(clean)
    if m:
        ts = _build_local_date(m.group(2), m.group(1), m.group(3), year_hint)
        if ts is not None:
            return ts
    m = DAY_FIRST.match(clean)
    if m:
        return _build_local_date(m.group(1), m.group(2), m.group(3), year_hint)
    return None


def parse_control_timestamp(text: str, year_hint: Optional[int] = None) -> Optional[float]:
    if not text:
        return None
    m = CONTROL_TIME.search(text)
    if not m:
        return None
    month, day, hour, minute = (int(g) for g in m.groups()[:4])
    period = m.group(5).upper()
    if period == "PM" and hour < 12:
        hour += 12
    if period == "AM" and hour == 12:
        hour = 0
    year = int(year_hint) if year_hint else datetime.now().year
    try:
        return datetime(year, month, day, hour, minute).timestamp() * 1000
    except ValueError:
        return None
