"""
Shared list/filter/paginate helpers for the admin list endpoints.
"""
import csv
import io
import json
import math
import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

DEFAULT_LIMIT = 10
MAX_LIMIT = 1000


def _int_arg(raw, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def page_args(args, default_limit: int = DEFAULT_LIMIT) -> Tuple[int, int, int]:
    """Return (page, limit, offset) from query args, falling back to defaults."""
    page = _int_arg(args.get("page"), 1)
    limit = _int_arg(args.get("limit"), default_limit)
    if page < 1:
        page = 1
    if limit < 1:
        limit = default_limit
    limit = min(limit, MAX_LIMIT)
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def bool_arg(value) -> Optional[bool]:
    if value == "true":
        return True
    if value == "false":
        return False
    return None


def parse_day(value: str) -> datetime.date:
    value = (value or "").strip()
    if not value:
        raise ValueError("empty date")
    # accept full ISO timestamps coming from date pickers
    return datetime.date.fromisoformat(value[:10])


def day_range(value: str) -> Tuple[datetime.datetime, datetime.datetime]:
    """
    Bucket a date filter to whole days.

    "2024-03-01" covers that day; "2024-03-01,2024-03-05" covers both days and
    everything in between. The end of the range is exclusive.
    """
    if "," in value:
        start_raw, end_raw = value.split(",", 1)
        start_day, end_day = parse_day(start_raw), parse_day(end_raw)
    else:
        start_day = end_day = parse_day(value)
    if end_day < start_day:
        raise ValueError("date range ends before it starts")
    start = datetime.datetime.combine(start_day, datetime.time.min, tzinfo=datetime.timezone.utc)
    end = datetime.datetime.combine(end_day + datetime.timedelta(days=1), datetime.time.min,
                                    tzinfo=datetime.timezone.utc)
    return start, end


def like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class Filters:
    """Collects WHERE clauses and their params. Column names must come from code, never from input."""

    def __init__(self):
        self.clauses: List[str] = []
        self.params: List[Any] = []

    def search(self, term: Optional[str], *columns: str) -> "Filters":
        term = (term or "").strip()
        if term and columns:
            pattern = like_pattern(term)
            self.clauses.append("(" + " OR ".join(f"{c} ILIKE %s" for c in columns) + ")")
            self.params.extend([pattern] * len(columns))
        return self

    def equals(self, column: str, value) -> "Filters":
        if value is None or value == "":
            return self
        self.clauses.append(f"{column} = %s")
        self.params.append(value)
        return self

    def between(self, column: str, bounds: Optional[Tuple[Any, Any]]) -> "Filters":
        if not bounds:
            return self
        self.clauses.append(f"{column} >= %s AND {column} < %s")
        self.params.extend(bounds)
        return self

    def where(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(self.clauses)


def order_by(field: Optional[str], direction: Optional[str], allowed: Dict[str, str], default: str) -> str:
    column = allowed.get(field or "")
    if not column:
        return default
    return f"{column} {'ASC' if (direction or '').lower() == 'asc' else 'DESC'}"


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_csv(items: Iterable[Dict[str, Any]], columns: Sequence[Tuple[str, str]]) -> str:
    """Render rows as CSV; columns is a sequence of (key, label)."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([label for _, label in columns])
    for item in items:
        writer.writerow([_cell(item.get(key)) for key, _ in columns])
    return buf.getvalue()
