"""Shared helpers for services.

parse_datetime:  ISO / DD/MM/YYYY HH:MM input parsing (None on bad input)
paginate_query:  offset/limit pagination with a capped page size
"""
from datetime import date, datetime, timezone

MAX_PER_PAGE = 100


def parse_datetime(value):
    """Parse an ISO-8601 or DD/MM/YYYY [HH:MM] string into an aware datetime.

    Naive input is taken as UTC. Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = None
        text = str(value).strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            for fmt in ("%d/%m/%Y %H:%M", "%d/%m/%Y"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def paginate_query(query, page=1, per_page=20):
    """Return (items, total) for a 1-based page; per_page is capped."""
    page = max(int(page or 1), 1)
    per_page = min(max(int(per_page or 20), 1), MAX_PER_PAGE)
    total = query.count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return items, total
