"""EDF Tempo day colors from the public api-couleur-tempo.fr service.

Colors are published around 11:00 for the following day. Fetched colors are
stored in the tempo_days table and merged into the Tempo tariff at load time.
"""

import logging
from datetime import date, datetime, timedelta
from pathlib import Path

import httpx

from ..db import get_connection
from ..models import DayColor

logger = logging.getLogger(__name__)

API_BASE_URL = "https://www.api-couleur-tempo.fr/api/jourTempo"

# codeJour 0 means the color has not been published yet
COLOR_CODES = {
    1: DayColor.BLUE,
    2: DayColor.WHITE,
    3: DayColor.RED,
}


class TempoFeedError(Exception):
    """The color feed could not be reached or returned something unusable."""


def _get(path: str, client: httpx.Client | None = None) -> dict:
    url = f"{API_BASE_URL}/{path}"
    try:
        if client is None:
            response = httpx.get(url, timeout=10.0)
        else:
            response = client.get(url, timeout=10.0)
        response.raise_for_status()
        return response.json()
    except httpx.HTTPStatusError as e:
        raise TempoFeedError(f"Tempo API returned {e.response.status_code} for {path}")
    except httpx.HTTPError as e:
        raise TempoFeedError(f"Tempo API request failed: {e}")
    except ValueError:
        raise TempoFeedError(f"Tempo API returned invalid JSON for {path}")


def parse_day(data: dict) -> tuple[date, DayColor] | None:
    """Map one API record to (date, color), or None if not yet published."""
    color = COLOR_CODES.get(data.get("codeJour"))
    if color is None or not data.get("dateJour"):
        return None
    try:
        return date.fromisoformat(data["dateJour"]), color
    except ValueError:
        raise TempoFeedError(f"Unexpected dateJour {data['dateJour']!r}")


def fetch_day(day: date, client: httpx.Client | None = None) -> DayColor | None:
    """Color of one day, or None if it is not known yet."""
    parsed = parse_day(_get(day.isoformat(), client))
    return parsed[1] if parsed else None


def fetch_upcoming(client: httpx.Client | None = None) -> dict[date, DayColor]:
    """Colors for today and tomorrow (tomorrow only once published)."""
    colors = {}
    for path in ("today", "tomorrow"):
        parsed = parse_day(_get(path, client))
        if parsed:
            colors[parsed[0]] = parsed[1]
        else:
            logger.info("Tempo color for %s not published yet", path)
    return colors


def fetch_range(start: date, end: date, client: httpx.Client | None = None) -> dict[date, DayColor]:
    """Colors for start..end inclusive, one request per day."""
    colors = {}
    day = start
    while day <= end:
        color = fetch_day(day, client)
        if color is not None:
            colors[day] = color
        day += timedelta(days=1)
    return colors


def save_colors(colors: dict[date, DayColor], db_path: Path | None = None) -> int:
    """Store colors, replacing any earlier value for the same day."""
    fetched_at = datetime.now().isoformat(timespec="seconds")
    with get_connection(db_path) as conn:
        for day, color in colors.items():
            conn.execute(
                """INSERT INTO tempo_days (date, color, fetched_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(date) DO UPDATE SET
                       color = excluded.color,
                       fetched_at = excluded.fetched_at""",
                (day.isoformat(), color.value, fetched_at),
            )
        conn.commit()
    return len(colors)


def load_colors(
    start: date | None = None,
    end: date | None = None,
    db_path: Path | None = None,
) -> dict[date, DayColor]:
    """Stored colors, optionally limited to start..end inclusive."""
    query = "SELECT date, color FROM tempo_days"
    conditions = []
    params: list[str] = []
    if start is not None:
        conditions.append("date >= ?")
        params.append(start.isoformat())
    if end is not None:
        conditions.append("date <= ?")
        params.append(end.isoformat())
    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    with get_connection(db_path) as conn:
        rows = conn.execute(query + " ORDER BY date", params).fetchall()

    return {date.fromisoformat(row["date"]): DayColor(row["color"]) for row in rows}


def import_upcoming(db_path: Path | None = None, client: httpx.Client | None = None) -> dict[date, DayColor]:
    """Fetch today/tomorrow and store them. Returns what was stored."""
    colors = fetch_upcoming(client)
    save_colors(colors, db_path)
    return colors
