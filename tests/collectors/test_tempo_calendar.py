"""Tests for the Tempo day color feed."""

from datetime import date

import httpx
import pytest
from powercost import db
from powercost.collectors import tempo_calendar
from powercost.collectors.tempo_calendar import TempoFeedError, parse_day
from powercost.models import DayColor


def make_client(routes: dict[str, tuple[int, object]]) -> httpx.Client:
    """Client whose transport answers from a {path suffix: (status, json)} table."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path.rsplit("/", 1)[-1]
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = routes[key]
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_parse_day():
    assert parse_day({"dateJour": "2024-01-15", "codeJour": 3}) == (date(2024, 1, 15), DayColor.RED)
    assert parse_day({"dateJour": "2024-01-16", "codeJour": 0}) is None
    with pytest.raises(TempoFeedError):
        parse_day({"dateJour": "15/01/2024", "codeJour": 1})


def test_fetch_upcoming_skips_unpublished_tomorrow():
    client = make_client(
        {
            "today": (200, {"dateJour": "2024-01-15", "codeJour": 2}),
            "tomorrow": (200, {"dateJour": "2024-01-16", "codeJour": 0}),
        }
    )
    assert tempo_calendar.fetch_upcoming(client) == {date(2024, 1, 15): DayColor.WHITE}


def test_fetch_range():
    client = make_client(
        {
            "2024-01-14": (200, {"dateJour": "2024-01-14", "codeJour": 1}),
            "2024-01-15": (200, {"dateJour": "2024-01-15", "codeJour": 3}),
        }
    )
    colors = tempo_calendar.fetch_range(date(2024, 1, 14), date(2024, 1, 15), client)
    assert colors == {date(2024, 1, 14): DayColor.BLUE, date(2024, 1, 15): DayColor.RED}


def test_http_errors_become_feed_errors():
    client = make_client({"today": (503, {"error": "down"})})
    with pytest.raises(TempoFeedError, match="503"):
        tempo_calendar.fetch_upcoming(client)


def test_invalid_json_becomes_feed_error():
    client = make_client({"2024-01-15": (200, "<html>maintenance</html>")})
    with pytest.raises(TempoFeedError, match="invalid JSON"):
        tempo_calendar.fetch_day(date(2024, 1, 15), client)


def test_save_and_load_colors(tmp_path):
    db_path = tmp_path / "tempo.db"
    db.init_db(db_path)
    tempo_calendar.save_colors({date(2024, 1, 15): DayColor.WHITE, date(2024, 1, 16): DayColor.BLUE}, db_path)
    tempo_calendar.save_colors({date(2024, 1, 15): DayColor.RED}, db_path)

    assert tempo_calendar.load_colors(db_path=db_path) == {
        date(2024, 1, 15): DayColor.RED,
        date(2024, 1, 16): DayColor.BLUE,
    }
    assert tempo_calendar.load_colors(start=date(2024, 1, 16), db_path=db_path) == {
        date(2024, 1, 16): DayColor.BLUE,
    }


def test_import_upcoming(tmp_path):
    db_path = tmp_path / "tempo.db"
    db.init_db(db_path)
    client = make_client(
        {
            "today": (200, {"dateJour": "2024-01-15", "codeJour": 1}),
            "tomorrow": (200, {"dateJour": "2024-01-16", "codeJour": 3}),
        }
    )
    tempo_calendar.import_upcoming(db_path, client)
    assert tempo_calendar.load_colors(db_path=db_path)[date(2024, 1, 16)] == DayColor.RED
