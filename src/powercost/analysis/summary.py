"""Summaries of stored energy data."""

from datetime import date, datetime, time
from pathlib import Path

from ..db import get_connection


def get_daily_summary(day: date, db_path: Path | None = None) -> dict:
    """Summary for one day: stored totals plus an hourly power profile."""
    start = datetime.combine(day, time.min)
    end = datetime.combine(day, time.max)

    with get_connection(db_path) as conn:
        totals = conn.execute("SELECT * FROM daily_stats WHERE date = ?", (day.isoformat(),)).fetchone()

        hourly_rows = conn.execute(
            """SELECT
                   CAST(STRFTIME('%H', timestamp) AS INTEGER) as hour,
                   AVG(power_watts) as avg_watts,
                   MAX(power_watts) as max_watts,
                   COUNT(*) as count
               FROM power_readings
               WHERE timestamp >= ? AND timestamp <= ?
               GROUP BY hour
               ORDER BY hour""",
            (start.isoformat(timespec="seconds"), end.isoformat(timespec="seconds")),
        ).fetchall()

        session_rows = conn.execute(
            """SELECT * FROM sessions
               WHERE start_time >= ? AND start_time <= ?
               ORDER BY start_time""",
            (start.isoformat(timespec="seconds"), end.isoformat(timespec="seconds")),
        ).fetchall()

    # Busiest hour by average draw
    peak_hour = max(hourly_rows, key=lambda row: row["avg_watts"], default=None)

    return {
        "date": day.isoformat(),
        "total_kwh": round(totals["total_wh"] / 1000, 3) if totals else 0,
        "total_cost": round(totals["total_cost"] or 0, 2) if totals else 0,
        "avg_watts": round(totals["avg_watts"] or 0, 1) if totals else 0,
        "max_watts": round(totals["max_watts"] or 0, 1) if totals else 0,
        "pricing_mode": totals["pricing_mode"] if totals else None,
        "peak_hour": {
            "hour": peak_hour["hour"] if peak_hour else None,
            "avg_watts": round(peak_hour["avg_watts"], 1) if peak_hour else 0,
        },
        "hourly": [
            {"hour": row["hour"], "avg_watts": round(row["avg_watts"], 1), "max_watts": round(row["max_watts"], 1)}
            for row in hourly_rows
        ],
        "sessions": [
            {
                "id": row["id"],
                "label": row["label"],
                "category": row["category"],
                "start": datetime.fromisoformat(row["start_time"]).strftime("%H:%M"),
                "end": datetime.fromisoformat(row["end_time"]).strftime("%H:%M") if row["end_time"] else None,
                "surplus_wh": round(row["surplus_wh"] or 0, 1),
                "surplus_cost": round(row["surplus_cost"] or 0, 2),
            }
            for row in session_rows
        ],
    }


def get_period_summary(start: date, end: date, db_path: Path | None = None) -> dict:
    """Summary for start..end inclusive from the daily totals."""
    with get_connection(db_path) as conn:
        daily_rows = conn.execute(
            """SELECT date, total_wh, total_cost, avg_watts, max_watts, pricing_mode
               FROM daily_stats
               WHERE date >= ? AND date <= ?
               ORDER BY date""",
            (start.isoformat(), end.isoformat()),
        ).fetchall()

        session_row = conn.execute(
            """SELECT
                   COUNT(*) as count,
                   SUM(surplus_wh) as surplus_wh,
                   SUM(surplus_cost) as surplus_cost
               FROM sessions
               WHERE DATE(start_time) >= ? AND DATE(start_time) <= ?""",
            (start.isoformat(), end.isoformat()),
        ).fetchone()

    days_count = len(daily_rows)
    total_kwh = sum(row["total_wh"] for row in daily_rows) / 1000
    total_cost = sum(row["total_cost"] or 0 for row in daily_rows)

    return {
        "period": {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "days": days_count,
        },
        "totals": {
            "kwh": round(total_kwh, 3),
            "cost": round(total_cost, 2),
        },
        "averages": {
            "daily_kwh": round(total_kwh / days_count, 3) if days_count > 0 else 0,
            "daily_cost": round(total_cost / days_count, 2) if days_count > 0 else 0,
        },
        "daily_breakdown": [
            {
                "date": row["date"],
                "kwh": round(row["total_wh"] / 1000, 3),
                "cost": round(row["total_cost"] or 0, 2),
                "avg_watts": round(row["avg_watts"] or 0, 1),
                "max_watts": round(row["max_watts"] or 0, 1),
                "pricing_mode": row["pricing_mode"],
            }
            for row in daily_rows
        ],
        "sessions": {
            "count": session_row["count"],
            "surplus_wh": round(session_row["surplus_wh"] or 0, 1),
            "surplus_cost": round(session_row["surplus_cost"] or 0, 2),
        },
    }


def format_daily_summary_text(summary: dict, currency_symbol: str = "€") -> str:
    """Format a daily summary as human-readable text."""
    lines = [
        f"Daily Summary for {summary['date']}",
        f"- Total consumption: {summary['total_kwh']} kWh",
        f"- Cost: {currency_symbol}{summary['total_cost']:.2f}",
        f"- Average draw: {summary['avg_watts']} W (max {summary['max_watts']} W)",
    ]

    if summary["peak_hour"]["hour"] is not None:
        lines.append(
            f"- Busiest hour: {summary['peak_hour']['hour']:02d}:00 ({summary['peak_hour']['avg_watts']} W average)"
        )

    if summary["sessions"]:
        lines.append(f"- Sessions: {len(summary['sessions'])}")
        for s in summary["sessions"]:
            name = s["label"] or f"#{s['id']}"
            lines.append(
                f"  - {name} {s['start']}-{s['end'] or 'now'}: "
                f"{s['surplus_wh']} Wh surplus ({currency_symbol}{s['surplus_cost']:.2f})"
            )

    return "\n".join(lines)
