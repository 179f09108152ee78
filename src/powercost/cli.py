"""Command-line interface for the power cost tracker."""

import json
import logging
import sqlite3
import time
from datetime import date, datetime, timedelta
from pathlib import Path

import click
import yaml
from rich.console import Console, Group
from rich.live import Live
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import config, db
from .analysis import summary
from .analysis.baseline import MIN_SAMPLES, detect_from_history
from .collectors import tempo_calendar
from .collectors.base import SensorError
from .collectors.details import DetailCollector
from .collectors.selector import SourceSelector, default_sources
from .models import AccrualSnapshot, DetailSnapshot
from .scheduler import BaselineUnavailable, Scheduler
from .tariffs import cost, describe_tariff, rate_for_time, with_day_colors

console = Console()
logger = logging.getLogger(__name__)


@click.group()
@click.option("--db-path", type=click.Path(), help="Path to SQLite database")
@click.option("--config", "config_path", type=click.Path(), help="Path to config.yaml")
@click.option("-v", "--verbose", is_flag=True, help="Show informational log messages")
@click.pass_context
def cli(ctx, db_path, config_path, verbose):
    """Power cost tracker - measure what your computer's electricity costs."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = Path(db_path) if db_path else None
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def load_settings(ctx) -> config.Settings:
    """Settings from the config file, with stored Tempo colors merged in."""
    try:
        settings = config.load_config(ctx.obj["config_path"])
    except config.ConfigInvalid as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    if settings.pricing_mode == "tempo":
        try:
            db.init_db(ctx.obj["db_path"])
            colors = tempo_calendar.load_colors(db_path=ctx.obj["db_path"])
        except sqlite3.Error as e:
            logger.warning("Could not load stored Tempo colors: %s", e)
        else:
            settings = settings.with_tariff(with_day_colors(settings.tempo, colors))
    return settings


def build_selector(settings: config.Settings) -> SourceSelector:
    return SourceSelector(
        default_sources(),
        failure_threshold=settings.failure_threshold,
        invalid_threshold=settings.invalid_threshold,
        reprobe_interval=settings.reprobe_interval_s,
        probe_timeout=settings.probe_timeout_s,
    )


def render_status(
    snapshot: AccrualSnapshot,
    detail: DetailSnapshot | None,
    settings: config.Settings,
) -> Group:
    """Live panel for `run`."""
    symbol = settings.currency_symbol
    reading = snapshot.latest_reading

    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(justify="right")

    if reading is None:
        table.add_row("Power", "[dim]waiting for first reading...[/dim]")
    else:
        marker = " [yellow](estimated)[/yellow]" if reading.is_estimated else ""
        table.add_row("Power", f"{reading.power_watts:.1f} W{marker}")
    table.add_row("Average", f"{snapshot.avg_power_watts:.1f} W")
    table.add_row("Energy", f"{snapshot.cumulative_energy_wh:.2f} Wh")
    table.add_row("Cost so far", f"{symbol}{snapshot.current_cost:.4f}")
    table.add_row("Per hour", f"{symbol}{snapshot.hourly_cost_estimate:.4f}")
    table.add_row("Per day", f"{symbol}{snapshot.daily_cost_estimate:.2f}")
    table.add_row("Per month", f"{symbol}{snapshot.monthly_cost_estimate:.2f}")
    table.add_row("Duration", str(timedelta(seconds=int(snapshot.session_duration_secs))))

    if snapshot.source is not None:
        source = snapshot.source
        state = "[yellow]degraded[/yellow]" if source.degraded else "[green]ok[/green]"
        table.add_row("Source", f"{source.name} (tier {source.tier}) {state}")

    parts = [Panel(table, title=f"Power cost ({settings.pricing_mode})")]

    session = snapshot.active_session
    if session is not None:
        session_table = Table.grid(padding=(0, 2))
        session_table.add_column(style="magenta")
        session_table.add_column(justify="right")
        session_table.add_row("Baseline", f"{session.baseline_watts:.1f} W")
        session_table.add_row("Energy", f"{session.cumulative_wh:.2f} Wh")
        session_table.add_row("Surplus", f"{session.surplus_wh:.2f} Wh")
        session_table.add_row("Surplus cost", f"{symbol}{session.surplus_cost:.4f}")
        parts.append(Panel(session_table, title=f"Session: {session.label or 'unnamed'}"))

    if detail is not None and detail.processes:
        processes = Table(title="Top processes", expand=False)
        processes.add_column("PID", justify="right")
        processes.add_column("Name", style="cyan")
        processes.add_column("CPU %", justify="right")
        processes.add_column("Memory", justify="right")
        for proc in detail.processes:
            name = f"[bold]{proc.name}[/bold]" if proc.is_pinned else proc.name
            processes.add_row(
                str(proc.pid),
                name,
                f"{proc.cpu_percent:.1f}",
                f"{proc.memory_bytes / (1024 * 1024):.0f} MB",
            )
        parts.append(processes)

    return Group(*parts)


@cli.command()
@click.option("--session", "label", help="Track a session with this label")
@click.option("--category", help="Category for the tracked session")
@click.option("--baseline", type=float, help="Session baseline in watts (default: detect)")
@click.option("--duration", type=float, help="Stop after this many seconds")
@click.pass_context
def run(ctx, label, category, baseline, duration):
    """Sample power continuously and show live cost figures."""
    settings = load_settings(ctx)
    persistence = db.SqlitePersistence(ctx.obj["db_path"])
    selector = build_selector(settings)
    detail = DetailCollector(
        process_limit=settings.process_limit,
        pinned_processes=settings.pinned_processes,
    )
    scheduler = Scheduler(selector, settings, persistence, detail)

    want_session = bool(label or category or baseline is not None)
    if want_session and baseline is None and settings.baseline_auto:
        now = datetime.now()
        detection = detect_from_history(persistence, now - timedelta(hours=24), now)
        if detection is not None:
            baseline = detection.detected_watts
            console.print(
                f"[cyan]Baseline {baseline:.1f} W from stored history "
                f"(confidence {detection.confidence:.0%})[/cyan]"
            )

    try:
        scheduler.start()
    except SensorError as e:
        selector.close()
        raise click.ClickException(str(e))

    session_future = scheduler.start_session(label, category, baseline) if want_session else None
    session_started = False
    deadline = time.monotonic() + duration if duration else None

    try:
        with Live(render_status(scheduler.snapshot(), None, settings), console=console, refresh_per_second=4) as live:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.25)
                if session_future is not None and session_future.done():
                    error = session_future.exception()
                    if error is None:
                        session_started = True
                        session_future = None
                    elif isinstance(error, BaselineUnavailable):
                        # Retry once the in-memory window can produce a detection
                        if scheduler.baseline.sample_count >= MIN_SAMPLES:
                            session_future = scheduler.start_session(label, category, baseline)
                    else:
                        console.print(f"[red]Could not start session: {error}[/red]")
                        session_future = None
                live.update(render_status(scheduler.snapshot(), scheduler.detail_snapshot(), settings))
    except KeyboardInterrupt:
        pass
    finally:
        if session_started:
            try:
                ended = scheduler.end_session().result(timeout=max(5.0, 3 * settings.refresh_interval_s))
                console.print(
                    f"[green]Session ended: {ended.surplus_wh:.2f} Wh surplus, "
                    f"{settings.currency_symbol}{ended.surplus_cost:.4f}[/green]"
                )
            except Exception as e:
                console.print(f"[red]Could not end session: {e}[/red]")
        scheduler.stop()
        selector.close()
        detail.close()

    snapshot = scheduler.snapshot()
    console.print(
        f"Total: {snapshot.cumulative_energy_wh:.2f} Wh, "
        f"{settings.currency_symbol}{snapshot.current_cost:.4f}"
    )


@cli.command()
@click.pass_context
def sources(ctx):
    """Probe every power source and show which ones work."""
    settings = load_settings(ctx)
    selector = build_selector(settings)
    try:
        results = selector.probe_all()
    finally:
        selector.close()

    table = Table(title="Power Sources")
    table.add_column("Tier", justify="right")
    table.add_column("Source", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")

    hints = []
    for source, error in results:
        if error is None:
            status = "[green]available[/green]"
            detail = "estimated" if source.is_estimated else "hardware"
        else:
            status = f"[red]{error.reason}[/red]"
            detail = str(error).split(". ")[0]
            if source.permission_hint and error.reason == "permission_denied":
                hints.append(source.permission_hint)
        table.add_row(str(source.tier), source.name, status, detail)

    console.print(table)
    for hint in hints:
        console.print(f"[yellow]Hint:[/yellow] {hint}")


# Database commands
@cli.group()
def database():
    """Database management commands."""
    pass


@database.command("init")
@click.pass_context
def db_init(ctx):
    """Initialize the database schema."""
    db.init_db(ctx.obj["db_path"])
    console.print("[green]Database initialized successfully[/green]")


@database.command("stats")
@click.pass_context
def db_stats(ctx):
    """Show database statistics."""
    db.init_db(ctx.obj["db_path"])
    stats = db.get_stats(ctx.obj["db_path"])

    table = Table(title="Database Statistics")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Range")

    readings = stats["power_readings"]
    table.add_row(
        "Power readings",
        str(readings["count"]),
        f"{readings['earliest'] or 'N/A'} → {readings['latest'] or 'N/A'}",
    )

    for source, count in stats.get("readings_by_source", {}).items():
        table.add_row(f"  └ {source}", str(count), "")

    daily = stats["daily_stats"]
    table.add_row(
        "Daily totals",
        str(daily["count"]),
        f"{daily['earliest'] or 'N/A'} → {daily['latest'] or 'N/A'}",
    )

    sessions_stats = stats["sessions"]
    table.add_row("Sessions", str(sessions_stats["count"]), f"{sessions_stats['active']} active")
    table.add_row("Tempo days", str(stats["tempo_days"]["count"]), "")

    console.print(table)


@database.command("cleanup")
@click.option("--days", type=int, help="Keep this many days of readings (default: retention_days)")
@click.pass_context
def db_cleanup(ctx, days):
    """Delete raw readings older than the retention period."""
    settings = load_settings(ctx)
    db.init_db(ctx.obj["db_path"])
    deleted = db.cleanup_old_readings(days or settings.retention_days, ctx.obj["db_path"])
    console.print(f"[green]Deleted {deleted} old readings[/green]")


# Tariff commands
@cli.group()
def tariff():
    """Tariff commands."""
    pass


@tariff.command("show")
@click.pass_context
def tariff_show(ctx):
    """Show the configured tariff."""
    settings = load_settings(ctx)
    table = Table(title="Tariff")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for label, value in describe_tariff(settings.tariff, settings.currency_symbol):
        table.add_row(label, value)
    rate = rate_for_time(datetime.now(), settings.tariff)
    table.add_row("Rate now", f"{rate:.4f} {settings.currency_symbol}/kWh")
    console.print(table)


@tariff.command("cost")
@click.option("--kwh", type=float, required=True, help="Energy in kWh")
@click.option("--at", "at_time", help="Moment to price at (ISO format, default: now)")
@click.pass_context
def tariff_cost(ctx, kwh, at_time):
    """Price an amount of energy under the configured tariff."""
    settings = load_settings(ctx)
    try:
        at = datetime.fromisoformat(at_time) if at_time else datetime.now()
    except ValueError:
        raise click.BadParameter(f"not an ISO datetime: {at_time}", param_hint="--at")

    price = cost(kwh * 1000, at, at, settings.tariff)
    rate = rate_for_time(at, settings.tariff)
    console.print(
        f"{kwh:g} kWh at {at:%Y-%m-%d %H:%M} = {settings.currency_symbol}{price:.2f} "
        f"[dim]({rate:.4f} {settings.currency_symbol}/kWh)[/dim]"
    )


# Tempo commands
@cli.group()
def tempo():
    """Tempo day color commands."""
    pass


@tempo.command("fetch")
@click.pass_context
def tempo_fetch(ctx):
    """Fetch today's and tomorrow's Tempo colors."""
    db.init_db(ctx.obj["db_path"])
    try:
        colors = tempo_calendar.import_upcoming(ctx.obj["db_path"])
    except tempo_calendar.TempoFeedError as e:
        raise click.ClickException(str(e))

    if not colors:
        console.print("[yellow]No colors published yet[/yellow]")
        return
    for day, color in sorted(colors.items()):
        console.print(f"{day.isoformat()}: [bold]{color.value}[/bold]")


@tempo.command("list")
@click.option("--days", default=30, help="Number of days to show")
@click.pass_context
def tempo_list(ctx, days):
    """List stored Tempo colors."""
    db.init_db(ctx.obj["db_path"])
    colors = tempo_calendar.load_colors(start=date.today() - timedelta(days=days), db_path=ctx.obj["db_path"])
    if not colors:
        console.print("[yellow]No Tempo colors stored[/yellow]")
        return

    styles = {"blue": "blue", "white": "white", "red": "red"}
    table = Table(title="Tempo Days")
    table.add_column("Date", style="cyan")
    table.add_column("Color")
    for day, color in sorted(colors.items()):
        table.add_row(day.isoformat(), f"[{styles[color.value]}]{color.value}[/]")
    console.print(table)


# Baseline commands
@cli.group()
def baseline():
    """Idle power baseline commands."""
    pass


@baseline.command("detect")
@click.option("--hours", default=24.0, help="Hours of stored readings to use")
@click.pass_context
def baseline_detect(ctx, hours):
    """Detect the idle baseline from stored readings."""
    persistence = db.SqlitePersistence(ctx.obj["db_path"])
    end = datetime.now()
    detection = detect_from_history(persistence, end - timedelta(hours=hours), end)
    if detection is None:
        console.print(f"[yellow]Not enough readings in the last {hours:g} hours[/yellow]")
        return
    console.print(
        f"Baseline: [bold]{detection.detected_watts:.1f} W[/bold] "
        f"(confidence {detection.confidence:.0%}, {detection.sample_count} readings)"
    )


# Session commands
@cli.group("sessions")
def sessions_cmd():
    """Tracking session commands."""
    pass


@sessions_cmd.command("list")
@click.option("--limit", default=20, help="Number of sessions to show")
@click.pass_context
def sessions_list(ctx, limit):
    """List recent tracking sessions."""
    settings = load_settings(ctx)
    db.init_db(ctx.obj["db_path"])
    session_list = db.list_sessions(limit, ctx.obj["db_path"])

    if not session_list:
        console.print("[yellow]No sessions found[/yellow]")
        return

    symbol = settings.currency_symbol
    table = Table(title="Sessions")
    table.add_column("ID", justify="right")
    table.add_column("Date", style="cyan")
    table.add_column("Time")
    table.add_column("Label")
    table.add_column("Category")
    table.add_column("Baseline", justify="right")
    table.add_column("Surplus", justify="right")
    table.add_column("Cost", justify="right")

    for s in session_list:
        end = s.end_time.strftime("%H:%M") if s.end_time else "active"
        table.add_row(
            str(s.id),
            s.start_time.strftime("%Y-%m-%d"),
            f"{s.start_time.strftime('%H:%M')} - {end}",
            s.label or "",
            s.category or "",
            f"{s.baseline_watts:.1f} W",
            f"{s.surplus_wh:.1f} Wh",
            f"{symbol}{s.surplus_cost:.4f}",
        )

    console.print(table)


@sessions_cmd.command("delete")
@click.argument("session_id", type=int)
@click.pass_context
def sessions_delete(ctx, session_id):
    """Delete a stored session."""
    db.init_db(ctx.obj["db_path"])
    if not db.delete_session(session_id, ctx.obj["db_path"]):
        raise click.ClickException(f"No session with id {session_id}")
    console.print(f"[green]Deleted session {session_id}[/green]")


@cli.command()
@click.option("--days", default=7, help="Number of days to include")
@click.option("--date", "day", help="Show one day (YYYY-MM-DD) in detail instead")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def history(ctx, days, day, as_json):
    """Show daily energy and cost history."""
    settings = load_settings(ctx)
    db.init_db(ctx.obj["db_path"])

    if day:
        try:
            target = date.fromisoformat(day)
        except ValueError:
            raise click.BadParameter(f"not a date: {day}", param_hint="--date")
        data = summary.get_daily_summary(target, ctx.obj["db_path"])
        if as_json:
            click.echo(json.dumps(data, indent=2))
        else:
            console.print(summary.format_daily_summary_text(data, settings.currency_symbol))
        return

    end = date.today()
    data = summary.get_period_summary(end - timedelta(days=days - 1), end, ctx.obj["db_path"])
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    symbol = settings.currency_symbol
    table = Table(title=f"Daily History (last {days} days)")
    table.add_column("Date", style="cyan")
    table.add_column("Energy", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Avg", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Mode")

    for row in data["daily_breakdown"]:
        table.add_row(
            row["date"],
            f"{row['kwh']:.3f} kWh",
            f"{symbol}{row['cost']:.2f}",
            f"{row['avg_watts']:.0f} W",
            f"{row['max_watts']:.0f} W",
            row["pricing_mode"] or "",
        )

    console.print(table)
    console.print(
        f"Total: {data['totals']['kwh']:.3f} kWh, {symbol}{data['totals']['cost']:.2f} "
        f"({symbol}{data['averages']['daily_cost']:.2f}/day)"
    )


# Config commands
@cli.group("config")
def config_cmd():
    """Configuration commands."""
    pass


@config_cmd.command("show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration."""
    settings = load_settings(ctx)
    click.echo(yaml.safe_dump(config.settings_to_dict(settings), sort_keys=False, allow_unicode=True))


@config_cmd.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def config_init(ctx, force):
    """Write a config file with the default settings."""
    path = ctx.obj["config_path"] or config.get_config_path()
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    config.save_config(config.Settings(), path)
    console.print(f"[green]Wrote default configuration to {path}[/green]")


if __name__ == "__main__":
    cli()
