"""
Main CLI application using Typer.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Iterator, List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ..adapters.sql_store import SqlStorage
from ..config import AppConfig
from ..domain.exceptions import SlotbookError, ValidationError
from ..domain.models import (
    AvailabilityRule,
    Booking,
    BookingInput,
    RuleInput,
    RuleUpdate,
    Slot,
    to_utc,
    utc_now,
)
from ..services.availability import AvailabilityService
from ..services.booking import BookingService

app = typer.Typer(
    name="slotbook",
    help="Manage weekly availability, find free slots and book them",
    add_completion=False,
)

console = Console()

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
RULE_FIELDS = {"day_of_week", "start_time", "end_time", "slot_length_minutes", "available", "title"}


class CliContext:
    """Configuration and lazily built services shared by one invocation."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self._storage: Optional[SqlStorage] = None

    @property
    def storage(self) -> SqlStorage:
        if self._storage is None:
            self._storage = SqlStorage.from_config(self.config)
            self._storage.create_schema()
        return self._storage

    def availability(self) -> AvailabilityService:
        return AvailabilityService(self.storage)

    def bookings(self) -> BookingService:
        return BookingService(self.storage, self.availability())

    def parse_instant(self, value: str):
        """Parse CLI input; offset-less values are read in the configured timezone."""
        return to_utc(value, tz=self.config.timezone)

    def local(self, value):
        return value.in_timezone(self.config.timezone)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@contextmanager
def _cli_errors() -> Iterator[None]:
    """Turn domain and configuration errors into a red message and exit code 1."""
    try:
        yield
    except SlotbookError as e:
        console.print(f"[bold red]Error ({type(e).__name__}):[/bold red] {e}")
        raise typer.Exit(1)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


def _ctx(ctx: typer.Context) -> CliContext:
    return ctx.obj


@app.callback()
def main(
    ctx: typer.Context,
    config_file: Annotated[Optional[Path], typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml")] = None,
):
    """
    Slotbook - availability rules, bookable slots and bookings.
    """
    with _cli_errors():
        config = AppConfig.load_or_default(config_file)
    _configure_logging(config.log_level)
    logger.debug("Using database %s", config.database_url)
    ctx.obj = CliContext(config)


def _time_field(value) -> str:
    # YAML 1.1 reads unquoted 9:30 as the sexagesimal integer 570
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value // 60:02d}:{value % 60:02d}"
    return str(value)


def _load_rule_file(path: Path, default_slot_length: int) -> List[RuleInput]:
    """
    Read a YAML list of rules.

    Raises:
        FileNotFoundError: If the file is missing
        ValidationError: If the content is not a list of rule mappings
    """
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or []
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, list):
        raise ValidationError("Rules file must contain a list of rules.")

    rules: List[RuleInput] = []
    for index, item in enumerate(data, 1):
        if not isinstance(item, dict):
            raise ValidationError(f"Rule #{index} must be a mapping")
        unknown = set(item) - RULE_FIELDS
        if unknown:
            raise ValidationError(f"Rule #{index} has unknown field(s): {', '.join(sorted(unknown))}")
        missing = {"day_of_week", "start_time", "end_time"} - set(item)
        if missing:
            raise ValidationError(f"Rule #{index} is missing: {', '.join(sorted(missing))}")
        rules.append(
            RuleInput(
                day_of_week=item["day_of_week"],
                start_time=_time_field(item["start_time"]),
                end_time=_time_field(item["end_time"]),
                slot_length_minutes=item.get("slot_length_minutes", default_slot_length),
                available=item.get("available", True),
                title=item.get("title") or "",
            )
        )
    return rules


def _rules_table(rules: List[AvailabilityRule], title: str) -> Table:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Day", style="bold yellow")
    table.add_column("Window")
    table.add_column("Slot (min)", justify="right")
    table.add_column("Available")
    table.add_column("Title")
    table.add_column("Updated (UTC)", style="dim")

    for rule in rules:
        table.add_row(
            rule.id,
            WEEKDAY_NAMES[rule.day_of_week],
            f"{rule.start_time} - {rule.end_time}",
            str(rule.slot_length_minutes),
            "yes" if rule.available else "no",
            rule.title,
            rule.updated_at.to_datetime_string() if rule.updated_at else "",
        )
    return table


def _bookings_table(bookings: List[Booking], cli: CliContext) -> Table:
    table = Table(title="Bookings", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="dim")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Candidate", style="bold yellow")
    table.add_column("Status")
    table.add_column("Title")

    for booking in bookings:
        table.add_row(
            booking.id,
            cli.local(booking.start_at).format("ddd DD.MM.YYYY HH:mm"),
            cli.local(booking.end_at).format("HH:mm"),
            booking.candidate_email,
            booking.status.value,
            booking.title,
        )
    return table


def _format_slot(slot: Slot, cli: CliContext) -> str:
    start = cli.local(slot.start)
    end = cli.local(slot.end)
    return f"{start.format('ddd, DD.MM.YYYY')} | {start.format('HH:mm')} – {end.format('HH:mm')} ({slot.duration_minutes()} min)"


@app.command("init-db")
def init_db(ctx: typer.Context):
    """
    Create the database tables if they do not exist.
    """
    cli = _ctx(ctx)
    with _cli_errors():
        storage = cli.storage
    console.print(f"[green]✓ Database ready:[/green] {storage.engine.url.render_as_string(hide_password=True)}")


@app.command("set-availability")
def set_availability(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Owner of the rules")],
    rules_file: Annotated[Path, typer.Argument(help="YAML file with a list of rules")],
):
    """
    Create availability rules from a YAML file.

    Example file:

        - day_of_week: 1
          start_time: "09:00"
          end_time: "12:00"
          slot_length_minutes: 30
    """
    cli = _ctx(ctx)
    with _cli_errors():
        rules = _load_rule_file(rules_file, cli.config.defaults.slot_length_minutes)
        saved = cli.availability().set_availability(user_id, rules)

    console.print(f"[bold green]✓ {len(saved)} rule(s) saved.[/bold green]")
    console.print(_rules_table(saved, title=f"Rules saved for {user_id}"))


@app.command("update-availability")
def update_availability(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Owner of the rule")],
    rule_id: Annotated[str, typer.Argument(help="Rule to update")],
    day: Annotated[Optional[int], typer.Option("--day", help="Weekday, 0=Sunday ... 6=Saturday")] = None,
    start: Annotated[Optional[str], typer.Option("--start", help="Start time (HH:MM)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="End time (HH:MM)")] = None,
    slot_length: Annotated[Optional[int], typer.Option("--slot-length", help="Slot length in minutes")] = None,
    title: Annotated[Optional[str], typer.Option("--title", help="Free-text label")] = None,
    available: Annotated[Optional[bool], typer.Option("--available/--unavailable", help="Whether the rule yields slots")] = None,
):
    """
    Update a rule; omitted options keep their stored value.
    """
    cli = _ctx(ctx)
    changes = RuleUpdate(
        day_of_week=day,
        start_time=start,
        end_time=end,
        slot_length_minutes=slot_length,
        available=available,
        title=title,
    )
    with _cli_errors():
        updated = cli.availability().update_availability(user_id, rule_id, changes)

    console.print("[bold green]✓ Rule updated.[/bold green]")
    console.print(_rules_table([updated], title=f"Rule {rule_id}"))


@app.command("list-availability")
def list_availability(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="Owner of the rules")],
):
    """
    List all availability rules of a user.
    """
    cli = _ctx(ctx)
    with _cli_errors():
        rules = cli.availability().list_availability(user_id)

    if not rules:
        console.print(f"[yellow]No availability rules for {user_id}.[/yellow]")
        return
    console.print(_rules_table(rules, title=f"Availability of {user_id}"))


@app.command()
def slots(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="User whose slots to show")],
    start: Annotated[Optional[str], typer.Option("--start", help="Window start (ISO 8601). Defaults to now")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Window end (ISO 8601). Defaults to start + window_days")] = None,
):
    """
    Show free bookable slots in a time window.

    Examples:

        slotbook slots alice
        slotbook slots alice --start 2024-11-25T00:00 --end 2024-11-30T00:00
    """
    cli = _ctx(ctx)
    with _cli_errors():
        window_start = cli.parse_instant(start) if start else utc_now()
        window_end = (
            cli.parse_instant(end)
            if end
            else window_start.add(days=cli.config.defaults.window_days)
        )
        found = cli.availability().get_slots(user_id, window_start, window_end)

    if not found:
        console.print("[yellow]⚠ No free slots found in this window.[/yellow]")
        return

    console.print(f"[bold green]✓ {len(found)} free slot(s):[/bold green]\n")
    for slot in found:
        console.print(f"  {_format_slot(slot, cli)}")
        console.print(f"    [dim]{slot.start.to_iso8601_string()} → {slot.end.to_iso8601_string()}[/dim]")


@app.command()
def book(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="User to book")],
    start: Annotated[str, typer.Option("--start", help="Slot start (ISO 8601)")],
    end: Annotated[str, typer.Option("--end", help="Slot end (ISO 8601)")],
    email: Annotated[str, typer.Option("--email", "-e", help="Candidate email")],
    title: Annotated[str, typer.Option("--title")] = "",
    description: Annotated[str, typer.Option("--description")] = "",
    source: Annotated[str, typer.Option("--source")] = "cli",
    booking_type: Annotated[str, typer.Option("--type")] = "",
):
    """
    Book one free slot.
    """
    cli = _ctx(ctx)
    with _cli_errors():
        request = BookingInput(
            candidate_email=email,
            start=cli.parse_instant(start),
            end=cli.parse_instant(end),
            source=source,
            booking_type=booking_type,
            description=description,
            title=title,
        )
        booking = cli.bookings().create_booking(user_id, request)

    console.print(f"[bold green]✓ Booking {booking.id} confirmed.[/bold green]")
    console.print(_bookings_table([booking], cli))


@app.command()
def bookings(
    ctx: typer.Context,
    user_id: Annotated[str, typer.Argument(help="User whose bookings to list")],
    start: Annotated[Optional[str], typer.Option("--start", help="Only bookings starting at or after (ISO 8601)")] = None,
    end: Annotated[Optional[str], typer.Option("--end", help="Only bookings starting before (ISO 8601)")] = None,
):
    """
    List non-cancelled bookings of a user.
    """
    cli = _ctx(ctx)
    with _cli_errors():
        if (start is None) != (end is None):
            raise ValidationError("--start and --end must be given together")
        window_start = cli.parse_instant(start) if start else None
        window_end = cli.parse_instant(end) if end else None
        found = cli.bookings().list_bookings(user_id, window_start, window_end)

    if not found:
        console.print(f"[yellow]No bookings for {user_id}.[/yellow]")
        return
    console.print(_bookings_table(found, cli))


@app.command()
def cancel(
    ctx: typer.Context,
    booking_id: Annotated[str, typer.Argument(help="Booking to cancel")],
):
    """
    Cancel a confirmed booking.
    """
    cli = _ctx(ctx)
    with _cli_errors():
        cli.bookings().cancel_booking(booking_id)
    console.print(f"[green]✓ Booking {booking_id} cancelled.[/green]")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbook[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
