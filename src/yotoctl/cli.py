"""Thin CLI wrapper over :class:`yotoctl.ConnectionManager` and the scheduler."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from datetime import datetime

import typer

from yotoctl._constants import SCHEDULE_FILE, TOKEN_FILE
from yotoctl.commands import (
    Command,
    Pause,
    PlayCard,
    Resume,
    SetAmbientLight,
    SetNightLight,
    Stop,
)
from yotoctl.connection import ConnectionManager, ConnectionStatus
from yotoctl.exceptions import YotoError
from yotoctl.scheduler import SchedulerClock
from yotoctl.schedules import (
    DAY_NAMES,
    RepeatMode,
    Schedule,
    ScheduleStore,
    format_days,
    next_execution_time,
    parse_time_of_day,
)
from yotoctl.telemetry import TelemetryEvent
from yotoctl.tokens import SavedTokenProvider

app = typer.Typer(help="Control Yoto players.", invoke_without_command=True)
schedule_app = typer.Typer(help="Manage scheduled card playback.", no_args_is_help=True)
app.add_typer(schedule_app, name="schedule")

_DAY_ALIASES: dict[str, set[int]] = {
    "daily": set(range(7)),
    "everyday": set(range(7)),
    "weekdays": {1, 2, 3, 4, 5},
    "weekends": {0, 6},
}


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Control Yoto players."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s: %(message)s"
        )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        try:
            from rich.console import Console
            from rich.syntax import Syntax

            Console().print(Syntax(json.dumps(obj, indent=2), "json"))
        except ImportError:
            typer.echo(json.dumps(obj, indent=2))
    else:
        typer.echo(json.dumps(obj))


def _fail(error: YotoError) -> None:
    typer.echo(f"{error} {error.hint}", err=True)
    raise typer.Exit(1)


def _token_provider() -> SavedTokenProvider:
    """Load saved tokens or exit with an error."""
    try:
        return SavedTokenProvider.from_saved(TOKEN_FILE)
    except FileNotFoundError:
        typer.echo("No saved tokens. Run `yotoctl login` first.", err=True)
        raise typer.Exit(1) from None


def _store() -> ScheduleStore:
    return ScheduleStore(SCHEDULE_FILE)


def _ts() -> str:
    return datetime.now().strftime("%H:%M:%S")


# ---------------------------------------------------------------------------
# Device commands
# ---------------------------------------------------------------------------


async def _send(device_id: str, command: Command, *, swap_red_blue: bool = False) -> None:
    manager = ConnectionManager(token_provider=_token_provider(), swap_red_blue=swap_red_blue)
    await manager.connect(device_id)
    try:
        await manager.publish(device_id, command)
    finally:
        await manager.disconnect(device_id)


def _run_command(device_id: str, command: Command, *, swap_red_blue: bool = False) -> None:
    try:
        asyncio.run(_send(device_id, command, swap_red_blue=swap_red_blue))
    except YotoError as e:
        _fail(e)
    typer.echo(f"Command sent to {device_id}.")


@app.command()
def login(
    access_token: str = typer.Option(
        ..., prompt=True, hide_input=True, help="OAuth access token"
    ),
    refresh_token: str = typer.Option(
        "", prompt=True, hide_input=True, help="OAuth refresh token (optional)"
    ),
) -> None:
    """Save tokens obtained from the Yoto sign-in flow."""
    provider = SavedTokenProvider({}, path=TOKEN_FILE)
    provider.set_tokens(access_token.strip(), refresh_token.strip() or None)
    provider.save()
    typer.echo(f"Tokens saved to {TOKEN_FILE}.")


@app.command()
def play(
    device_id: str = typer.Argument(..., help="Player device ID"),
    uri: str = typer.Argument(..., help="Card URI, e.g. https://yoto.io/<cardId>"),
    chapter: str | None = typer.Option(None, "--chapter", help="Chapter key to start from"),
    track: str | None = typer.Option(None, "--track", help="Track key to start from"),
    seconds_in: int | None = typer.Option(None, "--seconds-in", help="Start offset in seconds"),
    cut_off: int | None = typer.Option(None, "--cut-off", help="Stop offset in seconds"),
    any_button_stop: bool | None = typer.Option(
        None, "--any-button-stop/--no-any-button-stop", help="Stop on any button press"
    ),
) -> None:
    """Start playing a card."""
    _run_command(
        device_id,
        PlayCard(
            uri,
            chapter_key=chapter,
            track_key=track,
            seconds_in=seconds_in,
            cut_off=cut_off,
            any_button_stop=any_button_stop,
        ),
    )


@app.command()
def pause(device_id: str = typer.Argument(..., help="Player device ID")) -> None:
    """Pause playback."""
    _run_command(device_id, Pause())


@app.command()
def resume(device_id: str = typer.Argument(..., help="Player device ID")) -> None:
    """Resume playback."""
    _run_command(device_id, Resume())


@app.command()
def stop(device_id: str = typer.Argument(..., help="Player device ID")) -> None:
    """Stop playback."""
    _run_command(device_id, Stop())


@app.command()
def light(
    device_id: str = typer.Argument(..., help="Player device ID"),
    rgb: list[int] | None = typer.Argument(None, help="Raw R G B values (0-255)"),
    color: str | None = typer.Option(None, "--color", "-c", help="Hex colour, e.g. #FF8800"),
    brightness: int = typer.Option(100, "--brightness", "-b", help="Brightness percent"),
    off: bool = typer.Option(False, "--off", help="Turn the ambient light off"),
    bgr: bool = typer.Option(False, "--bgr", help="Send channels in BGR order"),
) -> None:
    """Set the ambient light.

    \b
    Either give raw channels:   yotoctl light ID 255 0 0
    or a colour + brightness:   yotoctl light ID --color #FF0000 -b 50
    """
    if off:
        command = SetAmbientLight.off()
    elif color is not None:
        try:
            command = SetAmbientLight.from_brightness(brightness, color)
        except ValueError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1) from None
    elif rgb is not None and len(rgb) == 3:
        command = SetAmbientLight(*rgb)
    else:
        typer.echo("Give R G B values, --color, or --off.", err=True)
        raise typer.Exit(1)
    _run_command(device_id, command, swap_red_blue=bgr)


@app.command("night-light")
def night_light(
    device_id: str = typer.Argument(..., help="Player device ID"),
    state: str = typer.Argument(..., help="on | off"),
    brightness: int | None = typer.Option(None, "--brightness", "-b", help="Brightness"),
) -> None:
    """Turn the night light on or off."""
    if state not in ("on", "off"):
        typer.echo(f"Invalid state '{state}'. Expected: on | off", err=True)
        raise typer.Exit(1)
    _run_command(device_id, SetNightLight(state == "on", brightness))


@app.command()
def watch(
    device_ids: list[str] = typer.Argument(..., help="Player device ID(s)"),
) -> None:
    """Watch connection status and telemetry from one or more players.

    Press Ctrl+C to stop.
    """
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_watch_async(device_ids))


def _echo_status(status: ConnectionStatus) -> None:
    line = f"[{_ts()}] {status.device_id} {status.state.value}"
    if status.error is not None:
        line += f": {status.error}"
    if sys.stdout.isatty():
        typer.echo(typer.style(line, fg="yellow"))
    else:
        typer.echo(line)


def _echo_telemetry(event: TelemetryEvent) -> None:
    label = f"{event.kind.value} ({event.source_field})"
    if sys.stdout.isatty():
        typer.echo(
            f"[{_ts()}] {typer.style(event.device_id, bold=True)} "
            f"{typer.style(label, fg='cyan')}: {event.value}"
        )
    else:
        typer.echo(f"[{_ts()}] {event.device_id} {label}: {event.value}")


async def _watch_async(device_ids: list[str]) -> None:
    """Async implementation of the watch command."""
    manager = ConnectionManager(token_provider=_token_provider())
    manager.status.subscribe(_echo_status)
    manager.telemetry.subscribe(_echo_telemetry)
    try:
        for device_id in device_ids:
            try:
                await manager.connect(device_id)
            except YotoError as e:
                typer.echo(f"{device_id}: {e} {e.hint}", err=True)
        if not manager.device_ids:
            raise typer.Exit(1)
        typer.echo("Watching for updates... (Ctrl+C to stop)")
        await asyncio.Event().wait()
    finally:
        await manager.close()


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def _parse_days(text: str) -> set[int]:
    """Parse ``weekdays``, ``mon,wed``, ``1,3`` and similar."""
    key = text.strip().lower()
    if key in _DAY_ALIASES:
        return set(_DAY_ALIASES[key])
    names = [n.lower() for n in DAY_NAMES]
    days: set[int] = set()
    for part in key.split(","):
        part = part.strip()[:3]
        if part.isdigit():
            days.add(int(part))
        elif part in names:
            days.add(names.index(part))
        else:
            raise ValueError(f"Invalid day '{part}'. Use 0-6, sun..sat, weekdays or weekends.")
    return days


def _describe(schedule: Schedule, now: datetime) -> str:
    state = "on " if schedule.enabled else "off"
    repeat = "weekly" if schedule.repeat_mode is RepeatMode.WEEKLY else "once"
    nxt = next_execution_time(schedule, now)
    nxt_text = nxt.strftime("%a %H:%M") if nxt else "--"
    return (
        f"  [{state}] {schedule.id}  {schedule.time_of_day:%H:%M} "
        f"{format_days(schedule.days_of_week)} ({repeat})  {schedule.label} "
        f"-> {schedule.device_name or schedule.device_id}  next: {nxt_text}"
    )


@schedule_app.command("add")
def schedule_add(
    device_id: str = typer.Argument(..., help="Player device ID"),
    card_uri: str = typer.Argument(..., help="Card URI to play"),
    at: str = typer.Option(..., "--at", help="Time of day, HH:MM (24-hour)"),
    days: str = typer.Option("daily", "--days", "-d", help="e.g. weekdays, mon,wed, 0,6"),
    once: bool = typer.Option(False, "--once", help="Fire once, then disable"),
    notify_offline: bool = typer.Option(
        False, "--notify-offline", help="Notify when the player is offline at trigger time"
    ),
    title: str = typer.Option("", "--title", help="Card title for display"),
    device_name: str = typer.Option("", "--device-name", help="Player name for display"),
) -> None:
    """Schedule a card to play at a time of day."""
    try:
        time_of_day = parse_time_of_day(at)
        day_set = _parse_days(days)
        schedule = asyncio.run(
            _store().create(
                device_id,
                card_uri,
                time_of_day,
                day_set,
                repeat_mode=RepeatMode.NONE if once else RepeatMode.WEEKLY,
                notify_if_offline=notify_offline,
                card_title=title,
                device_name=device_name,
            )
        )
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Created schedule {schedule.id}.")
    typer.echo(_describe(schedule, datetime.now()))


@schedule_app.command("list")
def schedule_list(
    device_id: str | None = typer.Option(None, "--device", help="Only this player"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List schedules."""
    schedules = _store().list(device_id)
    if as_json:
        _print_json([s.to_dict() for s in schedules])
        return
    if not schedules:
        typer.echo("No schedules.")
        return
    now = datetime.now()
    for schedule in schedules:
        typer.echo(_describe(schedule, now))


@schedule_app.command("remove")
def schedule_remove(schedule_id: str = typer.Argument(..., help="Schedule ID")) -> None:
    """Delete a schedule."""
    if not asyncio.run(_store().delete(schedule_id)):
        typer.echo(f"No schedule with id '{schedule_id}'.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted schedule {schedule_id}.")


def _set_enabled(schedule_id: str, enabled: bool) -> None:
    try:
        asyncio.run(_store().set_enabled(schedule_id, enabled))
    except KeyError:
        typer.echo(f"No schedule with id '{schedule_id}'.", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Schedule {schedule_id} {'enabled' if enabled else 'disabled'}.")


@schedule_app.command("enable")
def schedule_enable(schedule_id: str = typer.Argument(..., help="Schedule ID")) -> None:
    """Enable a schedule."""
    _set_enabled(schedule_id, True)


@schedule_app.command("disable")
def schedule_disable(schedule_id: str = typer.Argument(..., help="Schedule ID")) -> None:
    """Disable a schedule."""
    _set_enabled(schedule_id, False)


@schedule_app.command("next")
def schedule_next(schedule_id: str = typer.Argument(..., help="Schedule ID")) -> None:
    """Show when a schedule fires next."""
    try:
        schedule = _store().get(schedule_id)
    except KeyError:
        typer.echo(f"No schedule with id '{schedule_id}'.", err=True)
        raise typer.Exit(1) from None
    nxt = next_execution_time(schedule, datetime.now())
    if nxt is None:
        typer.echo("Will not run again.")
    else:
        typer.echo(nxt.strftime("%A %Y-%m-%d %H:%M"))


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class _EchoNotifier:
    def notify(self, title: str, body: str) -> None:
        typer.echo(f"[{_ts()}] {title}: {body}", err=True)


@app.command()
def run(
    interval: float = typer.Option(60, "--interval", help="Seconds between schedule checks"),
) -> None:
    """Connect to scheduled players and fire schedules until Ctrl+C."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_run_async(interval))


async def _run_async(interval: float) -> None:
    """Async implementation of the run command."""
    store = _store()
    await store.cleanup(datetime.now())
    device_ids = sorted({s.device_id for s in store.list() if s.enabled})
    if not device_ids:
        typer.echo("No enabled schedules.", err=True)
        raise typer.Exit(1)

    manager = ConnectionManager(token_provider=_token_provider())
    manager.status.subscribe(_echo_status)
    clock = SchedulerClock(store, manager, notifier=_EchoNotifier(), interval=interval)
    try:
        for device_id in device_ids:
            try:
                await manager.connect(device_id)
            except YotoError as e:
                typer.echo(f"{device_id}: {e} {e.hint}", err=True)
        clock.start()
        typer.echo(f"Scheduler running for {len(device_ids)} player(s)... (Ctrl+C to stop)")
        await asyncio.Event().wait()
    finally:
        await clock.stop()
        await manager.close()
