from __future__ import annotations

import asyncio
import importlib.metadata as md
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .config import RideConnectConfig, load_config, load_config_or_default, resolve_config_path
from .core.events import Event, EventBus, EventType
from .core.identity import ActorProvider, EnvIdentity, StaticIdentity
from .core.recovery import RideSessionRecovery
from .core.session import RideSession, RideSummary
from .domain.errors import RideError
from .domain.models import RideStatus
from .infrastructure.database.async_repository import AsyncRideRepository
from .logging_setup import setup_logging

# Typer application: tests import this
app = typer.Typer(no_args_is_help=True, add_completion=False, help="RideConnect ride tracker")
console = Console()

ConfigOption = typer.Option(Path("configs/rideconnect.yml"), "--config", "-c")
UserOption = typer.Option(None, "--user", "-u", help="Actor id (defaults to the configured env var)")
DbOption = typer.Option(None, "--db", help="Override database.path")


def _load(config: Path, db: Path | None) -> RideConnectConfig:
    cfg = load_config_or_default(config)
    if db is not None:
        cfg.database.path = db
    return cfg


def _actor(cfg: RideConnectConfig, user: str | None) -> ActorProvider:
    return StaticIdentity(user) if user else EnvIdentity(cfg.actor.user_env)


def _require_user(cfg: RideConnectConfig, user: str | None) -> str:
    user_id = _actor(cfg, user)()
    if not user_id:
        console.print(f"No rider signed in. Pass --user or set {cfg.actor.user_env}.")
        raise typer.Exit(code=1)
    return user_id


@app.command()
def version() -> None:
    """Print version information."""
    try:
        console.print(f"rideconnect {md.version('rideconnect')}")
    except md.PackageNotFoundError:
        from . import __version__

        console.print(f"rideconnect {__version__}")


@app.command(name="config-validate")
def config_validate(path: Path = typer.Argument(Path("configs/rideconnect.yml"))) -> None:
    """Validate and show resolved configuration."""
    resolved = resolve_config_path(path)
    console.print(f"Using config: {resolved}")
    try:
        cfg = load_config(resolved)
    except (OSError, ValueError) as exc:
        console.print(f"Config validation failed: {exc}")
        raise typer.Exit(code=1) from exc
    console.print("Config OK.")
    console.print(f"- database: {cfg.database.path}")
    console.print(f"- gps: {'mock' if cfg.gps.mock_mode else f'{cfg.gps.host}:{cfg.gps.port}'}")
    console.print(f"- checkpoint every: {cfg.tracking.checkpoint_every} points")
    console.print(f"- noise filter: {'on' if cfg.tracking.filter.enabled else 'off'}")


@app.command(name="config-which")
def config_which(config: Path = ConfigOption) -> None:
    """Print resolved config path by priority rules."""
    console.print(str(resolve_config_path(config)))


@app.command()
def status(config: Path = ConfigOption, user: str | None = UserOption, db: Path | None = DbOption) -> None:
    """Show the rider's ride in progress, if any."""
    cfg = _load(config, db)
    user_id = _require_user(cfg, user)

    async def _status():
        repo = AsyncRideRepository(cfg.database.path)
        await repo.init_schema()
        try:
            return await repo.find_active_by_user(user_id)
        finally:
            await repo.close()

    ride = asyncio.run(_status())
    if ride is None:
        console.print("No ride in progress.")
        return
    console.print({
        "ride_id": ride.id,
        "started": ride.start_time.isoformat(),
        "start_location": ride.start_location,
        "distance_km": round(ride.distance_km, 2),
        "points": len(ride.route_points),
        "photos": len(ride.photos),
    })


@app.command()
def rides(
    config: Path = ConfigOption,
    user: str | None = UserOption,
    db: Path | None = DbOption,
    limit: int = typer.Option(20, "--limit", min=1),
    all_statuses: bool = typer.Option(False, "--all", help="Include in-progress and cancelled rides"),
) -> None:
    """List the rider's rides, newest first."""
    cfg = _load(config, db)
    user_id = _require_user(cfg, user)

    async def _list():
        repo = AsyncRideRepository(cfg.database.path)
        await repo.init_schema()
        try:
            status_filter = None if all_statuses else RideStatus.COMPLETED
            return await repo.list_rides(user_id, status=status_filter, limit=limit), await repo.get_stats(user_id)
        finally:
            await repo.close()

    found, stats = asyncio.run(_list())
    if not found:
        console.print("No rides yet.")
        return

    table = Table(title=f"Rides for {user_id}")
    table.add_column("Ride")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("km", justify="right")
    table.add_column("min", justify="right")
    table.add_column("Photos", justify="right")
    for ride in found:
        table.add_row(
            ride.id[:8],
            ride.start_time.strftime("%Y-%m-%d %H:%M"),
            ride.status.value,
            f"{ride.distance_km:.2f}",
            str(ride.duration_minutes or 0),
            str(len(ride.photos)),
        )
    console.print(table)
    console.print(
        f"{stats['rides_total']} completed rides, {stats['distance_km_total']:.1f} km total"
    )


async def _track(
    cfg: RideConnectConfig,
    actor: ActorProvider,
    duration: float,
    cancel: bool,
    description: str | None,
    tags: list[str],
) -> RideSummary | None:
    repo = AsyncRideRepository(cfg.database.path)
    await repo.init_schema()
    bus = EventBus()
    await bus.start()

    @bus.on(EventType.RIDE_CHECKPOINT)
    async def _on_checkpoint(event: Event) -> None:
        console.print(f"checkpoint: {event.data['distance_km']:.2f} km, {event.data['points']} points")

    @bus.on(EventType.GPS_ERROR)
    async def _on_gps_error(event: Event) -> None:
        console.print(f"GPS error: {event.data['error']}")

    @bus.on(EventType.GPS_DEGRADED)
    async def _on_degraded(event: Event) -> None:
        console.print("GPS signal is weak. Try an open area.")

    session = RideSession.from_config(cfg, repo, actor, bus=bus)
    try:
        if await RideSessionRecovery(session, repo, actor).recover() is not None:
            console.print(f"Resumed ride {session.ride_id} ({session.distance_km:.2f} km so far)")
        else:
            record = await session.start()
            console.print(f"Ride {record.id} started at {record.start_location}")

        await asyncio.sleep(duration)

        if cancel:
            await session.cancel()
            console.print("Ride cancelled.")
            return None
        return await session.complete(description=description, tagged_users=tags)
    finally:
        await session.close()
        await bus.stop()
        await repo.close()


@app.command()
def track(
    config: Path = ConfigOption,
    user: str | None = UserOption,
    db: Path | None = DbOption,
    duration: float = typer.Option(60.0, "--duration", "-d", min=0, help="Seconds to track"),
    mock: bool = typer.Option(False, "--mock", help="Use simulated GPS"),
    cancel: bool = typer.Option(False, "--cancel", help="Cancel instead of completing"),
    description: str | None = typer.Option(None, "--description"),
    tag: list[str] = typer.Option([], "--tag", help="Tag a riding buddy (repeatable)"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Resume or start a ride, track it for DURATION seconds, then finish it."""
    cfg = _load(config, db)
    if mock:
        cfg.gps.mock_mode = True
    setup_logging(cfg.logging, verbose=verbose)

    try:
        summary = asyncio.run(_track(cfg, _actor(cfg, user), duration, cancel, description, tag))
    except RideError as exc:
        console.print(f"[red]{exc.user_message}[/red] ({exc})")
        raise typer.Exit(code=1) from exc

    if summary is not None:
        console.print({
            "ride_id": summary.ride_id,
            "distance_km": round(summary.distance_km, 3),
            "duration_minutes": summary.duration_minutes,
            "points": summary.points,
            "average_speed_kmh": round(summary.average_speed_kmh, 1),
            "max_speed_kmh": round(summary.max_speed_kmh, 1),
        })


@app.command(name="export-gpx")
def export_gpx(
    ride_id: str = typer.Argument(...),
    output: Path = typer.Argument(...),
    config: Path = ConfigOption,
    db: Path | None = DbOption,
) -> None:
    """Write a ride's route as a GPX track."""
    cfg = _load(config, db)

    async def _export() -> int:
        repo = AsyncRideRepository(cfg.database.path)
        await repo.init_schema()
        try:
            return await repo.export_gpx(ride_id, output)
        finally:
            await repo.close()

    count = asyncio.run(_export())
    if count == 0:
        console.print(f"Ride {ride_id} not found or has no route.")
        raise typer.Exit(code=1)
    console.print({"points": count, "output": str(output)})


# Click command for tests and the console script
cli = typer.main.get_command(app)


if __name__ == "__main__":
    cli()
