"""Typer CLI entrypoint for realty-ingest."""

from __future__ import annotations

import signal
from dataclasses import dataclass
from pathlib import Path
from threading import Event
from typing import Iterable, Optional, Sequence

import httpx
import typer
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, EngineConfig
from .engine import DeduplicationCache, JitterEngine, MarketplaceClient, Segment, SegmentWorker, resolve_segments
from .engine.antibot import BackoffPolicy, BlockDetector
from .errors import ConfigurationError
from .infra import ProxyPool, TokenBucket
from .logging_conf import (
    available_segment_logs,
    configure_logging,
    engine_log_path,
    segment_log_path,
    segment_logger,
    tail_log,
)
from .scheduler import APSchedulerAdapter
from .sinks import BaseSink, build_sink
from .supervisor import Supervisor

CONFIG_ERROR_EXIT = 2

app = typer.Typer(
    help="realty-ingest command line",
    no_args_is_help=True,
    rich_markup_mode=None,
)
log_app = typer.Typer(
    name="log",
    help="Inspect log files",
    no_args_is_help=True,
    rich_markup_mode=None,
)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    verbose: bool = False


@dataclass
class Engine:
    """Everything ``run`` needs to start and tear down."""

    config: EngineConfig
    segments: list[Segment]
    supervisor: Supervisor
    client: MarketplaceClient
    sink: BaseSink

    def close(self) -> None:
        self.client.close()
        self.sink.flush()
        self.sink.close()


def build_state(verbose: bool = False) -> AppState:
    configure_logging(verbose=verbose)
    return AppState(repository=ConfigRepository(), verbose=verbose)


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def build_engine(
    config: EngineConfig,
    repository: ConfigRepository | None = None,
    only: Sequence[str] | None = None,
    transport: httpx.BaseTransport | None = None,
    sink: BaseSink | None = None,
    scheduler: APSchedulerAdapter | None = None,
) -> Engine:
    """Wire catalog, shared components and the supervisor from configuration."""

    segments = resolve_segments(config, only)
    client = MarketplaceClient(
        config,
        transport=transport,
        detector=BlockDetector(config.block.status_codes, config.block.body_markers),
    )
    if sink is None:
        resolver = repository.locator.resolve if repository is not None else None
        sink = build_sink(config.sink, source_id=config.source_id, resolve=resolver)
    cache = DeduplicationCache()
    jitter = JitterEngine(price_step=config.price_step, policy=config.price_jitter)
    proxy_pool = (
        ProxyPool(config.proxy.addresses, cooldown_seconds=config.proxy.cooldown_seconds)
        if config.proxy_enabled
        else None
    )
    rate_limiter = (
        TokenBucket(config.rate_limit.requests_per_second, config.rate_limit.burst)
        if config.rate_limit.enabled
        else None
    )
    backoff = BackoffPolicy.from_config(config.backoff)

    def worker_factory(segment: Segment, stop_event: Event) -> SegmentWorker:
        return SegmentWorker(
            segment,
            config,
            client=client,
            cache=cache,
            sink=sink,
            jitter=jitter,
            stop_event=stop_event,
            proxy_pool=proxy_pool,
            rate_limiter=rate_limiter,
            backoff=backoff,
            logger=segment_logger(segment.slug),
        )

    supervisor = Supervisor(
        segments,
        worker_factory,
        config=config.supervisor,
        cache=cache,
        scheduler=scheduler or APSchedulerAdapter(),
        repository=repository,
        cache_rotation_minutes=config.cache_rotation_minutes,
        status_interval_seconds=config.status_interval_seconds,
    )
    return Engine(config, segments, supervisor, client, sink)


def _load(state: AppState, config_path: Optional[Path], only: Sequence[str] | None = None) -> tuple[EngineConfig, list[Segment]]:
    try:
        config = state.repository.load_config(config_path)
        segments = resolve_segments(config, only)
    except ConfigurationError as exc:
        console.print(f"Configuration error: {exc}", style="red")
        raise typer.Exit(code=CONFIG_ERROR_EXIT) from exc
    return config, segments


def _render_segments_table(segments: Iterable[Segment]) -> Table:
    segments = list(segments)
    table = Table(title=f"Segments · {len(segments)}", box=box.SIMPLE_HEAD)
    table.add_column("Segment", style="cyan", no_wrap=True)
    table.add_column("Location", style="magenta")
    table.add_column("rgid", style="green")
    table.add_column("Type")
    table.add_column("priceMin", style="yellow")
    table.add_column("priceMax", style="yellow")
    table.add_column("Sleep (s)")
    table.add_column("Today only")
    for segment in segments:
        info = segment.describe()
        table.add_row(
            info["segment"],
            segment.name,
            str(segment.rgid),
            segment.deal_type,
            "-" if not info["price_min"] else "{}..{}".format(*info["price_min"]),
            "-" if not info["price_max"] else "{}..{}".format(*info["price_max"]),
            f"{segment.sleep_min_us / 1e6:g}-{segment.sleep_max_us / 1e6:g}",
            "yes" if segment.filter_today_only else "no",
        )
    return table


def _render_status_table(payload: dict) -> Table:
    table = Table(title=f"Status · updated {payload.get('updated_at', '-')}", box=box.SIMPLE_HEAD)
    for column in ("Segment", "State", "Cycles", "Novel", "Seen", "Dropped", "Streak", "Proxy", "Restarts"):
        table.add_column(column)
    for row in payload.get("segments", []):
        state = "permanently_failed" if row.get("permanently_failed") else str(row.get("state", "-"))
        table.add_row(
            str(row.get("segment", "-")),
            state,
            str(row.get("cycles", 0)),
            str(row.get("novel", 0)),
            str(row.get("seen", 0)),
            str(row.get("dropped", 0)),
            str(row.get("failure_streak", 0)),
            str(row.get("proxy") or "-"),
            str(row.get("restarts", 0)),
        )
    return table


app.add_typer(log_app, name="log", help="List or tail log files")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


@app.command("run", help="Start one worker per segment and run until interrupted.")
def run(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file."),
    only: Optional[list[str]] = typer.Option(None, "--only", help="Run only these <location>:<category> segments."),
    duration: Optional[float] = typer.Option(None, "--duration", help="Stop after N seconds."),
) -> None:
    state = _get_state(ctx)
    config, _ = _load(state, config_path, only)
    try:
        engine = build_engine(config, state.repository, only)
    except ConfigurationError as exc:
        console.print(f"Configuration error: {exc}", style="red")
        raise typer.Exit(code=CONFIG_ERROR_EXIT) from exc
    supervisor = engine.supervisor

    def _request_stop(signum, _frame) -> None:  # noqa: ANN001
        console.print(f"Received signal {signum}, shutting down…", style="yellow")
        supervisor.stop_event.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    console.print(_render_segments_table(engine.segments))
    try:
        supervisor.start()
        if duration is not None:
            supervisor.stop_event.wait(duration)
        else:
            supervisor.wait()
    finally:
        clean = supervisor.stop()
        engine.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    if not clean:
        console.print("Some workers did not stop within the shutdown timeout.", style="red")
        raise typer.Exit(code=1)
    console.print("Stopped.", style="green")


@app.command("segments", help="Show the resolved segment catalog.")
def segments_command(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file."),
    only: Optional[list[str]] = typer.Option(None, "--only", help="Filter to <location>:<category>."),
) -> None:
    state = _get_state(ctx)
    _, segments = _load(state, config_path, only)
    console.print(_render_segments_table(segments))


@app.command("check-config", help="Validate the configuration without starting workers.")
def check_config(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Configuration file."),
) -> None:
    state = _get_state(ctx)
    config, segments = _load(state, config_path)
    warnings = []
    if not config.auth_token:
        warnings.append("auth_token is empty; requests will be rejected by the API.")
    if config.proxy.enabled and not config.proxy.addresses:
        warnings.append("proxy.enabled is set but proxy.list is empty; running unproxied.")
    for message in warnings:
        console.print(message, style="yellow")
    console.print(f"Configuration OK: {len(segments)} segment(s).", style="green")


@app.command("status", help="Show the latest per-segment status snapshot.")
def status(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    payload = state.repository.read_status()
    if not payload:
        console.print("No status snapshot yet; start the engine with `realty-ingest run`.", style="dim")
        raise typer.Exit(code=0)
    console.print(_render_status_table(payload))


@log_app.command("list", help="List per-segment log files.")
def log_list() -> None:
    logs = list(available_segment_logs())
    if not logs:
        console.print("No segment logs yet.", style="dim")
        return
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("File", style="green")
    for path in logs:
        table.add_row(path.name)
    console.print(table)


@log_app.command("tail", help="Show the last lines of a segment or the engine log.")
def log_tail(
    segment: Optional[str] = typer.Option(None, "--segment", help="Segment slug (engine log when empty)."),
    lines: int = typer.Option(100, "--lines", "-n", help="Number of lines."),
) -> None:
    if segment:
        path = segment_log_path(segment)
    else:
        path = engine_log_path()
    content = tail_log(path, lines)
    if not content:
        console.print("No log lines yet.", style="dim")
        return
    console.print(f"{path.name} · last {len(content)} lines", style="cyan")
    console.print("".join(content), markup=False, highlight=False)


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
