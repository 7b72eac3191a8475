"""Typer CLI for socwatch: live SoC telemetry in the terminal."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.live import Live

from socwatch.config import SocwatchConfig
from socwatch.core.aggregator import RollingAggregator
from socwatch.core.driver import PipelineDriver
from socwatch.core.host import HostSampler
from socwatch.core.parser import StreamParser
from socwatch.core.soc import SocInfo
from socwatch.core.store import SnapshotStore
from socwatch.core.supervisor import ProcessSupervisor
from socwatch.errors import ConfigError, SpawnError
from socwatch.logging_setup import setup_logging
from socwatch.models.enums import PipelineState

from socwatch.cli.dashboard import build_dashboard
from socwatch.cli.keys import KeyReader, is_quit

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_SPAWN = 3
EXIT_FAILED = 4

logger = logging.getLogger("socwatch.cli")

app = typer.Typer(
    name="socwatch",
    help="Live CPU/GPU/ANE utilization, power, memory and I/O for Apple Silicon.",
    add_completion=False,
)
console = Console(stderr=True)


def build_driver(config: SocwatchConfig, soc: SocInfo) -> tuple[PipelineDriver, SnapshotStore]:
    """Wire supervisor, parser, aggregator and store into a driver."""
    stop = threading.Event()
    supervisor = ProcessSupervisor(
        config.supervisor,
        interval=config.sampling.interval,
        max_count=config.sampling.max_count,
        stop_event=stop,
    )
    parser = StreamParser(
        interval=config.sampling.interval,
        max_record_bytes=config.supervisor.max_record_bytes,
        ane_max_power_mw=soc.ane_max_power_mw,
    )
    store = SnapshotStore()
    driver = PipelineDriver(
        supervisor,
        parser,
        RollingAggregator(config.sampling.avg),
        store,
        host=HostSampler(),
        poll_timeout=config.supervisor.poll_timeout,
        stop_event=stop,
    )
    return driver, store


def run_dashboard(
    driver: PipelineDriver,
    store: SnapshotStore,
    soc: SocInfo,
    config: SocwatchConfig,
) -> PipelineState:
    """Render until the user quits or the pipeline ends, then stop and join the driver."""
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, lambda *_: driver.stop())

    driver.start()
    try:
        with KeyReader() as keys, Live(
            build_dashboard(store.latest(), soc, config.display, driver.state),
            console=Console(),
            screen=True,
            auto_refresh=False,
        ) as live:
            shown = -1
            while not driver.stop_event.is_set() and not driver.state.terminal:
                if is_quit(keys.read(config.display.refresh)):
                    break
                snapshot = store.latest()
                if snapshot.generation != shown:
                    live.update(
                        build_dashboard(snapshot, soc, config.display, driver.state),
                        refresh=True,
                    )
                    shown = snapshot.generation
    except KeyboardInterrupt:
        pass
    finally:
        driver.stop()
        driver.join()
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
    return driver.state


def _ensure_privileges(command: tuple[str, ...]) -> None:
    """Prompt for sudo credentials up front so the prompt never fights the dashboard."""
    if not command or command[0] != "sudo" or os.geteuid() == 0:
        return
    try:
        result = subprocess.run(["sudo", "-v"])
    except OSError as exc:
        raise SpawnError(f"Cannot run sudo: {exc}") from exc
    if result.returncode != 0:
        raise SpawnError("sudo authentication failed; powermetrics needs root")


@app.command()
def monitor(
    interval: Annotated[
        Optional[float], typer.Option("--interval", help="Sampling interval in seconds (> 0)")
    ] = None,
    avg: Annotated[
        Optional[float], typer.Option("--avg", help="Rolling average window in seconds (>= interval)")
    ] = None,
    color: Annotated[
        Optional[int], typer.Option("--color", help="Display color 0-8")
    ] = None,
    show_cores: Annotated[
        Optional[bool], typer.Option("--show-cores/--no-show-cores", help="Show per-core gauges")
    ] = None,
    max_count: Annotated[
        Optional[int],
        typer.Option("--max-count", help="Restart the sampler every N samples (0 = never)"),
    ] = None,
    config_dir: Annotated[
        Optional[Path], typer.Option("--config-dir", help="Directory holding config.toml")
    ] = None,
    log_file: Annotated[
        Optional[Path], typer.Option("--log-file", help="Write logs to this file")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Run the live dashboard."""
    level = logging.DEBUG if verbose else logging.INFO
    if log_file is None:
        # The dashboard owns the terminal; only warnings reach stderr
        level = max(level, logging.WARNING)
    setup_logging(level, log_file)

    try:
        config = (
            SocwatchConfig.load(config_dir)
            .with_overrides(
                interval=interval,
                avg=avg,
                max_count=max_count,
                color=color,
                show_cores=show_cores,
            )
            .validate()
        )
    except ConfigError as exc:
        console.print(f"[red]Invalid configuration:[/red] {exc}")
        raise typer.Exit(EXIT_CONFIG)

    try:
        _ensure_privileges(config.supervisor.command)
    except SpawnError as exc:
        console.print(f"[red]Cannot start sampler:[/red] {exc}")
        raise typer.Exit(EXIT_SPAWN)

    soc = SocInfo.detect()
    driver, store = build_driver(config, soc)
    state = run_dashboard(driver, store, soc, config)

    if state == PipelineState.FAILED:
        if isinstance(driver.error, SpawnError):
            console.print(f"[red]Cannot start sampler:[/red] {driver.error}")
            raise typer.Exit(EXIT_SPAWN)
        console.print(f"[red]Sampling failed:[/red] {driver.error}")
        raise typer.Exit(EXIT_FAILED)

    if driver.malformed_count:
        console.print(f"[dim]Dropped {driver.malformed_count} malformed records.[/dim]")
    raise typer.Exit(EXIT_OK)


def main() -> None:
    """Entry point for the socwatch CLI."""
    app()


if __name__ == "__main__":
    main()
