import time
import typer
from pathlib import Path
from typing import Optional
from rich.progress import Progress, BarColumn, SpinnerColumn, TextColumn, TimeElapsedColumn
from vea.config.loader import load_config, write_default_encoder_config
from vea.config.models import AppConfig
from vea.domain.errors import SetupError, VeaError
from vea.infrastructure.logging import setup_logging
from vea.infrastructure.web_server import VEAWebServer
from vea.pipeline.agent import EncodingAgent

app = typer.Typer(help="VEA (Video Encoding Agent) - distributed HandBrake batch encoding")


def _load(config_path: Optional[Path]) -> AppConfig:
    if config_path is None:
        return AppConfig()
    try:
        return load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def run(
    config_path: Path = typer.Option(Path("conf/vea.yaml"), "--config", "-c", help="Path to YAML config"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Override status server port"),
    no_web: bool = typer.Option(False, "--no-web", help="Do not start the status server"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Watch the storage tree and encode everything that arrives."""
    config = _load(config_path)
    if port is not None:
        config.web.port = port
    if no_web:
        config.web.enabled = False
    if log_path is not None:
        config.general.log_path = str(log_path)
    if debug:
        config.general.debug = True

    logger = setup_logging(config.general.staging_dir, debug=config.general.debug, log_path=config.general.log_path)
    agent = EncodingAgent(config)
    try:
        agent.start()
    except SetupError as exc:
        logger.error(f"Setup failed: {exc}")
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    web = None
    if config.web.enabled:
        web = VEAWebServer(agent, port=config.web.port, host=config.web.host)
        web.start()

    typer.secho("Agent running. Press Ctrl+C to stop.", fg=typer.colors.GREEN)
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        typer.secho("\nStopping agent...", fg=typer.colors.YELLOW)
    finally:
        if web:
            web.stop()
        agent.shutdown()


@app.command()
def crop(
    video: Path = typer.Argument(..., help="Video file to analyse"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Seconds between sampled frames"),
    min_captures: Optional[int] = typer.Option(None, "--min-captures", help="Minimum number of sampled frames"),
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Snapshot worker count"),
    debug_frames: Optional[Path] = typer.Option(None, "--debug-frames", help="Save frames that widened the rectangle here"),
):
    """Compute a smart crop rectangle for one video."""
    config = _load(config_path)
    if interval is not None:
        config.crop.capture_interval_s = interval
    if min_captures is not None:
        config.crop.minimum_captures = min_captures
    if threads is not None:
        config.crop.max_threads = threads
    if debug_frames is not None:
        config.crop.debug_frames_dir = debug_frames

    agent = EncodingAgent(config)
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
    ) as progress:
        bar = progress.add_task(f"Sampling {video.name}", total=1.0)
        engine = agent.create_crop_engine(
            video,
            on_frame=lambda fraction, image: progress.update(bar, completed=fraction),
        )
        try:
            rect = engine.calculate()
        except (VeaError, OSError) as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        progress.update(bar, completed=1.0)

    if rect is None:
        typer.secho("No picture content found; no crop.", fg=typer.colors.YELLOW)
        return
    typer.echo(f"Rectangle: {rect}")
    typer.echo(f"Cropped size: {rect.cropped_width}x{rect.cropped_height}, frames analysed: {engine.frames_processed}")
    typer.echo(f"HandBrake: --crop {rect.to_handbrake()}")


@app.command("init-encoder")
def init_encoder(
    path: Path = typer.Argument(Path("encoder.yaml"), help="Where to write the default encoder config"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a default per-batch encoder config."""
    if path.exists() and not force:
        typer.secho(f"Error: {path} already exists (use --force)", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    write_default_encoder_config(path)
    typer.echo(f"Wrote {path}")


if __name__ == "__main__":
    app()
