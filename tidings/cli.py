import json
import logging
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from tidings.collectors.scheduler import publish_scopes
from tidings.config import Config
from tidings.constants import CONTENT_PRIORITY
from tidings.errors import TidingsError
from tidings.server import Server
from tidings.types import RegionScope


class ColoredFormatter(logging.Formatter):
    """
    Custom formatter with colors for different log levels
    """

    COLORS = {
        logging.DEBUG: "\033[90m",  # Grey
        logging.INFO: "\033[37m",  # White
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[31m",  # Red
    }
    RESET = "\033[0m"

    ABBREVIATIONS = {
        "DEBUG": "DBG",
        "INFO": "INF",
        "WARNING": "WRN",
        "ERROR": "ERR",
        "CRITICAL": "CRT",
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        levelname_abbr = self.ABBREVIATIONS.get(record.levelname, record.levelname[:3])
        record.levelname = f"{color}{levelname_abbr:>3}{self.RESET}"
        record.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(record)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)
@click.option(
    "-r",
    "--root-path",
    type=click.Path(exists=True, path_type=Path),
    default=".",
)
@click.pass_context
def main(ctx, log_level: str, root_path: Path):
    # Configure logging with custom colored formatter
    handler = logging.StreamHandler()
    handler.setFormatter(
        ColoredFormatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%H:%M")
    )
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        handlers=[handler],
    )
    # Init is the one command that runs before there is a config
    if ctx.invoked_subcommand == "init":
        ctx.obj = root_path
        return
    try:
        root_path = Config.find_root(root_path)
    except ValueError as e:
        raise click.ClickException(f"{e} (run 'tidings init' first)")
    # Setup config object
    config = Config(root_path)
    ctx.call_on_close(config.close)
    ctx.obj = config


def _scope(country: str, region: str | None) -> RegionScope:
    return RegionScope(country, region)


@main.command()
@click.pass_obj
def init(root_path: Path):
    """
    Create a default config in the root path
    """
    try:
        config_path = Config.initialize(root_path)
    except FileExistsError as e:
        raise click.ClickException(str(e))
    click.echo(f"Created {config_path}")


@main.command()
@click.pass_obj
def server(config: Config):
    """
    Run collectors and housekeeping until interrupted
    """
    Server(config).run()


@main.command()
@click.argument("country")
@click.argument("current_version")
@click.option("--region", default=None)
@click.option("--accept-language", default=None)
@click.pass_obj
def check(
    config: Config,
    country: str,
    current_version: str,
    region: str | None,
    accept_language: str | None,
):
    """
    Run an update check as a client would
    """
    payload = {"countryCode": country, "currentVersion": current_version}
    if region:
        payload["regionCode"] = region
    try:
        response = config.api.check_update(payload, accept_language)
    except TidingsError as e:
        raise click.ClickException(str(e))
    Console().print_json(json.dumps(response))


@main.command()
@click.argument("version")
@click.argument("country")
@click.option("--region", default=None)
@click.option(
    "-o", "--output", type=click.Path(path_type=Path), default=None
)
@click.pass_obj
def download(
    config: Config, version: str, country: str, region: str | None, output: Path | None
):
    """
    Fetch a built package as a client would
    """
    try:
        package = config.api.download_package(version, country, region)
    except TidingsError as e:
        raise click.ClickException(str(e))
    output = output or Path(package.filename)
    with open(output, "wb") as fh:
        for chunk in package.chunks():
            fh.write(chunk)
    click.echo(f"Wrote {output} ({_format_size(package.size)}, sha256 {package.checksum})")


@main.command()
@click.argument("country")
@click.argument("from_version")
@click.option("--region", default=None)
@click.pass_obj
def build(config: Config, country: str, from_version: str, region: str | None):
    """
    Build the package taking a scope from a version to its latest
    """
    scope = _scope(country, region)
    latest = config.version_clock.latest_version(scope)
    try:
        changed = config.resolver.changed_files(scope, from_version, latest)
        package = config.builder.build(scope, from_version, latest, changed)
    except TidingsError as e:
        raise click.ClickException(str(e))
    console = Console()
    console.print(f"[cyan]{package.path}[/cyan]")
    console.print(f"Version:  {package.version}")
    console.print(f"Size:     {_format_size(package.size)}")
    console.print(f"Checksum: {package.checksum}")


@main.command()
@click.option("--max-age-days", type=float, default=None)
@click.pass_obj
def cleanup(config: Config, max_age_days: float | None):
    """
    Delete old update packages
    """
    if max_age_days is None:
        max_age_days = config.config_data.cleanup.max_age_days
    deleted = config.builder.cleanup(max_age_days)
    click.echo(f"{deleted} packages deleted")


@main.command()
@click.argument("country")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--region", default=None)
@click.option("--type", "content_type", default="stories")
@click.option("--title", default=None)
@click.option("--tag", "tags", multiple=True)
@click.option(
    "--priority",
    type=click.Choice([p.name for p in CONTENT_PRIORITY], case_sensitive=False),
    default=CONTENT_PRIORITY.NORMAL.name,
)
@click.pass_obj
def publish(
    config: Config,
    country: str,
    file: Path,
    region: str | None,
    content_type: str,
    title: str | None,
    tags: tuple[str, ...],
    priority: str,
):
    """
    Add a content file and issue a new version for its scope
    """
    scope = _scope(country, region)
    try:
        content = config.store.save_content(
            content_type,
            scope,
            file.name,
            file.read_bytes(),
            title=title or file.stem,
            tags=tags,
            priority=CONTENT_PRIORITY[priority.upper()],
        )
    except (TidingsError, ValueError) as e:
        raise click.ClickException(str(e))
    versions = publish_scopes([scope], config.version_clock, config.cache)
    click.echo(f"Published {content.file_path}")
    for moved, version in versions.items():
        click.echo(f"{moved} is now at {version}")


@main.command()
@click.pass_obj
def version(config: Config):
    """
    Show the service version
    """
    click.echo(config.api.current_service_version())


@main.group()
def collectors():
    """
    Inspect and control collectors
    """
    pass


@collectors.command("list")
@click.pass_obj
def collectors_list(config: Config):
    """
    List collectors and their status
    """
    console = Console()
    table = Table()

    table.add_column("ID", style="cyan")
    table.add_column("Type", style="green")
    table.add_column("Schedule", style="yellow")
    table.add_column("Status")
    table.add_column("Runs", justify="right", style="magenta")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Last run", style="yellow")

    for status in config.scheduler.statuses():
        last_run = (
            status.last_run.strftime("%Y-%m-%d %H:%M:%S")
            if status.last_run
            else "[dim]never[/dim]"
        )
        table.add_row(
            status.id,
            status.type,
            status.schedule or "[dim]manual[/dim]",
            status.status,
            str(status.success_count),
            str(status.error_count),
            last_run,
        )

    console.print(table)


@collectors.command("toggle")
@click.argument("collector_id")
@click.pass_obj
def collectors_toggle(config: Config, collector_id: str):
    """
    Enable or disable a collector for this run
    """
    try:
        enabled = config.scheduler.toggle(collector_id)
    except TidingsError as e:
        raise click.ClickException(str(e))
    click.echo(f"Collector {collector_id} {'enabled' if enabled else 'disabled'}")


@collectors.command("run")
@click.argument("collector_id")
@click.pass_obj
def collectors_run(config: Config, collector_id: str):
    """
    Run a collector now and wait for it
    """
    try:
        stats = config.scheduler.run_now(collector_id).result()
    except TidingsError as e:
        raise click.ClickException(str(e))
    status = config.scheduler.status(collector_id)
    if stats is None:
        raise click.ClickException(status.message or "Collector failed")
    click.echo(status.message)


@main.group()
def cache():
    """
    Inspect and clear the response cache
    """
    pass


@cache.command("clear")
@click.option("--pattern", default=None, help="Glob of keys to clear; all if omitted")
@click.pass_obj
def cache_clear(config: Config, pattern: str | None):
    """
    Clear cached responses
    """
    if pattern is None:
        config.cache.evict_all()
        click.echo("All caches cleared")
    else:
        removed = config.cache.evict(pattern)
        click.echo(f"{removed} entries cleared")


@cache.command("stats")
@click.pass_obj
def cache_stats(config: Config):
    """
    Show cache counters
    """
    console = Console()
    table = Table()
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right", style="magenta")
    for name, value in config.cache.stats().items():
        table.add_row(name, "[dim]None[/dim]" if value is None else str(value))
    console.print(table)


@main.group()
@click.pass_context
def debug(ctx):
    """
    Debug commands for inspecting internal state
    """
    pass


@debug.command("list-content")
@click.option("--limit", type=int, default=100)
@click.pass_obj
def list_content(config: Config, limit: int):
    """
    List the most recently published content
    """
    console = Console()
    table = Table()

    table.add_column("ID", justify="right")
    table.add_column("Path", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Size", justify="right", style="magenta")
    table.add_column("Published", style="yellow")

    for content in config.store.all_content(limit):
        published = (
            content.published_at.strftime("%Y-%m-%d %H:%M:%S")
            if content.published_at
            else "[dim]None[/dim]"
        )
        table.add_row(
            str(content.id),
            content.file_path,
            content.status.value,
            _format_size(content.file_size or 0),
            published,
        )

    console.print(table)


@debug.command("list-versions")
@click.pass_obj
def list_versions(config: Config):
    """
    List the current version of every scope
    """
    console = Console()
    table = Table()

    table.add_column("Scope", style="cyan")
    table.add_column("Version", style="green")

    for scope, version in config.versions.scopes():
        table.add_row(str(scope), version)

    console.print(table)


@debug.command("list-packages")
@click.pass_obj
def list_packages(config: Config):
    """
    List built packages, newest first
    """
    console = Console()
    table = Table()

    table.add_column("Package", style="cyan")
    table.add_column("Size", justify="right", style="magenta")
    table.add_column("Modified", style="yellow")

    for path, size, mtime in config.builder.list_packages():
        modified = datetime.fromtimestamp(mtime).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(path.name, _format_size(size), modified)

    console.print(table)


def _format_size(size: float) -> str:
    """
    Format size in human-readable units
    """
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


if __name__ == "__main__":
    main()
