"""
Labdex CLI

Command-line interface for syncing and searching the GitLab cache.

Usage::

    labdex sync                       # Refresh the cache from GitLab
    labdex query "res infra"          # Fuzzy search projects and MRs
    labdex query "res infra!retry"    # Drill into one project's MRs
    labdex activate project:42        # Open an entry in the browser
    labdex stats                      # Show cache statistics
    labdex mcp                        # Start the MCP server
"""

import logging
import time

import click

from labdex.client import ACTIONS, Labdex
from labdex.core.config import LabdexConfig
from labdex.core.search import ResultFormatter
from labdex.exceptions import LabdexError


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

def _configure_logging(config: LabdexConfig, verbose: bool) -> None:
    """Set up logging for the CLI session."""
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=config.log_format)
    # Suppress noisy HTTP loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Top-level group
# ---------------------------------------------------------------------------

@click.group()
@click.version_option(package_name="labdex")
@click.option("--gitlab-url", default=None, envvar="LABDEX_GITLAB_URL",
              help="Forge root URL (default: $LABDEX_GITLAB_URL or https://gitlab.com).")
@click.option("--cache-dir", type=click.Path(file_okay=False), default=None,
              help="Cache directory (default: $LABDEX_CACHE_DIR or $XDG_CACHE_HOME/labdex).")
@click.pass_context
def cli(ctx: click.Context, gitlab_url: str | None, cache_dir: str | None):
    """Labdex — fuzzy search over your GitLab projects and merge requests."""
    config = LabdexConfig.from_env()
    if gitlab_url:
        config.gitlab_url = gitlab_url.rstrip("/")
    if cache_dir:
        config.cache_dir = cache_dir
    ctx.obj = config


# ---------------------------------------------------------------------------
# labdex sync
# ---------------------------------------------------------------------------

@cli.command()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_obj
def sync(config: LabdexConfig, verbose: bool):
    """Fetch projects and open merge requests into the local cache."""
    _configure_logging(config, verbose)
    _validate_config(config)

    with Labdex(config=config) as dex:
        try:
            result = dex.sync(show_progress=True)
        except LabdexError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(1)

    click.echo("─" * 50)
    click.echo("  LABDEX — Sync Complete")
    click.echo("─" * 50)
    click.echo(f"  Projects          {result.projects_fetched:>8,}")
    click.echo(f"  Pruned            {result.projects_pruned:>8,}")
    click.echo(f"  Assigned MRs      {result.assigned:>8,}")
    click.echo(f"  Authored MRs      {result.authored:>8,}")
    click.echo(f"  Reviewing MRs     {result.reviewing:>8,}")
    click.echo(f"  Errors            {result.errors:>8,}")
    click.echo(f"  Elapsed           {result.elapsed_seconds:>8.2f}s")
    click.echo("─" * 50)
    if result.errors:
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# labdex query
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("query", default="")
@click.option("--exact", is_flag=True, help="Require contiguous substring matches.")
@click.option("-f", "--format", "fmt",
              type=click.Choice(["console", "json", "compact"]),
              default="console", help="Output format.")
@click.option("-n", "--max-results", type=int, default=None,
              help="Maximum number of results.")
@click.option("--min-score", type=int, default=None,
              help="Minimum score to display (default: $LABDEX_MIN_SCORE or 20).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_obj
def query(config: LabdexConfig, query: str, exact: bool, fmt: str,
          max_results: int | None, min_score: int | None, verbose: bool):
    """Search the cache with QUERY (``project words[!mr words]``)."""
    _configure_logging(config, verbose)
    t0 = time.perf_counter()

    with Labdex(config=config) as dex:
        entries = dex.query(query, exact=exact)

    # Browsing (empty query) shows everything; scores there are synthetic.
    if query:
        threshold = min_score if min_score is not None else config.min_score
        entries = [e for e in entries if e.score >= threshold]
    if max_results is not None:
        entries = entries[:max_results]

    elapsed = time.perf_counter() - t0
    formatter = ResultFormatter()
    if fmt == "json":
        click.echo(formatter.format_json(entries))
    elif fmt == "compact":
        click.echo(formatter.format_compact(entries))
    else:
        click.echo(formatter.format_console(entries, elapsed_time=elapsed))


# ---------------------------------------------------------------------------
# labdex activate
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("identifier")
@click.option("-a", "--action", type=click.Choice(ACTIONS), default="open",
              help="What to do with the entry (default: open).")
@click.option("-q", "--query", "query_text", default="",
              help="Query the entry was found with (recorded in usage history).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_obj
def activate(config: LabdexConfig, identifier: str, action: str, query_text: str,
             verbose: bool):
    """Act on IDENTIFIER (``project:<id>`` or ``mr:<id>``)."""
    _configure_logging(config, verbose)

    with Labdex(config=config) as dex:
        try:
            if action == "refresh":
                # The process exits right away, so a detached refresh would die with it.
                dex.sync()
                ok = True
            else:
                ok = dex.activate(identifier, action=action, query=query_text)
        except LabdexError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(1)

    if not ok:
        click.echo(f"Error: could not {action} '{identifier}'", err=True)
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# labdex stats
# ---------------------------------------------------------------------------

@cli.command()
@click.pass_obj
def stats(config: LabdexConfig):
    """Show cache statistics."""
    db = config.get_cache_path()
    if not db.exists():
        click.echo(f"No cache found at {db}. Run 'labdex sync' first.", err=True)
        raise SystemExit(1)

    with Labdex(config=config) as dex:
        s = dex.stats()
    click.echo("─" * 50)
    click.echo("  LABDEX — Cache Statistics")
    click.echo("─" * 50)
    click.echo(f"  Cache location : {db}")
    click.echo(f"  Last sync      : {s.get('last_sync_at') or 'never'}")
    click.echo()
    click.echo(f"  Projects          {s['projects']:>8,}")
    click.echo(f"  Merge requests    {s['merge_requests']:>8,}")
    for role in ("assigned", "authored", "reviewing"):
        click.echo(f"    {role:<15} {s.get(role, 0):>8,}")
    click.echo("─" * 50)


# ---------------------------------------------------------------------------
# labdex doc
# ---------------------------------------------------------------------------

@cli.command()
@click.pass_obj
def doc(config: LabdexConfig):
    """Print usage documentation."""
    click.echo(Labdex(config=config).doc())


# ---------------------------------------------------------------------------
# labdex mcp
# ---------------------------------------------------------------------------

@cli.command()
@click.option("--transport", type=click.Choice(["stdio", "sse"]),
              default="stdio", help="MCP transport (default: stdio).")
@click.option("-v", "--verbose", is_flag=True)
@click.pass_obj
def mcp(config: LabdexConfig, transport: str, verbose: bool):
    """Start the Labdex MCP server for agent integration."""
    _configure_logging(config, verbose)
    try:
        from labdex.mcp.server import create_server  # noqa: E402
    except ImportError:
        click.echo(
            "Error: MCP dependencies not installed.\n"
            "Install with:  pip install 'labdex[mcp]'",
            err=True,
        )
        raise SystemExit(1)

    server = create_server(config)
    server.run(transport=transport)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _validate_config(config: LabdexConfig) -> None:
    """Exit with a readable message when the configuration is unusable."""
    try:
        config.validate()
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    cli()
