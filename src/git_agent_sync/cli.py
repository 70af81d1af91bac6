"""Command line interface of git-agent-sync.

Runs the synchronization pipeline for one root and manages the shared
mirrors and the configuration file.
"""

import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AgentConfigManager, AgentSyncConfig, SUBMODULE_POLICIES
from .sync.variants import VARIANTS

console = Console()


def format_json_success(data: Any) -> str:
    """Format a successful result as {"success": true, "data": ..., "metadata": {...}}."""
    result = {
        "success": True,
        "data": data,
        "metadata": {"timestamp": datetime.now(timezone.utc).isoformat()},
    }
    return json.dumps(result, indent=2, default=str)


def format_json_error(error_message: str, error_type: Optional[str] = None) -> str:
    result = {
        "success": False,
        "error": error_message,
        "error_type": error_type or "Error",
    }
    return json.dumps(result, indent=2)


def _handle_error(e: Exception, json_output: bool = False) -> None:
    if json_output:
        click.echo(format_json_error(str(e), type(e).__name__))
    else:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
    sys.exit(1)


def _load_config(ctx: click.Context) -> AgentSyncConfig:
    manager: AgentConfigManager = ctx.obj["config_manager"]
    try:
        config = manager.load_or_default()
    except ValueError as e:
        raise click.ClickException(str(e))
    if not ctx.obj.get("verbose"):
        logging.getLogger().setLevel(config.log_level.upper())
    return config


def _mirror_manager(config: AgentSyncConfig):
    from .git.command import GitCommandRunner
    from .mirrors.mirror_manager import MirrorManager

    assert config.mirrors is not None
    return MirrorManager(Path(config.mirrors.mirrors_dir), GitCommandRunner(config.git_path))


@click.group("git-agent-sync")
@click.version_option(__version__, prog_name="git-agent-sync")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file (default: ~/.git-agent-sync/config.json)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log git commands")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """Synchronize CI build working directories with git repositories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config_manager"] = AgentConfigManager(config_path)
    ctx.obj["verbose"] = verbose


# ----------------------------------------------------------------------
# checkout
# ----------------------------------------------------------------------


@cli.command("checkout")
@click.argument("url")
@click.option("--revision", required=True, help="Commit sha to check out")
@click.option("--branch", required=True, help="Branch or tag the revision belongs to")
@click.option(
    "--dir", "checkout_dir", required=True, type=click.Path(file_okay=False, path_type=Path), help="Checkout directory"
)
@click.option("--variant", type=click.Choice(sorted(VARIANTS)), default=None, help="Override the update variant")
@click.option("--rules", default=None, help="Checkout rules, one per line (e.g. '+:src => .')")
@click.option("--submodules", type=click.Choice(SUBMODULE_POLICIES), default=None, help="Submodule policy")
@click.option("--upper-limit", default=None, help="Newest revision the build changes were collected for")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def checkout_command(
    ctx: click.Context,
    url: str,
    revision: str,
    branch: str,
    checkout_dir: Path,
    variant: Optional[str],
    rules: Optional[str],
    submodules: Optional[str],
    upper_limit: Optional[str],
    json_output: bool,
):
    """Bring CHECKOUT_DIR to REVISION of the repository at URL."""
    from .logging.build_logger import BuildProgressLogger
    from .sync.models import CheckoutRules, RepositorySpec
    from .sync.updater import GitUpdater

    config = _load_config(ctx)
    assert config.checkout is not None
    try:
        spec = RepositorySpec(
            fetch_url=url,
            revision=revision,
            branch=branch,
            checkout_rules=CheckoutRules.parse(rules) if rules else CheckoutRules(),
            submodule_policy=submodules or config.checkout.submodule_policy,
            clean_policy=config.checkout.clean_policy,
            clean_files_policy=config.checkout.clean_files_policy,
            upper_limit_revision=upper_limit,
        )
        build_logger = BuildProgressLogger(console=Console(stderr=True, highlight=False))
        updater = GitUpdater(
            spec,
            checkout_dir.resolve(),
            config,
            build_logger=build_logger,
            variant=VARIANTS[variant] if variant else None,
        )
        result = updater.update()
    except Exception as e:
        _handle_error(e, json_output)
        return

    if json_output:
        data = asdict(result)
        data["problems"] = [asdict(p) for p in build_logger.problems]
        click.echo(format_json_success(data))
        return

    console.print(f"[green]Checked out[/green] {result.revision[:12]} ({result.branch}) into {result.target_dir}")
    console.print(f"[dim]Variant:[/dim] {result.variant}")
    if result.mirror_dir is not None:
        console.print(f"[dim]Mirror:[/dim] {result.mirror_dir}")
    if result.recloned:
        console.print("[yellow]The repository was cloned from scratch[/yellow]")
    for problem in build_logger.problems:
        console.print(f"[yellow]Problem:[/yellow] {escape(problem.description)}")


# ----------------------------------------------------------------------
# mirrors
# ----------------------------------------------------------------------


@cli.group("mirrors")
def mirrors_group():
    """Manage the shared local mirrors."""
    pass


@mirrors_group.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def mirrors_list(ctx: click.Context, json_output: bool):
    """Show the url to mirror directory mapping."""
    config = _load_config(ctx)
    try:
        manager = _mirror_manager(config)
        mappings = manager.get_mappings()
        rows = [
            {
                "url": url,
                "directory": str(manager.base_mirrors_dir / name),
                "last_used": manager.last_used_time(manager.base_mirrors_dir / name),
            }
            for url, name in sorted(mappings.items())
        ]
    except Exception as e:
        _handle_error(e, json_output)
        return

    if json_output:
        click.echo(format_json_success(rows))
        return
    if not rows:
        console.print("[dim]No mirrors[/dim]")
        return

    table = Table(title=f"Mirrors in {manager.base_mirrors_dir}")
    table.add_column("URL", style="cyan")
    table.add_column("Directory")
    table.add_column("Last used", style="dim")
    for row in rows:
        last_used = (
            datetime.fromtimestamp(row["last_used"]).strftime("%Y-%m-%d %H:%M") if row["last_used"] else "never"
        )
        table.add_row(row["url"], row["directory"], last_used)
    console.print(table)


@mirrors_group.command("gc")
@click.pass_context
def mirrors_gc(ctx: click.Context):
    """Compact all mirrors now."""
    from .mirrors.gc_scheduler import IdleGcScheduler

    config = _load_config(ctx)
    try:
        scheduler = IdleGcScheduler(_mirror_manager(config), config)
        compacted = scheduler.run_once(force=True)
    except Exception as e:
        _handle_error(e)
        return
    console.print(f"[green]Compacted {len(compacted)} mirror(s)[/green]")


@mirrors_group.command("clean")
@click.option("--keep", "keep_urls", multiple=True, help="Url whose mirror must be kept (repeatable)")
@click.pass_context
def mirrors_clean(ctx: click.Context, keep_urls: tuple):
    """Remove invalid, unmapped and expired mirrors."""
    from .mirrors.mirror_cleaner import MirrorCleaner
    from .mirrors.submodule_cache import SubmoduleUrlCache

    config = _load_config(ctx)
    assert config.mirrors is not None
    try:
        manager = _mirror_manager(config)
        cleaner = MirrorCleaner(manager, SubmoduleUrlCache(manager), config.mirrors.mirror_expiration_days)
        deleted = cleaner.clean(keep_urls)
    except Exception as e:
        _handle_error(e)
        return
    for mirror_dir in deleted:
        console.print(f"[dim]Removed[/dim] {mirror_dir}")
    console.print(f"[green]Removed {len(deleted)} mirror(s)[/green]")


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------


@cli.group("config")
def config_group():
    """Manage the configuration file."""
    pass


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def config_init(ctx: click.Context, force: bool):
    """Write the default configuration file."""
    manager: AgentConfigManager = ctx.obj["config_manager"]
    if manager.config_file_path.exists() and not force:
        console.print(f"[yellow]Configuration already exists at {manager.config_file_path}[/yellow]")
        console.print("Use --force to overwrite it")
        sys.exit(1)
    manager.save_config(AgentSyncConfig())
    console.print(f"[green]Configuration written to {manager.config_file_path}[/green]")


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context):
    """Print the effective configuration (file, defaults and environment)."""
    config = _load_config(ctx)
    console.print_json(json.dumps(asdict(config)))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
