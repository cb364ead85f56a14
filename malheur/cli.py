"""
Command-line interface for Malheur.

    malheur [options] <task> <input>

Tasks are ``kernel``, ``prototype`` and ``cluster`` (case-insensitive).
Configuration files are managed with ``malheur config init|show|validate``.
"""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .analysis.clustering import ClusterResult
from .analysis.prototypes import PrototypeSet
from .analysis.similarity import SimilarityMatrix
from .config import ConfigManager, MalheurConfig, create_default_config_file, load_config
from .errors import ConfigError, MalheurError
from .tasks import Malheur, resolve_request
from .utils.logging_setup import get_logger, setup_logging, verbosity_to_level

logger = get_logger(__name__)

console = Console()
err_console = Console(stderr=True)

VERSION_MESSAGE = (
    "%(prog)s %(version)s\n"
    " MALHEUR - Automatic Malware Analysis on Steroids\n"
    " Copyright (c) 2009 Konrad Rieck, Berlin Institute of Technology (TU Berlin)."
)


class TaskGroup(click.Group):
    """Click group that resolves task names case-insensitively."""

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, cmd_name.lower())


def task_options(func):
    """Output options accepted before or after the task name."""
    func = click.option("-t", "--lookup-table", "lookup_table", is_flag=True,
                        help="Enable feature lookup table.")(func)
    func = click.option("-s", "--save", "proto_file", type=click.Path(dir_okay=False),
                        help="Save feature vectors of prototypes to file.")(func)
    func = click.option("-l", "--load", "load_file", type=click.Path(exists=True, dir_okay=False),
                        help="Load feature vectors of prototypes from file.")(func)
    func = click.option("-r", "--result", "result_file", type=click.Path(dir_okay=False),
                        help="Save analysis results to file.")(func)
    return func


@click.group(cls=TaskGroup, context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-c", "--config", "config_file", type=click.Path(exists=True, dir_okay=False),
              help="Set configuration file.")
@click.option("-v", "--verbose", count=True, help="Increase verbosity.")
@click.option("--log-file", type=click.Path(dir_okay=False),
              help="Append JSON-lines log records to file.")
@task_options
@click.version_option(__version__, "-V", "--version", prog_name="malheur", message=VERSION_MESSAGE)
@click.pass_context
def cli(ctx, config_file, verbose, log_file, result_file, load_file, proto_file, lookup_table):
    """Malheur - automatic analysis of malware behavior reports."""
    setup_logging(level=verbosity_to_level(verbose), log_file=log_file)
    ctx.ensure_object(dict)
    ctx.obj.update(
        config_file=config_file,
        verbose=verbose,
        result_file=result_file,
        load_file=load_file,
        proto_file=proto_file,
        lookup_table=lookup_table,
    )


def _run_task(ctx: click.Context, task: str, input_path: str, **overrides) -> None:
    options = dict(ctx.obj)
    options.update({k: v for k, v in overrides.items() if v})

    try:
        request = resolve_request(
            task,
            input_path,
            result_file=options.get("result_file"),
            proto_file=options.get("proto_file"),
            load_file=options.get("load_file"),
        )
        config = load_config(options.get("config_file"))
        if options.get("verbose", 0) > 1:
            ConfigManager(config.source, console=err_console).display(config)

        runner = Malheur(config, lookup_table=options.get("lookup_table") or None)
        result = runner.run(request)
    except ConfigError as e:
        err_console.print(f"[red]✗ Configuration error: {e.message}[/red]")
        ctx.exit(2)
    except MalheurError as e:
        err_console.print(f"[red]✗ {e.message}[/red]")
        ctx.exit(1)

    _print_summary(result, request)


def _print_summary(result, request) -> None:
    table = Table(title="Malheur", show_header=True, header_style="bold green")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    if isinstance(result, SimilarityMatrix):
        low, high = result.value_range()
        table.add_row("Reports", str(len(result)))
        table.add_row("Kernel", result.kernel)
        table.add_row("Value range", f"{low:.4g} .. {high:.4g}")
    elif isinstance(result, PrototypeSet):
        table.add_row("Reports", str(result.num_vectors))
        table.add_row("Prototypes", str(len(result)))
        table.add_row("Coverage", f"{result.coverage():.1%}")
    elif isinstance(result, ClusterResult):
        table.add_row("Reports", str(len(result.labels)))
        table.add_row("Clusters", str(len(result)))
        table.add_row("Rejected", str(len(result.rejected)))
        table.add_row("Merges", str(len(result.dendrogram)))
        if result.violations:
            table.add_row("Monotonicity violations", f"[yellow]{len(result.violations)}[/yellow]")

    console.print(table)
    for name in ("result_file", "proto_file"):
        path = getattr(request, name, None)
        if path:
            console.print(f"[green]✓ Wrote {path}[/green]")


@cli.command(name="kernel")
@click.argument("input_path", metavar="INPUT", type=click.Path(exists=True))
@task_options
@click.pass_context
def kernel_cmd(ctx, input_path, **overrides):
    """Compute a kernel matrix from malware reports."""
    _run_task(ctx, "kernel", input_path, **overrides)


@cli.command(name="prototype")
@click.argument("input_path", metavar="INPUT", type=click.Path(exists=True))
@task_options
@click.pass_context
def prototype_cmd(ctx, input_path, **overrides):
    """Extract prototypes from malware reports."""
    _run_task(ctx, "prototype", input_path, **overrides)


@cli.command(name="cluster")
@click.argument("input_path", metavar="INPUT", type=click.Path(exists=True))
@task_options
@click.pass_context
def cluster_cmd(ctx, input_path, **overrides):
    """Cluster malware reports into similar groups."""
    _run_task(ctx, "cluster", input_path, **overrides)


@cli.group(name="config")
def config_group():
    """Manage Malheur configuration files."""
    pass


@config_group.command(name="init")
@click.option("--path", type=click.Path(dir_okay=False), default=ConfigManager.DEFAULT_CONFIG_FILE,
              help="Path for config file")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path, force):
    """Write a configuration file with default values."""
    config_path = Path(path)
    if config_path.exists() and not force:
        if not click.confirm(f"Config file {path} already exists. Overwrite?"):
            console.print("[yellow]Aborted[/yellow]")
            return

    create_default_config_file(config_path)
    console.print(f"[green]✓ Created config file at {path}[/green]")


@config_group.command(name="show")
@click.option("--path", type=click.Path(exists=True, dir_okay=False), help="Path to config file")
@click.pass_context
def config_show(ctx, path):
    """Display the effective configuration."""
    try:
        manager = ConfigManager(path or _default_path(ctx), console=console)
        manager.display(manager.load())
    except ConfigError as e:
        err_console.print(f"[red]✗ {e.message}[/red]")
        ctx.exit(2)


@config_group.command(name="validate")
@click.option("--path", type=click.Path(exists=True, dir_okay=False), help="Path to config file")
@click.pass_context
def config_validate(ctx, path):
    """Validate a configuration file."""
    try:
        config = MalheurConfig.load(path) if path else MalheurConfig.load(_default_path(ctx))
        config.apply_env_overrides()
    except ConfigError as e:
        err_console.print(f"[red]✗ {e.message}[/red]")
        ctx.exit(2)

    issues = config.issues()
    if issues:
        err_console.print("[red]✗ Configuration has validation errors:[/red]")
        for issue in issues:
            err_console.print(f"  • {issue}")
        ctx.exit(2)
    console.print("[green]✓ Configuration is valid[/green]")


def _default_path(ctx: click.Context) -> Path:
    parent = ctx.find_root().obj or {}
    return Path(parent.get("config_file") or ConfigManager.DEFAULT_CONFIG_FILE)


def main(argv: Optional[list] = None) -> None:
    """Console script entry point."""
    cli(args=argv, prog_name="malheur", obj={})


if __name__ == "__main__":
    main()
