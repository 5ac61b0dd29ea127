"""CLI for zen-context.

Index a project and pull ranked, size-bounded context out of it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional, TYPE_CHECKING

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.syntax import Syntax
from rich.table import Table

if TYPE_CHECKING:
    from .core.engine import ContextEngine
    from .core.tracker import UpdateReport

app = typer.Typer(
    name="zen-context",
    help="Pattern-aware context engine for code generation",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Show or initialise configuration", no_args_is_help=True)
app.add_typer(config_app, name="config")

console = Console()


# Type aliases for common CLI options
RootArg = Annotated[Path, typer.Argument(help="Project root")]
RootOpt = Annotated[Path, typer.Option("--root", "-r", help="Project root")]
KindsOpt = Annotated[
    Optional[list[str]],
    typer.Option("--kind", help="Only this unit kind (component, hook, store, util, raw); repeatable"),
]
PathsOpt = Annotated[
    Optional[list[str]],
    typer.Option("--path", "-p", help="Only paths matching this gitignore-style pattern; repeatable"),
]
JsonOpt = Annotated[bool, typer.Option("--json", help="Print JSON instead of tables")]
VerboseOpt = Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")]
EmbedderOpt = Annotated[
    Optional[str],
    typer.Option("--embedder", "-e", help="Embedder variant: deterministic or remote"),
]


def _open_engine(root: Path, verbose: bool = False, embedder: str | None = None, **overrides) -> ContextEngine:
    """Set up logging and build an engine, exiting cleanly on bad input."""
    from .core.config import EngineConfig
    from .core.debug import Verbosity, setup_logging
    from .core.engine import ContextEngine
    from .core.errors import ContextEngineError

    setup_logging(verbosity=Verbosity.VERBOSE if verbose else None)

    try:
        config = EngineConfig.from_user_config(embedder_variant=embedder, **overrides)
        return ContextEngine(root, config=config)
    except (ContextEngineError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _print_report(report: UpdateReport) -> None:
    table = Table(title="Update", show_header=False)
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="cyan")

    table.add_row("Mode", f"full ({report.reason})" if report.full else "incremental")
    for key in ("added", "modified", "removed", "unchanged", "unverified"):
        table.add_row(key.capitalize(), str(report.files.get(key, 0)))
    table.add_row("Units upserted", str(report.units_upserted))
    table.add_row("Units deleted", str(report.units_deleted))
    table.add_row("Embedded", str(report.embedded))
    if report.compacted:
        table.add_row("Compacted", str(report.compacted))
    table.add_row("Generation", str(report.generation))
    table.add_row("Time", f"{report.elapsed:.2f}s")
    console.print(table)

    for path, reason in report.errors:
        console.print(f"[yellow]⚠[/yellow] {path}: {reason}")


# =============================================================================
# Indexing
# =============================================================================

@app.command()
def index(
    root: RootArg = Path("."),
    full: Annotated[bool, typer.Option("--full", "-f", help="Rebuild from scratch")] = False,
    embedder: EmbedderOpt = None,
    as_json: JsonOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """Build or incrementally update the index for a project.

    Examples:
        zen-context index
        zen-context index ~/src/shop --full
    """
    from .core.errors import ContextEngineError

    with _open_engine(root, verbose, embedder) as engine:
        try:
            with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                          console=console, transient=True) as progress:
                progress.add_task(f"Indexing {engine.root}...", total=None)
                report = engine.update(full=full)
        except (ContextEngineError, TimeoutError) as e:
            console.print(f"[red]✗[/red] Indexing failed: {e}")
            raise typer.Exit(1)

    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)


@app.command()
def compact(
    root: RootArg = Path("."),
    verbose: VerboseOpt = False,
) -> None:
    """Purge deleted entries from the index and checkpoint it."""
    from .core.errors import ContextEngineError

    with _open_engine(root, verbose) as engine:
        try:
            removed = engine.compact()
        except (ContextEngineError, TimeoutError) as e:
            console.print(f"[red]✗[/red] Compaction failed: {e}")
            raise typer.Exit(1)
    console.print(f"[green]✓[/green] Compacted index ({removed} entries removed)")


@app.command()
def verify(
    root: RootArg = Path("."),
    verbose: VerboseOpt = False,
) -> None:
    """List indexed units whose source changed since they were indexed."""
    from .core.errors import ContextEngineError

    with _open_engine(root, verbose) as engine:
        try:
            stale = engine.verify()
        except ContextEngineError as e:
            console.print(f"[red]✗[/red] Verification failed: {e}")
            raise typer.Exit(1)

    if not stale:
        console.print("[green]✓[/green] Index matches the source tree")
        return
    for unit_id in stale:
        console.print(f"[yellow]○[/yellow] {unit_id}")
    console.print(f"[yellow]{len(stale)} stale units. Run: zen-context index[/yellow]")
    raise typer.Exit(1)


@app.command()
def watch(
    root: RootArg = Path("."),
    embedder: EmbedderOpt = None,
    verbose: VerboseOpt = False,
) -> None:
    """Keep the index current until interrupted."""

    def on_update(report: UpdateReport) -> None:
        console.print(
            f"[green]●[/green] generation {report.generation}: "
            f"+{report.units_upserted} -{report.units_deleted} units "
            f"({report.elapsed:.2f}s)"
        )
        for path, reason in report.errors:
            console.print(f"[yellow]⚠[/yellow] {path}: {reason}")

    with _open_engine(root, verbose, embedder) as engine:
        console.print(f"[dim]Watching {engine.root} (Ctrl+C to stop)[/dim]")
        try:
            engine.watch(on_update=on_update)
        except KeyboardInterrupt:
            engine.cancel()
            console.print("[dim]Stopped[/dim]")


# =============================================================================
# Retrieval
# =============================================================================

@app.command()
def query(
    task: Annotated[str, typer.Argument(help="Task description")],
    root: RootOpt = Path("."),
    k: Annotated[Optional[int], typer.Option("--top", "-k", help="Number of results")] = None,
    kinds: KindsOpt = None,
    paths: PathsOpt = None,
    as_json: JsonOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """Rank indexed units against a task description.

    Examples:
        zen-context query "product card with add to cart" -k 5
        zen-context query "auth state" --kind store
    """
    if k is not None and k <= 0:
        console.print("[red]Error: --top must be positive[/red]")
        raise typer.Exit(1)

    with _open_engine(root, verbose) as engine:
        try:
            hits = engine.query(task, k=k, kinds=kinds, paths=paths)
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    if as_json:
        print(json.dumps([hit.to_dict() for hit in hits], indent=2))
        return

    if not hits:
        console.print("[yellow]No results. Is the project indexed? Run: zen-context index[/yellow]")
        return

    table = Table(title=f"Results for: {task}")
    table.add_column("Score", style="cyan", justify="right")
    table.add_column("Kind", style="magenta")
    table.add_column("Symbol", style="green")
    table.add_column("Path")
    for hit in hits:
        unit = hit.unit
        table.add_row(f"{hit.score:.3f}", unit.kind, unit.symbol_name, f"{unit.path}:{unit.line}")
    console.print(table)


@app.command()
def assemble(
    task: Annotated[str, typer.Argument(help="Task description")],
    root: RootOpt = Path("."),
    budget: Annotated[Optional[int], typer.Option("--budget", "-b", help="Max total excerpt bytes")] = None,
    kinds: KindsOpt = None,
    paths: PathsOpt = None,
    as_json: JsonOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """Assemble a size-bounded context bundle for a task.

    Examples:
        zen-context assemble "add a checkout form" --budget 4000
        zen-context assemble "add a checkout form" --json > context.json
    """
    if budget is not None and budget < 0:
        console.print("[red]Error: --budget must not be negative[/red]")
        raise typer.Exit(1)

    with _open_engine(root, verbose) as engine:
        try:
            bundle = engine.assemble(task, budget=budget, kinds=kinds, paths=paths)
        except ValueError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    if as_json:
        print(json.dumps(bundle.to_dicts(), indent=2))
        return

    for entry in bundle:
        unit = entry.unit
        title = f"{unit.kind} {unit.symbol_name} ({unit.path}:{unit.line})  score {entry.score:.3f}"
        if entry.truncated:
            title += "  [yellow]truncated[/yellow]"
        console.print(Panel(
            Syntax(entry.excerpt, unit.language or "text", line_numbers=False),
            title=title,
            title_align="left",
        ))
    console.print(
        f"[dim]{len(bundle)} entries, {bundle.size}/{bundle.budget} bytes, "
        f"{len(bundle.skipped)} skipped[/dim]"
    )


# =============================================================================
# Reporting
# =============================================================================

@app.command()
def status(
    root: RootArg = Path("."),
    as_json: JsonOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """Show index status and what an update would change."""
    from .core.errors import ContextEngineError

    with _open_engine(root, verbose) as engine:
        try:
            info = engine.status()
        except ContextEngineError as e:
            console.print(f"[red]✗[/red] Status failed: {e}")
            raise typer.Exit(1)

    if as_json:
        print(json.dumps(info, default=str, indent=2))
        return

    if not info["indexed"]:
        console.print(f"[yellow]○[/yellow] {info['root']}: Not indexed")
        console.print("  [dim]Run: zen-context index[/dim]")
        return

    console.print(f"[green]●[/green] {info['root']}: Indexed")
    console.print(f"  Units: {info['units']}")
    console.print(f"  Files: {info['files']}")
    console.print(f"  Generation: {info['generation']}")
    console.print(f"  Tombstones: {info['tombstones']} ({info['tombstone_ratio']:.0%})")
    if info.get("fallback_units"):
        console.print(f"  [yellow]Fallback embeddings: {info['fallback_units']}[/yellow]")
    if info.get("needs_update"):
        pending = info["pending"]
        console.print(
            f"  [yellow]Needs update: {pending['added']} added, "
            f"{pending['modified']} modified, {pending['removed']} removed[/yellow]"
        )
    else:
        console.print("  [green]Up to date[/green]")


@app.command()
def overview(
    root: RootArg = Path("."),
    as_json: JsonOpt = False,
    verbose: VerboseOpt = False,
) -> None:
    """Summarise the patterns found in the indexed code."""
    with _open_engine(root, verbose) as engine:
        result = engine.overview()

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    table = Table(title="Project Patterns")
    table.add_column("Category", style="cyan")
    table.add_column("Counts")
    table.add_row("Kinds", ", ".join(f"{k}: {v}" for k, v in result.kinds.items()))
    table.add_row("Component roles", ", ".join(f"{k}: {v}" for k, v in result.component_roles.items()) or "-")
    table.add_row("Component patterns", ", ".join(f"{k}: {v}" for k, v in result.component_patterns.items()) or "-")
    table.add_row("Hook types", ", ".join(f"{k}: {v}" for k, v in result.hook_types.items()) or "-")
    table.add_row("Store types", ", ".join(f"{k}: {v}" for k, v in result.store_types.items()) or "-")
    if result.service_types:
        table.add_row("Service types", ", ".join(f"{k}: {v}" for k, v in result.service_types.items()))
        table.add_row("Endpoints", ", ".join(result.endpoints) or "-")
    if result.entities:
        table.add_row("Entities", ", ".join(result.entities))
    console.print(table)

    console.print("\n[bold]Recommendations:[/bold]")
    for rec in result.recommendations:
        console.print(f"  • {rec}")


# =============================================================================
# Configuration
# =============================================================================

@config_app.command("show")
def config_show(
    as_json: JsonOpt = False,
) -> None:
    """Show the effective configuration."""
    from .core.config import ENV_OVERRIDES, EngineConfig, get_config_file

    try:
        cfg = EngineConfig.from_user_config()
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    values = cfg.to_dict()
    if as_json:
        print(json.dumps(values, default=str, indent=2))
        return

    env_for = {key: env for env, (key, _) in ENV_OVERRIDES.items()}
    env_for["remote_api_key"] = "ZEN_EMBEDDING_API_KEY / OPENAI_API_KEY"

    table = Table(title="zen-context Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Env Var", style="dim")
    for key, value in values.items():
        if key == "remote_api_key" and value is None:
            value = "[red](not set)[/red]"
        table.add_row(key, str(value), env_for.get(key, ""))
    console.print(table)
    console.print(f"[dim]Config file: {get_config_file()}[/dim]")


@config_app.command("init")
def config_init(
    path: Annotated[Optional[Path], typer.Option("--path", help="Where to write the file")] = None,
    force: Annotated[bool, typer.Option("--force", "-f", help="Overwrite an existing file")] = False,
) -> None:
    """Write a config file with every default spelled out."""
    from .core.config import get_config_file, render_default_config
    from .core.fileutils import atomic_write

    target = path or get_config_file()
    if target.exists() and not force:
        console.print(f"[yellow]{target} already exists (use --force to overwrite)[/yellow]")
        raise typer.Exit(1)

    with atomic_write(target) as f:
        f.write(render_default_config())
    console.print(f"[green]✓[/green] Wrote {target}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
