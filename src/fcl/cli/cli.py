import logging
from pathlib import Path
from typing import Optional

import typer  # type: ignore
import yaml
from pydantic import ValidationError
from rich.console import Console  # type: ignore
from rich.markup import escape  # type: ignore
from rich.panel import Panel  # type: ignore
from rich.table import Table  # type: ignore
from typing_extensions import Annotated

from fcl.core.config import EngineConfig
from fcl.core.errors import ConfigError
from fcl.core.parameters import PARAMETER_DEFINITIONS
from fcl.highlevel import replay as run_replay
from fcl.learning.parameter_store import ParameterStateStore
from fcl.utils.persistence import JsonFileStore
from fcl.utils.telemetry import TelemetryLog
from fcl.validation import format_validation_error, load_engine_config, load_preferences
from fcl.validation.schemas import PreferencesModel

app = typer.Typer(help="FCL - closed-loop bolus decision engine.")


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log engine decisions to stderr")] = False,
):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_engine_config(path: Optional[Path], console: Console) -> Optional[EngineConfig]:
    if path is None:
        return None
    try:
        return load_engine_config(path)
    except ConfigError as e:
        console.print(f"[bold red]Error: {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1)
    except ValidationError as e:
        console.print(f"[bold red]Error: invalid engine config '{path}'[/bold red]")
        for line in format_validation_error(e):
            console.print(f"- {escape(line)}")
        raise typer.Exit(code=1)


@app.command()
def replay(
    glucose_csv: Annotated[Path, typer.Argument(help="CSV with timestamp,bg[,iob] columns")],
    preferences: Annotated[Optional[Path], typer.Option(help="Preferences YAML")] = None,
    engine_config: Annotated[Optional[Path], typer.Option(help="Engine config YAML overrides")] = None,
    store: Annotated[Optional[Path], typer.Option(help="Directory for learned parameter state")] = None,
    telemetry: Annotated[Optional[Path], typer.Option(help="Append tick telemetry to this CSV")] = None,
    output: Annotated[Optional[Path], typer.Option(help="Write every decision to this CSV")] = None,
):
    """
    Replay a recorded glucose trace through the engine, one tick per reading.
    """
    console = Console()
    if not glucose_csv.is_file():
        console.print(f"[bold red]Error: Glucose file '{glucose_csv}' not found.[/bold red]")
        raise typer.Exit(code=1)

    try:
        prefs = load_preferences(preferences) if preferences else None
    except (ConfigError, ValidationError) as e:
        console.print(f"[bold red]Error: invalid preferences: {escape(str(e))}[/bold red]")
        raise typer.Exit(code=1)
    config = _load_engine_config(engine_config, console)

    try:
        results = run_replay(
            glucose_csv,
            preferences=prefs,
            config=config,
            store=JsonFileStore(store) if store else None,
            telemetry=TelemetryLog(telemetry) if telemetry else None,
        )
    except ValueError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)

    if results.empty:
        console.print("[yellow]No readings in input.[/yellow]")
        return

    delivered = results[results["deliver"]]
    table = Table(title="Replay Summary", show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Ticks", str(len(results)))
    table.add_row("Boluses delivered", str(len(delivered)))
    table.add_row("Total bolus (U)", f"{delivered['dose'].sum():.2f}")
    table.add_row("Largest bolus (U)", f"{results['dose'].max():.2f}")
    table.add_row("Meals detected", str(int(results["meal_detected"].sum())))
    console.print(table)

    phases = results["phase"].value_counts()
    phase_table = Table(title="Decisions by Phase")
    phase_table.add_column("Phase", style="cyan")
    phase_table.add_column("Ticks", justify="right")
    for phase, count in phases.items():
        phase_table.add_row(str(phase), str(count))
    console.print(phase_table)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        results.to_csv(output, index=False)
        console.print(f"Decisions saved to: {output}")


@app.command()
def params(
    store: Annotated[Path, typer.Option(help="Directory holding learned parameter state")],
):
    """Show learned parameter values, bounds and manual locks."""
    console = Console()
    if not store.is_dir():
        console.print(f"[bold red]Error: Store directory '{store}' not found.[/bold red]")
        raise typer.Exit(code=1)

    states = ParameterStateStore(store=JsonFileStore(store)).states()
    table = Table(title="Learnable Parameters")
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", justify="right", style="magenta")
    table.add_column("Default", justify="right")
    table.add_column("Bounds")
    table.add_column("Budget left %", justify="right")
    table.add_column("Locked until")
    for pid, definition in PARAMETER_DEFINITIONS.items():
        state = states[pid.value]
        table.add_row(
            pid.value,
            f"{state.current_value:.3f}",
            f"{definition.default:g}",
            f"[{definition.minimum:g}, {definition.maximum:g}]",
            f"{state.remaining_budget_percent:.1f}",
            state.manual_lock_until.isoformat(timespec="minutes") if state.manual_lock and state.manual_lock_until else "-",
        )
    console.print(table)


@app.command("set-param")
def set_param(
    name: Annotated[str, typer.Argument(help="Parameter id, e.g. bolus_perc_rising")],
    value: Annotated[float, typer.Argument(help="New value")],
    store: Annotated[Path, typer.Option(help="Directory holding learned parameter state")],
    dwell_hours: Annotated[Optional[float], typer.Option(help="Hours to suppress automated advice")] = None,
):
    """Record a manual parameter edit; automated advice is paused for the dwell period."""
    console = Console()
    parameters = ParameterStateStore(store=JsonFileStore(store))
    try:
        state = parameters.register_manual_adjustment(name, value, dwell_hours=dwell_hours)
    except ConfigError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)
    until = state.manual_lock_until.isoformat(timespec="minutes") if state.manual_lock_until else "no lock"
    console.print(f"[green]{name} set to {state.current_value:g}[/green] (advice paused until {until})")


@app.command("init-config")
def init_config(
    path: Annotated[Path, typer.Argument(help="Where to write the preferences YAML")],
    force: Annotated[bool, typer.Option(help="Overwrite an existing file")] = False,
):
    """Write a preferences YAML populated with the default tunables."""
    console = Console()
    if path.exists() and not force:
        console.print(f"[bold red]Error: '{path}' already exists. Use --force to overwrite.[/bold red]")
        raise typer.Exit(code=1)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(PreferencesModel().model_dump(), sort_keys=True))
    console.print(f"[green]Default preferences written to '{path}'[/green]")


@app.command("validate-config")
def validate_config(
    path: Annotated[Path, typer.Argument(help="YAML file to validate")],
    engine: Annotated[bool, typer.Option("--engine", help="Validate as engine config instead of preferences")] = False,
):
    """Validate a preferences (or engine config) YAML against its bounds."""
    console = Console()
    try:
        if engine:
            load_engine_config(path)
        else:
            load_preferences(path)
    except ConfigError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1)
    except ValidationError as e:
        console.print("[bold red]Errors:[/bold red]")
        for line in format_validation_error(e):
            console.print(f"- {escape(line)}")
        raise typer.Exit(code=1)
    kind = "Engine config" if engine else "Preferences"
    console.print(Panel(f"{kind} '{path}' is valid.", title="Validation", style="green"))


if __name__ == "__main__":
    app()
