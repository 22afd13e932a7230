import json
import logging
import sys

import click
import pandas as pd
from pydantic import ValidationError

from eventprob.config import Settings
from eventprob.exceptions import EventProbError
from eventprob.logging_config import setup_logging

logger = logging.getLogger(__name__)

MODEL_CHOICES = ["gbm", "ornstein_uhlenbeck", "vasicek", "heston", "merton_jump"]


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """eventprob - SDE estimation and copula-coupled event probabilities"""
    settings = Settings()
    setup_logging(settings, verbose=verbose)
    ctx.obj = settings


def _load_request(path: str):
    from eventprob.schemas import SimulationRequest

    with open(path, encoding="utf-8") as f:
        try:
            return SimulationRequest.model_validate(json.load(f))
        except (ValueError, ValidationError) as e:
            raise click.BadParameter(str(e), param_hint="REQUEST") from e


def _read_column(csv_path: str, column: str):
    from eventprob.schemas import TimeSeries

    frame = pd.read_csv(csv_path)
    if column not in frame.columns:
        raise click.BadParameter(
            f"column {column!r} not in {', '.join(frame.columns)}", param_hint="--column"
        )
    return TimeSeries.from_pandas(frame[column])


def _fail(error: EventProbError):
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@cli.command()
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--column", "-c", required=True, help="Column holding the series")
@click.option("--model", "-m", "model", required=True,
              type=click.Choice(MODEL_CHOICES),
              help="SDE model to fit")
def estimate(csv_path: str, column: str, model: str):
    """Fit an SDE model to one column of a CSV file."""
    from eventprob.engine.estimation import estimate_parameters

    series = _read_column(csv_path, column)
    try:
        result = estimate_parameters(series, model)
    except EventProbError as e:
        _fail(e)
    click.echo(result.model_dump_json(indent=2, by_alias=True))


@cli.command("select")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--column", "-c", required=True, help="Column holding the series")
@click.option("--model", "-m", "models", multiple=True,
              type=click.Choice(MODEL_CHOICES),
              help="Candidate model (repeatable; default: all)")
def select_model(csv_path: str, column: str, models: tuple[str, ...]):
    """Fit candidate SDE models to a CSV column and rank them by AIC."""
    from eventprob.engine.estimation import select_model as rank_models

    series = _read_column(csv_path, column)
    try:
        result = rank_models(series, models or None)
    except EventProbError as e:
        _fail(e)
    click.echo(result.model_dump_json(indent=2, by_alias=True))


@cli.command()
@click.argument("request_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--seed", type=int, default=None, help="Override the request seed")
@click.option("--scenarios", "-n", type=int, default=None,
              help="Override the number of scenarios")
@click.pass_obj
def simulate(settings: Settings, request_path: str, seed: int | None, scenarios: int | None):
    """Estimate an event probability from a JSON request."""
    from eventprob.engine.simulation import run_event_simulation

    request = _load_request(request_path)
    overrides = {k: v for k, v in {"seed": seed, "n_scenarios": scenarios}.items() if v is not None}
    config = request.config.model_copy(update=overrides) if overrides else request.config

    try:
        result = run_event_simulation(
            request.event, request.variables, request.copula, config, settings=settings
        )
    except EventProbError as e:
        _fail(e)
    click.echo(result.model_dump_json(indent=2))


@cli.command()
@click.argument("request_path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def compare(settings: Settings, request_path: str):
    """Compare the event probability under each reference copula."""
    from eventprob.engine.simulation import compare_copulas

    request = _load_request(request_path)
    try:
        results = compare_copulas(
            request.event, request.variables, request.config, settings=settings
        )
    except EventProbError as e:
        _fail(e)
    click.echo(json.dumps(results, indent=2))


if __name__ == "__main__":
    cli()
