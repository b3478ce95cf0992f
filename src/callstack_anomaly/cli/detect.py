"""CLI commands for running anomaly detection."""

import json
import sys
from pathlib import Path

import click

from callstack_anomaly import prometheus as prom
from callstack_anomaly.analysis import AnalysisType, CallStackAnomalyAnalysis
from callstack_anomaly.cli.encode import build_parameters, resolve_store_path
from callstack_anomaly.compression import CompressionFormat
from callstack_anomaly.detectors import AnomalyRun
from callstack_anomaly.errors import CallStackAnomalyError
from callstack_anomaly.intervals import load_intervals
from callstack_anomaly.models import ArrayEncoding


def output_run(run: AnomalyRun, store_path: Path, json_output: bool, show_all: bool) -> None:
    response = run.to_response(str(store_path))
    if json_output:
        click.echo(json.dumps(response.model_dump(mode='json'), indent=2))
    else:
        click.echo(response.to_cli(show_all=show_all))


def _analysis_type(model: str | None) -> AnalysisType:
    return AnalysisType.MODEL_APPLY if model else AnalysisType.STATISTICAL


@click.command('detect')
@click.argument('store_path', type=click.Path(file_okay=False))
@click.option(
    '--n-value', '-n', type=int, default=None, help='Tolerated standard deviations (default: $CSA_N_VALUE or 1)'
)
@click.option('--model', '-m', type=click.Path(exists=True, file_okay=False), help='Model container directory')
@click.option('--threshold', '-t', type=float, default=None, help='Model score threshold (default: 0.5)')
@click.option('--all', '-a', 'show_all', is_flag=True, help='List every scored record, not only anomalies')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format')
@click.option('--metrics-file', type=click.Path(dir_okay=False), help='Write Prometheus metrics to this file')
def detect_command(
    store_path: str,
    n_value: int | None,
    model: str | None,
    threshold: float | None,
    show_all: bool,
    json_output: bool,
    metrics_file: str | None,
):
    """Run anomaly detection on an existing array store.

    Uses the statistical detector, or the model in --model when given (falling
    back to metadata checks when the trace and the model dimensions differ).

    \b
    Examples:
        csa detect ~/.cache/csa/arrays/trace
        csa detect ./arrays -n 2 --all
        csa detect ./arrays --model ./model --json
    """
    try:
        parameters = build_parameters(
            analysis_type=_analysis_type(model),
            n_value=n_value,
            model_container_path=model,
            anomaly_threshold=threshold,
        )
        analysis = CallStackAnomalyAnalysis(store_path, parameters)
        if not analysis.store.exists():
            click.echo(f'No array store found in {store_path}; run "csa encode" first', err=True)
            sys.exit(1)
        run = analysis.detect()
    except (CallStackAnomalyError, ValueError) as e:
        click.echo(f'Error: {e}', err=True)
        sys.exit(1)
    finally:
        if metrics_file:
            prom.write_metrics(metrics_file)

    if run is None:
        click.echo('Detection aborted, see log for details', err=True)
        sys.exit(1)
    output_run(run, Path(store_path), json_output, show_all)


@click.command('analyze')
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--store', '-s', type=click.Path(file_okay=False), help='Store directory (default: cache dir)')
@click.option('--depth', '-d', 'target_depth', type=int, default=1, show_default=True, help='Depth of root calls')
@click.option(
    '--n-value', '-n', type=int, default=None, help='Tolerated standard deviations (default: $CSA_N_VALUE or 1)'
)
@click.option('--model', '-m', type=click.Path(exists=True, file_okay=False), help='Model container directory')
@click.option('--threshold', '-t', type=float, default=None, help='Model score threshold (default: 0.5)')
@click.option('--encoding', type=click.Choice([e.value for e in ArrayEncoding]), default=None, help='Record encoding')
@click.option(
    '--compression', type=click.Choice([c.value for c in CompressionFormat]), default=None, help='Stream compression'
)
@click.option('--force', '-f', is_flag=True, help='Re-encode even if the store exists')
@click.option('--all', '-a', 'show_all', is_flag=True, help='List every scored record, not only anomalies')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format')
@click.option('--metrics-file', type=click.Path(dir_okay=False), help='Write Prometheus metrics to this file')
def analyze_command(
    input_path: str,
    store: str | None,
    target_depth: int,
    n_value: int | None,
    model: str | None,
    threshold: float | None,
    encoding: str | None,
    compression: str | None,
    force: bool,
    show_all: bool,
    json_output: bool,
    metrics_file: str | None,
):
    """Encode a trace (unless already encoded) and run anomaly detection.

    \b
    Examples:
        csa analyze trace.json --depth 2
        csa analyze trace.json --depth 2 --model ./model --threshold 0.8
    """
    store_path = resolve_store_path(input_path, store)
    try:
        parameters = build_parameters(
            analysis_type=_analysis_type(model),
            target_depth=target_depth,
            n_value=n_value,
            model_container_path=model,
            anomaly_threshold=threshold,
            encoding=encoding,
            compression=compression,
        )
        analysis = CallStackAnomalyAnalysis(store_path, parameters)
        if force:
            analysis.store.dispose()
        intervals = [] if analysis.store.exists() else load_intervals(input_path)
        run = analysis.run(intervals)
    except (CallStackAnomalyError, ValueError, OSError) as e:
        click.echo(f'Error: {e}', err=True)
        sys.exit(1)
    finally:
        if metrics_file:
            prom.write_metrics(metrics_file)

    if run is None:
        click.echo('Analysis aborted, see log for details', err=True)
        sys.exit(1)
    output_run(run, store_path, json_output, show_all)
