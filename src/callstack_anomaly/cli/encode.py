"""CLI command for encoding a trace into a call stack array store."""

import json
import sys
from pathlib import Path

import click

from callstack_anomaly.analysis import AnalysisParameters, CallStackAnomalyAnalysis
from callstack_anomaly.array_store import get_array_store_dir
from callstack_anomaly.compression import CompressionFormat
from callstack_anomaly.errors import CallStackAnomalyError
from callstack_anomaly.intervals import load_intervals
from callstack_anomaly.models import ArrayEncoding


def resolve_store_path(input_path: str, store: str | None) -> Path:
    """Use --store when given, otherwise the cache directory named after the input file."""
    if store:
        return Path(store)
    return get_array_store_dir(Path(input_path).stem)


@click.command('encode')
@click.argument('input_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--store', '-s', type=click.Path(file_okay=False), help='Store directory (default: cache dir)')
@click.option('--depth', '-d', 'target_depth', type=int, default=1, show_default=True, help='Depth of root calls')
@click.option(
    '--encoding',
    type=click.Choice([e.value for e in ArrayEncoding]),
    default=None,
    help='Record encoding (default: $CSA_ARRAY_ENCODING or dense)',
)
@click.option(
    '--compression',
    type=click.Choice([c.value for c in CompressionFormat]),
    default=None,
    help='Stream compression (default: $CSA_COMPRESSION or zstd)',
)
@click.option('--force', '-f', is_flag=True, help='Re-encode even if the store exists')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format')
def encode_command(
    input_path: str,
    store: str | None,
    target_depth: int,
    encoding: str | None,
    compression: str | None,
    force: bool,
    json_output: bool,
):
    """Encode call intervals into a call stack array store.

    INPUT_PATH is a JSON array, a JSON object with an "intervals" array, or
    JSON Lines, of objects with start, length, depth and symbol.

    \b
    Examples:
        csa encode trace.json --depth 2
        csa encode trace.jsonl -s ./arrays --encoding native --force
    """
    store_path = resolve_store_path(input_path, store)
    try:
        parameters = build_parameters(target_depth=target_depth, encoding=encoding, compression=compression)
        analysis = CallStackAnomalyAnalysis(store_path, parameters)
        if analysis.store.exists() and not force:
            click.echo(f'Store already exists: {store_path} (use --force to re-encode)', err=True)
            sys.exit(1)
        intervals = load_intervals(input_path)
        analysis.store.dispose()
        if not analysis.encode(intervals):
            click.echo(f'No root calls found at depth {target_depth}', err=True)
            sys.exit(1)
        info = analysis.store.describe()
    except (CallStackAnomalyError, ValueError, OSError) as e:
        click.echo(f'Error: {e}', err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(info, indent=2))
    else:
        click.echo(f'Encoded {info["record_count"]} root calls into {store_path}')
        click.echo(f'Array shape: {info["depth_size"]} x {info["address_size"]} ({info["encoding_mode"]})')


def build_parameters(encoding: str | None = None, compression: str | None = None, **kwargs) -> AnalysisParameters:
    """AnalysisParameters from CLI options, leaving unset ones to the environment defaults."""
    if encoding is not None:
        kwargs['encoding_mode'] = ArrayEncoding.from_string(encoding)
    if compression is not None:
        kwargs['compression'] = CompressionFormat.from_string(compression)
    return AnalysisParameters(**{key: value for key, value in kwargs.items() if value is not None})
