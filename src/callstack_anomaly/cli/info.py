"""CLI command for inspecting an array store."""

import json
import sys

import click

from callstack_anomaly.array_store import CallStackArrayStore
from callstack_anomaly.errors import ArrayStoreError


def human_readable_size(size_bytes: int) -> str:
    """Convert bytes to human-readable format."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024:
            return f'{size_bytes:.2f} {unit}'
        size_bytes /= 1024
    return f'{size_bytes:.2f} PB'


@click.command('info')
@click.argument('store_path', type=click.Path(file_okay=False))
@click.option('--addresses', is_flag=True, help='List the per-address column block widths')
@click.option('--json', 'json_output', is_flag=True, help='Output in JSON format')
def info_command(store_path: str, addresses: bool, json_output: bool):
    """Show the header of an array store.

    \b
    Examples:
        csa info ./arrays
        csa info ./arrays --addresses --json
    """
    store = CallStackArrayStore(store_path)
    try:
        info = store.describe()
        header = store.read_header()
    except ArrayStoreError as e:
        click.echo(f'Error: {e}', err=True)
        sys.exit(1)

    if addresses:
        info['max_calls_per_address'] = {
            f'0x{address:x}': count for address, count in header.metadata.max_calls_per_address.items()
        }

    if json_output:
        click.echo(json.dumps(info, indent=2))
        return

    click.echo(f'Store: {info["path"]}')
    click.echo(f'Records: {info["record_count"]}')
    click.echo(f'Array shape: {info["depth_size"]} x {info["address_size"]} ({info["address_count"]} addresses)')
    click.echo(f'Encoding: {info["encoding_mode"]}, compression: {info["compression"]}')
    click.echo(f'Size: {human_readable_size(info["arrays_file_bytes"])}')
    if info['created_at']:
        click.echo(f'Created: {info["created_at"]}')
    if addresses:
        for address, count in info['max_calls_per_address'].items():
            click.echo(f'  {address}: {count}')
