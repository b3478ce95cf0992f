"""CLI command for packaging a trained model as a model container."""

import pickle
import sys

import click

from callstack_anomaly.array_store import CallStackArrayStore
from callstack_anomaly.errors import ArrayStoreError, ModelContainerError
from callstack_anomaly.model_container import export_model_container


@click.command('export-model')
@click.argument('model_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('output_dir', type=click.Path(file_okay=False))
@click.option(
    '--store',
    '-s',
    'store_path',
    required=True,
    type=click.Path(exists=True, file_okay=False),
    help='Array store whose metadata the model was trained on',
)
def export_model_command(model_file: str, output_dir: str, store_path: str):
    """Bundle a pickled model with the metadata of an array store.

    MODEL_FILE is a pickle of an object with a score(features) -> float method.
    The container written to OUTPUT_DIR can then be used with --model.

    \b
    Examples:
        csa export-model model.pkl ./model --store ./arrays
    """
    try:
        metadata = CallStackArrayStore(store_path).read_header().metadata
        with open(model_file, 'rb') as f:
            model = pickle.load(f)
        export_model_container(output_dir, model, metadata)
    except (ArrayStoreError, ModelContainerError, OSError, pickle.UnpicklingError) as e:
        click.echo(f'Error: {e}', err=True)
        sys.exit(1)

    click.echo(f'Exported model container to {output_dir} ({metadata.depth_size} x {metadata.address_size})')
