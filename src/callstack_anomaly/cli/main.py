"""Main CLI entry point with command groups"""

import click

from callstack_anomaly.__version__ import __version__
from callstack_anomaly.cli.detect import analyze_command, detect_command
from callstack_anomaly.cli.encode import encode_command
from callstack_anomaly.cli.export_model import export_model_command
from callstack_anomaly.cli.info import info_command
from callstack_anomaly.utils import setup_logging


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name='CSA')
@click.option('--log-level', default=None, help='Logging level (default: $CSA_LOG_LEVEL or WARNING)')
@click.pass_context
def cli(ctx, log_level):
    """
    CSA (Call Stack Anomaly) - Find abnormal call patterns in profiling traces.

    \b
    Commands:
      csa encode <input>          Encode call intervals into an array store
      csa detect <store>          Run anomaly detection on an array store
      csa analyze <input>         Encode if needed, then detect
      csa info <store>            Show array store header
      csa export-model <model>    Bundle a model with a store's metadata

    \b
    Examples:
      csa analyze trace.json --depth 2
      csa encode trace.jsonl -s ./arrays --encoding native
      csa detect ./arrays -n 2 --all
      csa detect ./arrays --model ./model --json
    """
    setup_logging(log_level)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)


cli.add_command(encode_command, name='encode')
cli.add_command(detect_command, name='detect')
cli.add_command(analyze_command, name='analyze')
cli.add_command(info_command, name='info')
cli.add_command(export_model_command, name='export-model')


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == '__main__':
    main()
