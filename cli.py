#!/usr/bin/env python3
"""
AssetFlow Command Line Interface

Main CLI entry point for the AssetFlow asset processing pipeline.
"""

import logging
from typing import Optional

import click

from assetflow.config import load_config
from assetflow.cli import db, pipeline_group, assets_group, color_group
from assetflow.utils.logging import setup_console_logging

logger = logging.getLogger(__name__)


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.option('--quiet', '-q', is_flag=True, help='Suppress non-error output')
@click.pass_context
def main(ctx, config: Optional[str] = None, verbose: bool = False, quiet: bool = False):
    """
    AssetFlow - multi-tenant digital asset processing pipeline

    Registers uploads, runs them through derivative generation and metadata
    enrichment, and reports per-stage outcomes.
    """
    if ctx.obj is None:
        ctx.obj = {}

    ctx.obj['config'] = load_config(config)
    logging_config = ctx.obj['config'].get('logging', {})
    if verbose:
        level = 'DEBUG'
    elif quiet:
        level = 'ERROR'
    else:
        level = logging_config.get('level', 'INFO')
    setup_console_logging(level, color=logging_config.get('color', True),
                          fmt=logging_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    ctx.obj['verbose'] = verbose
    ctx.obj['quiet'] = quiet


main.add_command(db)
main.add_command(pipeline_group)
main.add_command(assets_group)
main.add_command(color_group)


if __name__ == '__main__':
    main()
