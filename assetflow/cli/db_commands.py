"""
Database CLI commands for AssetFlow
"""

import logging

import click

from ..db.connection import configure_database, init_database, get_engine

logger = logging.getLogger(__name__)


@click.group()
def db():
    """Database management commands"""
    pass


@db.command('init')
@click.pass_context
def init(ctx):
    """Create all tables that do not exist yet"""
    config = ctx.obj.get('config', {})
    config.setdefault('database', {})['auto_init'] = False
    configure_database(config)
    init_database()
    click.echo(f"✅ Database initialized: {get_engine().url.render_as_string(hide_password=True)}")
