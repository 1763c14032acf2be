"""
Command groups for the assetflow CLI.
"""

from .db_commands import db
from .pipeline_commands import pipeline_group, assets_group
from .color_commands import color_group

__all__ = ['db', 'pipeline_group', 'assets_group', 'color_group']
