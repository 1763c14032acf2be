"""
Colour analysis CLI commands for AssetFlow
"""

import json

import click

from ..processing.color import ColorAnalysisEngine, DominantColorExtractor


@click.group('color')
def color_group():
    """Colour analysis tools"""
    pass


@color_group.command('analyze')
@click.argument('image', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def analyze(ctx, image: str):
    """Print clusters, macro buckets and dominant colours of IMAGE as JSON"""
    config = ctx.obj.get('config', {})
    engine = ColorAnalysisEngine.from_config(config)
    result = engine.analyze(image)
    if result is None:
        raise click.ClickException(f"Could not decode image: {image}")

    extractor = DominantColorExtractor(**config.get('dominant_colors', {}))
    summary = extractor.summarize(result)
    output = result.to_dict()
    output['dominant_colors'] = [color.to_dict() for color in summary.colors]
    output['dominant_hue_group'] = summary.hue_group
    output['dominant_color_bucket'] = summary.color_bucket
    click.echo(json.dumps(output, indent=2))
