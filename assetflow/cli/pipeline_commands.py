"""
Pipeline and asset CLI commands for AssetFlow

Provides command-line access to registering uploads, running the pipeline
inline or through Celery, and inspecting stage records.
"""

import json
import logging
import mimetypes
import uuid
from pathlib import Path

import click

from ..exceptions import AssetNotFoundError
from ..pipeline.coordinator import ThumbnailRetryService, build_coordinator
from ..utils.logging import PipelineStats

logger = logging.getLogger(__name__)


@click.group('pipeline')
def pipeline_group():
    """Run and inspect the asset processing pipeline"""
    pass


@pipeline_group.command('run')
@click.argument('asset_id', type=int)
@click.option('--version-aware', is_flag=True, help='Treat ASSET_ID as an asset version id')
@click.option('--inline/--queue', default=True,
              help='Run every stage in this process, or enqueue on Celery')
@click.pass_context
def run(ctx, asset_id: int, version_aware: bool, inline: bool):
    """
    Process one asset through every pipeline stage.

    ASSET_ID: Asset (or, with --version-aware, asset version) to process
    """
    if not inline:
        from ..api.tasks import start_pipeline
        start_pipeline.delay(asset_id, version_aware=version_aware)
        click.echo(f"📨 Queued pipeline for {'version' if version_aware else 'asset'} {asset_id}")
        return

    stats = PipelineStats()
    coordinator = build_coordinator(ctx.obj.get('config', {}), stats=stats)
    try:
        coordinator.run_pipeline(asset_id, version_aware=version_aware)
    except AssetNotFoundError as e:
        raise click.ClickException(str(e))

    if not ctx.obj.get('quiet'):
        stats.print_summary()


@pipeline_group.command('status')
@click.argument('asset_id', type=int)
@click.option('--version-aware', is_flag=True, help='Treat ASSET_ID as an asset version id')
@click.pass_context
def status(ctx, asset_id: int, version_aware: bool):
    """Print the stage records for an asset"""
    coordinator = build_coordinator(ctx.obj.get('config', {}))
    try:
        report = coordinator.status(asset_id, version_aware=version_aware)
    except AssetNotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(json.dumps(report, indent=2, default=str))


@pipeline_group.command('retry-thumbnails')
@click.option('--limit', '-n', default=100, help='Maximum assets to restart')
@click.pass_context
def retry_thumbnails(ctx, limit: int):
    """Reset FAILED thumbnails and rerun their pipelines inline"""
    coordinator = build_coordinator(ctx.obj.get('config', {}))
    restarted = ThumbnailRetryService(coordinator).retry_failed(limit=limit)
    click.echo(f"🔁 Restarted {len(restarted)} asset(s)")


@click.group('assets')
def assets_group():
    """Asset registration commands"""
    pass


@assets_group.command('register')
@click.argument('file', type=click.Path(exists=True, dir_okay=False))
@click.option('--tenant', '-t', required=True, help='Tenant id that owns the asset')
@click.option('--category', type=int, help='Category id')
@click.option('--run', 'run_now', is_flag=True, help='Run the pipeline inline after registering')
@click.pass_context
def register(ctx, file: str, tenant: str, category: int, run_now: bool):
    """
    Upload FILE to temp storage and create its Asset row.

    The file lands under temp/uploads/{session}/ exactly as a browser upload
    would, ready for the pipeline to promote it.
    """
    config = ctx.obj.get('config', {})
    coordinator = build_coordinator(config)
    repository = coordinator.repository
    store = coordinator.services.store

    path = Path(file)
    data = path.read_bytes()
    mime_type = mimetypes.guess_type(path.name)[0] or 'application/octet-stream'
    session_id = uuid.uuid4().hex
    bucket = config.get('storage', {}).get('bucket', 'assets')
    key = f"temp/uploads/{session_id}/{path.name}"

    store.put(bucket, key, data, mime_type)
    if repository.ensure_tenant(tenant):
        click.echo(f"🏢 Created tenant {tenant}")
    asset_id = repository.create_asset(
        tenant_id=tenant,
        original_filename=path.name,
        storage_bucket=bucket,
        storage_path=key,
        mime_type=mime_type,
        file_size=len(data),
        upload_session_id=session_id,
        category_id=category,
    )
    click.echo(f"📁 Registered asset {asset_id}: {key} ({mime_type}, {len(data)} bytes)")

    if run_now:
        coordinator.run_pipeline(asset_id)
        click.echo(json.dumps(coordinator.status(asset_id), indent=2, default=str))
