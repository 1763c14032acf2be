"""
End-to-end pipeline scenarios run inline against SQLite and a local blob store.
"""

import threading
import time

import pytest

from assetflow.db import (
    Asset, AssetStatus, DerivativeStatus, EntityRef, PipelineStatus, SupportTicket
)
from assetflow.exceptions import AssetNotFoundError, PlanLimitExceededError
from assetflow.pipeline import (
    STAGES, EventType, NextStep, RetryPolicy, StageDescriptor, Success, ThumbnailRetryService
)
from assetflow.processing.derivatives import ArtifactVerifier
from assetflow.utils.logging import PipelineStats

from conftest import BUCKET, image_bytes, noise_image, solid_image


class TinyThumbnails:
    """Produces 200-byte renditions that can never pass verification."""

    def generate(self, data, mime_type, filename):
        return {'thumb': b'\xff' * 200, 'medium': b'\xff' * 200}


def stages_named(*names):
    return [stage for stage in STAGES if stage.name in names]


def event_types(events, asset_id):
    return [event['event_type'] for event in events.list_for_asset(asset_id)]


def stage_status(coordinator, entity_id, version_aware=False):
    report = coordinator.status(entity_id, version_aware=version_aware)
    return {name: (record or {}).get('status') for name, record in report['stages'].items()}


@pytest.fixture
def photo():
    return image_bytes(noise_image())


class TestFullRun:
    """Test a supported image through every stage."""

    def test_every_stage_settles(self, coordinator, repository, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert stage_status(coordinator, asset_id) == {
            'extract_metadata': 'completed',
            'generate_thumbnails': 'completed',
            'generate_preview': 'completed',
            'generate_video_preview': 'skipped',
            'compute_technical_metadata': 'completed',
            'populate_automatic_metadata': 'completed',
            'resolve_metadata_candidates': 'completed',
            'ai_tagging': 'skipped',
            'ai_metadata_generation': 'skipped',
            'ai_metadata_suggestions': 'skipped',
            'finalize': 'completed',
            'promote': 'completed',
        }
        stages = coordinator.status(asset_id)['stages']
        assert stages['generate_video_preview']['skipped_reason'] == 'not_applicable'
        assert stages['ai_tagging']['skipped_reason'] == 'ai_disabled'
        assert stages['ai_metadata_suggestions']['skipped_reason'] == 'no_ai_candidates'

    def test_derivatives_and_metadata(self, coordinator, repository, store, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        root = f"tenants/acme/assets/{asset_id}/v1"
        assert asset.storage_path == f"{root}/original.jpg"
        assert asset.thumbnail_status == DerivativeStatus.COMPLETED
        assert asset.preview_status == DerivativeStatus.COMPLETED
        assert asset.thumbnail_path('medium') == f"{root}/thumbnails/medium.jpg"
        assert asset.meta_data['preview_path'] == f"{root}/previews/preview.jpg"
        assert asset.meta_data['pipeline_completed'] is True
        assert asset.meta_data['extracted']['width'] == 400
        assert asset.meta_data['_ai_metadata_status'] == 'skipped:ai_disabled'
        assert isinstance(asset.meta_data['color_buckets'], list)
        assert asset.pipeline_completed_at is not None
        assert asset.is_visible

        assert store.exists(BUCKET, f"{root}/original.jpg")
        assert store.exists(BUCKET, f"{root}/thumbnails/large.jpg")
        assert store.list(BUCKET, 'temp/') == []

        computed = repository.get_metadata_values(asset_id, source='computed')
        assert computed == {'orientation': 'landscape', 'resolution_class': 'low'}
        automatic = repository.get_metadata_values(asset_id, source='automatic')
        assert automatic['dominant_colors']
        assert 'color_buckets' in automatic

    def test_flat_colour_image(self, coordinator, repository, upload):
        data = image_bytes(solid_image((255, 0, 0), 100, 100), fmt='PNG')
        asset_id = upload(data, filename='logo.png', mime_type='image/png')
        coordinator.run_pipeline(asset_id)

        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.COMPLETED
        assert asset.preview_status == DerivativeStatus.COMPLETED
        assert asset.meta_data['color_buckets'] == ['red']
        assert asset.storage_path == f"tenants/acme/assets/{asset_id}/v1/original.png"
        stages = stage_status(coordinator, asset_id)
        assert stages['finalize'] == 'completed'
        assert stages['promote'] == 'completed'

    def test_events_recorded(self, coordinator, events, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        recorded = event_types(events, asset_id)
        assert recorded[0] == EventType.PROCESSING_STARTED.value
        for expected in (EventType.THUMBNAIL_STARTED, EventType.THUMBNAIL_COMPLETED,
                         EventType.COLOR_ANALYSIS_COMPLETED, EventType.METADATA_POPULATED,
                         EventType.FINALIZED, EventType.PROMOTED):
            assert expected.value in recorded
        assert recorded[-1] == EventType.STAGE_COMPLETED.value
        assert EventType.STAGE_FAILED.value not in recorded

    def test_stats_collected(self, coordinator, photo, upload):
        coordinator.stats = PipelineStats()
        coordinator.run_pipeline(upload(photo))
        summary = coordinator.stats.get_summary()
        assert summary['totals'] == {'success': 8, 'skip': 4}
        assert summary['errors'] == 0


class TestIdempotency:
    """Test that re-runs and re-delivered stages are no-ops."""

    def test_rerun_is_noop(self, coordinator, events, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)
        before = event_types(events, asset_id)

        coordinator.run_pipeline(asset_id)
        assert event_types(events, asset_id) == before

    def test_redelivered_stage_advances(self, coordinator, events, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)
        count = len(event_types(events, asset_id))

        step = coordinator.execute_stage(EntityRef.asset(asset_id), 'generate_thumbnails')
        assert step == NextStep('generate_preview')
        assert len(event_types(events, asset_id)) == count
        assert coordinator.status(asset_id)['stages']['generate_thumbnails']['attempts'] == 1

    def test_last_stage_stops(self, coordinator, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)
        assert coordinator.execute_stage(EntityRef.asset(asset_id), 'promote').done

    def test_unknown_stage(self, coordinator, photo, upload):
        with pytest.raises(ValueError):
            coordinator.execute_stage(EntityRef.asset(upload(photo)), 'sharpen')


class TestEntryGuards:
    """Test which entities the pipeline refuses to process."""

    def test_missing_asset(self, coordinator):
        with pytest.raises(AssetNotFoundError):
            coordinator.run_pipeline(12345)

    @pytest.mark.parametrize('status', [AssetStatus.HIDDEN, AssetStatus.FAILED])
    def test_not_processed(self, coordinator, repository, events, photo, upload, status):
        asset_id = upload(photo, status=status)
        coordinator.run_pipeline(asset_id)
        assert events.list_for_asset(asset_id) == []
        assert repository.get_snapshot(EntityRef.asset(asset_id)).pipeline_state == {}


class TestUnsupportedFiles:
    """Test the short-circuit to finalisation for archives."""

    def test_zip_skips_to_finalize(self, coordinator, repository, events, store, upload):
        asset_id = upload(b'PK\x03\x04' + b'\x00' * 100, filename='bundle.zip',
                          mime_type='application/zip')
        coordinator.run_pipeline(asset_id)

        statuses = stage_status(coordinator, asset_id)
        assert statuses.pop('finalize') == 'completed'
        assert statuses.pop('promote') == 'completed'
        assert set(statuses.values()) == {'skipped'}
        assert coordinator.status(asset_id)['stages']['generate_thumbnails']['skipped_reason'] \
            == 'unsupported'

        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.SKIPPED
        assert asset.thumbnail_error == 'Thumbnail generation skipped: unsupported file type'
        assert asset.storage_path == f"tenants/acme/assets/{asset_id}/v1/original.zip"
        assert asset.is_visible
        assert EventType.THUMBNAIL_SKIPPED.value in event_types(events, asset_id)

    def test_svg_thumbnail_skipped(self, coordinator, repository, upload):
        asset_id = upload(b'<svg xmlns="http://www.w3.org/2000/svg"/>', filename='logo.svg',
                          mime_type='image/svg+xml')
        coordinator.run_pipeline(asset_id)

        stages = coordinator.status(asset_id)['stages']
        assert stages['generate_thumbnails']['skipped_reason'] == 'unsupported_file_type'
        assert stages['generate_preview']['skipped_reason'] == 'thumbnails_skipped'
        assert stages['populate_automatic_metadata']['skipped_reason'] == 'thumbnails_skipped'
        assert stages['finalize']['status'] == 'completed'
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.SKIPPED


class TestCriticalFailure:
    """Test a thumbnail that keeps failing verification."""

    def test_small_thumbnail_fails_and_halts(self, make_coordinator, repository, events,
                                             session_scope, sleeper, photo, upload):
        coordinator = make_coordinator(thumbnails=TinyThumbnails())
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert sleeper.delays == [60, 300]
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.FAILED
        assert 'artifact too small' in asset.thumbnail_error
        assert asset.is_visible
        assert asset.meta_data['processing_failed'] is True
        assert asset.meta_data['failed_job'] == 'generate_thumbnails'
        assert asset.meta_data['failure_attempts'] == 3
        assert asset.meta_data['thumbnail_generation_failed'] is True
        assert 'pipeline_completed' not in asset.meta_data

        statuses = stage_status(coordinator, asset_id)
        assert statuses['generate_thumbnails'] == 'failed'
        assert statuses['finalize'] is None
        assert coordinator.status(asset_id)['stages']['generate_thumbnails']['attempts'] == 3

        recorded = event_types(events, asset_id)
        assert recorded.count(EventType.THUMBNAIL_FAILED.value) == 3
        assert EventType.PROCESSING_FAILED.value in recorded
        assert EventType.FINALIZED.value not in recorded

        with session_scope() as session:
            tickets = session.query(SupportTicket).filter_by(asset_id=asset_id).all()
            assert [t.stage for t in tickets] == ['generate_thumbnails']

    def test_promotion_failure_recorded(self, make_coordinator, repository, session_scope,
                                        store, photo, upload):
        coordinator = make_coordinator(stages=stages_named('promote'))
        asset_id = upload(photo)
        store.delete(BUCKET, 'temp/uploads/session-1/photo.jpg')
        coordinator.run_pipeline(asset_id)

        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.meta_data['promotion_failed'] is True
        assert asset.meta_data['failed_job'] == 'promote'
        assert asset.meta_data['failure_is_retryable'] is False
        assert asset.storage_path == 'temp/uploads/session-1/photo.jpg'
        assert asset.is_visible
        with session_scope() as session:
            assert session.get(Asset, asset_id).analysis_status == 'promotion_failed'


class TestNonCriticalStages:
    """Test retries, deferrals and terminal business errors off the critical path."""

    def test_failure_retries_then_continues(self, make_coordinator, events, sleeper, photo,
                                            upload):
        calls = []

        def flaky(ctx):
            calls.append(ctx.attempt)
            raise RuntimeError('renderer crashed')

        stage = StageDescriptor('flaky', flaky, critical=False,
                                retry_policy=RetryPolicy(max_attempts=2, backoff=(5,)))
        coordinator = make_coordinator(stages=[stage] + stages_named('finalize'))
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert calls == [1, 2]
        assert sleeper.delays == [5]
        statuses = stage_status(coordinator, asset_id)
        assert statuses == {'flaky': 'failed', 'finalize': 'completed'}
        failed = [e for e in events.list_for_asset(asset_id)
                  if e['event_type'] == EventType.STAGE_FAILED.value]
        assert failed[0]['payload']['critical'] is False
        assert failed[0]['payload']['attempts'] == 2

    def test_non_retryable_error_not_retried(self, make_coordinator, sleeper, photo, upload):
        def missing(ctx):
            raise LookupError('Object not found: assets/x')

        stage = StageDescriptor('missing', missing, critical=False)
        coordinator = make_coordinator(stages=[stage])
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert sleeper.delays == []
        assert coordinator.status(asset_id)['stages']['missing']['attempts'] == 1

    def test_terminal_business_error_skips(self, make_coordinator, photo, upload):
        def over_plan(ctx):
            raise PlanLimitExceededError('no credits')

        coordinator = make_coordinator(stages=[StageDescriptor('gated', over_plan,
                                                               critical=False)])
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)
        record = coordinator.status(asset_id)['stages']['gated']
        assert record['status'] == 'skipped'
        assert record['skipped_reason'] == 'plan_limit_exceeded'

    def test_missing_original_fails_stage(self, make_coordinator, repository, sleeper, photo,
                                          upload):
        coordinator = make_coordinator(stages=stages_named('extract_metadata'))
        asset_id = upload(photo)
        repository.update_fields(EntityRef.asset(asset_id), storage_path=None)
        coordinator.run_pipeline(asset_id)

        record = coordinator.status(asset_id)['stages']['extract_metadata']
        assert record['status'] == 'failed'
        assert record['error'] == f"asset:{asset_id} has no stored original"
        assert record['attempts'] == 3
        assert sleeper.delays == [60, 300]

    def test_deferral_cap(self, make_coordinator, repository, sleeper, photo, upload):
        coordinator = make_coordinator(
            stages=stages_named('populate_automatic_metadata', 'finalize')
        )
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert sleeper.delays == [60] * 5
        record = coordinator.status(asset_id)['stages']['populate_automatic_metadata']
        assert record['status'] == 'failed'
        assert record['deferrals'] == 5
        assert record['error'] == 'deferral cap exceeded (thumbnails_pending)'
        assert coordinator.status(asset_id)['stages']['finalize']['status'] == 'completed'
        assert repository.get_snapshot(EntityRef.asset(asset_id)).meta_data.get(
            'processing_failed') is None

    def test_timeout_enforced(self, make_coordinator, photo, upload):
        def slow(ctx):
            time.sleep(0.3)
            return Success()

        stage = StageDescriptor('slow', slow, critical=False,
                                retry_policy=RetryPolicy(max_attempts=1, timeout=0.05))
        coordinator = make_coordinator(stages=[stage])
        coordinator.enforce_timeouts = True
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        record = coordinator.status(asset_id)['stages']['slow']
        assert record['status'] == 'failed'
        assert record['error'] == 'Stage slow timed out after 0.05s'

    def test_timed_out_attempts_never_overlap(self, make_coordinator, sleeper, photo, upload):
        lock = threading.Lock()
        running = []
        peak = []
        finished = []

        def slow(ctx):
            with lock:
                running.append(ctx.attempt)
                peak.append(len(running))
            time.sleep(0.3)
            with lock:
                running.remove(ctx.attempt)
                finished.append(ctx.attempt)
            return Success()

        def after(ctx):
            with lock:
                peak.append(len(running))
            return Success()

        stages = [
            StageDescriptor('slow', slow, critical=False,
                            retry_policy=RetryPolicy(max_attempts=3, timeout=0.05)),
            StageDescriptor('after', after, critical=False),
        ]
        coordinator = make_coordinator(stages=stages)
        coordinator.enforce_timeouts = True
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)

        assert max(peak) == 1
        assert peak[-1] == 0
        assert finished == [1, 2, 3]
        assert sleeper.delays == [60, 300]
        record = coordinator.status(asset_id)['stages']['slow']
        assert record['status'] == 'failed'
        assert record['attempts'] == 3
        assert coordinator.status(asset_id)['stages']['after']['status'] == 'completed'


class TestVideoPipeline:
    """Test a video upload through the poster and GIF preview stage."""

    def test_video_preview_completed(self, coordinator, repository, store, clip, upload):
        asset_id = upload(clip, filename='clip.avi', mime_type='video/x-msvideo')
        coordinator.run_pipeline(asset_id)

        assert stage_status(coordinator, asset_id)['generate_video_preview'] == 'completed'
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.video_preview_status == DerivativeStatus.COMPLETED
        assert asset.thumbnail_status == DerivativeStatus.COMPLETED
        assert asset.meta_data['extracted']['frame_count'] == 24
        assert asset.meta_data['video_preview_frames'] == 8

        keys = asset.meta_data['video_preview']
        root = f"tenants/acme/assets/{asset_id}/v1"
        assert keys == {'poster': f"{root}/previews/poster.jpg",
                        'animation': f"{root}/previews/preview.gif"}
        assert ArtifactVerifier(store).verify(BUCKET, keys.values()).ok

    def test_undecodable_video_fails_stage(self, make_coordinator, repository, sleeper, upload):
        coordinator = make_coordinator(stages=stages_named('generate_video_preview'))
        asset_id = upload(b'not a video' * 64, filename='clip.avi', mime_type='video/x-msvideo')
        repository.update_fields(EntityRef.asset(asset_id),
                                 thumbnail_status=DerivativeStatus.COMPLETED)
        coordinator.run_pipeline(asset_id)

        record = coordinator.status(asset_id)['stages']['generate_video_preview']
        assert record['status'] == 'failed'
        assert record['attempts'] == 2
        assert record['error'].startswith('Video preview generation failed:')
        assert sleeper.delays == [120]
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.video_preview_status == DerivativeStatus.FAILED


class TestVersionPipeline:
    """Test version-aware runs."""

    @pytest.fixture
    def version_id(self, repository, store, photo, upload):
        asset_id = upload(image_bytes(noise_image(seed=1)), meta_data={'approval_status': 'approved'})
        key = 'temp/uploads/session-2/photo-v2.jpg'
        store.put(BUCKET, key, photo, 'image/jpeg')
        return repository.create_version(asset_id, key, mime_type='image/jpeg',
                                         file_size=len(photo))

    def test_version_completes_and_merges(self, coordinator, repository, events, version_id):
        coordinator.run_pipeline(version_id, version_aware=True)

        version = repository.get_snapshot(EntityRef.version(version_id))
        assert version.pipeline_status == PipelineStatus.COMPLETE
        root = f"tenants/acme/assets/{version.asset_id}/v1"
        assert version.storage_path == f"{root}/original.jpg"

        asset = repository.get_snapshot(EntityRef.asset(version.asset_id))
        assert asset.storage_path == f"{root}/original.jpg"
        assert asset.thumbnail_status == DerivativeStatus.COMPLETED
        assert asset.thumbnail_path('medium') == f"{root}/thumbnails/medium.jpg"
        assert asset.meta_data['approval_status'] == 'approved'
        assert asset.meta_data['pipeline_completed'] is True
        assert asset.pipeline_state == {}

        recorded = events.list_for_asset(version.asset_id)
        assert all(event['version_id'] == version_id for event in recorded)

    def test_completed_version_not_rerun(self, coordinator, events, repository, version_id):
        coordinator.run_pipeline(version_id, version_aware=True)
        asset_id = repository.get_snapshot(EntityRef.version(version_id)).asset_id
        count = len(events.list_for_asset(asset_id))
        coordinator.run_pipeline(version_id, version_aware=True)
        assert len(events.list_for_asset(asset_id)) == count

    def test_critical_failure_fails_version(self, make_coordinator, repository, version_id):
        coordinator = make_coordinator(thumbnails=TinyThumbnails())
        coordinator.run_pipeline(version_id, version_aware=True)

        version = repository.get_snapshot(EntityRef.version(version_id))
        assert version.pipeline_status == PipelineStatus.FAILED
        assert version.meta_data['processing_failed'] is True
        assert version.is_visible


class TestThumbnailRetry:
    """Test the scheduled retry of FAILED thumbnails."""

    def test_failed_thumbnail_recovers(self, make_coordinator, repository, photo, upload):
        asset_id = upload(photo)
        make_coordinator(thumbnails=TinyThumbnails()).run_pipeline(asset_id)

        restarted = ThumbnailRetryService(make_coordinator()).retry_failed()

        assert restarted == [asset_id]
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.COMPLETED
        assert asset.thumbnail_retry_count == 1
        assert asset.meta_data['pipeline_completed'] is True
        assert 'thumbnail_generation_failed' not in asset.meta_data

    def test_retry_cap(self, make_coordinator, repository, photo, upload):
        asset_id = upload(photo)
        make_coordinator(thumbnails=TinyThumbnails()).run_pipeline(asset_id)
        repository.update_fields(EntityRef.asset(asset_id), thumbnail_retry_count=3)

        assert ThumbnailRetryService(make_coordinator()).retry_failed() == []
        asset = repository.get_snapshot(EntityRef.asset(asset_id))
        assert asset.thumbnail_status == DerivativeStatus.FAILED

    def test_only_failed_thumbnails_reset(self, coordinator, photo, upload):
        asset_id = upload(photo)
        coordinator.run_pipeline(asset_id)
        assert not ThumbnailRetryService(coordinator).reset(EntityRef.asset(asset_id))

    def test_reset_keeps_completed_stages(self, make_coordinator, repository, photo, upload):
        asset_id = upload(photo)
        coordinator = make_coordinator(thumbnails=TinyThumbnails())
        coordinator.run_pipeline(asset_id)

        assert ThumbnailRetryService(coordinator).reset(EntityRef.asset(asset_id))
        report = coordinator.status(asset_id)
        assert report['processing_started'] is False
        assert report['stages']['extract_metadata']['status'] == 'completed'
        assert report['stages']['generate_thumbnails'] is None
        assert repository.get_snapshot(EntityRef.asset(asset_id)).thumbnail_status \
            == DerivativeStatus.PENDING
