"""
Stage handlers and the ordered ``STAGES`` list.

Each handler takes a ``StageContext`` and returns a typed result. Handlers
never touch ``Asset.status``; only the coordinator and FailureRecorder
write failure details, and even they leave visibility alone.
"""

import io
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from ..ai.client import AIVendorClient
from ..ai.policy import AiTagPolicy
from ..db.models import CandidateStatus, DerivativeStatus, PipelineStatus
from ..db.operations import AssetRepository, EntityRef, EntitySnapshot
from ..exceptions import PreconditionError, TerminalBusinessError, VerificationError
from ..processing.color import ColorAnalysisEngine, DominantColorExtractor
from ..processing.derivatives import (
    ArtifactVerifier, DerivativeStateMachine, PreviewGenerator, ThumbnailGenerator,
    VideoPreviewGenerator
)
from ..processing.file_types import AssetType, detect_asset_type, supports_thumbnails
from ..processing.metadata import compute_technical_metadata, extract_metadata
from ..storage import BlobStore, StorageError
from .events import ActivityRecorder, EventType
from .failures import is_retryable
from .stages import (
    Fail, PreconditionResult, RetryPolicy, Skip, StageDescriptor, StageResult, Success,
    WaitPolicy
)

logger = logging.getLogger(__name__)

TEMP_PREFIX = 'temp/'

# Asset-level keys a new version must not overwrite on finalisation
PRESERVED_KEYS = ('category_id', 'metadata_extracted', 'preview_generated', 'approval_status')


@dataclass
class PipelineServices:
    """Collaborators shared by every stage handler."""
    repository: AssetRepository
    store: BlobStore
    events: ActivityRecorder
    verifier: ArtifactVerifier
    thumbnails: ThumbnailGenerator
    previews: PreviewGenerator
    video_previews: VideoPreviewGenerator
    color_engine: ColorAnalysisEngine
    dominant_colors: DominantColorExtractor
    ai_client: Optional[AIVendorClient] = None
    ai_policy: AiTagPolicy = field(default_factory=AiTagPolicy)
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StageContext:
    entity: EntitySnapshot
    services: PipelineServices
    attempt: int = 1
    deferrals: int = 0

    @property
    def ref(self) -> EntityRef:
        return self.entity.ref

    @property
    def repository(self) -> AssetRepository:
        return self.services.repository

    @property
    def store(self) -> BlobStore:
        return self.services.store

    @property
    def asset_type(self) -> AssetType:
        return detect_asset_type(self.entity.mime_type, self._filename)

    @property
    def _filename(self) -> str:
        return self.entity.storage_path or self.entity.original_filename

    def record(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> None:
        self.services.events.record(self.entity, event_type, payload)


def _now() -> str:
    return datetime.utcnow().isoformat()


def derivative_root(entity: EntitySnapshot) -> str:
    """
    Folder derivatives are written under.

    Uploads still in temp storage get a per-entity folder so two files of the
    same upload session never share thumbnails; promoted files keep their
    derivatives next to the original.
    """
    path = entity.storage_path or ''
    if not path or path.startswith(TEMP_PREFIX):
        return f"{TEMP_PREFIX}derivatives/{entity.ref.kind}-{entity.ref.id}"
    return posixpath.dirname(path)


def derivative_key(entity: EntitySnapshot, kind: str, name: str) -> str:
    return f"{derivative_root(entity)}/{kind}/{name}"


def _read_original(ctx: StageContext) -> bytes:
    if not ctx.entity.storage_path:
        raise PreconditionError(f"{ctx.ref} has no stored original")
    return ctx.store.get(ctx.entity.storage_bucket, ctx.entity.storage_path)


def _verification_failed(report) -> Fail:
    error = VerificationError(report.error_message)
    return Fail(report.error_message, retryable=True, exception=error)


def _load_thumbnail_image(ctx: StageContext) -> Optional[Image.Image]:
    key = ctx.entity.thumbnail_path('medium')
    if ctx.entity.thumbnail_status != DerivativeStatus.COMPLETED or not key:
        return None
    data = ctx.store.get(ctx.entity.storage_bucket, key)
    image = Image.open(io.BytesIO(data))
    image.load()
    return image.convert('RGB')


# -- preconditions and conditions -------------------------------------------

def thumbnails_ready(ctx: StageContext) -> PreconditionResult:
    status = ctx.entity.thumbnail_status or DerivativeStatus.PENDING
    if status == DerivativeStatus.COMPLETED:
        return PreconditionResult.ready()
    if status in (DerivativeStatus.FAILED, DerivativeStatus.SKIPPED):
        return PreconditionResult.unavailable(f"thumbnails_{status.value}")
    return PreconditionResult.wait(f"thumbnails_{status.value}")


def is_visual_media(ctx: StageContext) -> bool:
    return ctx.asset_type in (AssetType.IMAGE, AssetType.VIDEO)


def is_video(ctx: StageContext) -> bool:
    return ctx.asset_type == AssetType.VIDEO


# -- handlers ---------------------------------------------------------------

def extract_metadata_stage(ctx: StageContext) -> StageResult:
    data = _read_original(ctx)
    extracted = extract_metadata(data, ctx.entity.mime_type, ctx._filename)
    ctx.repository.merge_metadata(ctx.ref, {
        'extracted': extracted,
        'metadata_extracted': True,
        'metadata_extracted_at': _now(),
    })
    if not ctx.entity.file_size:
        ctx.repository.update_fields(ctx.ref, file_size=len(data))
    return Success({'fields': sorted(extracted)})


def _thumbnail_failed(ctx: StageContext, machine: DerivativeStateMachine,
                      message: str) -> None:
    ctx.repository.update_fields(ctx.ref, **machine.fail(message))
    ctx.repository.merge_metadata(ctx.ref, {
        'thumbnail_generation_failed': True,
        'thumbnail_generation_failed_at': _now(),
        'thumbnail_generation_error': message,
    })
    ctx.record(EventType.THUMBNAIL_FAILED, {'error': message, 'attempt': ctx.attempt})


def generate_thumbnails_stage(ctx: StageContext) -> StageResult:
    """
    Render, upload and verify every thumbnail style.

    The status only reaches COMPLETED when every uploaded file passes
    verification; a 200-byte stub leaves the thumbnail FAILED.
    """
    entity = ctx.entity
    status = entity.thumbnail_status or DerivativeStatus.PENDING
    if status == DerivativeStatus.COMPLETED:
        return Success({'already_completed': True})

    machine = DerivativeStateMachine('thumbnail', status, track_started_at=True)
    if status == DerivativeStatus.PROCESSING:
        # previous attempt died mid-flight
        machine.fail('interrupted')

    if not supports_thumbnails(entity.mime_type, ctx._filename):
        reason = 'Thumbnail generation skipped: unsupported file type'
        machine.start()
        ctx.repository.update_fields(ctx.ref, **machine.skip(reason))
        ctx.record(EventType.THUMBNAIL_SKIPPED, {'reason': reason, 'mime_type': entity.mime_type})
        return Skip('unsupported_file_type')

    ctx.repository.update_fields(ctx.ref, **machine.start())
    ctx.record(EventType.THUMBNAIL_STARTED, {'attempt': ctx.attempt})

    try:
        renditions = ctx.services.thumbnails.generate(
            _read_original(ctx), entity.mime_type, ctx._filename
        )
        keys = {}
        for style, payload in renditions.items():
            key = derivative_key(entity, 'thumbnails', f'{style}.jpg')
            ctx.store.put(entity.storage_bucket, key, payload, 'image/jpeg')
            keys[style] = key
    except Exception as e:
        message = f"Thumbnail generation failed: {e}"
        _thumbnail_failed(ctx, machine, message)
        return Fail(message, retryable=is_retryable(e), exception=e)

    report = ctx.services.verifier.verify(entity.storage_bucket, keys.values())
    if not report.ok:
        _thumbnail_failed(ctx, machine, report.error_message)
        return _verification_failed(report)

    ctx.repository.update_fields(ctx.ref, **machine.complete(report))
    ctx.repository.merge_metadata(
        ctx.ref,
        {'thumbnails': keys, 'thumbnails_generated_at': _now()},
        remove=['thumbnail_generation_failed', 'thumbnail_generation_failed_at',
                'thumbnail_generation_error'],
    )
    ctx.record(EventType.THUMBNAIL_COMPLETED, {'styles': sorted(keys)})
    logger.info(f"Thumbnails ready for {ctx.ref}: {sorted(keys)}")
    return Success({'thumbnails': keys})


def generate_preview_stage(ctx: StageContext) -> StageResult:
    entity = ctx.entity
    status = entity.preview_status or DerivativeStatus.PENDING
    if status == DerivativeStatus.COMPLETED:
        return Success({'already_completed': True})
    machine = DerivativeStateMachine('preview', status)
    if status == DerivativeStatus.PROCESSING:
        machine.fail('interrupted')
    ctx.repository.update_fields(ctx.ref, **machine.start())

    key = derivative_key(entity, 'previews', 'preview.jpg')
    try:
        payload = ctx.services.previews.generate(_read_original(ctx), entity.mime_type,
                                                 ctx._filename)
        ctx.store.put(entity.storage_bucket, key, payload, 'image/jpeg')
    except Exception as e:
        ctx.repository.update_fields(ctx.ref, **machine.fail(f"Preview generation failed: {e}"))
        return Fail(f"Preview generation failed: {e}", retryable=is_retryable(e), exception=e)

    report = ctx.services.verifier.verify(entity.storage_bucket, [key])
    ctx.repository.update_fields(ctx.ref, **machine.complete(report))
    if not report.ok:
        return _verification_failed(report)
    ctx.repository.merge_metadata(ctx.ref, {'preview_path': key, 'preview_generated': True})
    return Success({'preview': key})


def generate_video_preview_stage(ctx: StageContext) -> StageResult:
    entity = ctx.entity
    status = entity.video_preview_status or DerivativeStatus.PENDING
    if status == DerivativeStatus.COMPLETED:
        return Success({'already_completed': True})
    machine = DerivativeStateMachine('video_preview', status)
    if status == DerivativeStatus.PROCESSING:
        machine.fail('interrupted')
    ctx.repository.update_fields(ctx.ref, **machine.start())

    keys = {
        'poster': derivative_key(entity, 'previews', 'poster.jpg'),
        'animation': derivative_key(entity, 'previews', 'preview.gif'),
    }
    try:
        preview = ctx.services.video_previews.generate(_read_original(ctx), ctx._filename)
        ctx.store.put(entity.storage_bucket, keys['poster'], preview.poster, 'image/jpeg')
        ctx.store.put(entity.storage_bucket, keys['animation'], preview.animation, 'image/gif')
    except Exception as e:
        message = f"Video preview generation failed: {e}"
        ctx.repository.update_fields(ctx.ref, **machine.fail(message))
        return Fail(message, retryable=is_retryable(e), exception=e)

    report = ctx.services.verifier.verify(entity.storage_bucket, keys.values())
    ctx.repository.update_fields(ctx.ref, **machine.complete(report))
    if not report.ok:
        return _verification_failed(report)
    ctx.repository.merge_metadata(ctx.ref, {'video_preview': keys,
                                            'video_preview_frames': preview.frame_count})
    return Success({'video_preview': keys})


def compute_technical_metadata_stage(ctx: StageContext) -> StageResult:
    extracted = ctx.entity.meta_data.get('extracted')
    if not extracted:
        return Skip('metadata_not_extracted')
    computed = compute_technical_metadata(extracted)
    if not computed:
        return Skip('no_dimensions')
    for key, value in computed.items():
        ctx.repository.upsert_metadata_value(ctx.entity.asset_id, key, value,
                                             source='computed', confidence=1.0)
    ctx.repository.merge_metadata(ctx.ref, {'computed': computed})
    return Success(computed)


def populate_automatic_metadata_stage(ctx: StageContext) -> StageResult:
    """Colour analysis of the medium thumbnail plus dominant colours."""
    entity = ctx.entity
    analysis = ctx.services.color_engine.analyze_asset(entity, ctx.store)
    payload: Dict[str, Any] = {'color_analysis': analysis is not None}

    if analysis is not None:
        ctx.repository.merge_metadata(ctx.ref, {
            '_color_analysis': analysis.to_internal(),
            'color_buckets': analysis.buckets,
        })
        ctx.repository.upsert_metadata_value(entity.asset_id, 'color_buckets', analysis.buckets,
                                             source='automatic',
                                             confidence=ctx.services.dominant_colors.confidence)
        summary = ctx.services.dominant_colors.extract_and_persist(entity, analysis)
        ctx.record(EventType.COLOR_ANALYSIS_COMPLETED, {
            'buckets': analysis.buckets,
            'dominant_colors': [color.hex for color in summary.colors],
            'hue_group': summary.hue_group,
        })
        payload['buckets'] = analysis.buckets

    ctx.record(EventType.METADATA_POPULATED, payload)
    return Success(payload)


def _pick_winners(candidates: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[int]]:
    """Highest confidence per field wins; ties go to the earliest candidate."""
    by_field: Dict[str, List[Dict[str, Any]]] = {}
    for candidate in candidates:
        by_field.setdefault(candidate['field_key'], []).append(candidate)
    winners, losers = [], []
    for field_key in sorted(by_field):
        ranked = sorted(by_field[field_key], key=lambda c: (-(c['confidence'] or 0.0), c['id']))
        winners.append(ranked[0])
        losers.extend(c['id'] for c in ranked[1:])
    return winners, losers


def resolve_metadata_candidates_stage(ctx: StageContext) -> StageResult:
    asset_id = ctx.entity.asset_id
    pending = [c for c in ctx.repository.get_candidates(asset_id, CandidateStatus.PENDING)
               if c['source'] != 'ai']
    if not pending:
        return Success({'resolved': 0})

    winners, losers = _pick_winners(pending)
    for winner in winners:
        ctx.repository.upsert_metadata_value(asset_id, winner['field_key'], winner['value'],
                                             source=winner['source'],
                                             confidence=winner['confidence'])
    ctx.repository.set_candidate_status([w['id'] for w in winners], CandidateStatus.RESOLVED)
    ctx.repository.set_candidate_status(losers, CandidateStatus.REJECTED)
    return Success({'resolved': len(winners), 'rejected': len(losers)})


def _ai_settings(ctx: StageContext, suggestions: bool = False):
    """Tenant settings when AI may run, otherwise the skip reason."""
    settings = ctx.repository.get_tenant_settings(ctx.entity.tenant_id)
    policy = ctx.services.ai_policy
    decision = (policy.should_generate_suggestions(settings) if suggestions
                else policy.should_proceed_with_ai(settings))
    if not decision.should_proceed:
        return None, decision.reason
    return settings, None


def ai_tagging_stage(ctx: StageContext) -> StageResult:
    settings, reason = _ai_settings(ctx)
    if reason:
        return Skip(reason)
    client = ctx.services.ai_client
    if client is None:
        return Skip('ai_disabled')
    ctx.services.ai_policy.check_plan_limit(settings)

    image = _load_thumbnail_image(ctx)
    if image is None:
        return Skip('thumbnail_unavailable')

    tags = client.generate_tags(image)
    limit = ctx.services.ai_policy.auto_apply_limit(settings)
    applied = ctx.repository.apply_tags(ctx.entity.asset_id, tags, source='ai',
                                        auto_apply_limit=limit)
    suggested = [{'tag': tag, 'confidence': confidence} for tag, confidence in tags
                 if tag.strip().lower() not in applied]
    ctx.repository.merge_metadata(ctx.ref, {'_ai_tag_suggestions': suggested,
                                            '_ai_tagged_at': _now()})
    ctx.record(EventType.AI_TAGGING_COMPLETED, {'applied': applied, 'suggested': len(suggested)})
    return Success({'applied': applied})


def _set_ai_status(ctx: StageContext, status: str, **extra) -> None:
    ctx.repository.merge_metadata(ctx.ref, dict(extra, _ai_metadata_status=status))


def ai_metadata_generation_stage(ctx: StageContext) -> StageResult:
    """
    Ask the AI client for metadata candidates once per asset.

    ``_ai_metadata_generated_at`` marks completion so a re-run never calls
    the vendor twice.
    """
    if ctx.entity.meta_data.get('_ai_metadata_generated_at'):
        return Success({'already_generated': True})

    settings, reason = _ai_settings(ctx)
    if reason is None and ctx.services.ai_client is None:
        reason = 'ai_disabled'
    if reason is None and not ctx.entity.category_id:
        reason = 'no_category'
    image = None
    if reason is None:
        image = _load_thumbnail_image(ctx)
        if image is None:
            reason = 'thumbnail_unavailable'
    if reason:
        _set_ai_status(ctx, f'skipped:{reason}')
        return Skip(reason)

    try:
        ctx.services.ai_policy.check_plan_limit(settings)
        candidates = ctx.services.ai_client.generate_metadata(image)
    except TerminalBusinessError as e:
        _set_ai_status(ctx, f'skipped:{e.reason_code}')
        return Skip(e.reason_code)
    except Exception as e:
        _set_ai_status(ctx, 'failed', _ai_metadata_error=str(e))
        ctx.record(EventType.AI_METADATA_FAILED, {'error': str(e), 'attempt': ctx.attempt})
        return Fail(f"AI metadata generation failed: {e}", retryable=is_retryable(e), exception=e)

    count = ctx.repository.add_candidates(ctx.entity.asset_id, candidates, source='ai')
    _set_ai_status(ctx, 'completed', _ai_metadata_generated_at=_now(),
                   _ai_metadata_fields=sorted(candidates))
    ctx.record(EventType.AI_METADATA_GENERATED, {'fields': sorted(candidates)})
    return Success({'candidates': count})


def ai_metadata_suggestions_stage(ctx: StageContext) -> StageResult:
    """Promote confident AI candidates for empty fields to suggestions."""
    settings, reason = _ai_settings(ctx, suggestions=True)
    if reason:
        return Skip(reason)
    asset_id = ctx.entity.asset_id
    candidates = ctx.repository.get_candidates(asset_id, CandidateStatus.PENDING, source='ai')
    if not candidates:
        return Skip('no_ai_candidates')

    min_confidence = ctx.services.ai_policy.suggestion_min_confidence(settings)
    existing = ctx.repository.get_metadata_values(asset_id)
    suggestions, suggested_ids, rejected_ids = {}, [], []
    for candidate in candidates:
        confidence = candidate['confidence']
        if (confidence is None or confidence < min_confidence
                or candidate['field_key'] in existing or candidate['field_key'] in suggestions):
            rejected_ids.append(candidate['id'])
            continue
        suggestions[candidate['field_key']] = {
            'value': candidate['value'],
            'confidence': confidence,
            'source': 'ai',
        }
        suggested_ids.append(candidate['id'])

    ctx.repository.set_candidate_status(suggested_ids, CandidateStatus.SUGGESTED)
    ctx.repository.set_candidate_status(rejected_ids, CandidateStatus.REJECTED)
    if suggestions:
        ctx.repository.merge_metadata(ctx.ref, {'_metadata_suggestions': suggestions})
    ctx.record(EventType.AI_SUGGESTIONS_GENERATED, {'count': len(suggestions),
                                                    'rejected': len(rejected_ids)})
    return Success({'suggested': sorted(suggestions)})


def finalize_stage(ctx: StageContext) -> StageResult:
    entity = ctx.entity
    if entity.ref.is_version:
        ctx.repository.transition_version(entity.version_id, PipelineStatus.COMPLETE)
        ctx.repository.finalize_version(entity.version_id, PRESERVED_KEYS)

    completed_at = datetime.utcnow()
    ctx.repository.update_asset_fields(entity.asset_id, pipeline_completed_at=completed_at)
    ctx.repository.merge_metadata(EntityRef.asset(entity.asset_id), {
        'pipeline_completed': True,
        'pipeline_completed_at': completed_at.isoformat(),
    })
    ctx.record(EventType.FINALIZED, {'version': entity.version_number})
    return Success({'completed_at': completed_at.isoformat()})


def canonical_key(entity: EntitySnapshot) -> str:
    extension = entity.extension or 'bin'
    return (f"tenants/{entity.tenant_id}/assets/{entity.asset_id}/"
            f"v{entity.version_number or 1}/original.{extension}")


def _move_derivative(ctx: StageContext, source: str, destination: str) -> str:
    """Move one derivative; keep the old key if the move fails."""
    if source == destination:
        return source
    try:
        ctx.store.move(ctx.entity.storage_bucket, source, destination)
        return destination
    except StorageError as e:
        logger.warning(f"Could not move derivative {source} for {ctx.ref}: {e}")
        return source


def promote_stage(ctx: StageContext) -> StageResult:
    """
    Move the original and its derivatives from temp storage to the
    canonical tenant path.

    Idempotent: a file outside ``temp/`` is already promoted. A partially
    completed earlier move is resumed by deleting the leftover source.
    """
    entity = ctx.entity
    source = entity.storage_path or ''
    if not source.startswith(TEMP_PREFIX):
        return Success({'already_promoted': True})

    bucket = entity.storage_bucket
    destination = canonical_key(entity)
    try:
        if not ctx.store.exists(bucket, destination):
            ctx.store.move(bucket, source, destination)
        elif ctx.store.exists(bucket, source):
            ctx.store.delete(bucket, source)
    except Exception as e:
        ctx.repository.merge_metadata(ctx.ref, {
            'promotion_failed': True,
            'promotion_failed_at': _now(),
            'promotion_error': str(e),
        })
        ctx.repository.update_asset_fields(entity.asset_id, analysis_status='promotion_failed')
        return Fail(f"Promotion failed: {e}", retryable=is_retryable(e), exception=e)

    target_dir = posixpath.dirname(destination)
    meta = entity.meta_data
    updates: Dict[str, Any] = {'promoted_at': _now(), 'original_path': destination}
    thumbnails = meta.get('thumbnails') or {}
    if thumbnails:
        updates['thumbnails'] = {
            style: _move_derivative(ctx, key, f"{target_dir}/thumbnails/{style}.jpg")
            for style, key in thumbnails.items()
        }
    if meta.get('preview_path'):
        updates['preview_path'] = _move_derivative(ctx, meta['preview_path'],
                                                   f"{target_dir}/previews/preview.jpg")
    if meta.get('video_preview'):
        updates['video_preview'] = {
            name: _move_derivative(ctx, key, f"{target_dir}/previews/{posixpath.basename(key)}")
            for name, key in meta['video_preview'].items()
        }

    remove = ['promotion_failed', 'promotion_failed_at', 'promotion_error']
    ctx.repository.update_fields(ctx.ref, storage_path=destination)
    ctx.repository.merge_metadata(ctx.ref, updates, remove=remove)
    if entity.ref.is_version:
        ctx.repository.update_asset_fields(entity.asset_id, storage_path=destination)
        ctx.repository.merge_metadata(EntityRef.asset(entity.asset_id), updates, remove=remove)

    ctx.record(EventType.PROMOTED, {'from': source, 'to': destination})
    logger.info(f"Promoted {ctx.ref} to {destination}")
    return Success({'storage_path': destination})


# -- the pipeline -----------------------------------------------------------

STAGES: List[StageDescriptor] = [
    StageDescriptor('extract_metadata', extract_metadata_stage, critical=False),
    StageDescriptor('generate_thumbnails', generate_thumbnails_stage, critical=True,
                    retry_policy=RetryPolicy(timeout=300), queue='pipeline_critical'),
    StageDescriptor('generate_preview', generate_preview_stage, critical=False,
                    wait_policy=WaitPolicy.SKIP_AND_CONTINUE, precondition=thumbnails_ready,
                    condition=is_visual_media),
    StageDescriptor('generate_video_preview', generate_video_preview_stage, critical=False,
                    retry_policy=RetryPolicy(max_attempts=2, backoff=(120, 600), timeout=900),
                    wait_policy=WaitPolicy.SKIP_AND_CONTINUE, precondition=thumbnails_ready,
                    condition=is_video),
    StageDescriptor('compute_technical_metadata', compute_technical_metadata_stage,
                    critical=False),
    StageDescriptor('populate_automatic_metadata', populate_automatic_metadata_stage,
                    critical=False, wait_policy=WaitPolicy.RETRY_UNTIL_READY,
                    precondition=thumbnails_ready),
    StageDescriptor('resolve_metadata_candidates', resolve_metadata_candidates_stage,
                    critical=False),
    StageDescriptor('ai_tagging', ai_tagging_stage, critical=False,
                    wait_policy=WaitPolicy.SKIP_AND_CONTINUE, precondition=thumbnails_ready,
                    queue='pipeline_ai'),
    StageDescriptor('ai_metadata_generation', ai_metadata_generation_stage, critical=False,
                    wait_policy=WaitPolicy.SKIP_AND_CONTINUE, precondition=thumbnails_ready,
                    queue='pipeline_ai'),
    StageDescriptor('ai_metadata_suggestions', ai_metadata_suggestions_stage, critical=False,
                    wait_policy=WaitPolicy.SKIP_AND_CONTINUE, queue='pipeline_ai'),
    StageDescriptor('finalize', finalize_stage, critical=True, queue='pipeline_critical',
                    skip_when_unsupported=False),
    StageDescriptor('promote', promote_stage, critical=True, queue='pipeline_critical',
                    skip_when_unsupported=False),
]

STAGE_NAMES = [stage.name for stage in STAGES]
