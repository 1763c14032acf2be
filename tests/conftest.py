"""
Shared fixtures: in-memory database, local blob store, synthetic images and
a fully wired coordinator running stages inline.
"""

import io

import cv2
import numpy as np
import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker

from assetflow.config import get_default_config
from assetflow.db import AssetRepository, create_db_engine, init_database, make_session_scope
from assetflow.pipeline import (
    ActivityRecorder, DatabaseTicketSink, DiagnosticAnalyzer, FailureEscalationPolicy,
    FailureRecorder, InlineDispatcher, PipelineCoordinator, build_services
)
from assetflow.storage import LocalBlobStore

BUCKET = 'assets'
TENANT = 'acme'


def noise_image(width=400, height=300, seed=7, mode='RGB') -> Image.Image:
    """Random noise compresses badly, so every derivative clears the verification floor."""
    rng = np.random.default_rng(seed)
    channels = 4 if mode == 'RGBA' else 3
    pixels = rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)
    if mode == 'RGBA':
        pixels[..., 3] = 255
    return Image.fromarray(pixels, mode)


def solid_image(color, width=100, height=100, mode='RGB') -> Image.Image:
    return Image.new(mode, (width, height), color)


def image_bytes(image: Image.Image, fmt='JPEG') -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def video_bytes(path, frames=24, width=160, height=120, fps=12.0) -> bytes:
    """Write a short MJPEG AVI of noise frames and return its bytes."""
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*'MJPG'), fps, (width, height))
    rng = np.random.default_rng(3)
    try:
        for _ in range(frames):
            writer.write(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))
    finally:
        writer.release()
    return path.read_bytes()


class SleepRecorder:
    """Stands in for time.sleep; remembers every requested delay."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def config(tmp_path):
    config = get_default_config()
    config['storage']['base_path'] = str(tmp_path / 'storage')
    config['ai']['enabled'] = False
    return config


@pytest.fixture
def session_scope():
    engine = create_db_engine('sqlite://')
    init_database(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield make_session_scope(factory)
    engine.dispose()


@pytest.fixture
def clip(tmp_path):
    return video_bytes(tmp_path / 'clip.avi')


@pytest.fixture
def repository(session_scope):
    return AssetRepository(session_scope)


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(str(tmp_path / 'blobs'))


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_coordinator(config, session_scope, store, sleeper):
    """Factory so tests can swap individual services before wiring."""

    def factory(ai_client=None, stages=None, **service_overrides):
        services = build_services(config, session_scope, store=store, ai_client=ai_client)
        for name, value in service_overrides.items():
            setattr(services, name, value)
        escalation = FailureEscalationPolicy(
            analyzer=DiagnosticAnalyzer(),
            sink=DatabaseTicketSink(session_scope),
        )
        return PipelineCoordinator(
            services=services,
            failure_recorder=FailureRecorder(services.repository, services.events),
            escalation=escalation,
            dispatcher=InlineDispatcher(sleep=sleeper),
            stages=stages,
            enforce_timeouts=False,
        )

    return factory


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def events(session_scope):
    return ActivityRecorder(session_scope)


@pytest.fixture
def upload(repository, store):
    """Put bytes into temp upload storage and register the asset."""

    def factory(data: bytes, filename='photo.jpg', mime_type='image/jpeg', tenant=TENANT,
                settings=None, **asset_fields):
        repository.ensure_tenant(tenant, settings=settings)
        key = f"temp/uploads/session-1/{filename}"
        store.put(BUCKET, key, data, mime_type)
        return repository.create_asset(
            tenant_id=tenant,
            original_filename=filename,
            storage_bucket=BUCKET,
            storage_path=key,
            mime_type=mime_type,
            file_size=len(data),
            upload_session_id='session-1',
            **asset_fields,
        )

    return factory
