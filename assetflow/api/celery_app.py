"""
Celery configuration for AssetFlow pipeline workers
"""

import os
from datetime import timedelta

from celery import Celery
from kombu import Exchange, Queue

from ..config import load_config

_config = load_config(os.environ.get('ASSETFLOW_CONFIG'))
_celery_config = _config.get('celery', {})

# Initialize Celery
celery_app = Celery('assetflow')

celery_app.conf.update(
    # Broker settings (Redis)
    broker_url=_celery_config.get('broker_url') or os.environ.get('REDIS_URL', 'redis://localhost:6379/0'),
    result_backend=_celery_config.get('result_backend') or os.environ.get('REDIS_URL', 'redis://localhost:6379/0'),

    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Task routing; run_stage is routed per stage at dispatch time
    task_routes={
        'assetflow.pipeline.run': {'queue': 'pipeline_critical'},
        'assetflow.pipeline.retry_failed_thumbnails': {'queue': 'pipeline_default'},
    },
    task_default_queue='pipeline_default',

    task_queues=(
        Queue('pipeline_critical', Exchange('pipeline_critical'), routing_key='pipeline_critical'),
        Queue('pipeline_default', Exchange('pipeline_default'), routing_key='pipeline_default'),
        Queue('pipeline_ai', Exchange('pipeline_ai'), routing_key='pipeline_ai'),
    ),

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=500,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,

    # Time limits (stages override these per dispatch)
    task_soft_time_limit=180,
    task_time_limit=240,

    beat_schedule={
        'retry-failed-thumbnails': {
            'task': 'assetflow.pipeline.retry_failed_thumbnails',
            'schedule': timedelta(hours=1),
            'args': (100,),
        },
    },

    # Monitoring
    worker_send_task_events=True,
    task_send_sent_event=True,
)

# Import task modules to register them
celery_app.autodiscover_tasks(['assetflow.api'], force=True)
