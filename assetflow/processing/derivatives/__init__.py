"""
Derivative generators and their verification/state tracking.
"""

from .state import DerivativeStateMachine
from .verification import ArtifactVerifier, VerificationReport, ArtifactCheck
from .thumbnails import ThumbnailGenerator
from .previews import PreviewGenerator, VideoPreviewGenerator, VideoPreview

__all__ = [
    'DerivativeStateMachine',
    'ArtifactVerifier', 'VerificationReport', 'ArtifactCheck',
    'ThumbnailGenerator',
    'PreviewGenerator', 'VideoPreviewGenerator', 'VideoPreview',
]
