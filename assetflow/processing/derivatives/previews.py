"""
Preview generation: a large JPEG preview for images and videos, and an
animated preview (poster frame plus GIF strip) for videos.
"""

import io
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

from PIL import Image

from .thumbnails import flatten_to_rgb, encode_jpeg, load_source_image
from .video import read_frames

logger = logging.getLogger(__name__)


class PreviewGenerator:
    """Single high-resolution JPEG preview."""

    def __init__(self, max_size: int = 1600, quality: int = 88):
        self.max_size = max_size
        self.quality = quality

    def generate(self, data: bytes, mime_type: Optional[str], filename: Optional[str]) -> bytes:
        image = flatten_to_rgb(load_source_image(data, mime_type, filename))
        image.thumbnail((self.max_size, self.max_size), Image.Resampling.LANCZOS)
        return encode_jpeg(image, self.quality)


@dataclass
class VideoPreview:
    poster: bytes
    animation: bytes
    frame_count: int


class VideoPreviewGenerator:
    """
    Samples evenly spaced frames from a video into a poster JPEG and a
    looping GIF.

    Args:
        frames: Number of frames sampled
        frame_size: Longest edge of each frame
        frame_duration: GIF frame duration in milliseconds
    """

    def __init__(self, frames: int = 8, frame_size: int = 480, frame_duration: int = 250,
                 quality: int = 85):
        self.frames = frames
        self.frame_size = frame_size
        self.frame_duration = frame_duration
        self.quality = quality

    def generate(self, data: bytes, filename: Optional[str] = None) -> VideoPreview:
        suffix = PurePosixPath(filename or 'video.mp4').suffix or '.mp4'
        frames = read_frames(data, self.frames, suffix=suffix, start_fraction=0.05)
        resized = []
        for frame in frames:
            frame = frame.convert('RGB')
            frame.thumbnail((self.frame_size, self.frame_size), Image.Resampling.LANCZOS)
            resized.append(frame)

        poster = encode_jpeg(resized[len(resized) // 2], self.quality)

        buffer = io.BytesIO()
        palette_frames = [frame.convert('P', palette=Image.Palette.ADAPTIVE) for frame in resized]
        palette_frames[0].save(
            buffer,
            format='GIF',
            save_all=True,
            append_images=palette_frames[1:],
            duration=self.frame_duration,
            loop=0,
        )
        logger.debug(f"Video preview built from {len(resized)} frames")
        return VideoPreview(poster=poster, animation=buffer.getvalue(), frame_count=len(resized))
