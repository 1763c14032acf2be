"""
OpenCV helpers for reading frames out of in-memory video bytes.
"""

import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, List

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


@contextmanager
def open_video(data: bytes, suffix: str = '.mp4'):
    """Yield a cv2.VideoCapture over a temporary copy of ``data``."""
    handle, path = tempfile.mkstemp(suffix=suffix)
    capture = None
    try:
        with os.fdopen(handle, 'wb') as f:
            f.write(data)
        capture = cv2.VideoCapture(path)
        if not capture.isOpened():
            raise ValueError("Video could not be opened for decoding")
        yield capture
    finally:
        if capture is not None:
            capture.release()
        os.unlink(path)


def probe(data: bytes, suffix: str = '.mp4') -> Dict[str, Any]:
    """Basic stream properties: dimensions, fps, frame count, duration."""
    with open_video(data, suffix) as capture:
        fps = float(capture.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        return {
            'width': int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
            'height': int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
            'fps': fps,
            'frame_count': frame_count,
            'duration': round(frame_count / fps, 3) if fps > 0 else None,
        }


def read_frames(data: bytes, count: int, suffix: str = '.mp4',
                start_fraction: float = 0.0) -> List[Image.Image]:
    """
    Read ``count`` evenly spaced frames as RGB PIL images.

    Raises:
        ValueError: if no frame can be decoded
    """
    frames = []
    with open_video(data, suffix) as capture:
        total = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        if total > 0:
            first = int(total * start_fraction)
            span = max(1, total - first)
            positions = sorted({first + int(i * span / count) for i in range(count)})
        else:
            positions = [None] * count

        for position in positions:
            if position is not None:
                capture.set(cv2.CAP_PROP_POS_FRAMES, position)
            ok, frame = capture.read()
            if not ok or frame is None:
                continue
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            frames.append(Image.fromarray(np.ascontiguousarray(rgb)))

    if not frames:
        raise ValueError("No decodable frames in video")
    return frames
