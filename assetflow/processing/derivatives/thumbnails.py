"""
Thumbnail generation for raster images and videos.
"""

import io
import logging
from pathlib import PurePosixPath
from typing import Dict, Optional

from PIL import Image, ImageOps

from ..file_types import AssetType, detect_asset_type, supports_thumbnails
from .video import read_frames

logger = logging.getLogger(__name__)

DEFAULT_STYLES = {'thumb': 320, 'medium': 1024, 'large': 2048}


def flatten_to_rgb(image: Image.Image, background=(255, 255, 255)) -> Image.Image:
    """Composite any alpha onto a solid background and return an RGB image."""
    if image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info):
        rgba = image.convert('RGBA')
        canvas = Image.new('RGB', rgba.size, background)
        canvas.paste(rgba, mask=rgba.split()[-1])
        return canvas
    return image.convert('RGB')


def encode_jpeg(image: Image.Image, quality: int = 85) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='JPEG', quality=quality, optimize=True)
    return buffer.getvalue()


def load_source_image(data: bytes, mime_type: Optional[str], filename: Optional[str]) -> Image.Image:
    """
    Decode the first displayable frame of an image or video.

    EXIF orientation is applied so derivatives display upright.
    """
    if detect_asset_type(mime_type, filename) == AssetType.VIDEO:
        suffix = PurePosixPath(filename or 'video.mp4').suffix or '.mp4'
        return read_frames(data, 1, suffix=suffix, start_fraction=0.1)[0]

    with Image.open(io.BytesIO(data)) as image:
        image.seek(0)
        transposed = ImageOps.exif_transpose(image)
        transposed.load()
        return transposed.copy()


class ThumbnailGenerator:
    """
    Produces one JPEG per configured style, each bounded by a square box.

    Args:
        styles: Mapping of style name to longest edge in pixels
        quality: JPEG quality
    """

    def __init__(self, styles: Optional[Dict[str, int]] = None, quality: int = 85):
        self.styles = dict(styles or DEFAULT_STYLES)
        self.quality = quality

    @classmethod
    def from_config(cls, config) -> 'ThumbnailGenerator':
        settings = config.get('thumbnails', {})
        return cls(styles=settings.get('styles'), quality=settings.get('quality', 85))

    def supports(self, mime_type: Optional[str], filename: Optional[str]) -> bool:
        return supports_thumbnails(mime_type, filename)

    def generate(self, data: bytes, mime_type: Optional[str],
                 filename: Optional[str]) -> Dict[str, bytes]:
        """
        Render every style from the source bytes.

        Returns:
            Mapping of style name to JPEG bytes
        """
        source = flatten_to_rgb(load_source_image(data, mime_type, filename))
        outputs = {}
        for style, edge in self.styles.items():
            rendition = source.copy()
            rendition.thumbnail((edge, edge), Image.Resampling.LANCZOS)
            outputs[style] = encode_jpeg(rendition, self.quality)
            logger.debug(f"Rendered {style} thumbnail {rendition.size} ({len(outputs[style])} bytes)")
        return outputs
