"""
File type classification for pipeline routing.

Decides whether an upload can be processed at all, whether it can have
thumbnails, and which asset type (image, video, document) it is.
"""

from enum import Enum
from pathlib import PurePosixPath
from typing import Optional


class AssetType(Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"


# Types no stage can ever succeed on; the pipeline jumps straight to finalize
UNSUPPORTED_MIME_TYPES = {
    'application/zip',
    'application/x-zip-compressed',
    'application/x-rar-compressed',
    'application/vnd.rar',
    'application/x-7z-compressed',
    'application/x-tar',
    'application/gzip',
    'application/x-gzip',
    'application/x-bzip2',
    'application/x-xz',
    'application/x-msdownload',
    'application/octet-stream',
}

UNSUPPORTED_EXTENSIONS = {
    'zip', 'rar', '7z', 'tar', 'gz', 'tgz', 'bz2', 'xz', 'exe', 'dmg', 'iso', 'bin',
}

# Raster formats Pillow can thumbnail. SVG and AVIF are deliberately absent.
THUMBNAIL_IMAGE_MIME_TYPES = {
    'image/jpeg', 'image/jpg', 'image/pjpeg', 'image/png', 'image/gif',
    'image/webp', 'image/bmp', 'image/x-ms-bmp', 'image/tiff',
}

THUMBNAIL_IMAGE_EXTENSIONS = {
    'jpg', 'jpeg', 'png', 'gif', 'webp', 'bmp', 'tif', 'tiff',
}

VIDEO_EXTENSIONS = {'mp4', 'mov', 'avi', 'mkv', 'webm', 'm4v'}

DOCUMENT_EXTENSIONS = {'pdf', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx'}


def _extension(filename: Optional[str]) -> str:
    if not filename:
        return ''
    return PurePosixPath(filename).suffix.lstrip('.').lower()


def _mime(mime_type: Optional[str]) -> str:
    return (mime_type or '').split(';')[0].strip().lower()


def detect_asset_type(mime_type: Optional[str], filename: Optional[str] = None) -> AssetType:
    """Classify by MIME type first, falling back to the file extension."""
    mime = _mime(mime_type)
    ext = _extension(filename)

    if mime.startswith('video/') or ext in VIDEO_EXTENSIONS:
        return AssetType.VIDEO
    if mime.startswith('image/') or ext in THUMBNAIL_IMAGE_EXTENSIONS or ext in ('svg', 'avif'):
        return AssetType.IMAGE
    if (mime == 'application/pdf' or 'msword' in mime or 'officedocument' in mime
            or 'ms-excel' in mime or 'ms-powerpoint' in mime or ext in DOCUMENT_EXTENSIONS):
        return AssetType.DOCUMENT
    return AssetType.OTHER


def is_unsupported(mime_type: Optional[str], filename: Optional[str] = None) -> bool:
    """
    True when no derivative stage can succeed on this upload (archives,
    executables, opaque binaries).

    A known extension wins over a generic ``application/octet-stream``.
    """
    mime = _mime(mime_type)
    ext = _extension(filename)
    if ext in UNSUPPORTED_EXTENSIONS:
        return True
    if mime == 'application/octet-stream':
        return detect_asset_type(None, filename) == AssetType.OTHER
    return mime in UNSUPPORTED_MIME_TYPES


def supports_thumbnails(mime_type: Optional[str], filename: Optional[str] = None) -> bool:
    """Raster images and videos (via a frame grab) can be thumbnailed."""
    mime = _mime(mime_type)
    ext = _extension(filename)
    if mime in ('image/svg+xml', 'image/avif') or ext in ('svg', 'avif'):
        return False
    if mime in THUMBNAIL_IMAGE_MIME_TYPES or ext in THUMBNAIL_IMAGE_EXTENSIONS:
        return True
    return detect_asset_type(mime_type, filename) == AssetType.VIDEO
