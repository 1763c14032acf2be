"""
Metadata extraction from original files and computed technical metadata.
"""

import io
import logging
from pathlib import PurePosixPath
from typing import Any, Dict, Optional

from PIL import Image, ImageCms, ExifTags, UnidentifiedImageError

from .file_types import AssetType, detect_asset_type
from .derivatives.video import probe

logger = logging.getLogger(__name__)

EXIF_IFD = 0x8769
INTEROP_IFD = 0xA005
EXIF_COLOR_SPACE = 0xA001
INTEROP_INDEX = 0x0001

# EXIF orientations that rotate the image by 90 degrees
_ROTATED_ORIENTATIONS = {5, 6, 7, 8}

_KEPT_EXIF_TAGS = ('Make', 'Model', 'DateTime', 'Orientation', 'Software')
_KEPT_EXIF_IFD_TAGS = ('DateTimeOriginal', 'ExposureTime', 'FNumber', 'ISOSpeedRatings',
                       'FocalLength', 'LensModel', 'ColorSpace')


def _json_safe(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace').strip('\x00')
    if isinstance(value, (int, str, bool)) or value is None:
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return str(value)


def _read_ifd(exif, tag: int) -> Dict[int, Any]:
    """EXIF sub-IFD contents, or an empty dict when the file does not carry it."""
    try:
        return dict(exif.get_ifd(tag) or {})
    except KeyError:
        return {}


def extract_image_metadata(data: bytes) -> Dict[str, Any]:
    """
    Read dimensions, format, EXIF subset and ICC description from image bytes.

    Width and height are display dimensions (EXIF rotation applied).
    """
    with Image.open(io.BytesIO(data)) as image:
        width, height = image.size
        exif = image.getexif()
        exif_data: Dict[str, Any] = {}
        for tag_id, value in exif.items():
            name = ExifTags.TAGS.get(tag_id)
            if name in _KEPT_EXIF_TAGS:
                exif_data[name] = _json_safe(value)
        exif_ifd = _read_ifd(exif, EXIF_IFD)
        for tag_id, value in exif_ifd.items():
            name = ExifTags.TAGS.get(tag_id)
            if name in _KEPT_EXIF_IFD_TAGS:
                exif_data[name] = _json_safe(value)
        # the interop IFD hangs off the Exif IFD; plain JPEGs and PNGs carry neither
        if INTEROP_IFD in exif_ifd:
            interop_index = _read_ifd(exif, INTEROP_IFD).get(INTEROP_INDEX)
            if interop_index:
                exif_data['InteropIndex'] = _json_safe(interop_index)

        icc_description = None
        icc_profile = image.info.get('icc_profile')
        if icc_profile:
            try:
                profile = ImageCms.ImageCmsProfile(io.BytesIO(icc_profile))
                icc_description = ImageCms.getProfileDescription(profile).strip()
            except (ImageCms.PyCMSError, OSError) as e:
                logger.debug(f"Unreadable ICC profile: {e}")

        if exif_data.get('Orientation') in _ROTATED_ORIENTATIONS:
            width, height = height, width

        return {
            'width': width,
            'height': height,
            'format': image.format,
            'mode': image.mode,
            'frames': getattr(image, 'n_frames', 1),
            'exif': exif_data,
            'icc_description': icc_description,
        }


def extract_metadata(data: bytes, mime_type: Optional[str],
                     filename: Optional[str]) -> Dict[str, Any]:
    """
    Extract file-level metadata appropriate to the asset type.

    Raises:
        ValueError: if an image or video cannot be decoded
    """
    asset_type = detect_asset_type(mime_type, filename)
    result: Dict[str, Any] = {
        'asset_type': asset_type.value,
        'file_size': len(data),
        'mime_type': mime_type,
    }

    if asset_type == AssetType.IMAGE:
        try:
            result.update(extract_image_metadata(data))
        except (UnidentifiedImageError, OSError) as e:
            raise ValueError(f"Invalid image data: {e}") from e
    elif asset_type == AssetType.VIDEO:
        suffix = PurePosixPath(filename or 'video.mp4').suffix or '.mp4'
        result.update(probe(data, suffix=suffix))
    return result


def compute_orientation(width: int, height: int) -> Optional[str]:
    if not width or not height:
        return None
    if width > height:
        return 'landscape'
    if height > width:
        return 'portrait'
    return 'square'


def compute_color_space(exif: Dict[str, Any], icc_description: Optional[str] = None) -> Optional[str]:
    """sRGB / Adobe RGB / Display P3 from EXIF ColorSpace, ICC description or InteropIndex."""
    if exif.get('ColorSpace') == 1:
        return 'srgb'

    if icc_description:
        description = icc_description.lower()
        if 'srgb' in description or 's rgb' in description:
            return 'srgb'
        if 'adobe rgb' in description:
            return 'adobe_rgb'
        if 'display p3' in description or 'display-p3' in description:
            return 'display_p3'

    interop = str(exif.get('InteropIndex') or '').lower()
    if 'r98' in interop:
        return 'srgb'
    return None


def compute_resolution_class(width: int, height: int) -> Optional[str]:
    if not width or not height:
        return None
    megapixels = (width * height) / 1_000_000
    if megapixels < 1:
        return 'low'
    if megapixels < 4:
        return 'medium'
    if megapixels < 12:
        return 'high'
    return 'ultra'


def compute_technical_metadata(extracted: Dict[str, Any]) -> Dict[str, Any]:
    """
    Derive orientation, colour space and resolution class.

    Fields that cannot be determined are omitted rather than stored as null.
    """
    width = int(extracted.get('width') or 0)
    height = int(extracted.get('height') or 0)
    computed = {
        'orientation': compute_orientation(width, height),
        'color_space': compute_color_space(extracted.get('exif') or {},
                                           extracted.get('icc_description')),
        'resolution_class': compute_resolution_class(width, height),
    }
    return {key: value for key, value in computed.items() if value is not None}
