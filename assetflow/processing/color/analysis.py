"""
Deterministic colour analysis.

Clusters a thumbnail's opaque pixels in CIE L*a*b* space with k-means,
suppresses noise clusters, merges perceptually identical ones and maps the
survivors onto a small palette of macro buckets.

Initialisation is derived from the pixel data itself (lightness-sorted,
evenly spaced samples), so identical image bytes always yield identical
clusters and buckets.
"""

import inspect
import io
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from ...db.models import DerivativeStatus
from ..file_types import AssetType, detect_asset_type
from .colorspace import rgb_to_lab, lab_to_rgb, delta_e

logger = logging.getLogger(__name__)


class MacroBucket(Enum):
    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    PINK = "pink"
    BROWN = "brown"
    BLACK = "black"
    WHITE = "white"
    GRAY = "gray"


@dataclass
class ColorCluster:
    """One k-means cluster: centroid in LAB and RGB plus its pixel share."""
    lab: List[float]
    rgb: List[int]
    coverage: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lab': [float(v) for v in self.lab],
            'rgb': [int(v) for v in self.rgb],
            'coverage': float(self.coverage),
            'count': int(self.count),
        }


@dataclass
class ColorAnalysisResult:
    buckets: List[str] = field(default_factory=list)
    clusters: List[ColorCluster] = field(default_factory=list)
    ignored_pixel_fraction: float = 0.0

    def to_internal(self) -> Dict[str, Any]:
        """Serialisable form stored in the asset's extended attributes."""
        return {
            'clusters': [cluster.to_dict() for cluster in self.clusters],
            'ignored_pixels': self.ignored_pixel_fraction,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {'buckets': list(self.buckets), 'internal': self.to_internal()}


def _floor4(value: float) -> float:
    # Rounding down keeps the summed coverage of a result at or below 1.0
    return math.floor(value * 10000 + 1e-9) / 10000


def lab_to_bucket(lab) -> Optional[MacroBucket]:
    """Map a LAB colour to a macro bucket via lightness/chroma/hue rules."""
    L, a, b = float(lab[0]), float(lab[1]), float(lab[2])
    chroma = math.sqrt(a * a + b * b)

    if L < 15:
        return MacroBucket.BLACK
    if L > 90:
        return MacroBucket.WHITE
    if 20 <= L <= 80 and chroma < 12:
        return MacroBucket.GRAY
    if a > 40:
        if L > 70:
            return MacroBucket.PINK
        if b < -20:
            return MacroBucket.PURPLE
        return MacroBucket.RED
    if a < -40:
        return MacroBucket.GREEN
    if b < -40:
        return MacroBucket.BLUE
    if b > 40:
        return MacroBucket.YELLOW
    if L < 50 and chroma < 40 and a > 0 and b > 0:
        return MacroBucket.BROWN
    if 15 < a < 50 and 15 < b < 50:
        return MacroBucket.ORANGE
    return None


class ColorAnalysisEngine:
    """
    LAB k-means colour analysis over a downsampled thumbnail.

    Args:
        max_size: Longest edge after downsampling
        alpha_threshold: Minimum alpha (0..1) for a pixel to be analysed
        k: Number of k-means clusters
        max_iterations: k-means iteration cap
        convergence_threshold: Stop once no centroid moves further than this
        coverage_min: Clusters below this share are dropped as noise
        delta_e_merge: Clusters closer than this ΔE are merged
        merge_iterations: Cap on merge passes
        bucket_coverage_min: Minimum cluster share to assign a bucket
        bucket_max: Maximum number of buckets per image
    """

    def __init__(self, max_size: int = 200, alpha_threshold: float = 0.95, k: int = 6,
                 max_iterations: int = 50, convergence_threshold: float = 0.001,
                 coverage_min: float = 0.05, delta_e_merge: float = 10.0,
                 merge_iterations: int = 10, bucket_coverage_min: float = 0.08,
                 bucket_max: int = 4):
        self.max_size = max_size
        self.alpha_threshold = alpha_threshold
        self.k = k
        self.max_iterations = max_iterations
        self.convergence_threshold = convergence_threshold
        self.coverage_min = coverage_min
        self.delta_e_merge = delta_e_merge
        self.merge_iterations = merge_iterations
        self.bucket_coverage_min = bucket_coverage_min
        self.bucket_max = bucket_max

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'ColorAnalysisEngine':
        settings = config.get('color_analysis', {})
        known = set(inspect.signature(cls).parameters)
        return cls(**{key: value for key, value in settings.items() if key in known})

    # -- entry points ----------------------------------------------------

    def analyze_asset(self, entity, store) -> Optional[ColorAnalysisResult]:
        """
        Analyse an asset's medium thumbnail.

        Returns None (logged) when the asset is not an image, its thumbnail
        is not COMPLETED, or the thumbnail cannot be read or decoded.
        """
        asset_type = detect_asset_type(entity.mime_type, entity.storage_path or entity.original_filename)
        if asset_type != AssetType.IMAGE:
            logger.info(f"Color analysis skipped for {entity.ref}: not an image ({entity.mime_type})")
            return None
        if entity.thumbnail_status != DerivativeStatus.COMPLETED:
            logger.info(f"Color analysis skipped for {entity.ref}: thumbnails not completed")
            return None
        thumbnail_key = entity.thumbnail_path('medium')
        if not thumbnail_key:
            logger.info(f"Color analysis skipped for {entity.ref}: no medium thumbnail")
            return None
        data = store.get(entity.storage_bucket, thumbnail_key)
        return self.analyze_bytes(data)

    def analyze(self, image_path: Union[str, Path]) -> Optional[ColorAnalysisResult]:
        """Analyse an image file on disk."""
        try:
            with Image.open(image_path) as image:
                image.load()
                return self.analyze_image(image)
        except (OSError, UnidentifiedImageError) as e:
            logger.warning(f"Color analysis could not decode {image_path}: {e}")
            return None

    def analyze_bytes(self, data: bytes) -> Optional[ColorAnalysisResult]:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                return self.analyze_image(image)
        except (OSError, UnidentifiedImageError) as e:
            logger.warning(f"Color analysis could not decode image bytes: {e}")
            return None

    def analyze_image(self, image: Image.Image) -> ColorAnalysisResult:
        pixels, total = self._opaque_pixels(image)
        ignored = _floor4(1.0 - len(pixels) / total)
        if len(pixels) == 0:
            return ColorAnalysisResult(ignored_pixel_fraction=1.0)

        clusters = self._kmeans(rgb_to_lab(pixels))
        clusters = [c for c in clusters if c.coverage >= self.coverage_min]
        clusters = self._merge_similar(clusters)
        clusters = [
            ColorCluster(
                lab=[round(float(v), 4) for v in c.lab],
                rgb=[int(v) for v in c.rgb],
                coverage=_floor4(c.coverage),
                count=int(c.count),
            )
            for c in clusters
        ]
        return ColorAnalysisResult(
            buckets=self._buckets(clusters),
            clusters=clusters,
            ignored_pixel_fraction=ignored,
        )

    # -- steps -----------------------------------------------------------

    def _opaque_pixels(self, image: Image.Image):
        """Downsample preserving aspect ratio and alpha; return opaque RGB pixels."""
        rgba = image.convert('RGBA')
        width, height = rgba.size
        scale = min(1.0, self.max_size / max(width, height))
        if scale < 1.0:
            new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
            rgba = rgba.resize(new_size, Image.Resampling.BILINEAR)

        array = np.asarray(rgba, dtype=np.float64).reshape(-1, 4)
        total = array.shape[0]
        opaque = array[:, 3] / 255.0 >= self.alpha_threshold
        return array[opaque, :3], total

    def _kmeans(self, points: np.ndarray) -> List[ColorCluster]:
        n = points.shape[0]
        k = min(self.k, n)

        # Deterministic initialisation: evenly spaced samples by lightness
        order = np.argsort(points[:, 0], kind='stable')
        step = max(1, n // k)
        seeds = [order[min(i * step, n - 1)] for i in range(k)]
        centroids = points[seeds].copy()

        labels = np.zeros(n, dtype=int)
        for _ in range(self.max_iterations):
            distances = ((points[:, None, :] - centroids[None, :, :]) ** 2).sum(axis=2)
            labels = distances.argmin(axis=1)  # first index wins ties

            updated = centroids.copy()
            for j in range(k):
                members = points[labels == j]
                if len(members):
                    updated[j] = members.mean(axis=0)

            shift = np.sqrt(((updated - centroids) ** 2).sum(axis=1)).max()
            centroids = updated
            if shift <= self.convergence_threshold:
                break

        counts = np.bincount(labels, minlength=k)
        clusters = [
            ColorCluster(
                lab=centroids[j].tolist(),
                rgb=lab_to_rgb(centroids[j]).tolist(),
                coverage=counts[j] / n,
                count=int(counts[j]),
            )
            for j in range(k) if counts[j] > 0
        ]
        clusters.sort(key=lambda c: -c.coverage)
        return clusters

    def _merge_similar(self, clusters: List[ColorCluster]) -> List[ColorCluster]:
        """Merge pairs closer than the ΔE threshold until stable or capped."""
        for _ in range(self.merge_iterations):
            merged_any = False
            consumed = set()
            result = []
            for i, current in enumerate(clusters):
                if i in consumed:
                    continue
                for j in range(i + 1, len(clusters)):
                    if j in consumed:
                        continue
                    other = clusters[j]
                    if delta_e(current.lab, other.lab) < self.delta_e_merge:
                        current = self._combine(current, other)
                        consumed.add(j)
                        merged_any = True
                        break
                result.append(current)
            clusters = result
            if not merged_any:
                break
            clusters.sort(key=lambda c: -c.coverage)
        return clusters

    @staticmethod
    def _combine(first: ColorCluster, second: ColorCluster) -> ColorCluster:
        total = first.count + second.count
        lab = ((np.asarray(first.lab) * first.count + np.asarray(second.lab) * second.count)
               / total)
        return ColorCluster(
            lab=lab.tolist(),
            rgb=lab_to_rgb(lab).tolist(),
            coverage=first.coverage + second.coverage,
            count=total,
        )

    def _buckets(self, clusters: List[ColorCluster]) -> List[str]:
        buckets: List[str] = []
        for cluster in clusters:
            if len(buckets) >= self.bucket_max:
                break
            if cluster.coverage < self.bucket_coverage_min:
                continue
            bucket = lab_to_bucket(cluster.lab)
            if bucket is not None and bucket.value not in buckets:
                buckets.append(bucket.value)
        return buckets
