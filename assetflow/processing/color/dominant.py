"""
Dominant colour extraction from colour-analysis clusters.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .analysis import ColorAnalysisResult, ColorCluster
from .colorspace import rgb_to_hex, round_half_away
from .hue_clusters import HueClusterCatalog

logger = logging.getLogger(__name__)

QUANTIZE_STEP = 10


@dataclass
class DominantColor:
    hex: str
    rgb: List[int]
    coverage: float

    def to_dict(self) -> Dict[str, Any]:
        return {'hex': self.hex, 'rgb': list(self.rgb), 'coverage': self.coverage}


@dataclass
class DominantColorSummary:
    colors: List[DominantColor]
    hue_group: Optional[str]
    color_bucket: Optional[str]


def quantize_lab_bucket(lab) -> str:
    """Coarse LAB bucket label, e.g. ``L50_A80_B70``."""
    quantized = [int(round_half_away(float(v) / QUANTIZE_STEP)) * QUANTIZE_STEP for v in lab[:3]]
    quantized[0] = max(0, min(100, quantized[0]))
    return f"L{quantized[0]}_A{quantized[1]}_B{quantized[2]}"


class DominantColorExtractor:
    """
    Reduces cluster output to the top dominant colours and persists them.

    Args:
        repository: AssetRepository used for metadata upserts
        coverage_min: Minimum cluster share for a dominant colour
        max_colors: Maximum number of dominant colours kept
        confidence: Confidence recorded with the automatic values
        catalog: Hue group lookup
    """

    def __init__(self, repository=None, coverage_min: float = 0.10, max_colors: int = 3,
                 confidence: float = 0.95, catalog: Optional[HueClusterCatalog] = None):
        self.repository = repository
        self.coverage_min = coverage_min
        self.max_colors = max_colors
        self.confidence = confidence
        self.catalog = catalog or HueClusterCatalog()

    def _top_clusters(self, analysis: ColorAnalysisResult) -> List[ColorCluster]:
        eligible = [c for c in analysis.clusters if c.coverage >= self.coverage_min]
        eligible.sort(key=lambda c: -c.coverage)
        return eligible[:self.max_colors]

    def extract(self, analysis: ColorAnalysisResult) -> List[DominantColor]:
        """Top colours with coverage above the floor, highest coverage first."""
        colors = []
        for cluster in self._top_clusters(analysis):
            rgb = [int(max(0, min(255, round_half_away(v)))) for v in cluster.rgb]
            colors.append(DominantColor(hex=rgb_to_hex(rgb), rgb=rgb, coverage=cluster.coverage))
        return colors

    def summarize(self, analysis: ColorAnalysisResult) -> DominantColorSummary:
        top = self._top_clusters(analysis)
        colors = self.extract(analysis)
        if not top:
            return DominantColorSummary(colors=colors, hue_group=None, color_bucket=None)
        return DominantColorSummary(
            colors=colors,
            hue_group=self.catalog.assign(top[0].lab),
            color_bucket=quantize_lab_bucket(top[0].lab),
        )

    def extract_and_persist(self, entity, analysis: ColorAnalysisResult) -> DominantColorSummary:
        """
        Upsert dominant colours, hue group and colour bucket for an asset.

        Re-running overwrites the previous values rather than appending.
        """
        if self.repository is None:
            raise RuntimeError("DominantColorExtractor needs a repository to persist results")

        summary = self.summarize(analysis)
        asset_id = entity.asset_id
        payload = [color.to_dict() for color in summary.colors]

        self.repository.upsert_metadata_value(
            asset_id, 'dominant_colors', payload, source='automatic', confidence=self.confidence
        )
        if summary.hue_group:
            self.repository.upsert_metadata_value(
                asset_id, 'dominant_hue_group', summary.hue_group,
                source='automatic', confidence=self.confidence
            )
        self.repository.update_asset_fields(
            asset_id,
            dominant_hue_group=summary.hue_group,
            dominant_color_bucket=summary.color_bucket,
        )
        self.repository.merge_metadata(entity.ref, {'dominant_colors': payload})

        logger.info(f"Dominant colors stored for asset {asset_id}: "
                    f"{[c.hex for c in summary.colors]} hue_group={summary.hue_group}")
        return summary
