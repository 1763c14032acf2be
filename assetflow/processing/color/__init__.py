"""
Colour analysis: LAB k-means clustering, macro buckets and dominant colours.
"""

from .analysis import (
    ColorAnalysisEngine, ColorAnalysisResult, ColorCluster, MacroBucket, lab_to_bucket
)
from .dominant import DominantColorExtractor, DominantColor, DominantColorSummary, quantize_lab_bucket
from .hue_clusters import HueClusterCatalog, HueCluster, HUE_CLUSTERS
from .colorspace import rgb_to_lab, lab_to_rgb, delta_e, rgb_to_hex

__all__ = [
    'ColorAnalysisEngine', 'ColorAnalysisResult', 'ColorCluster', 'MacroBucket', 'lab_to_bucket',
    'DominantColorExtractor', 'DominantColor', 'DominantColorSummary', 'quantize_lab_bucket',
    'HueClusterCatalog', 'HueCluster', 'HUE_CLUSTERS',
    'rgb_to_lab', 'lab_to_rgb', 'delta_e', 'rgb_to_hex',
]
