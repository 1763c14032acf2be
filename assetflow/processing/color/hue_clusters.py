"""
Perceptual hue groups used to classify an asset's dominant colour.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .colorspace import delta_e


@dataclass(frozen=True)
class HueCluster:
    key: str
    label: str
    lab_centroid: Sequence[float]
    display_hex: str
    threshold: float = 18.0


HUE_CLUSTERS: List[HueCluster] = [
    HueCluster('red', 'Red', (53, 80, 67), '#E53935'),
    HueCluster('orange', 'Orange', (70, 45, 65), '#FB8C00'),
    HueCluster('yellow', 'Yellow', (95, -15, 90), '#FDD835'),
    HueCluster('pink', 'Pink', (75, 45, 5), '#D81B60'),
    HueCluster('lime_green', 'Lime Green', (85, -55, 75), '#9CCC65'),
    HueCluster('green', 'Green', (55, -45, 45), '#43A047'),
    HueCluster('teal', 'Teal', (50, -25, -15), '#00897B'),
    HueCluster('cyan', 'Cyan', (75, -35, -35), '#26C6DA'),
    HueCluster('blue', 'Blue', (45, 15, -55), '#1E88E5'),
    HueCluster('indigo', 'Indigo', (35, 25, -45), '#3949AB'),
    HueCluster('purple', 'Purple', (45, 55, -35), '#8E24AA'),
    HueCluster('magenta', 'Magenta', (55, 75, -25), '#D81B60'),
    HueCluster('warm_brown', 'Warm Brown', (45, 25, 45), '#8D6E63'),
    HueCluster('cool_brown', 'Cool Brown', (40, 10, 25), '#6D4C41'),
    HueCluster('black', 'Black', (15, 0, 0), '#212121'),
    HueCluster('gray', 'Gray', (55, 0, 0), '#9E9E9E'),
    HueCluster('white', 'White', (95, 0, 0), '#FAFAFA'),
    HueCluster('neutral', 'Neutral', (65, 2, 5), '#BDBDBD'),
]


class HueClusterCatalog:
    """Nearest-centroid lookup over a fixed set of hue groups."""

    def __init__(self, clusters: Optional[List[HueCluster]] = None):
        self.clusters = list(clusters or HUE_CLUSTERS)

    def assign(self, lab: Sequence[float]) -> Optional[str]:
        """Key of the closest cluster within its ΔE threshold, else None."""
        best_key = None
        best_distance = float('inf')
        for cluster in self.clusters:
            distance = delta_e(lab, cluster.lab_centroid)
            if distance <= cluster.threshold and distance < best_distance:
                best_key = cluster.key
                best_distance = distance
        return best_key
