"""
Tests for LAB colour analysis, macro buckets, hue groups and dominant colours.
"""

import pytest
from PIL import Image

from assetflow.db import Asset, AssetMetadataHistory, EntityRef
from assetflow.processing.color import (
    ColorAnalysisEngine, DominantColorExtractor, HueClusterCatalog, HUE_CLUSTERS,
    MacroBucket, lab_to_bucket, quantize_lab_bucket, rgb_to_hex, rgb_to_lab
)
from assetflow.processing.color.colorspace import round_half_away

from conftest import BUCKET, noise_image, solid_image


def split_image(left, right, width=100, height=100, mode='RGB'):
    image = Image.new(mode, (width, height), right)
    image.paste(Image.new(mode, (width // 2, height), left), (0, 0))
    return image


class TestColorspace:
    """Test sRGB/LAB helpers."""

    def test_pure_red_lab(self):
        L, a, b = rgb_to_lab([255, 0, 0])
        assert L == pytest.approx(53.24, abs=0.05)
        assert a == pytest.approx(80.09, abs=0.05)
        assert b == pytest.approx(67.20, abs=0.05)

    def test_white_is_neutral(self):
        L, a, b = rgb_to_lab([255, 255, 255])
        assert L == pytest.approx(100.0, abs=0.01)
        assert abs(a) < 0.01
        assert abs(b) < 0.01

    def test_hex_helpers(self):
        assert rgb_to_hex([255, 0, 128]) == '#FF0080'

    def test_round_half_away_from_zero(self):
        assert round_half_away(2.5) == 3
        assert round_half_away(-2.5) == -3
        assert round_half_away(2.4) == 2


class TestBucketHeuristic:
    """Test the ordered lightness/chroma/hue rules."""

    @pytest.mark.parametrize('lab,expected', [
        ((10, 0, 0), MacroBucket.BLACK),
        ((95, 0, 0), MacroBucket.WHITE),
        ((50, 2, 2), MacroBucket.GRAY),
        ((60, 60, 30), MacroBucket.RED),
        ((75, 60, 10), MacroBucket.PINK),
        ((40, 60, -40), MacroBucket.PURPLE),
        ((60, -60, 40), MacroBucket.GREEN),
        ((50, 10, -60), MacroBucket.BLUE),
        ((85, -5, 60), MacroBucket.YELLOW),
        ((35, 15, 20), MacroBucket.BROWN),
        ((60, 25, 25), MacroBucket.ORANGE),
    ])
    def test_bucket_rules(self, lab, expected):
        assert lab_to_bucket(lab) == expected

    def test_unclassified_colour(self):
        assert lab_to_bucket((85, 0, 20)) is None

    def test_bucket_palette(self):
        assert {b.value for b in MacroBucket} == {
            'red', 'orange', 'yellow', 'green', 'blue', 'purple', 'pink', 'brown',
            'black', 'white', 'gray',
        }


class TestColorAnalysisEngine:
    """Test k-means clustering and bucket assignment."""

    def test_pure_red_image(self):
        result = ColorAnalysisEngine().analyze_image(solid_image((255, 0, 0)))
        assert result.buckets == ['red']
        assert len(result.clusters) == 1
        assert result.clusters[0].coverage == 1.0
        assert result.ignored_pixel_fraction == 0.0

    def test_two_colour_split(self):
        result = ColorAnalysisEngine().analyze_image(split_image((255, 0, 0), (0, 255, 0)))
        assert result.buckets == ['red', 'green']
        assert [c.coverage for c in result.clusters] == [0.5, 0.5]

    def test_deterministic(self):
        engine = ColorAnalysisEngine()
        image = noise_image(seed=3)
        first = engine.analyze_image(image).to_dict()
        second = engine.analyze_image(image).to_dict()
        assert first == second

    def test_coverage_invariants(self):
        result = ColorAnalysisEngine().analyze_image(noise_image(seed=11))
        coverages = [c.coverage for c in result.clusters]
        assert all(0.0 <= c <= 1.0 for c in coverages)
        assert sum(coverages) <= 1.0
        assert coverages == sorted(coverages, reverse=True)
        assert all(c >= 0.05 for c in coverages)
        assert len(result.buckets) <= 4
        assert len(set(result.buckets)) == len(result.buckets)

    def test_fully_transparent(self):
        result = ColorAnalysisEngine().analyze_image(solid_image((255, 0, 0, 0), mode='RGBA'))
        assert result.buckets == []
        assert result.clusters == []
        assert result.ignored_pixel_fraction == 1.0

    def test_transparent_half_ignored(self):
        image = split_image((255, 0, 0, 255), (0, 0, 255, 0), mode='RGBA')
        result = ColorAnalysisEngine().analyze_image(image)
        assert result.ignored_pixel_fraction == 0.5
        assert result.buckets == ['red']
        assert result.clusters[0].coverage == 1.0

    def test_downsamples_large_images(self):
        result = ColorAnalysisEngine().analyze_image(solid_image((0, 0, 255), 1000, 500))
        assert result.clusters[0].count == 200 * 100

    def test_lab_rounded_to_four_decimals(self):
        result = ColorAnalysisEngine().analyze_image(noise_image(seed=5))
        for cluster in result.clusters:
            assert all(round(v, 4) == v for v in cluster.lab)

    def test_undecodable_bytes(self):
        assert ColorAnalysisEngine().analyze_bytes(b'definitely not an image') is None

    def test_from_config_ignores_unknown_keys(self):
        engine = ColorAnalysisEngine.from_config({'color_analysis': {'k': 4, 'bogus': 1}})
        assert engine.k == 4

    def test_analyze_asset_requires_completed_thumbnail(self, repository, store, upload):
        asset_id = upload(b'x' * 10)
        entity = repository.get_snapshot(EntityRef.asset(asset_id))
        assert ColorAnalysisEngine().analyze_asset(entity, store) is None


class TestHueClusters:
    """Test nearest-centroid hue group lookup."""

    def test_catalog_size(self):
        assert len(HUE_CLUSTERS) == 18

    def test_assign_red(self):
        assert HueClusterCatalog().assign((53, 80, 67)) == 'red'

    def test_outside_every_threshold(self):
        assert HueClusterCatalog().assign((50, -100, 100)) is None


class TestDominantColors:
    """Test dominant colour extraction and persistence."""

    def test_quantize_bucket(self):
        assert quantize_lab_bucket((53.24, 80.09, 67.20)) == 'L50_A80_B70'
        assert quantize_lab_bucket((123, -4, 5)) == 'L100_A0_B10'

    def test_extract_top_colours(self):
        analysis = ColorAnalysisEngine().analyze_image(split_image((255, 0, 0), (0, 255, 0)))
        colors = DominantColorExtractor().extract(analysis)
        assert [c.hex for c in colors] == ['#FF0000', '#00FF00']
        assert all(c.coverage == 0.5 for c in colors)

    def test_at_most_three_colours_above_floor(self):
        analysis = ColorAnalysisEngine().analyze_image(noise_image(seed=13))
        colors = DominantColorExtractor().extract(analysis)
        assert len(colors) <= 3
        assert all(c.coverage >= 0.10 for c in colors)

    def test_summary_for_red(self):
        analysis = ColorAnalysisEngine().analyze_image(solid_image((255, 0, 0)))
        summary = DominantColorExtractor().summarize(analysis)
        assert summary.hue_group == 'red'
        assert summary.color_bucket == 'L50_A80_B70'

    def test_persist_overwrites(self, repository, session_scope, upload):
        asset_id = upload(b'x' * 10)
        entity = repository.get_snapshot(EntityRef.asset(asset_id))
        analysis = ColorAnalysisEngine().analyze_image(solid_image((255, 0, 0)))
        extractor = DominantColorExtractor(repository)

        extractor.extract_and_persist(entity, analysis)
        extractor.extract_and_persist(entity, analysis)

        values = repository.get_metadata_values(asset_id, source='automatic')
        assert values['dominant_colors'][0]['hex'] == '#FF0000'
        assert values['dominant_hue_group'] == 'red'
        assert repository.get_snapshot(entity.ref).meta_data['dominant_colors'][0]['hex'] == '#FF0000'
        with session_scope() as session:
            asset = session.get(Asset, asset_id)
            assert asset.dominant_hue_group == 'red'
            assert asset.dominant_color_bucket == 'L50_A80_B70'
            history = (session.query(AssetMetadataHistory)
                       .filter_by(asset_id=asset_id, field_key='dominant_colors').count())
            assert history == 1

    def test_persist_requires_repository(self, repository, upload):
        entity = repository.get_snapshot(EntityRef.asset(upload(b'x' * 10)))
        analysis = ColorAnalysisEngine().analyze_image(solid_image((255, 0, 0)))
        with pytest.raises(RuntimeError):
            DominantColorExtractor().extract_and_persist(entity, analysis)
