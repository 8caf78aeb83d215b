"""
Tests for the SuperGlue and LoFTR matchers.

To run:
    pytest tests/test_matchers.py -v
"""

import logging

import numpy as np
import pytest

from conftest import FakeSession, RecordingFactory, one_hot_descriptors
from mlfeatures.backends import Device
from mlfeatures.features import Keypoint
from mlfeatures.matchers import (
    LoFTRConfig,
    LoFTRMatcher,
    SuperGlueConfig,
    SuperGlueMatcher,
)
from mlfeatures.registry import ModelConfig, ModelType


def loaded(matcher_class, session=None, config=None):
    matcher = matcher_class(config=config, session_factory=RecordingFactory(session or FakeSession()))
    assert matcher.load(ModelConfig(device=Device.CPU))
    return matcher


def line_keypoints(n, spacing=40.0):
    return [Keypoint.from_xy(10.0 + i * spacing, 10.0) for i in range(n)]


class TestSuperGlue:
    """Test suite for the dense pairwise matcher."""

    def test_defaults(self):
        config = SuperGlueConfig()
        assert config.match_threshold == pytest.approx(0.2)
        assert config.mutual_threshold == pytest.approx(0.8)
        assert config.sinkhorn_iterations == 20
        assert config.use_sinkhorn is True
        assert SuperGlueMatcher().type == ModelType.SUPERGLUE_MATCHER

    @pytest.mark.parametrize("use_sinkhorn", [True, False])
    def test_identical_sets_match_one_to_one(self, use_sinkhorn):
        matcher = loaded(SuperGlueMatcher, config=SuperGlueConfig(use_sinkhorn=use_sinkhorn))
        descriptors = list(one_hot_descriptors(5, 16))

        result = matcher.match(line_keypoints(5), descriptors, line_keypoints(5), descriptors)

        assert result.matches == [(i, i) for i in range(5)]
        assert all(result.mutual_matches)
        assert result.num_matches == 5
        assert result.match_ratio == pytest.approx(1.0)

    @pytest.mark.parametrize("use_sinkhorn", [True, False])
    def test_exact_match_ratio(self, use_sinkhorn):
        """3 of 8 keypoints have a counterpart: ratio is exactly 3 / 8."""
        matcher = loaded(SuperGlueMatcher, config=SuperGlueConfig(use_sinkhorn=use_sinkhorn))
        descriptors1 = list(one_hot_descriptors(8, 16))
        descriptors2 = list(one_hot_descriptors(3, 16))

        result = matcher.match(line_keypoints(8), descriptors1, line_keypoints(3), descriptors2)

        assert result.num_matches == 3
        assert result.num_matches == len(result.matches)
        assert result.match_ratio == 3 / 8
        assert sorted(result.matches) == [(0, 0), (1, 1), (2, 2)]

    def test_mutual_check_drops_inconsistent_pair(self):
        descriptors1 = [np.array([1.0, 0.0, 0.0]), np.array([0.9, np.sqrt(1 - 0.81), 0.0])]
        descriptors2 = [np.array([1.0, 0.0, 0.0]), np.array([0.0, 0.0, 1.0])]
        keypoints = line_keypoints(2)

        strict = loaded(SuperGlueMatcher, config=SuperGlueConfig(use_sinkhorn=False))
        result = strict.match(keypoints, descriptors1, keypoints, descriptors2)
        assert result.matches == [(0, 0)]
        assert result.mutual_matches == [True]

        loose = loaded(
            SuperGlueMatcher,
            config=SuperGlueConfig(use_sinkhorn=False, use_mutual_check=False),
        )
        result = loose.match(keypoints, descriptors1, keypoints, descriptors2)
        assert result.matches == [(0, 0), (1, 0)]
        assert result.mutual_matches == [True, False]
        assert result.match_ratio == pytest.approx(1.0)

    def test_empty_input_returns_empty(self, caplog):
        matcher = loaded(SuperGlueMatcher)
        descriptors = list(one_hot_descriptors(3, 8))

        with caplog.at_level(logging.WARNING, logger="mlfeatures"):
            result = matcher.match([], [], line_keypoints(3), descriptors)

        assert result.is_empty()
        assert result.num_matches == 0
        assert any("empty" in r.message for r in caplog.records)

    def test_unloaded_returns_empty(self, caplog):
        matcher = SuperGlueMatcher(session_factory=RecordingFactory())
        descriptors = list(one_hot_descriptors(3, 8))

        with caplog.at_level(logging.ERROR, logger="mlfeatures"):
            result = matcher.match(line_keypoints(3), descriptors, line_keypoints(3), descriptors)

        assert result.is_empty()
        assert any("not loaded" in r.message for r in caplog.records)

    def test_backend_failure_returns_empty(self):
        matcher = loaded(SuperGlueMatcher, FakeSession(fail=True))
        descriptors = list(one_hot_descriptors(3, 8))
        result = matcher.match(line_keypoints(3), descriptors, line_keypoints(3), descriptors)
        assert result.is_empty()

    def test_dimension_mismatch_returns_empty(self):
        matcher = loaded(SuperGlueMatcher)
        result = matcher.match(
            line_keypoints(2), list(one_hot_descriptors(2, 8)),
            line_keypoints(2), list(one_hot_descriptors(2, 16)),
        )
        assert result.is_empty()

    def test_parameters_parsed_on_load(self):
        matcher = SuperGlueMatcher(session_factory=RecordingFactory())
        matcher.load(ModelConfig(parameters={
            "match_threshold": "0.5",
            "use_sinkhorn": "0",
            "sinkhorn_iterations": "5",
        }))
        config = matcher.get_config()
        assert config.match_threshold == pytest.approx(0.5)
        assert config.use_sinkhorn is False
        assert config.sinkhorn_iterations == 5

    def test_unload_closes_session(self):
        session = FakeSession()
        matcher = loaded(SuperGlueMatcher, session)
        matcher.unload()
        matcher.unload()
        assert session.close_calls == 1
        assert not matcher.is_loaded()


class TestLoFTR:
    """Test suite for the coarse-to-fine matcher."""

    def test_defaults(self):
        config = LoFTRConfig()
        assert config.max_keypoints == 2048
        assert config.coarse_window_size == 8
        assert config.coarse_level == 4
        assert config.fine_level == 2
        assert config.coarse_threshold == pytest.approx(0.2)
        assert config.fine_threshold == pytest.approx(0.1)
        assert LoFTRMatcher().type == ModelType.LOFTR_MATCHER

    def test_coarse_to_fine_matching(self):
        matcher = loaded(LoFTRMatcher)
        keypoints = [Keypoint.from_xy(x, y) for x in (10, 50, 90) for y in (10, 50)]
        descriptors = list(one_hot_descriptors(len(keypoints), 32))

        result = matcher.match(keypoints, descriptors, keypoints, descriptors)

        assert result.matches == [(i, i) for i in range(len(keypoints))]
        assert all(result.mutual_matches)
        assert result.match_ratio == pytest.approx(1.0)

    def test_unrelated_descriptors_do_not_match(self):
        """Uniform affinities spread probability over the two searched cells."""
        matcher = loaded(LoFTRMatcher, config=LoFTRConfig(match_threshold=0.6))
        keypoints = line_keypoints(8)
        descriptors1 = list(one_hot_descriptors(8, 32))
        descriptors2 = list(one_hot_descriptors(8, 32, offset=16))

        result = matcher.match(keypoints, descriptors1, keypoints, descriptors2)

        assert result.num_matches == 0
        assert result.match_ratio == 0.0

    def test_positions_as_arrays(self):
        matcher = loaded(LoFTRMatcher)
        positions = np.array([[5.0, 5.0], [100.0, 100.0]])
        descriptors = list(one_hot_descriptors(2, 8))
        result = matcher.match(positions, descriptors, positions, descriptors)
        assert result.num_matches == 2

    def test_parameters_parsed_on_load(self):
        matcher = LoFTRMatcher(session_factory=RecordingFactory())
        matcher.load(ModelConfig(parameters={"coarse_threshold": "0.3", "temperature": "0.5"}))
        config = matcher.get_config()
        assert config.coarse_threshold == pytest.approx(0.3)
        # not a LoFTR load parameter
        assert config.temperature == pytest.approx(0.1)

    def test_match_images(self):
        rng = np.random.default_rng(7)
        image = (rng.random((128, 128)) * 255).astype(np.uint8)
        matcher = LoFTRMatcher(config=LoFTRConfig(grid_divisions=8))
        assert matcher.load(ModelConfig())

        result = matcher.match_images(image, image.copy())

        assert len(result.keypoints1) == 36
        assert len(result.keypoints2) == 36
        assert result.num_matches >= 30
        assert all(i == j for i, j in result.matches)
        assert result.match_ratio == pytest.approx(result.num_matches / 36)

    def test_match_images_caps_keypoints(self):
        image = np.zeros((128, 128), dtype=np.uint8)
        matcher = loaded(LoFTRMatcher, config=LoFTRConfig(grid_divisions=32, max_keypoints=10))

        result = matcher.match_images(image, image)

        assert len(result.keypoints1) == 10

    def test_match_images_unreadable(self, tmp_path):
        matcher = loaded(LoFTRMatcher)
        result = matcher.match_images(str(tmp_path / "a.png"), str(tmp_path / "b.png"))
        assert result.is_empty()

    def test_match_images_unloaded(self):
        image = np.zeros((64, 64), dtype=np.uint8)
        assert LoFTRMatcher().match_images(image, image).is_empty()
