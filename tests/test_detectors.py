"""
Tests for the SuperPoint and DISK detectors with injected sessions.

To run:
    pytest tests/test_detectors.py -v
"""

import logging

import cv2
import numpy as np
import pytest

from conftest import FakeSession, RecordingFactory, grid_score_map
from mlfeatures.detectors import (
    DISKConfig,
    DISKDetector,
    SuperPointConfig,
    SuperPointDetector,
)
from mlfeatures.features import DetectionResult, Keypoint
from mlfeatures.image import Bitmap
from mlfeatures.registry import ModelConfig, ModelType
from mlfeatures.backends import Device


def loaded(detector_class, session=None, config=None):
    factory = RecordingFactory(session or FakeSession())
    detector = detector_class(config=config, session_factory=factory)
    assert detector.load(ModelConfig(device=Device.CPU))
    return detector


class TestLifecycle:
    """Test suite for load/unload behaviour."""

    def test_load_is_idempotent(self):
        factory = RecordingFactory()
        detector = SuperPointDetector(session_factory=factory)

        assert detector.load(ModelConfig())
        assert detector.load(ModelConfig())
        assert detector.is_loaded()
        assert len(factory.calls) == 1

    def test_unload_is_idempotent(self):
        session = FakeSession()
        detector = loaded(SuperPointDetector, session)

        detector.unload()
        detector.unload()

        assert not detector.is_loaded()
        assert session.close_calls == 1

    def test_failed_load_leaves_unloaded(self):
        from mlfeatures.errors import BackendError

        factory = RecordingFactory(error=BackendError("no such model"))
        detector = SuperPointDetector(session_factory=factory)

        assert not detector.load(ModelConfig(model_path="missing.pt"))
        assert not detector.is_loaded()

    def test_missing_model_file(self, tmp_path):
        detector = SuperPointDetector()
        assert not detector.load(ModelConfig(model_path=str(tmp_path / "missing.pt")))
        assert not detector.is_loaded()

    def test_reference_session_without_model_path(self):
        detector = SuperPointDetector()
        assert detector.load(ModelConfig())
        assert detector.device == Device.CPU
        detector.unload()

    def test_type_and_name(self):
        assert SuperPointDetector().type == ModelType.SUPERPOINT_DETECTOR
        assert DISKDetector().type == ModelType.DISK_DETECTOR
        assert SuperPointDetector().name == "SuperPoint"


class TestParameterParsing:
    """Test suite for string parameter parsing on load."""

    def test_recognized_parameters(self):
        detector = SuperPointDetector(session_factory=RecordingFactory())
        detector.load(ModelConfig(parameters={
            "max_keypoints": "256",
            "keypoint_threshold": "0.05",
            "remove_borders": "false",
            "unknown_key": "whatever",
        }))

        config = detector.get_config()
        assert config.max_keypoints == 256
        assert config.keypoint_threshold == pytest.approx(0.05)
        assert config.remove_borders is False

    def test_malformed_value_keeps_previous_config(self, caplog):
        detector = SuperPointDetector(session_factory=RecordingFactory())

        with caplog.at_level(logging.WARNING, logger="mlfeatures"):
            ok = detector.load(ModelConfig(parameters={
                "max_keypoints": "512",
                "keypoint_threshold": "not-a-number",
            }))

        assert ok
        assert detector.is_loaded()
        assert detector.get_config().max_keypoints == 1024
        assert detector.get_config().keypoint_threshold == pytest.approx(0.005)
        assert any("keypoint_threshold" in r.message for r in caplog.records)

    def test_non_positive_size_rejected(self):
        detector = DISKDetector(session_factory=RecordingFactory())
        detector.load(ModelConfig(parameters={"descriptor_dim": "0"}))
        assert detector.get_config().descriptor_dim == 128

    def test_disk_ignores_superpoint_only_keys(self):
        detector = DISKDetector(session_factory=RecordingFactory())
        detector.load(ModelConfig(parameters={"remove_borders": "false", "soft_threshold": "0.2"}))
        config = detector.get_config()
        assert config.remove_borders is True
        assert config.soft_threshold == pytest.approx(0.2)


class TestConfigDefaults:
    """Test suite for configuration value sets."""

    def test_superpoint_defaults(self):
        config = SuperPointConfig()
        assert config.max_keypoints == 1024
        assert config.keypoint_threshold == pytest.approx(0.005)
        assert config.border_margin == 4
        assert config.nms_radius == pytest.approx(4.0)
        assert config.descriptor_dim == 256

    def test_disk_defaults(self):
        config = DISKConfig()
        assert config.max_keypoints == 2048
        assert config.descriptor_dim == 128
        assert config.grid_divisions == 16
        assert config.soft_threshold == pytest.approx(0.1)

    def test_validate(self):
        with pytest.raises(ValueError):
            SuperPointConfig(descriptor_dim=0).validate()
        with pytest.raises(ValueError):
            DISKConfig(grid_divisions=0).validate()
        SuperPointConfig().validate()

    def test_set_config_wrong_type(self):
        with pytest.raises(TypeError):
            SuperPointDetector().set_config(DISKConfig())


class TestSuperPointDetection:
    """Test suite for the sparse detection pipeline."""

    def test_grid_scenario(self):
        """20x20 peaks on 640x480, margin 4, at most 50 keypoints."""
        width, height = 640, 480
        session = FakeSession(score_map_fn=grid_score_map(width, height, 20, 20))
        config = SuperPointConfig(max_keypoints=50, border_margin=4)
        detector = loaded(SuperPointDetector, session, config)

        result = detector.detect(np.zeros((height, width), dtype=np.uint8))

        assert result.num_keypoints == 50
        assert len(result.descriptors) == 50
        assert len(result.scores) == 50
        for kp in result.keypoints:
            assert 4 <= kp.x < width - 4
            assert 4 <= kp.y < height - 4
        assert all(s >= config.keypoint_threshold for s in result.scores)
        assert result.scores == sorted(result.scores, reverse=True)

        xs = np.linspace(0, width - 1, 20).astype(int)
        ys = np.linspace(0, height - 1, 20).astype(int)
        assert (result.keypoints[0].x, result.keypoints[0].y) == (xs[18], ys[18])

    def test_descriptors_are_unit_norm(self):
        session = FakeSession(score_map_fn=grid_score_map(160, 120, 5, 5))
        detector = loaded(SuperPointDetector, session)

        result = detector.detect(np.zeros((120, 160), dtype=np.uint8))

        assert not result.is_empty()
        norms = np.linalg.norm(result.descriptor_array(), axis=1)
        np.testing.assert_allclose(norms, 1.0, atol=1e-5)
        assert result.descriptors[0].shape == (256,)

    def test_zero_descriptors_stay_zero(self):
        session = FakeSession(
            score_map_fn=grid_score_map(160, 120, 5, 5),
            describe_fn=lambda positions, dim: np.zeros((len(positions), dim), np.float32),
        )
        detector = loaded(SuperPointDetector, session)

        result = detector.detect(np.zeros((120, 160), dtype=np.uint8))

        assert not result.is_empty()
        assert np.all(result.descriptor_array() == 0)

    def test_descriptors_disabled(self):
        session = FakeSession(score_map_fn=grid_score_map(160, 120, 5, 5))
        detector = loaded(SuperPointDetector, session, SuperPointConfig(compute_descriptors=False))
        result = detector.detect(np.zeros((120, 160), dtype=np.uint8))
        assert result.num_keypoints > 0
        assert result.descriptors == []

    def test_soft_nms_decays_neighbours(self):
        def score_map(gray):
            scores = np.zeros((100, 100), dtype=np.float32)
            scores[50, 50] = 0.9
            scores[50, 52] = 0.8
            return scores

        detector = loaded(SuperPointDetector, FakeSession(score_map_fn=score_map))
        result = detector.detect(np.zeros((100, 100), dtype=np.uint8))

        assert result.num_keypoints == 2
        assert result.scores == pytest.approx([0.9, 0.8])
        assert result.soft_scores == pytest.approx([0.9, 0.4])

    def test_unloaded_returns_empty(self, caplog):
        detector = SuperPointDetector(session_factory=RecordingFactory())
        with caplog.at_level(logging.ERROR, logger="mlfeatures"):
            result = detector.detect(np.zeros((32, 32), dtype=np.uint8))
        assert result.is_empty()
        assert any("not loaded" in r.message for r in caplog.records)

    def test_backend_failure_returns_empty(self):
        detector = loaded(SuperPointDetector, FakeSession(fail=True))
        result = detector.detect(np.zeros((32, 32), dtype=np.uint8))
        assert isinstance(result, DetectionResult)
        assert result.is_empty()

    def test_unreadable_path_returns_empty(self, tmp_path):
        bad = tmp_path / "broken.png"
        bad.write_bytes(b"not an image")
        detector = loaded(SuperPointDetector)
        assert detector.detect(str(bad)).is_empty()
        assert detector.detect(str(tmp_path / "missing.png")).is_empty()

    def test_detect_from_path(self, tmp_path):
        path = tmp_path / "peaks.png"
        cv2.imwrite(str(path), np.zeros((120, 160, 3), dtype=np.uint8))
        session = FakeSession(score_map_fn=grid_score_map(160, 120, 4, 4))
        detector = loaded(SuperPointDetector, session)

        result = detector.detect(path)

        assert result.num_keypoints > 0
        assert result.processing_time_ms >= 0

    def test_filter_keypoints(self):
        detector = SuperPointDetector(config=SuperPointConfig(max_keypoints=2, use_nms=False))
        keypoints = [Keypoint.from_xy(1, 1), Keypoint.from_xy(50, 50),
                     Keypoint.from_xy(60, 60), Keypoint.from_xy(70, 70)]
        kept, scores = detector.filter_keypoints(
            keypoints, [0.99, 0.3, 0.7, 0.001], image_size=(100, 100)
        )
        assert kept == [keypoints[2], keypoints[1]]
        assert scores == [0.7, 0.3]

    def test_reference_session_end_to_end(self):
        image = np.zeros((96, 128), dtype=np.uint8)
        image[30:60, 40:90] = 255
        detector = SuperPointDetector()
        assert detector.load(ModelConfig())

        result = detector.detect(Bitmap(image))

        assert result.num_keypoints > 0
        norms = np.linalg.norm(result.descriptor_array(), axis=1)
        assert np.all((np.abs(norms - 1.0) < 1e-5) | (norms == 0))


class TestDISKDetection:
    """Test suite for the dense-grid detector."""

    def test_dense_grid_is_kept(self):
        session = FakeSession(score_map_fn=lambda gray: np.full(gray.shape, 0.5, np.float32))
        detector = loaded(DISKDetector, session, DISKConfig(use_nms=False))

        result = detector.detect(np.zeros((480, 640), dtype=np.uint8))

        step = 480 // 16
        expected = len(range(step, 640 - step, step)) * len(range(step, 480 - step, step))
        assert len(result.dense_keypoints) == expected
        assert len(result.dense_descriptors) == expected
        assert result.num_keypoints == expected
        assert result.dense_keypoints[0] == (float(step), float(step))

    def test_soft_threshold_applies_during_nms(self):
        scores = np.zeros((64, 64), dtype=np.float32)
        step = 64 // 16
        scores[step, step] = 0.9
        scores[step, 2 * step] = 0.3

        session = FakeSession(score_map_fn=lambda gray: scores)
        config = DISKConfig(nms_radius=8.0, soft_threshold=0.2, border_margin=0)
        detector = loaded(DISKDetector, session, config)

        result = detector.detect(np.zeros((64, 64), dtype=np.uint8))

        # neighbour at distance 4 decays to 0.3 * 4 / 8 = 0.15 < 0.2
        assert result.num_keypoints == 1
        assert (result.keypoints[0].x, result.keypoints[0].y) == (step, step)

    def test_orientation_from_gradient(self):
        image = np.tile(np.linspace(0, 255, 64, dtype=np.float32), (64, 1)).astype(np.uint8)
        session = FakeSession(score_map_fn=lambda gray: np.full(gray.shape, 0.5, np.float32))
        config = DISKConfig(use_nms=False, use_scale_invariance=False)
        detector = loaded(DISKDetector, session, config)

        result = detector.detect(image)

        assert result.num_keypoints > 0
        for kp in result.keypoints:
            assert kp.orientation == pytest.approx(0.0, abs=1e-6)
            assert kp.scale == pytest.approx(1.0)

    def test_invariance_disabled_gives_identity_shape(self):
        session = FakeSession(score_map_fn=lambda gray: np.full(gray.shape, 0.5, np.float32))
        config = DISKConfig(use_nms=False, use_rotation_invariance=False, use_scale_invariance=False)
        detector = loaded(DISKDetector, session, config)

        result = detector.detect(np.zeros((64, 64), dtype=np.uint8))

        assert all(kp.a11 == 1.0 and kp.a12 == 0.0 for kp in result.keypoints)

    def test_detect_batch(self):
        session = FakeSession(score_map_fn=lambda gray: np.full(gray.shape, 0.5, np.float32))
        detector = loaded(DISKDetector, session)
        images = [np.zeros((64, 64), dtype=np.uint8), np.zeros((96, 96), dtype=np.uint8)]

        results = detector.detect_batch(images)

        assert len(results) == 2
        assert all(r.num_keypoints > 0 for r in results)
