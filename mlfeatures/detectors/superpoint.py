"""
SuperPoint-style sparse detector.

Candidates are the 3x3 local maxima of the backend score map; the
shared pipeline then thresholds, rejects border points, keeps the top-k
and runs soft NMS before sampling descriptors at the survivors.

Reference:
    DeTone et al. "SuperPoint: Self-Supervised Interest Point Detection
    and Description." CVPR Workshops 2018.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from scipy import ndimage

from mlfeatures.detectors.base_detector import DetectorConfig, ScoreMapDetector
from mlfeatures.registry.model_interface import ModelType


@dataclass
class SuperPointConfig(DetectorConfig):
    """SuperPoint settings; defaults match the published model."""
    max_keypoints: int = 1024
    keypoint_threshold: float = 0.005
    descriptor_dim: int = 256


class SuperPointDetector(ScoreMapDetector):
    """Sparse corner-style keypoint detector."""

    model_type = ModelType.SUPERPOINT_DETECTOR
    display_name = "SuperPoint"
    config_class = SuperPointConfig
    parsed_parameters = (
        "max_keypoints",
        "keypoint_threshold",
        "nms_radius",
        "border_margin",
        "remove_borders",
        "use_nms",
        "descriptor_dim",
    )

    def candidates(
        self,
        gray: np.ndarray,
        score_map: np.ndarray,
        config: DetectorConfig,
    ) -> Tuple[np.ndarray, np.ndarray]:
        score_map = np.asarray(score_map, dtype=np.float32)
        peaks = ndimage.maximum_filter(score_map, size=3, mode="nearest")
        ys, xs = np.nonzero((score_map == peaks) & (score_map > 0))
        positions = np.stack([xs, ys], axis=1).astype(np.float64)
        return positions, score_map[ys, xs].astype(np.float64)
