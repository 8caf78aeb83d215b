"""
DISK-style dense detector.

Candidates lie on a regular grid and are scored by sampling the backend
score map. The full grid and its descriptors are kept alongside the
filtered keypoints. Optionally each keypoint receives an orientation
from the image gradient and a characteristic scale from a normalized
Laplacian-of-Gaussian scale search.

Reference:
    Tyszkiewicz et al. "DISK: Learning local features with policy
    gradient." NeurIPS 2020.
"""

import math
from dataclasses import dataclass
from typing import ClassVar, List, Tuple

import cv2
import numpy as np
from scipy import ndimage

from mlfeatures.detectors.base_detector import DetectorConfig, ScoreMapDetector
from mlfeatures.features.types import Keypoint
from mlfeatures.postprocessing import grid_positions
from mlfeatures.registry.model_interface import ModelType


# Scale search range for the normalized LoG response
SCALE_SIGMAS = (1.0, 2.0, 4.0, 8.0)


@dataclass
class DISKConfig(DetectorConfig):
    """
    DISK settings.

    Attributes:
        soft_threshold: Score a keypoint must keep during soft NMS
        patch_size: Descriptor support in pixels
        use_rotation_invariance: Assign gradient orientations
        rotation_threshold: Minimum gradient magnitude for an orientation
        use_scale_invariance: Assign characteristic scales
        scale_threshold: Minimum normalized LoG response for a scale
        grid_divisions: Grid cells along the shorter image side
    """
    max_keypoints: int = 2048
    descriptor_dim: int = 128
    soft_threshold: float = 0.1
    patch_size: int = 32
    use_rotation_invariance: bool = True
    rotation_threshold: float = 0.1
    use_scale_invariance: bool = True
    scale_threshold: float = 0.1
    grid_divisions: int = 16

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "max_keypoints", "descriptor_dim", "patch_size", "grid_divisions",
    )


class DISKDetector(ScoreMapDetector):
    """Dense-grid keypoint detector."""

    model_type = ModelType.DISK_DETECTOR
    display_name = "DISK"
    config_class = DISKConfig
    keeps_dense_set = True
    parsed_parameters = (
        "max_keypoints",
        "keypoint_threshold",
        "descriptor_dim",
        "nms_radius",
        "soft_threshold",
        "border_margin",
        "use_nms",
    )

    def candidates(
        self,
        gray: np.ndarray,
        score_map: np.ndarray,
        config: DISKConfig,
    ) -> Tuple[np.ndarray, np.ndarray]:
        height, width = gray.shape[:2]
        positions = grid_positions(width, height, config.grid_divisions)
        if positions.shape[0] == 0:
            return positions, np.zeros(0, dtype=np.float64)

        cols = positions[:, 0].astype(np.int64)
        rows = positions[:, 1].astype(np.int64)
        return positions, np.asarray(score_map, dtype=np.float64)[rows, cols]

    def nms_threshold(self, config: DISKConfig) -> float:
        return config.soft_threshold

    def build_keypoints(
        self,
        gray: np.ndarray,
        positions: np.ndarray,
        config: DISKConfig,
    ) -> List[Keypoint]:
        if positions.shape[0] == 0:
            return []

        cols = np.clip(positions[:, 0].astype(np.int64), 0, gray.shape[1] - 1)
        rows = np.clip(positions[:, 1].astype(np.int64), 0, gray.shape[0] - 1)

        orientations = np.zeros(positions.shape[0])
        if config.use_rotation_invariance:
            orientations = self._orientations(gray, rows, cols, config.rotation_threshold)

        scales = np.ones(positions.shape[0])
        if config.use_scale_invariance:
            scales = self._scales(gray, rows, cols, config.scale_threshold)

        return [
            Keypoint.from_shape(x, y, scale=float(s), orientation=float(o))
            for (x, y), s, o in zip(positions, scales, orientations)
        ]

    @staticmethod
    def _orientations(
        gray: np.ndarray,
        rows: np.ndarray,
        cols: np.ndarray,
        threshold: float,
    ) -> np.ndarray:
        gx = cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        sx = gx[rows, cols]
        sy = gy[rows, cols]
        magnitude = np.hypot(sx, sy)
        return np.where(magnitude > threshold, np.arctan2(sy, sx), 0.0)

    @staticmethod
    def _scales(
        gray: np.ndarray,
        rows: np.ndarray,
        cols: np.ndarray,
        threshold: float,
    ) -> np.ndarray:
        responses = np.stack([
            np.abs(ndimage.gaussian_laplace(gray, sigma))[rows, cols] * sigma ** 2
            for sigma in SCALE_SIGMAS
        ])
        best = np.argmax(responses, axis=0)
        peak = responses[best, np.arange(rows.size)]
        sigmas = np.asarray(SCALE_SIGMAS)[best]
        return np.where(peak > threshold, sigmas * math.sqrt(2.0), 1.0)
