"""
Shared detection pipeline for score-map based detectors.

Every detector variant turns the backend score map into candidate
positions and then runs the same steps:

    threshold -> border rejection -> top-k -> soft NMS -> descriptors

Variants only decide where candidates come from and how keypoint
shapes are estimated.
"""

import time
from abc import abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from mlfeatures.errors import BackendError, ImageReadError
from mlfeatures.features.types import DetectionResult, Keypoint, keypoints_to_array
from mlfeatures.image import Bitmap, as_bitmap, discover_images
from mlfeatures.postprocessing import (
    filter_keypoints,
    normalize_descriptors,
    soft_nms,
    split_rows,
)
from mlfeatures.registry.model_interface import BaseDetector, VariantConfig
from mlfeatures.utils.logger import ProgressTracker, get_logger


logger = get_logger(__name__)


@dataclass
class DetectorConfig(VariantConfig):
    """
    Configuration common to all detectors.

    Attributes:
        max_keypoints: Maximum number of keypoints returned
        keypoint_threshold: Minimum keypoint score
        remove_borders: Whether to reject keypoints near the image border
        border_margin: Border width in pixels
        use_nms: Whether to run soft non-maximum suppression
        nms_radius: Soft NMS radius in pixels
        compute_descriptors: Whether to compute descriptors
        descriptor_dim: Descriptor dimension
        descriptor_threshold: Descriptor confidence cut-off
    """
    max_keypoints: int = 1024
    keypoint_threshold: float = 0.005
    remove_borders: bool = True
    border_margin: int = 4
    use_nms: bool = True
    nms_radius: float = 4.0
    compute_descriptors: bool = True
    descriptor_dim: int = 256
    descriptor_threshold: float = 0.1

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = ("max_keypoints", "descriptor_dim")

    def validate(self) -> None:
        super().validate()
        if self.border_margin < 0:
            raise ValueError(f"border_margin must be non-negative, got {self.border_margin}")
        if self.nms_radius < 0:
            raise ValueError(f"nms_radius must be non-negative, got {self.nms_radius}")


class ScoreMapDetector(BaseDetector):
    """
    Base class for detectors driven by a backend score map.

    Subclasses implement candidates(); the rest of the pipeline is shared.
    """

    config_class = DetectorConfig
    keeps_dense_set: ClassVar[bool] = False

    @abstractmethod
    def candidates(
        self,
        gray: np.ndarray,
        score_map: np.ndarray,
        config: DetectorConfig,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Candidate keypoints before filtering.

        Args:
            gray: Grayscale image (H, W) in [0, 1]
            score_map: Backend score map (H, W)
            config: Active configuration

        Returns:
            Tuple of (positions (N, 2) as (x, y), scores (N,))
        """

    def nms_threshold(self, config: DetectorConfig) -> float:
        """Score a candidate must keep during soft NMS."""
        return config.keypoint_threshold

    def build_keypoints(
        self,
        gray: np.ndarray,
        positions: np.ndarray,
        config: DetectorConfig,
    ) -> List[Keypoint]:
        return [Keypoint.from_xy(x, y) for x, y in positions]

    # ===== Filtering =====

    def select(
        self,
        positions: np.ndarray,
        scores: np.ndarray,
        config: DetectorConfig,
        image_size: Optional[Tuple[int, int]],
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Indices of surviving candidates and their soft-NMS scores.

        Returns:
            Tuple of (indices into the candidates, decayed scores)
        """
        keep = filter_keypoints(
            positions,
            scores,
            keypoint_threshold=config.keypoint_threshold,
            max_keypoints=config.max_keypoints,
            image_size=image_size,
            border_margin=config.border_margin,
            remove_borders=config.remove_borders,
        )

        if config.use_nms and keep.size > 0:
            kept, decayed = soft_nms(
                positions[keep], scores[keep], config.nms_radius, self.nms_threshold(config)
            )
            return keep[kept], decayed

        return keep, np.asarray(scores, dtype=np.float64)[keep]

    def filter_keypoints(
        self,
        keypoints: Sequence[Keypoint],
        scores: Sequence[float],
        config: Optional[DetectorConfig] = None,
        image_size: Optional[Tuple[int, int]] = None,
    ) -> Tuple[List[Keypoint], List[float]]:
        """
        Run threshold, border rejection, top-k and soft NMS on keypoints.

        Args:
            keypoints: Candidate keypoints
            scores: Score per keypoint
            config: Configuration (current config if None)
            image_size: (width, height); border rejection is skipped if None

        Returns:
            Tuple of (surviving keypoints, their original scores), best first
        """
        config = config or self._config
        if len(keypoints) != len(scores):
            logger.warning(
                f"{self.name}: {len(keypoints)} keypoints but {len(scores)} scores"
            )
            return [], []
        if not keypoints:
            return [], []

        positions = keypoints_to_array(keypoints)
        score_array = np.asarray(scores, dtype=np.float64)
        keep, _ = self.select(positions, score_array, config, image_size)
        return [keypoints[i] for i in keep], [float(score_array[i]) for i in keep]

    # ===== Detection =====

    def detect(
        self,
        image: Union[Bitmap, np.ndarray, str, Path],
        config: Optional[DetectorConfig] = None,
    ) -> DetectionResult:
        """
        Detect keypoints and descriptors in an image.

        Args:
            image: Bitmap, numpy array or image path
            config: Per-call configuration (current config if None)

        Returns:
            DetectionResult; empty if the model is not loaded, the image
            cannot be read or the backend fails
        """
        start = time.perf_counter()

        if not self.is_loaded():
            logger.error(f"{self.name} is not loaded")
            return DetectionResult()

        config = config or self._config

        try:
            bitmap = as_bitmap(image)
        except (ImageReadError, ValueError) as e:
            logger.error(f"{self.name}: cannot read image: {e}")
            return DetectionResult()

        try:
            result = self._run(bitmap, config)
        except BackendError as e:
            logger.error(f"{self.name}: detection failed: {e}")
            return DetectionResult()
        except Exception:
            logger.exception(f"{self.name}: unexpected error during detection")
            return DetectionResult()

        result.processing_time_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(
            f"{self.name}: {result.num_keypoints} keypoints in {result.processing_time_ms:.1f}ms"
        )
        return result

    def _run(self, bitmap: Bitmap, config: DetectorConfig) -> DetectionResult:
        gray = bitmap.to_gray()
        score_map = self._session.score_map(gray)

        positions, scores = self.candidates(gray, score_map, config)
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        scores = np.asarray(scores, dtype=np.float64).ravel()

        keep, decayed = self.select(positions, scores, config, bitmap.size)
        kept_positions = positions[keep]

        result = DetectionResult(
            keypoints=self.build_keypoints(gray, kept_positions, config),
            scores=[float(s) for s in scores[keep]],
            soft_scores=[float(s) for s in decayed] if config.use_nms else [],
        )

        if self.keeps_dense_set:
            result.dense_keypoints = [(float(x), float(y)) for x, y in positions]

        if not config.compute_descriptors or positions.shape[0] == 0:
            return result

        if self.keeps_dense_set:
            dense = normalize_descriptors(
                self._session.describe(gray, positions, config.descriptor_dim)
            )
            result.dense_descriptors = split_rows(dense)
            result.descriptors = split_rows(dense[keep])
        elif keep.size > 0:
            described = self._session.describe(gray, kept_positions, config.descriptor_dim)
            result.descriptors = split_rows(normalize_descriptors(described))

        return result

    def detect_batch(
        self,
        images: Sequence[Union[Bitmap, np.ndarray, str, Path]],
        config: Optional[DetectorConfig] = None,
    ) -> List[DetectionResult]:
        """
        Run detect() over several images with progress logging.

        Args:
            images: Images to process
            config: Per-call configuration (current config if None)

        Returns:
            One DetectionResult per image, in input order
        """
        tracker = ProgressTracker(len(images), logger)
        results = []
        for image in images:
            results.append(self.detect(image, config))
            tracker.update()
        tracker.finish()
        return results

    def detect_directory(
        self,
        directory: Union[str, Path],
        config: Optional[DetectorConfig] = None,
        recursive: bool = True,
    ) -> Dict[str, DetectionResult]:
        """
        Run detect() over every image in a directory.

        Returns:
            Mapping of image path to DetectionResult
        """
        paths = discover_images(directory, recursive=recursive)
        results = self.detect_batch(paths, config)
        return {str(path): result for path, result in zip(paths, results)}
