"""
LoFTR-style coarse-to-fine matcher.

Coarse stage: keypoints of the second set are bucketed into square
cells of coarse_window_size * coarse_level pixels. Each cell is
described by the normalized mean of its members' descriptors, and every
descriptor of the first set selects the cells whose coarse probability
reaches coarse_threshold (always at least its fine_level best cells).

Fine stage: a softmax over the keypoints inside the selected cells
gives the match probabilities; entries below fine_threshold are dropped
before the shared threshold / mutual / ratio selection.

match_images() skips the detector entirely and matches dense grids.

Reference:
    Sun et al. "LoFTR: Detector-Free Local Feature Matching with
    Transformers." CVPR 2021.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Optional, Tuple, Union

import numpy as np
from scipy.special import softmax

from mlfeatures.errors import BackendError, ImageReadError
from mlfeatures.features.types import Keypoint, MatchResult
from mlfeatures.image import Bitmap, as_bitmap
from mlfeatures.matchers.base_matcher import (
    AffinityMatcher,
    MatcherConfig,
    build_match_result,
)
from mlfeatures.postprocessing import (
    MatchSelection,
    grid_positions,
    normalize_descriptors,
    select_matches,
)
from mlfeatures.registry.model_interface import ModelType
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)

ImageInput = Union[Bitmap, np.ndarray, str, Path]


@dataclass
class LoFTRConfig(MatcherConfig):
    """
    LoFTR settings.

    Attributes:
        coarse_window_size: Coarse cell size in feature-map pixels
        fine_window_size: Fine refinement window size
        coarse_level: Downsampling factor of the coarse feature map
        fine_level: Minimum number of coarse cells searched per keypoint
        coarse_threshold: Minimum coarse cell probability
        fine_threshold: Minimum fine match probability
        num_heads: Attention heads of the transformer network
        feature_dim: Descriptor dimension used by match_images()
        use_positional_encoding: Positional encoding in the network
        grid_divisions: Dense grid cells along the shorter image side
    """
    max_keypoints: int = 2048
    coarse_window_size: int = 8
    fine_window_size: int = 2
    coarse_level: int = 4
    fine_level: int = 2
    coarse_threshold: float = 0.2
    fine_threshold: float = 0.1
    num_heads: int = 8
    feature_dim: int = 256
    use_positional_encoding: bool = True
    grid_divisions: int = 32

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "max_keypoints",
        "temperature",
        "coarse_window_size",
        "fine_window_size",
        "coarse_level",
        "fine_level",
        "num_heads",
        "feature_dim",
        "grid_divisions",
    )


def bucket_cells(positions: np.ndarray, cell_size: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assign positions to square cells.

    Returns:
        Tuple of (unique cell coordinates (C, 2), cell index per position (N,))
    """
    cells = np.floor(np.asarray(positions, dtype=np.float64) / cell_size).astype(np.int64)
    unique, inverse = np.unique(cells, axis=0, return_inverse=True)
    return unique, inverse.ravel()


def cell_descriptors(descriptors: np.ndarray, inverse: np.ndarray, num_cells: int) -> np.ndarray:
    """L2-normalized mean descriptor of every cell."""
    sums = np.zeros((num_cells, descriptors.shape[1]), dtype=np.float64)
    np.add.at(sums, inverse, descriptors)
    counts = np.bincount(inverse, minlength=num_cells)[:, None]
    return normalize_descriptors(sums / np.maximum(counts, 1))


def coarse_selection(
    coarse_affinity: np.ndarray,
    temperature: float,
    coarse_threshold: float,
    min_cells: int,
) -> np.ndarray:
    """
    Boolean (N, C) mask of the cells searched by each row.

    A cell is selected when its softmax probability reaches
    coarse_threshold or it is among the row's min_cells best cells.
    """
    probabilities = softmax(np.asarray(coarse_affinity, dtype=np.float64) / temperature, axis=1)
    selected = probabilities >= coarse_threshold

    k = min(max(1, min_cells), probabilities.shape[1])
    top = np.argsort(-probabilities, axis=1, kind="stable")[:, :k]
    np.put_along_axis(selected, top, True, axis=1)
    return selected


def fine_probabilities(
    fine_affinity: np.ndarray,
    candidates: np.ndarray,
    temperature: float,
    fine_threshold: float,
) -> np.ndarray:
    """
    Softmax over each row's candidates; other entries and entries below
    fine_threshold are zero.
    """
    logits = np.where(candidates, np.asarray(fine_affinity, dtype=np.float64) / temperature, -np.inf)
    probabilities = softmax(logits, axis=1)
    probabilities[~candidates] = 0.0
    probabilities[probabilities < fine_threshold] = 0.0
    return probabilities


class LoFTRMatcher(AffinityMatcher):
    """Coarse-to-fine descriptor matcher."""

    model_type = ModelType.LOFTR_MATCHER
    display_name = "LoFTR"
    config_class = LoFTRConfig
    parsed_parameters = (
        "max_keypoints",
        "match_threshold",
        "coarse_threshold",
        "fine_threshold",
    )

    def select(
        self,
        positions1: np.ndarray,
        descriptors1: np.ndarray,
        positions2: np.ndarray,
        descriptors2: np.ndarray,
        config: LoFTRConfig,
    ) -> MatchSelection:
        cell_size = config.coarse_window_size * config.coarse_level
        cells, inverse = bucket_cells(positions2, cell_size)
        coarse_desc = cell_descriptors(
            normalize_descriptors(descriptors2), inverse, cells.shape[0]
        )

        coarse = self._session.affinity(descriptors1, coarse_desc)
        selected = coarse_selection(
            coarse, config.temperature, config.coarse_threshold, config.fine_level
        )

        fine = self._session.affinity(descriptors1, descriptors2)
        probabilities = fine_probabilities(
            fine, selected[:, inverse], config.temperature, config.fine_threshold
        )

        return select_matches(
            probabilities,
            match_threshold=config.match_threshold,
            use_mutual_check=config.use_mutual_check,
            mutual_threshold=config.mutual_threshold,
            use_ratio_test=config.use_ratio_test,
            ratio_threshold=config.ratio_threshold,
        )

    def _dense_features(
        self,
        bitmap: Bitmap,
        config: LoFTRConfig,
    ) -> Tuple[np.ndarray, np.ndarray]:
        positions = grid_positions(bitmap.width, bitmap.height, config.grid_divisions)
        if positions.shape[0] > config.max_keypoints:
            keep = np.linspace(0, positions.shape[0] - 1, config.max_keypoints).astype(np.int64)
            positions = positions[keep]
        if positions.shape[0] == 0:
            return positions, np.zeros((0, config.feature_dim), dtype=np.float32)

        gray = bitmap.to_gray()
        descriptors = self._session.describe(gray, positions, config.feature_dim)
        return positions, normalize_descriptors(descriptors)

    def match_images(
        self,
        image1: ImageInput,
        image2: ImageInput,
        config: Optional[LoFTRConfig] = None,
    ) -> MatchResult:
        """
        Detector-free matching of two images over dense grids.

        Args:
            image1: First image (Bitmap, array or path)
            image2: Second image (Bitmap, array or path)
            config: Per-call configuration (current config if None)

        Returns:
            MatchResult including the dense keypoints of both images;
            empty on failure
        """
        start = time.perf_counter()

        if not self.is_loaded():
            logger.error(f"{self.name} is not loaded")
            return MatchResult()

        config = config or self._config

        try:
            bitmap1 = as_bitmap(image1)
            bitmap2 = as_bitmap(image2)
        except (ImageReadError, ValueError) as e:
            logger.error(f"{self.name}: cannot read image: {e}")
            return MatchResult()

        try:
            positions1, descriptors1 = self._dense_features(bitmap1, config)
            positions2, descriptors2 = self._dense_features(bitmap2, config)
            if positions1.shape[0] == 0 or positions2.shape[0] == 0:
                logger.warning(f"{self.name}: image too small for a dense grid")
                return MatchResult()
            selection = self.select(positions1, descriptors1, positions2, descriptors2, config)
        except BackendError as e:
            logger.error(f"{self.name}: image matching failed: {e}")
            return MatchResult()
        except Exception:
            logger.exception(f"{self.name}: unexpected error during image matching")
            return MatchResult()

        result = build_match_result(selection, positions1.shape[0])
        result.keypoints1 = [Keypoint.from_xy(x, y) for x, y in positions1]
        result.keypoints2 = [Keypoint.from_xy(x, y) for x, y in positions2]
        result.processing_time_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(
            f"{self.name}: {result.num_matches} dense matches in {result.processing_time_ms:.1f}ms"
        )
        return result
