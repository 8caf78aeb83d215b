"""
Shared matching pipeline for affinity-based matchers.

Matcher variants differ in how they turn two descriptor sets into a
probability matrix; input validation, error handling and result
statistics are shared here.
"""

import time
from abc import abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Optional, Sequence, Tuple

import numpy as np

from mlfeatures.errors import BackendError
from mlfeatures.features.types import (
    Keypoint,
    MatchResult,
    descriptors_to_array,
    keypoints_to_array,
)
from mlfeatures.postprocessing import MatchSelection
from mlfeatures.registry.model_interface import BaseMatcher, VariantConfig
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class MatcherConfig(VariantConfig):
    """
    Configuration common to all matchers.

    Attributes:
        match_threshold: Minimum probability of a kept match
        max_keypoints: Maximum number of keypoints used per image
        use_mutual_check: Whether to drop mutually inconsistent matches
        mutual_threshold: Probability at which the mutual check is waived
        use_ratio_test: Whether to apply the best/second-best ratio test
        ratio_threshold: Maximum second/best ratio
        temperature: Softmax temperature applied to affinities
    """
    match_threshold: float = 0.2
    max_keypoints: int = 1024
    use_mutual_check: bool = True
    mutual_threshold: float = 0.8
    use_ratio_test: bool = False
    ratio_threshold: float = 0.8
    temperature: float = 0.1

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = ("max_keypoints", "temperature")


def as_positions(keypoints) -> np.ndarray:
    """(N, 2) float array from keypoints or (x, y) pairs."""
    if isinstance(keypoints, np.ndarray):
        return keypoints.astype(np.float64).reshape(-1, 2)
    items = list(keypoints)
    if items and not isinstance(items[0], Keypoint):
        return np.asarray(items, dtype=np.float64).reshape(-1, 2)
    return keypoints_to_array(items).astype(np.float64)


def build_match_result(selection: MatchSelection, num_keypoints1: int) -> MatchResult:
    """
    MatchResult with statistics from a selection.

    match_ratio is num_matches / max(1, num_keypoints1).
    """
    num_matches = len(selection)
    return MatchResult(
        matches=[(int(i), int(j)) for i, j in selection.pairs],
        match_scores=[float(s) for s in selection.scores],
        mutual_matches=[bool(m) for m in selection.mutual],
        num_matches=num_matches,
        match_ratio=num_matches / max(1, num_keypoints1),
    )


class AffinityMatcher(BaseMatcher):
    """
    Base class for matchers working on backend affinities.

    Subclasses implement select(); match() handles validation, errors
    and statistics.
    """

    config_class = MatcherConfig

    @abstractmethod
    def select(
        self,
        positions1: np.ndarray,
        descriptors1: np.ndarray,
        positions2: np.ndarray,
        descriptors2: np.ndarray,
        config: MatcherConfig,
    ) -> MatchSelection:
        """
        Select matches between two non-empty descriptor sets.

        Args:
            positions1: (N, 2) keypoint positions of the first set
            descriptors1: (N, D) descriptors of the first set
            positions2: (M, 2) keypoint positions of the second set
            descriptors2: (M, D) descriptors of the second set
            config: Active configuration

        Returns:
            MatchSelection with indices into the inputs
        """

    def match(
        self,
        keypoints1: Sequence[Keypoint],
        descriptors1: Sequence[np.ndarray],
        keypoints2: Sequence[Keypoint],
        descriptors2: Sequence[np.ndarray],
        config: Optional[MatcherConfig] = None,
    ) -> MatchResult:
        """
        Match two keypoint/descriptor sets.

        Only the first max_keypoints entries of each set take part; the
        match ratio is still relative to the full first set.

        Returns:
            MatchResult; empty if not loaded, on empty input or on
            backend failure
        """
        start = time.perf_counter()

        if not self.is_loaded():
            logger.error(f"{self.name} is not loaded")
            return MatchResult()

        if (len(keypoints1) == 0 or len(descriptors1) == 0
                or len(keypoints2) == 0 or len(descriptors2) == 0):
            logger.warning(f"{self.name}: empty keypoints or descriptors, nothing to match")
            return MatchResult()

        if len(keypoints1) != len(descriptors1) or len(keypoints2) != len(descriptors2):
            logger.warning(
                f"{self.name}: keypoint/descriptor count mismatch "
                f"({len(keypoints1)}/{len(descriptors1)}, {len(keypoints2)}/{len(descriptors2)})"
            )
            return MatchResult()

        config = config or self._config
        limit = config.max_keypoints

        try:
            selection = self.select(
                as_positions(keypoints1)[:limit],
                descriptors_to_array(descriptors1)[:limit],
                as_positions(keypoints2)[:limit],
                descriptors_to_array(descriptors2)[:limit],
                config,
            )
        except BackendError as e:
            logger.error(f"{self.name}: matching failed: {e}")
            return MatchResult()
        except ValueError as e:
            logger.error(f"{self.name}: invalid descriptors: {e}")
            return MatchResult()
        except Exception:
            logger.exception(f"{self.name}: unexpected error during matching")
            return MatchResult()

        result = build_match_result(selection, len(keypoints1))
        result.processing_time_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(
            f"{self.name}: {result.num_matches} matches "
            f"(ratio {result.match_ratio:.3f}) in {result.processing_time_ms:.1f}ms"
        )
        return result
