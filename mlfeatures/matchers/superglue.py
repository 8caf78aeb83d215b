"""
SuperGlue-style dense pairwise matcher.

The backend affinity between every descriptor pair is turned into a
probability matrix, either by Sinkhorn normalization of the
exponentiated affinities followed by a one-to-one optimal assignment,
or by dual softmax with per-row best candidates.

Reference:
    Sarlin et al. "SuperGlue: Learning Feature Matching with Graph
    Neural Networks." CVPR 2020.
"""

from dataclasses import dataclass
from typing import ClassVar, Tuple

import numpy as np

from mlfeatures.matchers.base_matcher import AffinityMatcher, MatcherConfig
from mlfeatures.postprocessing import (
    MatchSelection,
    dual_softmax,
    select_matches,
    sinkhorn_normalize,
)
from mlfeatures.registry.model_interface import ModelType
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class SuperGlueConfig(MatcherConfig):
    """
    SuperGlue settings.

    Attributes:
        sinkhorn_iterations: Maximum Sinkhorn rounds
        sinkhorn_threshold: Sinkhorn convergence tolerance
        use_sinkhorn: Sinkhorn + optimal assignment instead of dual softmax
    """
    sinkhorn_iterations: int = 20
    sinkhorn_threshold: float = 1e-4
    use_sinkhorn: bool = True

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "max_keypoints", "temperature", "sinkhorn_iterations",
    )


def sinkhorn_probabilities(
    affinity: np.ndarray,
    temperature: float,
    iterations: int,
    threshold: float,
) -> Tuple[np.ndarray, int]:
    """Sinkhorn-normalized exp(affinity / temperature), shifted for stability."""
    affinity = np.asarray(affinity, dtype=np.float64)
    kernel = np.exp((affinity - affinity.max()) / temperature)
    return sinkhorn_normalize(kernel, iterations, threshold)


class SuperGlueMatcher(AffinityMatcher):
    """Dense pairwise descriptor matcher."""

    model_type = ModelType.SUPERGLUE_MATCHER
    display_name = "SuperGlue"
    config_class = SuperGlueConfig
    parsed_parameters = (
        "match_threshold",
        "sinkhorn_iterations",
        "sinkhorn_threshold",
        "use_mutual_check",
        "use_sinkhorn",
        "temperature",
    )

    def select(
        self,
        positions1: np.ndarray,
        descriptors1: np.ndarray,
        positions2: np.ndarray,
        descriptors2: np.ndarray,
        config: SuperGlueConfig,
    ) -> MatchSelection:
        affinity = self._session.affinity(descriptors1, descriptors2)

        if config.use_sinkhorn:
            probabilities, rounds = sinkhorn_probabilities(
                affinity,
                config.temperature,
                config.sinkhorn_iterations,
                config.sinkhorn_threshold,
            )
            logger.debug(f"Sinkhorn stopped after {rounds} round(s)")
        else:
            probabilities = dual_softmax(affinity, config.temperature)

        return select_matches(
            probabilities,
            match_threshold=config.match_threshold,
            use_mutual_check=config.use_mutual_check,
            mutual_threshold=config.mutual_threshold,
            use_ratio_test=config.use_ratio_test,
            ratio_threshold=config.ratio_threshold,
            one_to_one=config.use_sinkhorn,
        )
