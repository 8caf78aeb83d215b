"""
Post-processing algorithms shared by detector and matcher variants.
"""

from .keypoint_filters import (
    threshold_filter,
    border_filter,
    select_top_k,
    soft_nms,
    filter_keypoints,
    grid_positions,
)
from .descriptor_ops import (
    normalize_descriptor,
    normalize_descriptors,
    cosine_similarity_matrix,
    split_rows,
)
from .matching_ops import (
    MatchSelection,
    best_candidates,
    reverse_best,
    mutual_check,
    ratio_test,
    sinkhorn_normalize,
    optimal_assignment,
    dual_softmax,
    select_matches,
)

__all__ = [
    # Keypoints
    'threshold_filter',
    'border_filter',
    'select_top_k',
    'soft_nms',
    'filter_keypoints',
    'grid_positions',
    # Descriptors
    'normalize_descriptor',
    'normalize_descriptors',
    'cosine_similarity_matrix',
    'split_rows',
    # Matching
    'MatchSelection',
    'best_candidates',
    'reverse_best',
    'mutual_check',
    'ratio_test',
    'sinkhorn_normalize',
    'optimal_assignment',
    'dual_softmax',
    'select_matches',
]
