"""
Keypoint selection utilities shared by all detector variants.

Every function works on plain numpy arrays and returns indices into its
input, so callers can keep parallel sequences (positions, scores,
descriptors) aligned without copying keypoint objects around.

Selection order used by detectors:
    1. threshold_filter  - drop scores below the keypoint threshold
    2. border_filter     - drop candidates near the image edges
    3. select_top_k      - stable sort by descending score, truncate
    4. soft_nms          - optional distance-based score decay
"""

from typing import Optional, Tuple

import numpy as np


def _as_positions(positions) -> np.ndarray:
    return np.asarray(positions, dtype=np.float64).reshape(-1, 2)


def _as_scores(scores) -> np.ndarray:
    return np.asarray(scores, dtype=np.float64).ravel()


def threshold_filter(scores, threshold: float) -> np.ndarray:
    """
    Indices of candidates whose score reaches the threshold.

    Args:
        scores: Candidate scores of shape (N,)
        threshold: Minimum score (inclusive)

    Returns:
        Ascending indices of the kept candidates
    """
    scores = _as_scores(scores)
    return np.flatnonzero(scores >= threshold)


def border_filter(
    positions,
    width: int,
    height: int,
    margin: float,
) -> np.ndarray:
    """
    Indices of candidates lying at least `margin` pixels inside the image.

    A candidate is rejected when x < margin, x >= width - margin,
    y < margin or y >= height - margin.

    Args:
        positions: Candidate positions of shape (N, 2) as (x, y)
        width: Width of the image the candidates were detected on
        height: Height of the image the candidates were detected on
        margin: Border margin in pixels

    Returns:
        Ascending indices of the kept candidates
    """
    positions = _as_positions(positions)
    x = positions[:, 0]
    y = positions[:, 1]
    inside = (
        (x >= margin)
        & (x < width - margin)
        & (y >= margin)
        & (y < height - margin)
    )
    return np.flatnonzero(inside)


def select_top_k(scores, k: Optional[int] = None) -> np.ndarray:
    """
    Indices of the k best candidates, best first.

    The sort is stable: candidates with equal scores keep their input
    order.

    Args:
        scores: Candidate scores of shape (N,)
        k: Number of candidates to keep (None keeps all)

    Returns:
        Indices sorted by descending score
    """
    scores = _as_scores(scores)
    order = np.argsort(-scores, kind="stable")
    if k is not None:
        order = order[:max(0, int(k))]
    return order


def soft_nms(
    positions,
    scores,
    radius: float,
    threshold: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Soft non-maximum suppression with linear distance decay.

    Greedily picks the candidate with the highest current score. Every
    other remaining candidate closer than `radius` has its score
    multiplied by distance / radius, then candidates whose decayed score
    falls below `threshold` are dropped. Unlike hard NMS, a neighbour
    survives when its decayed score still reaches the threshold.

    Ties are resolved in favour of the lower input index.

    Args:
        positions: Candidate positions of shape (N, 2) as (x, y)
        scores: Candidate scores of shape (N,)
        radius: Suppression radius in pixels
        threshold: Minimum score a candidate must keep to survive

    Returns:
        Tuple of:
            - kept: Indices of survivors in selection order
            - kept_scores: Their (possibly decayed) scores
    """
    positions = _as_positions(positions)
    current = _as_scores(scores).copy()

    if radius <= 0:
        kept = select_top_k(current)
        kept = kept[current[kept] >= threshold]
        return kept, current[kept]

    active = current >= threshold
    kept = []
    kept_scores = []

    while active.any():
        candidates = np.flatnonzero(active)
        best = candidates[np.argmax(current[candidates])]
        kept.append(best)
        kept_scores.append(current[best])
        active[best] = False

        others = np.flatnonzero(active)
        if others.size == 0:
            break

        dist = np.linalg.norm(positions[others] - positions[best], axis=1)
        near = dist < radius
        current[others[near]] *= dist[near] / radius
        active[others] = current[others] >= threshold

    return np.asarray(kept, dtype=np.int64), np.asarray(kept_scores, dtype=np.float64)


def filter_keypoints(
    positions,
    scores,
    keypoint_threshold: float,
    max_keypoints: int,
    image_size: Optional[Tuple[int, int]] = None,
    border_margin: float = 0,
    remove_borders: bool = True,
) -> np.ndarray:
    """
    Threshold, border rejection and top-k selection in one pass.

    Args:
        positions: Candidate positions of shape (N, 2) as (x, y)
        scores: Candidate scores of shape (N,)
        keypoint_threshold: Minimum score
        max_keypoints: Maximum number of survivors
        image_size: (width, height) of the image; border rejection is
            skipped when None
        border_margin: Border margin in pixels
        remove_borders: Whether border rejection is enabled

    Returns:
        Indices into the input, sorted by descending score
    """
    positions = _as_positions(positions)
    scores = _as_scores(scores)

    keep = threshold_filter(scores, keypoint_threshold)

    if remove_borders and image_size is not None and border_margin > 0:
        width, height = image_size
        inside = border_filter(positions[keep], width, height, border_margin)
        keep = keep[inside]

    order = select_top_k(scores[keep], max_keypoints)
    return keep[order]


def grid_positions(width: int, height: int, grid_divisions: int) -> np.ndarray:
    """
    Regular grid over the image interior.

    The step is min(width, height) // grid_divisions (at least 1) and
    both axes cover [step, size - step).

    Returns:
        (N, 2) array of (x, y), row-major
    """
    step = max(1, min(width, height) // max(1, grid_divisions))
    xs = np.arange(step, width - step, step)
    ys = np.arange(step, height - step, step)
    if xs.size == 0 or ys.size == 0:
        return np.zeros((0, 2), dtype=np.float64)
    gx, gy = np.meshgrid(xs, ys)
    return np.stack([gx.ravel(), gy.ravel()], axis=1).astype(np.float64)
