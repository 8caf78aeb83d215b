"""
Correspondence extraction from pairwise score matrices.

All matchers reduce their backend output to an (N, M) score matrix and
then run the same selection steps:

    1. candidates     - per-row best column, or a one-to-one optimal
                        assignment after Sinkhorn normalization
    2. threshold      - drop candidates below the match threshold
    3. mutual check   - keep (i, j) only if i is also the best row for j
                        (or the score reaches the mutual threshold)
    4. ratio test     - reject pairs whose score is not separated enough
                        from the strongest other column of their row

References:
- Sinkhorn, R. "A relationship between arbitrary positive matrices and
  doubly stochastic matrices." Ann. Math. Statist. 35.2 (1964): 876-879.
- Sarlin et al. "SuperGlue: Learning Feature Matching with Graph Neural
  Networks." CVPR 2020.
- Sun et al. "LoFTR: Detector-Free Local Feature Matching with
  Transformers." CVPR 2021.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.optimize import linear_sum_assignment
from scipy.special import softmax


_EPS = 1e-12


@dataclass
class MatchSelection:
    """
    Matches selected from a score matrix.

    Attributes:
        pairs: (K, 2) array of (i, j) indices
        scores: (K,) score of each pair
        mutual: (K,) True where i is the best row for column j
    """
    pairs: np.ndarray
    scores: np.ndarray
    mutual: np.ndarray

    def __len__(self) -> int:
        return int(self.pairs.shape[0])

    @classmethod
    def empty(cls) -> "MatchSelection":
        return cls(
            pairs=np.zeros((0, 2), dtype=np.int64),
            scores=np.zeros(0, dtype=np.float64),
            mutual=np.zeros(0, dtype=bool),
        )


def best_candidates(scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Best column for every row.

    Args:
        scores: Score matrix of shape (N, M), M > 0

    Returns:
        Tuple of (best column index (N,), best score (N,))
    """
    best_j = np.argmax(scores, axis=1)
    best_score = scores[np.arange(scores.shape[0]), best_j]
    return best_j, best_score


def reverse_best(scores: np.ndarray) -> np.ndarray:
    """Best row for every column, shape (M,)."""
    return np.argmax(scores, axis=0)


def mutual_check(
    pairs: np.ndarray,
    reverse: np.ndarray,
    pair_scores: Optional[np.ndarray] = None,
    mutual_threshold: Optional[float] = None,
) -> np.ndarray:
    """
    Mutual-consistency mask for candidate pairs.

    A pair (i, j) is consistent when reverse[j] == i. If a mutual
    threshold is given, pairs whose score reaches it are also accepted.

    Args:
        pairs: (K, 2) array of (i, j) indices
        reverse: Selected row for every column, shape (M,)
        pair_scores: Score of each pair, shape (K,)
        mutual_threshold: Score at which the reverse check is waived

    Returns:
        Boolean mask of shape (K,)
    """
    pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
    if pairs.shape[0] == 0:
        return np.zeros(0, dtype=bool)

    consistent = reverse[pairs[:, 1]] == pairs[:, 0]
    if mutual_threshold is not None and pair_scores is not None:
        consistent = consistent | (np.asarray(pair_scores) >= mutual_threshold)
    return consistent


def ratio_test(
    scores: np.ndarray,
    rows: np.ndarray,
    ratio_threshold: float,
    cols: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Best-to-second-best separation test on similarity-like scores.

    Row i passes when its strongest competing score is at most
    ratio_threshold * its own score. Without `cols` the row's own score
    is its best entry; with `cols` it is the score of the chosen pair
    and every other column of the row competes, so a pair assigned away
    from the row maximum is measured against that maximum. Rows with a
    single candidate always pass.

    Args:
        scores: Score matrix of shape (N, M), higher is better
        rows: Row indices to test
        ratio_threshold: Maximum allowed second/best ratio
        cols: Chosen column for each row (row argmax if None)

    Returns:
        Boolean mask aligned with `rows`
    """
    rows = np.asarray(rows, dtype=np.int64)
    if rows.size == 0:
        return np.zeros(0, dtype=bool)
    if scores.shape[1] < 2:
        return np.ones(rows.size, dtype=bool)

    if cols is None:
        top2 = -np.partition(-scores[rows], 1, axis=1)[:, :2]
        return top2[:, 1] <= ratio_threshold * top2[:, 0]

    cols = np.asarray(cols, dtype=np.int64)
    index = np.arange(rows.size)
    others = np.array(scores[rows], dtype=np.float64)
    chosen = others[index, cols].copy()
    others[index, cols] = -np.inf
    return others.max(axis=1) <= ratio_threshold * chosen


def sinkhorn_normalize(
    affinity: np.ndarray,
    iterations: int = 20,
    threshold: float = 1e-4,
) -> Tuple[np.ndarray, int]:
    """
    Alternating row/column normalization of a non-negative matrix.

    Stops after `iterations` rounds or once the largest entry change
    between two rounds drops below `threshold`. For square matrices with
    positive entries the result approaches a doubly stochastic matrix.

    Args:
        affinity: Non-negative matrix of shape (N, M)
        iterations: Maximum number of row+column rounds
        threshold: Convergence tolerance on the max absolute change

    Returns:
        Tuple of (normalized matrix, number of rounds performed)
    """
    P = np.asarray(affinity, dtype=np.float64).copy()
    if P.size == 0:
        return P, 0
    if np.any(P < 0):
        raise ValueError("Sinkhorn normalization requires a non-negative matrix")

    performed = 0
    for _ in range(max(0, int(iterations))):
        previous = P
        P = P / np.maximum(P.sum(axis=1, keepdims=True), _EPS)
        P = P / np.maximum(P.sum(axis=0, keepdims=True), _EPS)
        performed += 1
        if np.max(np.abs(P - previous)) < threshold:
            break

    return P, performed


def optimal_assignment(scores: np.ndarray) -> np.ndarray:
    """
    One-to-one assignment maximizing the total score.

    Args:
        scores: Score matrix of shape (N, M)

    Returns:
        (min(N, M), 2) array of (i, j) pairs sorted by i
    """
    if scores.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    rows, cols = linear_sum_assignment(scores, maximize=True)
    return np.stack([rows, cols], axis=1).astype(np.int64)


def dual_softmax(logits: np.ndarray, temperature: float = 0.1) -> np.ndarray:
    """
    Dual-softmax matching probabilities.

    P = softmax_rows(S / t) * softmax_cols(S / t)

    Args:
        logits: Raw affinity matrix of shape (N, M)
        temperature: Softmax temperature

    Returns:
        Probability matrix of shape (N, M) in [0, 1]
    """
    logits = np.asarray(logits, dtype=np.float64)
    if logits.size == 0:
        return logits.copy()
    scaled = logits / temperature
    return softmax(scaled, axis=1) * softmax(scaled, axis=0)


def select_matches(
    scores: np.ndarray,
    match_threshold: float,
    use_mutual_check: bool = True,
    mutual_threshold: Optional[float] = None,
    use_ratio_test: bool = False,
    ratio_threshold: float = 0.8,
    one_to_one: bool = False,
) -> MatchSelection:
    """
    Run candidate extraction, threshold, mutual check and ratio test.

    Args:
        scores: Score matrix of shape (N, M)
        match_threshold: Minimum score of a kept pair
        use_mutual_check: Whether to drop mutually inconsistent pairs
        mutual_threshold: Score at which the reverse check is waived
        use_ratio_test: Whether to apply the ratio test
        ratio_threshold: Ratio test threshold
        one_to_one: Use optimal assignment instead of per-row argmax

    Returns:
        MatchSelection ordered by row index
    """
    scores = np.asarray(scores, dtype=np.float64)
    if scores.ndim != 2 or scores.shape[0] == 0 or scores.shape[1] == 0:
        return MatchSelection.empty()

    if one_to_one:
        pairs = optimal_assignment(scores)
    else:
        best_j, _ = best_candidates(scores)
        pairs = np.stack([np.arange(scores.shape[0]), best_j], axis=1).astype(np.int64)

    pair_scores = scores[pairs[:, 0], pairs[:, 1]]
    reverse = reverse_best(scores)
    mutual = mutual_check(pairs, reverse)

    keep = pair_scores >= match_threshold
    if use_mutual_check:
        keep &= mutual_check(pairs, reverse, pair_scores, mutual_threshold)
    if use_ratio_test:
        keep &= ratio_test(scores, pairs[:, 0], ratio_threshold, pairs[:, 1])

    return MatchSelection(
        pairs=pairs[keep],
        scores=pair_scores[keep],
        mutual=mutual[keep],
    )
