"""
Descriptor normalization and similarity.
"""

from typing import List, Sequence

import numpy as np


def normalize_descriptor(descriptor: np.ndarray) -> np.ndarray:
    """L2-normalize one descriptor; a zero vector is returned unchanged."""
    descriptor = np.asarray(descriptor, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(descriptor))
    if norm > 0:
        return descriptor / norm
    return descriptor.copy()


def normalize_descriptors(descriptors) -> np.ndarray:
    """
    Row-wise L2 normalization of an (N, D) descriptor array.

    Rows with zero norm pass through unnormalized instead of becoming NaN.

    Args:
        descriptors: Array of shape (N, D) or a sequence of vectors

    Returns:
        float32 array of shape (N, D)
    """
    descriptors = np.asarray(descriptors, dtype=np.float32)
    if descriptors.size == 0:
        dim = descriptors.shape[-1] if descriptors.ndim == 2 else 0
        return np.zeros((0, dim), dtype=np.float32)
    if descriptors.ndim == 1:
        descriptors = descriptors.reshape(1, -1)

    norms = np.linalg.norm(descriptors, axis=1, keepdims=True)
    safe = np.where(norms > 0, norms, 1.0)
    return (descriptors / safe).astype(np.float32)


def split_rows(descriptors: np.ndarray) -> List[np.ndarray]:
    """Split an (N, D) array into a list of N owned vectors."""
    return [row.copy() for row in np.asarray(descriptors, dtype=np.float32)]


def cosine_similarity_matrix(
    descriptors1: Sequence[np.ndarray],
    descriptors2: Sequence[np.ndarray],
) -> np.ndarray:
    """
    Pairwise cosine similarity between two descriptor sets.

    Args:
        descriptors1: First set, shape (N, D)
        descriptors2: Second set, shape (M, D)

    Returns:
        Similarity matrix of shape (N, M) in [-1, 1]

    Raises:
        ValueError: If descriptor dimensions differ
    """
    d1 = normalize_descriptors(descriptors1)
    d2 = normalize_descriptors(descriptors2)
    if d1.shape[1] != d2.shape[1]:
        raise ValueError(
            f"Descriptor dimensions differ: {d1.shape[1]} vs {d2.shape[1]}"
        )
    return d1 @ d2.T
