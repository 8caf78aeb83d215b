"""
Value types shared by all detector and matcher variants.

Keypoints are immutable; results are created per call and owned by
the caller. Descriptors are plain 1-D float32 numpy vectors.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Keypoint:
    """
    Image keypoint with a local affine shape.

    Attributes:
        x: Column coordinate in pixels
        y: Row coordinate in pixels
        a11, a12, a21, a22: 2x2 affine shape matrix (identity if unknown)
    """
    x: float
    y: float
    a11: float = 1.0
    a12: float = 0.0
    a21: float = 0.0
    a22: float = 1.0

    @classmethod
    def from_xy(cls, x: float, y: float) -> "Keypoint":
        return cls(float(x), float(y))

    @classmethod
    def from_shape(
        cls,
        x: float,
        y: float,
        scale: float = 1.0,
        orientation: float = 0.0,
    ) -> "Keypoint":
        """Build a keypoint from an isotropic scale and an orientation (radians)."""
        c = math.cos(orientation)
        s = math.sin(orientation)
        return cls(
            float(x),
            float(y),
            a11=scale * c,
            a12=-scale * s,
            a21=scale * s,
            a22=scale * c,
        )

    @property
    def scale(self) -> float:
        """Mean of the affine column norms."""
        sx = math.hypot(self.a11, self.a21)
        sy = math.hypot(self.a12, self.a22)
        return (sx + sy) / 2.0

    @property
    def orientation(self) -> float:
        return math.atan2(self.a21, self.a11)

    def shape_matrix(self) -> np.ndarray:
        return np.array([[self.a11, self.a12], [self.a21, self.a22]], dtype=np.float32)


def keypoints_to_array(keypoints: Sequence[Keypoint]) -> np.ndarray:
    """Stack keypoint positions into an (N, 2) float array of (x, y)."""
    if len(keypoints) == 0:
        return np.zeros((0, 2), dtype=np.float32)
    return np.array([[kp.x, kp.y] for kp in keypoints], dtype=np.float32)


def descriptors_to_array(
    descriptors: Sequence[np.ndarray],
    dim: Optional[int] = None,
) -> np.ndarray:
    """Stack descriptors into an (N, D) float32 array."""
    if len(descriptors) == 0:
        return np.zeros((0, dim or 0), dtype=np.float32)
    return np.stack([np.asarray(d, dtype=np.float32).ravel() for d in descriptors])


@dataclass
class DetectionResult:
    """
    Output of a detector.

    Attributes:
        keypoints: Surviving keypoints, best first
        descriptors: One descriptor per keypoint (empty if disabled)
        scores: Confidence score per keypoint
        soft_scores: Scores after soft-NMS decay (empty if NMS disabled)
        dense_keypoints: Pre-filter candidate positions as (x, y) tuples
        dense_descriptors: Descriptors of the dense candidates, if computed
        processing_time_ms: Wall-clock time spent in detect()
    """
    keypoints: List[Keypoint] = field(default_factory=list)
    descriptors: List[np.ndarray] = field(default_factory=list)
    scores: List[float] = field(default_factory=list)
    soft_scores: List[float] = field(default_factory=list)
    dense_keypoints: List[Tuple[float, float]] = field(default_factory=list)
    dense_descriptors: List[np.ndarray] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def num_keypoints(self) -> int:
        return len(self.keypoints)

    def is_empty(self) -> bool:
        return len(self.keypoints) == 0

    def keypoint_array(self) -> np.ndarray:
        return keypoints_to_array(self.keypoints)

    def descriptor_array(self) -> np.ndarray:
        return descriptors_to_array(self.descriptors)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "num_keypoints": self.num_keypoints,
            "keypoints": self.keypoint_array().tolist(),
            "scores": list(self.scores),
            "descriptor_dim": int(self.descriptors[0].shape[0]) if self.descriptors else 0,
            "num_dense_keypoints": len(self.dense_keypoints),
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class MatchResult:
    """
    Output of a matcher.

    Attributes:
        matches: (i, j) index pairs into the first and second keypoint sets
        match_scores: Score per match
        mutual_matches: Whether each match is mutually consistent
        num_matches: Number of matches
        match_ratio: num_matches / number of keypoints in the first set
        processing_time_ms: Wall-clock time spent in match()
        keypoints1: Dense keypoints of image 1 (image matching only)
        keypoints2: Dense keypoints of image 2 (image matching only)
    """
    matches: List[Tuple[int, int]] = field(default_factory=list)
    match_scores: List[float] = field(default_factory=list)
    mutual_matches: List[bool] = field(default_factory=list)
    num_matches: int = 0
    match_ratio: float = 0.0
    processing_time_ms: float = 0.0
    keypoints1: List[Keypoint] = field(default_factory=list)
    keypoints2: List[Keypoint] = field(default_factory=list)

    def is_empty(self) -> bool:
        return len(self.matches) == 0

    def match_array(self) -> np.ndarray:
        if not self.matches:
            return np.zeros((0, 2), dtype=np.int64)
        return np.array(self.matches, dtype=np.int64)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "matches": [list(m) for m in self.matches],
            "match_scores": list(self.match_scores),
            "mutual_matches": list(self.mutual_matches),
            "num_matches": self.num_matches,
            "match_ratio": self.match_ratio,
            "processing_time_ms": self.processing_time_ms,
        }
