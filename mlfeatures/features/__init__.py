"""
Keypoint, descriptor and result containers.
"""

from .types import (
    Keypoint,
    DetectionResult,
    MatchResult,
    keypoints_to_array,
    descriptors_to_array,
)

__all__ = [
    'Keypoint',
    'DetectionResult',
    'MatchResult',
    'keypoints_to_array',
    'descriptors_to_array',
]
