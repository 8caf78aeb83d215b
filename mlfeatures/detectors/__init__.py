"""
Keypoint detectors.
"""

from .base_detector import DetectorConfig, ScoreMapDetector
from .superpoint import SuperPointConfig, SuperPointDetector
from .disk import DISKConfig, DISKDetector

__all__ = [
    'DetectorConfig',
    'ScoreMapDetector',
    'SuperPointConfig',
    'SuperPointDetector',
    'DISKConfig',
    'DISKDetector',
]
