"""
Pluggable feature detection and matching engine.

Detectors (SuperPoint, DISK) and matchers (SuperGlue, LoFTR) are
managed by a ModelRegistry and share one set of post-processing
algorithms, whatever backend produced their raw scores.
"""

__version__ = "0.1.0"

from mlfeatures.errors import BackendError, ErrorKind, ImageReadError, MLFeaturesError
from mlfeatures.features import DetectionResult, Keypoint, MatchResult
from mlfeatures.image import Bitmap
from mlfeatures.backends import Backend, Device
from mlfeatures.registry import (
    ModelConfig,
    ModelRegistry,
    ModelType,
    create_default_registry,
)
from mlfeatures.detectors import (
    DISKConfig,
    DISKDetector,
    SuperPointConfig,
    SuperPointDetector,
)
from mlfeatures.matchers import (
    LoFTRConfig,
    LoFTRMatcher,
    SuperGlueConfig,
    SuperGlueMatcher,
)

__all__ = [
    "BackendError",
    "ErrorKind",
    "ImageReadError",
    "MLFeaturesError",
    "DetectionResult",
    "Keypoint",
    "MatchResult",
    "Bitmap",
    "Backend",
    "Device",
    "ModelConfig",
    "ModelRegistry",
    "ModelType",
    "create_default_registry",
    "DISKConfig",
    "DISKDetector",
    "SuperPointConfig",
    "SuperPointDetector",
    "LoFTRConfig",
    "LoFTRMatcher",
    "SuperGlueConfig",
    "SuperGlueMatcher",
]
