"""
Model registry for feature detectors and matchers.

This module provides the model interface and a registry that manages
model lifecycles, device selection and the model cache.
"""

from mlfeatures.registry.model_interface import (
    BaseDetector,
    BaseMatcher,
    MLModel,
    ModelConfig,
    ModelType,
    VariantConfig,
    parse_model_type,
)
from mlfeatures.registry.model_registry import (
    ModelRegistry,
    ModelStatus,
)
from mlfeatures.registry.defaults import (
    DEFAULT_MODEL_NAMES,
    create_default_registry,
    create_model,
    register_default_models,
)

__all__ = [
    "BaseDetector",
    "BaseMatcher",
    "MLModel",
    "ModelConfig",
    "ModelType",
    "VariantConfig",
    "parse_model_type",
    "ModelRegistry",
    "ModelStatus",
    "DEFAULT_MODEL_NAMES",
    "create_default_registry",
    "create_model",
    "register_default_models",
]
