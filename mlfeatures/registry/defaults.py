"""
Default model registration.

Built-in detectors and matchers are imported lazily so that importing
the registry package does not pull in every variant.
"""

from typing import Dict, Optional

from mlfeatures.backends.devices import parse_device
from mlfeatures.registry.model_interface import (
    MLModel,
    ModelType,
    SessionFactory,
    parse_model_type,
)
from mlfeatures.registry.model_registry import ModelRegistry
from mlfeatures.utils.cache import validate_model_path
from mlfeatures.utils.config import DEFAULT_CONFIG, Config
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_MODEL_NAMES: Dict[ModelType, str] = {
    ModelType.SUPERPOINT_DETECTOR: "superpoint",
    ModelType.DISK_DETECTOR: "disk",
    ModelType.SUPERGLUE_MATCHER: "superglue",
    ModelType.LOFTR_MATCHER: "loftr",
}


def create_model(
    model_type: ModelType,
    session_factory: Optional[SessionFactory] = None,
) -> Optional[MLModel]:
    """
    Instantiate a built-in model.

    Args:
        model_type: Type to instantiate
        session_factory: Optional session factory passed to the model

    Returns:
        Model instance, or None if the type has no built-in implementation
    """
    from mlfeatures.detectors import DISKDetector, SuperPointDetector
    from mlfeatures.matchers import LoFTRMatcher, SuperGlueMatcher

    classes = {
        ModelType.SUPERPOINT_DETECTOR: SuperPointDetector,
        ModelType.DISK_DETECTOR: DISKDetector,
        ModelType.SUPERGLUE_MATCHER: SuperGlueMatcher,
        ModelType.LOFTR_MATCHER: LoFTRMatcher,
    }
    model_class = classes.get(model_type)
    if model_class is None:
        logger.warning(f"No built-in implementation for {model_type.value}")
        return None
    return model_class(session_factory=session_factory)


def register_default_models(
    registry: ModelRegistry,
    config: Optional[Config] = None,
    session_factory: Optional[SessionFactory] = None,
) -> None:
    """
    Register all built-in models with a registry.

    Models configured in `config.models` are registered under their
    configured names; every built-in type without a section is
    registered under its default name.

    Args:
        registry: The registry to populate
        config: Configuration (DEFAULT_CONFIG if None)
        session_factory: Optional session factory passed to every model
    """
    config = config or DEFAULT_CONFIG
    configured_types = set()

    for name, section in config.models.items():
        model_type = parse_model_type(section.type)
        model = create_model(model_type, session_factory)
        if model is None:
            continue
        registry.register_model(name, model)
        configured_types.add(model_type)

    for model_type, name in DEFAULT_MODEL_NAMES.items():
        if model_type in configured_types or name in registry:
            continue
        registry.register_model(name, create_model(model_type, session_factory))


def create_default_registry(
    config: Optional[Config] = None,
    session_factory: Optional[SessionFactory] = None,
    configure_logging: bool = False,
) -> ModelRegistry:
    """
    Create a registry populated with the built-in models.

    Registry policy comes from `config.registry`; models whose section
    sets `autoload` are loaded immediately.
    With `configure_logging`, the `logging` section is applied to the
    package logger first.

    Args:
        config: Configuration (DEFAULT_CONFIG if None)
        session_factory: Optional session factory passed to every model
        configure_logging: Whether to apply `config.logging`

    Returns:
        Populated ModelRegistry
    """
    config = config or DEFAULT_CONFIG
    if configure_logging:
        config.logging.apply()

    registry = ModelRegistry(
        cache_directory=config.registry.cache_directory,
        download_enabled=config.registry.download_enabled,
    )
    registry.set_default_device(parse_device(config.registry.default_device))

    register_default_models(registry, config, session_factory)

    for name, section in config.models.items():
        if not section.autoload or name not in registry:
            continue
        if section.model_path:
            valid, message = validate_model_path(section.model_path)
            if not valid:
                logger.warning(f"Model '{name}': {message}")
        registry.load_model(name, config.model_config(name))

    return registry
