"""
Model interface definitions.

This module defines the base interface shared by every model managed by
the registry, plus the detector and matcher capability interfaces the
registry hands out to callers.

A model owns at most one inference session. load() opens it, unload()
closes it, and is_loaded() is true exactly while it is open.
"""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, Union

from mlfeatures.backends.devices import Backend, Device
from mlfeatures.backends.session import InferenceSession, load_session
from mlfeatures.errors import BackendError
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)

SessionFactory = Callable[[str, Backend, Device, bool], InferenceSession]


class ModelType(Enum):
    """Kinds of models the registry can hold."""
    SUPERPOINT_DETECTOR = "superpoint_detector"
    SUPERGLUE_MATCHER = "superglue_matcher"
    LOFTR_MATCHER = "loftr_matcher"
    DISK_DETECTOR = "disk_detector"
    R2D2_DETECTOR = "r2d2_detector"
    MVSNET_MVS = "mvsnet_mvs"
    NERF_RENDERER = "nerf_renderer"
    INSTANT_NGP = "instant_ngp"


def parse_model_type(value: Union[str, ModelType]) -> ModelType:
    """ModelType from an enum member or its (case-insensitive) name/value."""
    if isinstance(value, ModelType):
        return value
    key = str(value).strip().lower()
    for model_type in ModelType:
        if key in (model_type.value, model_type.name.lower()):
            return model_type
    raise ValueError(f"Unknown model type: {value}")


@dataclass
class ModelConfig:
    """
    Load-time configuration handed to a model.

    Attributes:
        model_path: Path to the model file; empty selects reference kernels
        backend: Inference backend
        device: Compute device; None lets the registry pick its default
        use_fp16: Run in half precision where supported
        batch_size: Inference batch size
        confidence_threshold: Generic confidence cut-off
        parameters: Free-form string parameters parsed by each model
    """
    model_path: str = ""
    backend: Backend = Backend.PYTORCH
    device: Optional[Device] = None
    use_fp16: bool = False
    batch_size: int = 1
    confidence_threshold: float = 0.5
    parameters: Dict[str, str] = field(default_factory=dict)


# =============================================================================
# VARIANT CONFIGURATION
# =============================================================================


@dataclass
class VariantConfig:
    """Base for the per-variant configuration value sets."""

    POSITIVE_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ValueError: If a size or dimension is not positive
        """
        for name in self.POSITIVE_FIELDS:
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{type(self).__name__}.{name} must be positive, got {value}")

    def replace(self, **overrides) -> "VariantConfig":
        return dataclasses.replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def parse_value(raw: Any, target_type: type) -> Any:
    """
    Convert a string parameter to the type of a config field.

    Raises:
        ValueError: If the value cannot be converted
    """
    text = str(raw).strip()
    if target_type is bool:
        lowered = text.lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if target_type is int:
        return int(text)
    if target_type is float:
        return float(text)
    return text


# =============================================================================
# MODEL INTERFACE
# =============================================================================


class MLModel(ABC):
    """
    Abstract base class for registry-managed models.

    Subclasses declare their type, display name, configuration class and
    the configuration fields that may be set through string parameters.
    """

    model_type: ClassVar[ModelType]
    display_name: ClassVar[str] = ""
    config_class: ClassVar[type] = VariantConfig
    parsed_parameters: ClassVar[Tuple[str, ...]] = ()

    def __init__(
        self,
        config: Optional[VariantConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        """
        Initialize the model.

        Args:
            config: Variant configuration (default values if None)
            session_factory: Callable opening an InferenceSession from
                (model_path, backend, device, use_fp16); defaults to
                load_session
        """
        self._config = config if config is not None else self.config_class()
        self._session_factory = session_factory or load_session
        self._session: Optional[InferenceSession] = None
        self._model_config = ModelConfig(device=Device.CPU)

    @property
    def name(self) -> str:
        return self.display_name or type(self).__name__

    @property
    def type(self) -> ModelType:
        return self.model_type

    @property
    def backend(self) -> Backend:
        return self._model_config.backend

    @property
    def device(self) -> Device:
        return self._model_config.device or Device.CPU

    @property
    def session(self) -> Optional[InferenceSession]:
        return self._session

    # ===== Configuration =====

    def get_config(self) -> VariantConfig:
        """Copy of the current variant configuration."""
        return dataclasses.replace(self._config)

    def set_config(self, config: VariantConfig) -> None:
        if not isinstance(config, self.config_class):
            raise TypeError(
                f"{self.name} expects {self.config_class.__name__}, got {type(config).__name__}"
            )
        self._config = dataclasses.replace(config)

    def parse_parameters(self, parameters: Dict[str, str]) -> bool:
        """
        Apply recognized string parameters to the configuration.

        Unknown keys are ignored. A malformed value aborts parsing and
        leaves the configuration unchanged.

        Args:
            parameters: Parameter name to string value

        Returns:
            True if all recognized parameters were applied
        """
        updates = {}
        for key, raw in parameters.items():
            if key not in self.parsed_parameters:
                continue
            target_type = type(getattr(self._config, key))
            try:
                updates[key] = parse_value(raw, target_type)
            except ValueError as e:
                logger.warning(f"{self.name}: invalid value for parameter '{key}': {e}")
                return False

        if not updates:
            return True

        candidate = self._config.replace(**updates)
        try:
            candidate.validate()
        except ValueError as e:
            logger.warning(f"{self.name}: rejected parameters {sorted(updates)}: {e}")
            return False

        self._config = candidate
        return True

    # ===== Lifecycle =====

    def load(self, config: ModelConfig) -> bool:
        """
        Open the backend session.

        Args:
            config: Load-time configuration

        Returns:
            True if the model is loaded after the call
        """
        if self.is_loaded():
            return True

        device = config.device or Device.CPU
        self.parse_parameters(config.parameters)

        try:
            session = self._session_factory(
                config.model_path, config.backend, device, config.use_fp16
            )
        except BackendError as e:
            logger.error(f"Failed to load {self.name}: {e}")
            return False
        except Exception:
            logger.exception(f"Unexpected error while loading {self.name}")
            return False

        self._session = session
        self._model_config = dataclasses.replace(config, device=device)
        logger.info(
            f"Loaded {self.name} (backend={config.backend.value}, device={device.value})"
        )
        return True

    def is_loaded(self) -> bool:
        return self._session is not None

    def unload(self) -> None:
        """Close the backend session; no-op if not loaded."""
        if self._session is None:
            return
        try:
            self._session.close()
        except Exception:
            logger.exception(f"Error while closing session of {self.name}")
        self._session = None
        logger.info(f"Unloaded {self.name}")

    def __repr__(self) -> str:
        state = "loaded" if self.is_loaded() else "unloaded"
        return f"{type(self).__name__}(type={self.model_type.value}, {state})"


class BaseDetector(MLModel):
    """
    Keypoint detector capability.

    All detectors registered with the registry must implement detect().
    """

    @abstractmethod
    def detect(self, image, config: Optional[VariantConfig] = None):
        """
        Detect keypoints and descriptors.

        Args:
            image: Bitmap, numpy array or image path
            config: Per-call configuration (current config if None)

        Returns:
            DetectionResult; empty on any failure
        """
        pass


class BaseMatcher(MLModel):
    """
    Descriptor matcher capability.

    All matchers registered with the registry must implement match().
    """

    @abstractmethod
    def match(
        self,
        keypoints1,
        descriptors1,
        keypoints2,
        descriptors2,
        config: Optional[VariantConfig] = None,
    ):
        """
        Match two keypoint/descriptor sets.

        Args:
            keypoints1: Keypoints of the first image
            descriptors1: Descriptors of the first image
            keypoints2: Keypoints of the second image
            descriptors2: Descriptors of the second image
            config: Per-call configuration (current config if None)

        Returns:
            MatchResult; empty on any failure
        """
        pass
