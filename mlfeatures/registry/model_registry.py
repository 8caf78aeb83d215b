"""
Model registry for detector and matcher lifecycles.

This module provides a registry that holds model instances by name,
indexes them by type, loads and unloads them, and owns the device,
cache-directory and download policy shared by all models.

Registries are ordinary objects; applications create one (usually via
create_default_registry) and pass it where it is needed.
"""

import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Union

from mlfeatures.backends.devices import Backend, Device, probe_devices
from mlfeatures.backends.session import backend_for_path
from mlfeatures.registry.model_interface import (
    BaseDetector,
    BaseMatcher,
    MLModel,
    ModelConfig,
    ModelType,
)
from mlfeatures.utils.cache import clear_directory, directory_size, find_model_path
from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)

NameOrType = Union[str, ModelType]


@dataclass
class ModelStatus:
    """
    Snapshot of one registered model.

    Attributes:
        name: Registration name
        type: Model type
        loaded: Whether the model is loaded
        backend: Backend of the current/last session
        device: Device of the current/last session
    """
    name: str
    type: ModelType
    loaded: bool
    backend: Backend
    device: Device


class ModelRegistry:
    """
    Central registry for feature models.

    A name maps to exactly one instance. The type index maps each type
    to the name most recently registered with it.
    """

    def __init__(
        self,
        cache_directory: Optional[Union[str, Path]] = None,
        default_device: Device = Device.CPU,
        download_enabled: bool = False,
    ):
        """
        Initialize the registry.

        Args:
            cache_directory: Model cache directory (unset if None)
            default_device: Device used when a load config names none
            download_enabled: Initial state of the download flag
        """
        self._lock = threading.RLock()
        self._models: Dict[str, MLModel] = {}
        self._type_index: Dict[ModelType, str] = {}
        self._cache_directory: Optional[Path] = None
        self._default_device = Device.CPU
        self._download_enabled = download_enabled
        self._available_devices: Optional[List[Device]] = None

        if cache_directory is not None:
            self.set_model_cache_directory(cache_directory)
        if default_device != Device.CPU:
            self.set_default_device(default_device)

    # ===== Registration =====

    def register_model(self, name: str, model: Optional[MLModel]) -> bool:
        """
        Register a model instance under a name.

        An existing registration under the same name is replaced.

        Args:
            name: Registration name
            model: Model instance

        Returns:
            True on success, False if model is None
        """
        if model is None:
            logger.error(f"Cannot register model '{name}': instance is None")
            return False

        with self._lock:
            previous = self._models.get(name)
            if previous is not None:
                logger.warning(f"Model '{name}' is already registered, overwriting")
                if previous.type != model.type and self._type_index.get(previous.type) == name:
                    del self._type_index[previous.type]
            self._models[name] = model
            self._type_index[model.type] = name

        logger.info(f"Registered model '{name}' ({model.type.value})")
        return True

    def unregister_model(self, name: str) -> bool:
        """
        Unload and remove a model.

        Args:
            name: Registration name

        Returns:
            True if the model was registered
        """
        with self._lock:
            model = self._models.pop(name, None)
            if model is None:
                logger.warning(f"Cannot unregister unknown model '{name}'")
                return False

            if self._type_index.get(model.type) == name:
                del self._type_index[model.type]
            model.unload()

        logger.info(f"Unregistered model '{name}'")
        return True

    def _resolve_name(self, name_or_type: NameOrType) -> Optional[str]:
        if isinstance(name_or_type, ModelType):
            return self._type_index.get(name_or_type)
        return name_or_type

    def get_model(self, name_or_type: NameOrType) -> Optional[MLModel]:
        """
        Look up a model by registration name or by type.

        Args:
            name_or_type: Registration name or ModelType

        Returns:
            Model instance, or None if not found
        """
        with self._lock:
            name = self._resolve_name(name_or_type)
            model = self._models.get(name) if name is not None else None

        if model is None:
            label = name_or_type.value if isinstance(name_or_type, ModelType) else name_or_type
            logger.warning(f"Model not found: {label}")
        return model

    def get_detector(self, name_or_type: NameOrType) -> Optional[BaseDetector]:
        """Model lookup restricted to detectors."""
        model = self.get_model(name_or_type)
        if model is not None and not isinstance(model, BaseDetector):
            logger.warning(f"Model '{model.name}' is not a detector")
            return None
        return model

    def get_matcher(self, name_or_type: NameOrType) -> Optional[BaseMatcher]:
        """Model lookup restricted to matchers."""
        model = self.get_model(name_or_type)
        if model is not None and not isinstance(model, BaseMatcher):
            logger.warning(f"Model '{model.name}' is not a matcher")
            return None
        return model

    # ===== Lifecycle =====

    def load_model(self, name: str, config: Optional[ModelConfig] = None) -> bool:
        """
        Load a registered model.

        A config without a device gets the registry's default device. A
        config without a model path picks up the newest model file in
        <cache>/<type>/ if one exists, with the backend matching the file
        suffix.

        Args:
            name: Registration name
            config: Load-time configuration (defaults if None)

        Returns:
            True if the model is loaded after the call
        """
        with self._lock:
            model = self._models.get(name)
            if model is None:
                logger.error(f"Cannot load unknown model '{name}'")
                return False

            if model.is_loaded():
                logger.debug(f"Model '{name}' is already loaded")
                return True

            config = config or ModelConfig()
            if config.device is None:
                config = replace(config, device=self._default_device)
            if not config.model_path and self._cache_directory is not None:
                cached = find_model_path(self._cache_directory, model.type.value)
                if cached:
                    backend = backend_for_path(cached) or config.backend
                    logger.debug(f"Using cached model file {cached} ({backend.value})")
                    config = replace(config, model_path=cached, backend=backend)

            success = model.load(config)

        if success:
            logger.info(f"Model '{name}' loaded on {config.device.value}")
        else:
            logger.error(f"Failed to load model '{name}'")
        return success

    def unload_model(self, name: str) -> bool:
        """
        Unload a registered model; unloading twice is not an error.

        Returns:
            False only if the name is unknown
        """
        with self._lock:
            model = self._models.get(name)
            if model is None:
                logger.warning(f"Cannot unload unknown model '{name}'")
                return False
            if not model.is_loaded():
                return True
            model.unload()

        logger.info(f"Model '{name}' unloaded")
        return True

    def unload_all_models(self) -> None:
        """Unload every model, keeping the registrations."""
        with self._lock:
            for name in list(self._models):
                self.unload_model(name)

    # ===== Devices =====

    def get_available_devices(self) -> List[Device]:
        """Devices usable for inference, CPU first; probed once."""
        with self._lock:
            if self._available_devices is None:
                self._available_devices = probe_devices()
            return list(self._available_devices)

    def is_device_available(self, device: Device) -> bool:
        return device in self.get_available_devices()

    def set_default_device(self, device: Device) -> bool:
        """
        Set the device used when a load config names none.

        Returns:
            False if the device is not available
        """
        if not self.is_device_available(device):
            logger.error(f"Device {device.value} is not available")
            return False

        with self._lock:
            self._default_device = device
        logger.info(f"Default device set to {device.value}")
        return True

    def get_default_device(self) -> Device:
        with self._lock:
            return self._default_device

    # ===== Cache =====

    def set_model_cache_directory(self, directory: Union[str, Path]) -> None:
        path = Path(directory).expanduser()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create cache directory {path}: {e}")
        with self._lock:
            self._cache_directory = path
        logger.info(f"Model cache directory: {path}")

    def get_model_cache_directory(self) -> Optional[Path]:
        with self._lock:
            return self._cache_directory

    def clear_cache(self) -> bool:
        """
        Delete and recreate the cache directory.

        Returns:
            True on success; False if unset or on filesystem error
        """
        directory = self.get_model_cache_directory()
        if directory is None:
            logger.warning("No cache directory set")
            return False

        success = clear_directory(directory)
        if success:
            logger.info(f"Cleared model cache {directory}")
        return success

    def get_cache_size(self) -> int:
        """Total size in bytes of files in the cache; 0 if unset."""
        directory = self.get_model_cache_directory()
        if directory is None:
            return 0
        return directory_size(directory)

    # ===== Download flag =====

    def set_download_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._download_enabled = bool(enabled)

    def is_download_enabled(self) -> bool:
        with self._lock:
            return self._download_enabled

    # ===== Introspection =====

    def get_available_models(self) -> List[str]:
        """Registered names in registration order."""
        with self._lock:
            return list(self._models)

    def get_available_model_types(self) -> List[ModelType]:
        with self._lock:
            return list(self._type_index)

    def is_model_loaded(self, name: str) -> bool:
        with self._lock:
            model = self._models.get(name)
            return model is not None and model.is_loaded()

    def is_model_type_available(self, model_type: ModelType) -> bool:
        with self._lock:
            return model_type in self._type_index

    def get_model_summaries(self) -> List[ModelStatus]:
        """Per-model status for display layers."""
        with self._lock:
            return [
                ModelStatus(
                    name=name,
                    type=model.type,
                    loaded=model.is_loaded(),
                    backend=model.backend,
                    device=model.device,
                )
                for name, model in self._models.items()
            ]

    def print_model_info(self) -> None:
        """Log a summary of the registry state."""
        summaries = self.get_model_summaries()
        cache = self.get_model_cache_directory()

        logger.info("=" * 60)
        logger.info(f"Registered models: {len(summaries)}")
        for status in summaries:
            state = "loaded" if status.loaded else "unloaded"
            logger.info(
                f"  {status.name:<16} {status.type.value:<22} {state:<9} "
                f"{status.backend.value}/{status.device.value}"
            )
        logger.info(f"Default device: {self.get_default_device().value}")
        logger.info(f"Cache directory: {cache if cache else '(unset)'}")
        logger.info(f"Cache size: {self.get_cache_size()} bytes")
        logger.info(f"Download enabled: {self.is_download_enabled()}")
        logger.info("=" * 60)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._models

    def __len__(self) -> int:
        with self._lock:
            return len(self._models)
