"""
Configuration management for the feature engine.

This module provides utilities for loading, validating, and accessing
registry and model configuration from YAML files.

Example:
    registry:
      cache_directory: ~/.cache/mlfeatures
      download_enabled: false
      default_device: cpu
    logging:
      level: INFO
    models:
      superpoint:
        type: superpoint_detector
        backend: pytorch
        model_path: ""
        autoload: true
        parameters:
          max_keypoints: 512
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from mlfeatures.utils.logger import setup_logger


@dataclass
class RegistryConfig:
    """Configuration for the model registry."""
    cache_directory: Optional[str] = None
    download_enabled: bool = False
    default_device: str = "cpu"


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    log_dir: str = "logs"
    file_output: bool = False

    def apply(self) -> logging.Logger:
        """Configure the package root logger with these settings."""
        return setup_logger(
            level=self.level,
            log_dir=self.log_dir,
            console_output=True,
            file_output=self.file_output,
        )


@dataclass
class ModelSection:
    """
    Configuration of one registered model.

    Attributes:
        type: Model type value (e.g. "superpoint_detector")
        backend: Inference backend value
        device: Compute device value; None uses the registry default
        model_path: Path to the model file; empty selects reference kernels
        use_fp16: Half precision flag
        batch_size: Inference batch size
        confidence_threshold: Generic confidence cut-off
        parameters: String parameters parsed by the model
        autoload: Load the model when the registry is created
    """
    type: str
    backend: str = "pytorch"
    device: Optional[str] = None
    model_path: str = ""
    use_fp16: bool = False
    batch_size: int = 1
    confidence_threshold: float = 0.5
    parameters: Dict[str, str] = field(default_factory=dict)
    autoload: bool = False


@dataclass
class Config:
    """
    Main configuration container.

    Attributes:
        registry: Registry settings
        logging: Logging configuration
        models: Model sections keyed by registration name
    """
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    models: Dict[str, ModelSection] = field(default_factory=dict)

    def model_config(self, name: str):
        """
        Build the load-time ModelConfig for a configured model.

        Args:
            name: Registration name of the model

        Returns:
            ModelConfig

        Raises:
            KeyError: If no section exists for `name`
        """
        from mlfeatures.backends.devices import parse_backend, parse_device
        from mlfeatures.registry.model_interface import ModelConfig

        section = self.models[name]
        return ModelConfig(
            model_path=section.model_path,
            backend=parse_backend(section.backend),
            device=parse_device(section.device) if section.device else None,
            use_fp16=section.use_fp16,
            batch_size=section.batch_size,
            confidence_threshold=section.confidence_threshold,
            parameters=dict(section.parameters),
        )


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        path: Path to the YAML file

    Returns:
        Dictionary containing the configuration (empty for an empty file)

    Raises:
        FileNotFoundError: If the configuration file does not exist
        yaml.YAMLError: If the YAML file is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    The override dictionary values take precedence over base values.

    Args:
        base: Base configuration dictionary
        override: Override configuration dictionary

    Returns:
        Merged configuration dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def _build_model_section(name: str, section: Dict[str, Any]) -> ModelSection:
    from mlfeatures.backends.devices import parse_backend, parse_device
    from mlfeatures.registry.model_interface import parse_model_type

    if not isinstance(section, dict):
        raise ValueError(f"Model section '{name}' must be a mapping")
    if 'type' not in section:
        raise ValueError(f"Model section '{name}' is missing 'type'")

    # Validate enum values early so errors point at the config file
    model_type = parse_model_type(section['type'])
    backend = parse_backend(section.get('backend', 'pytorch'))
    device = section.get('device')
    if device is not None:
        device = parse_device(device).value

    parameters = section.get('parameters') or {}
    if not isinstance(parameters, dict):
        raise ValueError(f"Parameters of model '{name}' must be a mapping")

    return ModelSection(
        type=model_type.value,
        backend=backend.value,
        device=device,
        model_path=str(section.get('model_path') or ''),
        use_fp16=bool(section.get('use_fp16', False)),
        batch_size=int(section.get('batch_size', 1)),
        confidence_threshold=float(section.get('confidence_threshold', 0.5)),
        parameters={str(k): str(v) for k, v in parameters.items()},
        autoload=bool(section.get('autoload', False)),
    )


def config_from_dict(config_dict: Dict[str, Any]) -> Config:
    """
    Build a Config from a parsed dictionary.

    Raises:
        ValueError: If a model section names an unknown type, backend or device
    """
    from mlfeatures.backends.devices import parse_device

    registry_dict = config_dict.get('registry') or {}
    logging_dict = config_dict.get('logging') or {}
    models_dict = config_dict.get('models') or {}

    cache_directory = registry_dict.get('cache_directory')
    registry_config = RegistryConfig(
        cache_directory=str(Path(cache_directory).expanduser()) if cache_directory else None,
        download_enabled=bool(registry_dict.get('download_enabled', False)),
        default_device=parse_device(registry_dict.get('default_device', 'cpu')).value,
    )

    logging_config = LoggingConfig(
        level=str(logging_dict.get('level', 'INFO')).upper(),
        log_dir=logging_dict.get('log_dir', 'logs'),
        file_output=bool(logging_dict.get('file_output', False)),
    )

    models = {
        name: _build_model_section(name, section)
        for name, section in models_dict.items()
    }

    return Config(registry=registry_config, logging=logging_config, models=models)


def load_config(
    config_path: Union[str, Path],
    base_config_path: Optional[Union[str, Path]] = None
) -> Config:
    """
    Load configuration from YAML files.

    Optionally merges with a base configuration file.

    Args:
        config_path: Path to the main configuration file
        base_config_path: Optional path to base configuration to merge with

    Returns:
        Config object with loaded settings

    Raises:
        FileNotFoundError: If a configuration file does not exist
        ValueError: If a value is invalid
    """
    config_dict = load_yaml(config_path)

    if base_config_path is not None:
        base_dict = load_yaml(base_config_path)
        config_dict = merge_configs(base_dict, config_dict)

    return config_from_dict(config_dict)


# Default configuration instance
DEFAULT_CONFIG = Config()
