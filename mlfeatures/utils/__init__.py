"""
Utility modules for the feature engine.
"""

from .logger import (
    ProgressTracker,
    get_logger,
    setup_logger,
)
from .config import (
    Config,
    RegistryConfig,
    LoggingConfig,
    ModelSection,
    config_from_dict,
    load_config,
    load_yaml,
    merge_configs,
    DEFAULT_CONFIG,
)
from .cache import (
    MODEL_EXTENSIONS,
    clear_directory,
    directory_size,
    find_model_path,
    list_model_files,
    validate_model_path,
)

__all__ = [
    # Logger
    'ProgressTracker',
    'get_logger',
    'setup_logger',
    # Config
    'Config',
    'RegistryConfig',
    'LoggingConfig',
    'ModelSection',
    'config_from_dict',
    'load_config',
    'load_yaml',
    'merge_configs',
    'DEFAULT_CONFIG',
    # Cache
    'MODEL_EXTENSIONS',
    'clear_directory',
    'directory_size',
    'find_model_path',
    'list_model_files',
    'validate_model_path',
]
