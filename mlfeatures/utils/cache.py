"""
Model cache directory utilities.

This module provides helpers for measuring and clearing the model cache
directory and for discovering model files stored in it.
"""

import shutil
from pathlib import Path
from typing import List, Optional, Tuple, Union

from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)

# Model file extensions the backends can load
MODEL_EXTENSIONS = ('.pt', '.pth', '.onnx', '.pb', '.xml')


def directory_size(path: Union[str, Path]) -> int:
    """
    Total size of all regular files below a directory.

    Args:
        path: Directory to measure

    Returns:
        Size in bytes; 0 if the directory is missing or unreadable
    """
    path = Path(path)
    if not path.is_dir():
        return 0

    total = 0
    try:
        for entry in path.rglob('*'):
            if entry.is_file() and not entry.is_symlink():
                total += entry.stat().st_size
    except OSError as e:
        logger.error(f"Failed to measure cache directory {path}: {e}")
        return 0
    return total


def clear_directory(path: Union[str, Path]) -> bool:
    """
    Delete a directory recursively and recreate it empty.

    Args:
        path: Directory to clear

    Returns:
        True on success; errors are logged
    """
    path = Path(path)
    try:
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to clear cache directory {path}: {e}")
        return False
    return True


def list_model_files(cache_dir: Union[str, Path], model_type: str) -> List[Path]:
    """
    Model files stored for a model type, newest first.

    Files live in <cache_dir>/<model_type>/.
    """
    type_dir = Path(cache_dir) / model_type
    if not type_dir.is_dir():
        return []

    files = [p for p in type_dir.iterdir() if p.is_file() and p.suffix in MODEL_EXTENSIONS]
    files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return files


def find_model_path(
    cache_dir: Union[str, Path],
    model_type: str,
    checkpoint_name: Optional[str] = None,
) -> Optional[str]:
    """
    Find path to a model file in the cache.

    Args:
        cache_dir: Model cache directory
        model_type: Model type value (e.g. "superpoint_detector")
        checkpoint_name: Name of the file (if None, returns latest)

    Returns:
        Path to the model file, or None if not found
    """
    if checkpoint_name is None:
        files = list_model_files(cache_dir, model_type)
        return str(files[0]) if files else None

    checkpoint_path = Path(cache_dir) / model_type / checkpoint_name
    if checkpoint_path.is_file():
        return str(checkpoint_path)
    return None


def validate_model_path(model_path: Optional[str]) -> Tuple[bool, str]:
    """
    Validate a model file path.

    Args:
        model_path: Path to the model file

    Returns:
        Tuple of (is_valid, message)
    """
    if not model_path:
        return False, "No model path provided"

    path = Path(model_path)

    if not path.exists():
        return False, f"Model file does not exist: {model_path}"

    if not path.is_file():
        return False, f"Path is not a file: {model_path}"

    if path.suffix not in MODEL_EXTENSIONS:
        return False, (
            f"Invalid model file extension: {path.suffix} "
            f"(expected one of {', '.join(MODEL_EXTENSIONS)})"
        )

    return True, "Model file is valid"
