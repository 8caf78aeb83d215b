"""
Inference backend and device enumerations plus capability probing.

CPU is always available. CUDA is detected through PyTorch or the OpenCV
CUDA module, OpenCL through OpenCV's T-API, and Vulkan through the
OpenCV DNN Vulkan backend.
"""

from enum import Enum
from typing import List

import cv2

try:
    import torch
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False

from mlfeatures.utils.logger import get_logger


logger = get_logger(__name__)


class Backend(Enum):
    """Supported inference backends."""
    PYTORCH = "pytorch"
    TENSORFLOW = "tensorflow"
    ONNX = "onnx"
    OPENVINO = "openvino"


class Device(Enum):
    """Supported compute devices."""
    CPU = "cpu"
    CUDA = "cuda"
    OPENCL = "opencl"
    VULKAN = "vulkan"


def parse_backend(value) -> Backend:
    """Backend from an enum member or its (case-insensitive) name/value."""
    if isinstance(value, Backend):
        return value
    key = str(value).strip().lower()
    for backend in Backend:
        if key in (backend.value, backend.name.lower()):
            return backend
    raise ValueError(f"Unknown backend: {value}")


def parse_device(value) -> Device:
    """Device from an enum member or its (case-insensitive) name/value."""
    if isinstance(value, Device):
        return value
    key = str(value).strip().lower()
    for device in Device:
        if key in (device.value, device.name.lower()):
            return device
    raise ValueError(f"Unknown device: {value}")


def cuda_available() -> bool:
    if TORCH_AVAILABLE and torch.cuda.is_available():
        return True
    try:
        return cv2.cuda.getCudaEnabledDeviceCount() > 0
    except (AttributeError, cv2.error):
        return False


def opencl_available() -> bool:
    try:
        return bool(cv2.ocl.haveOpenCL())
    except (AttributeError, cv2.error):
        return False


def vulkan_available() -> bool:
    try:
        targets = cv2.dnn.getAvailableTargets(cv2.dnn.DNN_BACKEND_VKCOM)
    except (AttributeError, cv2.error):
        return False
    return cv2.dnn.DNN_TARGET_VULKAN in list(targets)


def probe_devices() -> List[Device]:
    """
    Enumerate usable devices.

    Returns:
        Available devices, CPU first
    """
    devices = [Device.CPU]
    if cuda_available():
        devices.append(Device.CUDA)
    if opencl_available():
        devices.append(Device.OPENCL)
    if vulkan_available():
        devices.append(Device.VULKAN)

    logger.debug(f"Probed devices: {[d.value for d in devices]}")
    return devices
