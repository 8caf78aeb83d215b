"""
Inference backends and compute devices.
"""

from .devices import (
    TORCH_AVAILABLE,
    Backend,
    Device,
    parse_backend,
    parse_device,
    probe_devices,
)
from .session import (
    InferenceSession,
    ReferenceSession,
    NetworkSession,
    TorchScriptSession,
    OpenCVDnnSession,
    backend_for_path,
    load_session,
)
from mlfeatures.errors import BackendError

__all__ = [
    'TORCH_AVAILABLE',
    'Backend',
    'Device',
    'parse_backend',
    'parse_device',
    'probe_devices',
    'InferenceSession',
    'ReferenceSession',
    'NetworkSession',
    'TorchScriptSession',
    'OpenCVDnnSession',
    'load_session',
    'backend_for_path',
    'BackendError',
]
