"""
Inference sessions: the opaque backend boundary.

Detectors and matchers never talk to an inference framework directly.
They open an InferenceSession on load, ask it for score maps, sampled
descriptors or pairwise affinities, and close it on unload. Any
framework error is raised as BackendError so the model boundary can
turn it into an empty result.

Network conventions
-------------------
Detector networks take a (1, 1, H, W) grayscale tensor in [0, 1] and
return (scores, descriptors):
    - scores: (65, H/8, W/8) cell logits with a dustbin channel, or a
      dense (H, W) / (1, H, W) probability map
    - descriptors: (D, Hc, Wc) coarse descriptor map

Matcher networks take two (1, N, D) descriptor tensors and return an
(N, M) affinity matrix, optionally with an extra dustbin row/column.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import ndimage
from scipy.special import softmax

from mlfeatures.backends.devices import TORCH_AVAILABLE, Backend, Device
from mlfeatures.errors import BackendError, ErrorKind
from mlfeatures.postprocessing.descriptor_ops import cosine_similarity_matrix
from mlfeatures.utils.logger import get_logger

if TORCH_AVAILABLE:
    import torch


logger = get_logger(__name__)

CELL_SIZE = 8


# =============================================================================
# SESSION INTERFACE
# =============================================================================


class InferenceSession(ABC):
    """
    Handle to a loaded backend, exclusively owned by one model instance.

    Attributes:
        backend: Backend that produced this session
        device: Device the session runs on
    """

    def __init__(self, backend: Backend, device: Device):
        self.backend = backend
        self.device = device
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    def score_map(self, gray: np.ndarray) -> np.ndarray:
        """
        Keypoint probability map.

        Args:
            gray: Grayscale image (H, W) in [0, 1]

        Returns:
            Score map of shape (H, W) in [0, 1]
        """

    @abstractmethod
    def describe(
        self,
        gray: np.ndarray,
        positions: np.ndarray,
        descriptor_dim: int,
    ) -> np.ndarray:
        """
        Descriptors sampled at keypoint positions.

        Args:
            gray: Grayscale image (H, W) in [0, 1]
            positions: (N, 2) array of (x, y)
            descriptor_dim: Requested descriptor dimension

        Returns:
            (N, descriptor_dim) float32 array (not normalized)
        """

    @abstractmethod
    def affinity(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        """
        Pairwise affinity between two descriptor sets.

        Returns:
            (N, M) affinity matrix, higher means more similar
        """

    def close(self) -> None:
        """Release backend resources."""
        self._closed = True


# =============================================================================
# REFERENCE SESSION
# =============================================================================


class ReferenceSession(InferenceSession):
    """
    Analytic kernels used when no model file is configured.

    Scores are the normalized minimum-eigenvalue corner response,
    descriptors are mean-centred intensity patches and affinities are
    cosine similarities.
    """

    def __init__(
        self,
        device: Device = Device.CPU,
        block_size: int = 3,
        patch_size: float = 16.0,
    ):
        super().__init__(Backend.PYTORCH, device)
        self.block_size = block_size
        self.patch_size = patch_size

    def score_map(self, gray: np.ndarray) -> np.ndarray:
        gray = np.asarray(gray, dtype=np.float32)
        response = cv2.cornerMinEigenVal(gray, self.block_size, ksize=3)
        response = np.maximum(response, 0.0)
        peak = float(response.max()) if response.size else 0.0
        if peak > 0:
            response = response / peak
        return response.astype(np.float32)

    def describe(
        self,
        gray: np.ndarray,
        positions: np.ndarray,
        descriptor_dim: int,
    ) -> np.ndarray:
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        if positions.shape[0] == 0:
            return np.zeros((0, descriptor_dim), dtype=np.float32)

        side = int(np.ceil(np.sqrt(descriptor_dim)))
        step = self.patch_size / side
        offsets = (np.arange(side) - (side - 1) / 2.0) * step
        oy, ox = np.meshgrid(offsets, offsets, indexing="ij")

        xs = positions[:, 0:1] + ox.ravel()[None, :]
        ys = positions[:, 1:2] + oy.ravel()[None, :]
        samples = ndimage.map_coordinates(
            np.asarray(gray, dtype=np.float32),
            [ys.ravel(), xs.ravel()],
            order=1,
            mode="reflect",
        ).reshape(positions.shape[0], side * side)

        samples = samples[:, :descriptor_dim]
        samples = samples - samples.mean(axis=1, keepdims=True)
        return samples.astype(np.float32)

    def affinity(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        return cosine_similarity_matrix(descriptors1, descriptors2)


# =============================================================================
# NETWORK SESSIONS
# =============================================================================


def decode_score_map(raw: np.ndarray, height: int, width: int) -> np.ndarray:
    """
    Turn a network score head into an (H, W) probability map.

    Cell logits of shape (65, Hc, Wc) are softmaxed over channels, the
    dustbin channel is dropped and the 8x8 cells are unfolded.
    """
    raw = np.asarray(raw, dtype=np.float32)
    while raw.ndim > 3 and raw.shape[0] == 1:
        raw = raw[0]

    if raw.ndim == 3 and raw.shape[0] == CELL_SIZE * CELL_SIZE + 1:
        probs = softmax(raw, axis=0)[:-1]
        hc, wc = probs.shape[1:]
        probs = probs.reshape(CELL_SIZE, CELL_SIZE, hc, wc)
        dense = probs.transpose(2, 0, 3, 1).reshape(hc * CELL_SIZE, wc * CELL_SIZE)
    elif raw.ndim == 3 and raw.shape[0] == 1:
        dense = raw[0]
    elif raw.ndim == 2:
        dense = raw
    else:
        raise BackendError(f"Unexpected score head shape: {raw.shape}")

    out = np.zeros((height, width), dtype=np.float32)
    h = min(height, dense.shape[0])
    w = min(width, dense.shape[1])
    out[:h, :w] = dense[:h, :w]
    return out


def sample_descriptor_map(
    descriptor_map: np.ndarray,
    positions: np.ndarray,
    image_size: Tuple[int, int],
    descriptor_dim: int,
) -> np.ndarray:
    """
    Bilinearly sample a (D, Hc, Wc) descriptor map at image positions.

    Args:
        descriptor_map: Coarse descriptor map
        positions: (N, 2) array of (x, y) image coordinates
        image_size: (width, height) of the image
        descriptor_dim: Requested dimension; must not exceed D

    Returns:
        (N, descriptor_dim) float32 array
    """
    descriptor_map = np.asarray(descriptor_map, dtype=np.float32)
    while descriptor_map.ndim > 3 and descriptor_map.shape[0] == 1:
        descriptor_map = descriptor_map[0]
    if descriptor_map.ndim != 3:
        raise BackendError(f"Unexpected descriptor head shape: {descriptor_map.shape}")

    dim, hc, wc = descriptor_map.shape
    if descriptor_dim > dim:
        raise BackendError(
            f"Requested descriptor_dim={descriptor_dim} but network produces {dim}"
        )

    width, height = image_size
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    xs = positions[:, 0] * (wc / max(1, width)) - 0.5
    ys = positions[:, 1] * (hc / max(1, height)) - 0.5

    sampled = np.stack([
        ndimage.map_coordinates(descriptor_map[c], [ys, xs], order=1, mode="nearest")
        for c in range(descriptor_dim)
    ], axis=1)
    return sampled.astype(np.float32)


def crop_dustbin(scores: np.ndarray, n: int, m: int) -> np.ndarray:
    scores = np.asarray(scores, dtype=np.float32)
    while scores.ndim > 2 and scores.shape[0] == 1:
        scores = scores[0]
    if scores.ndim != 2 or scores.shape[0] < n or scores.shape[1] < m:
        raise BackendError(f"Unexpected affinity shape {scores.shape} for {n}x{m} inputs")
    return scores[:n, :m]


class NetworkSession(InferenceSession):
    """Shared decoding for sessions wrapping a real network."""

    def __init__(self, backend: Backend, device: Device, model_path: str):
        super().__init__(backend, device)
        self.model_path = model_path
        self._cache_gray: Optional[np.ndarray] = None
        self._cache_outputs: Optional[Sequence[np.ndarray]] = None

    @abstractmethod
    def _run_image(self, gray: np.ndarray) -> Sequence[np.ndarray]:
        """Forward a (H, W) image, returning (scores, descriptors)."""

    @abstractmethod
    def _run_pair(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        """Forward two descriptor sets, returning the raw affinity output."""

    def _image_outputs(self, gray: np.ndarray) -> Sequence[np.ndarray]:
        if self._closed:
            raise BackendError("Session is closed", ErrorKind.NOT_LOADED)
        # Outputs are reused only for the same array object.
        if gray is not self._cache_gray:
            try:
                outputs = self._run_image(gray)
            except BackendError:
                raise
            except Exception as e:
                raise BackendError(f"Inference failed: {e}", cause=e) from e
            if len(outputs) < 2:
                raise BackendError(f"Expected (scores, descriptors), got {len(outputs)} output(s)")
            self._cache_gray = gray
            self._cache_outputs = outputs
        return self._cache_outputs

    def score_map(self, gray: np.ndarray) -> np.ndarray:
        outputs = self._image_outputs(gray)
        return decode_score_map(outputs[0], gray.shape[0], gray.shape[1])

    def describe(
        self,
        gray: np.ndarray,
        positions: np.ndarray,
        descriptor_dim: int,
    ) -> np.ndarray:
        outputs = self._image_outputs(gray)
        return sample_descriptor_map(
            outputs[1], positions, (gray.shape[1], gray.shape[0]), descriptor_dim
        )

    def affinity(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        if self._closed:
            raise BackendError("Session is closed", ErrorKind.NOT_LOADED)
        try:
            raw = self._run_pair(
                np.asarray(descriptors1, dtype=np.float32),
                np.asarray(descriptors2, dtype=np.float32),
            )
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(f"Inference failed: {e}", cause=e) from e
        return crop_dustbin(raw, len(descriptors1), len(descriptors2))

    def close(self) -> None:
        self._cache_gray = None
        self._cache_outputs = None
        super().close()


class TorchScriptSession(NetworkSession):
    """TorchScript module loaded with torch.jit."""

    def __init__(self, model_path: str, device: Device, use_fp16: bool = False):
        super().__init__(Backend.PYTORCH, device, model_path)
        if device not in (Device.CPU, Device.CUDA):
            raise BackendError(f"PyTorch backend does not support device {device.value}")

        self._torch_device = torch.device("cuda" if device == Device.CUDA else "cpu")
        self._dtype = torch.float16 if (use_fp16 and device == Device.CUDA) else torch.float32
        try:
            module = torch.jit.load(model_path, map_location=self._torch_device)
        except Exception as e:
            raise BackendError(f"Failed to load TorchScript model {model_path}: {e}", cause=e) from e
        self._module = module.to(self._dtype).eval()

    def _to_numpy(self, outputs) -> Sequence[np.ndarray]:
        if isinstance(outputs, dict):
            outputs = list(outputs.values())
        if isinstance(outputs, torch.Tensor):
            outputs = [outputs]
        return [o.detach().float().cpu().numpy() for o in outputs]

    def _run_image(self, gray: np.ndarray) -> Sequence[np.ndarray]:
        tensor = torch.from_numpy(np.ascontiguousarray(gray, dtype=np.float32))
        tensor = tensor[None, None].to(self._torch_device, self._dtype)
        with torch.no_grad():
            return self._to_numpy(self._module(tensor))

    def _run_pair(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        d1 = torch.from_numpy(descriptors1)[None].to(self._torch_device, self._dtype)
        d2 = torch.from_numpy(descriptors2)[None].to(self._torch_device, self._dtype)
        with torch.no_grad():
            return self._to_numpy(self._module(d1, d2))[0]

    def close(self) -> None:
        self._module = None
        if self._torch_device.type == "cuda":
            torch.cuda.empty_cache()
        super().close()


class OpenCVDnnSession(NetworkSession):
    """ONNX, TensorFlow or OpenVINO network executed by OpenCV DNN."""

    def __init__(
        self,
        model_path: str,
        backend: Backend,
        device: Device,
        use_fp16: bool = False,
    ):
        super().__init__(backend, device, model_path)
        try:
            self._net = self._read_net(model_path, backend)
            dnn_backend, dnn_target = self._dnn_target(backend, device, use_fp16)
            self._net.setPreferableBackend(dnn_backend)
            self._net.setPreferableTarget(dnn_target)
        except cv2.error as e:
            raise BackendError(f"OpenCV DNN failed to load {model_path}: {e}", cause=e) from e

    @staticmethod
    def _read_net(model_path: str, backend: Backend):
        if backend == Backend.ONNX:
            return cv2.dnn.readNetFromONNX(model_path)
        if backend == Backend.TENSORFLOW:
            return cv2.dnn.readNetFromTensorflow(model_path)
        if backend == Backend.OPENVINO:
            weights = str(Path(model_path).with_suffix(".bin"))
            return cv2.dnn.readNet(model_path, weights)
        raise BackendError(f"OpenCV DNN cannot run backend {backend.value}")

    @staticmethod
    def _dnn_target(backend: Backend, device: Device, use_fp16: bool) -> Tuple[int, int]:
        if backend == Backend.OPENVINO:
            dnn_backend = cv2.dnn.DNN_BACKEND_INFERENCE_ENGINE
        else:
            dnn_backend = cv2.dnn.DNN_BACKEND_OPENCV

        if device == Device.CPU:
            return dnn_backend, cv2.dnn.DNN_TARGET_CPU
        if device == Device.CUDA:
            target = cv2.dnn.DNN_TARGET_CUDA_FP16 if use_fp16 else cv2.dnn.DNN_TARGET_CUDA
            return cv2.dnn.DNN_BACKEND_CUDA, target
        if device == Device.OPENCL:
            target = cv2.dnn.DNN_TARGET_OPENCL_FP16 if use_fp16 else cv2.dnn.DNN_TARGET_OPENCL
            return dnn_backend, target
        return cv2.dnn.DNN_BACKEND_VKCOM, cv2.dnn.DNN_TARGET_VULKAN

    def _run_image(self, gray: np.ndarray) -> Sequence[np.ndarray]:
        blob = np.ascontiguousarray(gray, dtype=np.float32)[None, None]
        self._net.setInput(blob)
        return list(self._net.forward(self._net.getUnconnectedOutLayersNames()))

    def _run_pair(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        self._net.setInput(descriptors1[None], "descriptors0")
        self._net.setInput(descriptors2[None], "descriptors1")
        return self._net.forward()

    def close(self) -> None:
        self._net = None
        super().close()


# =============================================================================
# FACTORY
# =============================================================================


# Backend implied by a model file suffix
SUFFIX_BACKENDS = {
    ".pt": Backend.PYTORCH,
    ".pth": Backend.PYTORCH,
    ".onnx": Backend.ONNX,
    ".pb": Backend.TENSORFLOW,
    ".xml": Backend.OPENVINO,
}


def backend_for_path(model_path: str) -> Optional[Backend]:
    """Backend that loads files with this suffix, or None if unknown."""
    return SUFFIX_BACKENDS.get(Path(model_path).suffix.lower())



def load_session(
    model_path: Optional[str],
    backend: Backend = Backend.PYTORCH,
    device: Device = Device.CPU,
    use_fp16: bool = False,
) -> InferenceSession:
    """
    Open an inference session.

    An empty model path selects the built-in reference kernels.

    Args:
        model_path: Path to the model file
        backend: Inference backend
        device: Compute device
        use_fp16: Whether to run in half precision where supported

    Returns:
        Opened session

    Raises:
        BackendError: If the model is missing or the backend fails to load it
    """
    if not model_path:
        logger.debug(f"No model path given, using reference kernels on {device.value}")
        return ReferenceSession(device)

    path = Path(model_path)
    if not path.is_file():
        raise BackendError(f"Model file not found: {path}", ErrorKind.NOT_FOUND)

    if backend == Backend.PYTORCH:
        if not TORCH_AVAILABLE:
            raise BackendError("PyTorch backend requested but torch is not installed")
        return TorchScriptSession(str(path), device, use_fp16)

    return OpenCVDnnSession(str(path), backend, device, use_fp16)
