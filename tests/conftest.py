"""
Shared fixtures: fake inference sessions injected through session_factory.
"""

from typing import Callable, List, Optional, Tuple

import numpy as np
import pytest

from mlfeatures.backends import Backend, Device, InferenceSession, NetworkSession
from mlfeatures.errors import BackendError
from mlfeatures.postprocessing import cosine_similarity_matrix


class FakeSession(InferenceSession):
    """
    In-memory session with scripted outputs.

    score_map_fn(gray) -> (H, W) map; describe_fn(positions, dim) ->
    (N, dim) descriptors. Affinities are cosine similarities.
    """

    def __init__(
        self,
        score_map_fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        describe_fn: Optional[Callable[[np.ndarray, int], np.ndarray]] = None,
        fail: bool = False,
    ):
        super().__init__(Backend.PYTORCH, Device.CPU)
        self.score_map_fn = score_map_fn
        self.describe_fn = describe_fn
        self.fail = fail
        self.close_calls = 0

    def score_map(self, gray: np.ndarray) -> np.ndarray:
        if self.fail:
            raise BackendError("scripted failure")
        if self.score_map_fn is None:
            return np.zeros(gray.shape[:2], dtype=np.float32)
        return self.score_map_fn(gray)

    def describe(self, gray: np.ndarray, positions: np.ndarray, descriptor_dim: int) -> np.ndarray:
        if self.fail:
            raise BackendError("scripted failure")
        if self.describe_fn is None:
            return position_descriptors(positions, descriptor_dim)
        return self.describe_fn(positions, descriptor_dim)

    def affinity(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        if self.fail:
            raise BackendError("scripted failure")
        return cosine_similarity_matrix(descriptors1, descriptors2)

    def close(self) -> None:
        self.close_calls += 1
        super().close()


class ScriptedNetwork(NetworkSession):
    """
    NetworkSession whose forward pass is computed from the input image.

    The score head is the image itself as a dense (1, H, W) map unless
    score_head_fn supplies another head. The descriptor head holds the
    8x8 block means of the image, rolled by one cell per channel. The
    mean of every forwarded image is recorded in image_means.
    """

    def __init__(
        self,
        score_head_fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
        descriptor_dim: int = 256,
    ):
        super().__init__(Backend.ONNX, Device.CPU, "scripted.onnx")
        self.score_head_fn = score_head_fn
        self.descriptor_dim = descriptor_dim
        self.image_means: List[float] = []

    @property
    def image_runs(self) -> int:
        return len(self.image_means)

    def _run_image(self, gray: np.ndarray):
        self.image_means.append(float(gray.mean()))
        height, width = gray.shape
        hc, wc = max(1, height // 8), max(1, width // 8)
        cells = gray[:hc * 8, :wc * 8].reshape(hc, 8, wc, 8).mean(axis=(1, 3))
        descriptor_map = np.stack([np.roll(cells, c, axis=1) for c in range(self.descriptor_dim)])
        if self.score_head_fn is None:
            scores = gray[None]
        else:
            scores = self.score_head_fn(gray)
        return [scores, descriptor_map]

    def _run_pair(self, descriptors1: np.ndarray, descriptors2: np.ndarray) -> np.ndarray:
        return descriptors1 @ descriptors2.T


def position_descriptors(positions: np.ndarray, dim: int) -> np.ndarray:
    """Deterministic non-zero descriptors derived from positions."""
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
    out = np.zeros((positions.shape[0], dim), dtype=np.float32)
    if positions.shape[0] == 0:
        return out
    out[:, 0] = positions[:, 0] + 1.0
    if dim > 1:
        out[:, 1] = positions[:, 1] + 1.0
    return out


def one_hot_descriptors(n: int, dim: int, offset: int = 0) -> np.ndarray:
    """n mutually orthogonal unit descriptors."""
    descriptors = np.zeros((n, dim), dtype=np.float32)
    descriptors[np.arange(n), (np.arange(n) + offset) % dim] = 1.0
    return descriptors


class RecordingFactory:
    """Session factory that records its calls."""

    def __init__(self, session: Optional[InferenceSession] = None, error: Optional[Exception] = None):
        self.session = session
        self.error = error
        self.calls: List[Tuple[str, Backend, Device, bool]] = []
        self.sessions: List[InferenceSession] = []

    def __call__(self, model_path: str, backend: Backend, device: Device, use_fp16: bool):
        self.calls.append((model_path, backend, device, use_fp16))
        if self.error is not None:
            raise self.error
        session = self.session if self.session is not None else FakeSession()
        self.sessions.append(session)
        return session


def grid_score_map(width: int, height: int, rows: int, cols: int) -> Callable[[np.ndarray], np.ndarray]:
    """Score map with one isolated peak per cell of a rows x cols grid."""

    def score_map(gray: np.ndarray) -> np.ndarray:
        scores = np.zeros((height, width), dtype=np.float32)
        xs = np.linspace(0, width - 1, cols).astype(int)
        ys = np.linspace(0, height - 1, rows).astype(int)
        for r, y in enumerate(ys):
            for c, x in enumerate(xs):
                scores[y, x] = 0.5 + 0.001 * (r * cols + c)
        return scores

    return score_map


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def recording_factory():
    return RecordingFactory()


@pytest.fixture
def gray_image():
    rng = np.random.default_rng(0)
    return (rng.random((120, 160)) * 255).astype(np.uint8)
