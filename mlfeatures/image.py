"""
Raster image abstraction consumed by detectors and matchers.

Images are decoded with OpenCV and stored as RGB uint8 arrays. The
core only needs the width, height and per-pixel RGB access exposed by
Bitmap; everything else (file formats, color management) stays with
the decoder.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from mlfeatures.errors import ImageReadError


# Supported image extensions
SUPPORTED_EXTENSIONS = {'.tif', '.tiff', '.png', '.jpg', '.jpeg', '.bmp', '.ppm', '.pgm'}


class Bitmap:
    """
    RGB raster with width/height and pixel sampling.

    Attributes:
        data: Image array of shape (H, W, 3), RGB, uint8
        path: Source path when the bitmap was read from disk
    """

    def __init__(self, data: np.ndarray, path: Optional[str] = None):
        data = np.asarray(data)
        if data.ndim == 2:
            data = np.repeat(data[:, :, None], 3, axis=2)
        elif data.ndim == 3 and data.shape[2] == 4:
            data = data[:, :, :3]
        if data.ndim != 3 or data.shape[2] != 3:
            raise ValueError(f"Expected (H, W), (H, W, 3) or (H, W, 4) image, got {data.shape}")
        if data.dtype != np.uint8:
            data = _to_uint8(data)
        self.data = np.ascontiguousarray(data)
        self.path = path

    @classmethod
    def read(cls, path: Union[str, Path]) -> "Bitmap":
        """
        Decode an image file.

        Args:
            path: Path to the image file

        Returns:
            Bitmap holding the RGB pixels

        Raises:
            ImageReadError: If the file is missing or cannot be decoded
        """
        path = Path(path)
        if not path.exists():
            raise ImageReadError(str(path), "image not found")

        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise ImageReadError(str(path))

        return cls(cv2.cvtColor(image, cv2.COLOR_BGR2RGB), path=str(path))

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height)"""
        return self.width, self.height

    def get_pixel(self, x: int, y: int) -> Tuple[int, int, int]:
        """
        RGB value at column x, row y.

        Raises:
            IndexError: If (x, y) lies outside the image
        """
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} image")
        r, g, b = self.data[y, x]
        return int(r), int(g), int(b)

    def to_gray(self) -> np.ndarray:
        """Grayscale float32 image normalized to [0, 1]."""
        gray = cv2.cvtColor(self.data, cv2.COLOR_RGB2GRAY)
        return gray.astype(np.float32) / 255.0

    def __repr__(self) -> str:
        return f"Bitmap({self.width}x{self.height}, path={self.path!r})"


def _to_uint8(data: np.ndarray) -> np.ndarray:
    if np.issubdtype(data.dtype, np.floating) and data.size and data.max() <= 1.0:
        data = data * 255.0
    return np.clip(data, 0, 255).astype(np.uint8)


def as_bitmap(image: Union["Bitmap", np.ndarray, str, Path]) -> Bitmap:
    """
    Coerce a bitmap, array or file path into a Bitmap.

    Raises:
        ImageReadError: If a path cannot be decoded
    """
    if isinstance(image, Bitmap):
        return image
    if isinstance(image, (str, Path)):
        return Bitmap.read(image)
    return Bitmap(image)


def discover_images(
    directory: Union[str, Path],
    extensions: Optional[set] = None,
    recursive: bool = True
) -> List[Path]:
    """
    Discover all images in a directory.

    Args:
        directory: Root directory to search
        extensions: Set of valid extensions (default: SUPPORTED_EXTENSIONS)
        recursive: Whether to search subdirectories

    Returns:
        Sorted list of paths to discovered images
    """
    directory = Path(directory)
    extensions = extensions or SUPPORTED_EXTENSIONS

    images = []
    pattern = '**/*' if recursive else '*'

    for path in directory.glob(pattern):
        if path.is_file() and path.suffix.lower() in extensions:
            images.append(path)

    return sorted(images)
