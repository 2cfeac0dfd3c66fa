"""
Image source contract and region reading.

The ops only need an ImageSource to read regions and report metadata; image
decoding and pyramid handling belong to the caller. ArrayImageSource wraps
an in-memory numpy array and is used for tests, the command line and any
data that is already loaded.

All coordinates are in full-resolution pixels. A region read at downsample d
returns round(width / d) x round(height / d) pixels.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import cv2
import numpy as np

from pixelops.ops.base import (
    ImageChannel,
    Padding,
    PixelType,
    get_channel_list,
    get_default_channel_list,
    pad_border,
)
from pixelops.ops.opencv_tools import ensure_3d
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ImageMetadata:
    """Dimensions, channels and type of an image at full resolution."""

    width: int
    height: int
    channels: List[ImageChannel]
    pixel_type: PixelType
    is_rgb: bool = False
    pixel_size_um: Optional[float] = None
    preferred_tile_width: int = 512
    preferred_tile_height: int = 512

    @property
    def n_channels(self) -> int:
        return len(self.channels)


@dataclass(frozen=True)
class RegionRequest:
    """Rectangle in full-resolution coordinates, to be read at a downsample."""

    x: int
    y: int
    width: int
    height: int
    downsample: float = 1.0

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Region must have a positive size, got {self.width}x{self.height}")
        if self.downsample <= 0:
            raise ValueError(f"Downsample must be > 0, got {self.downsample}")

    @property
    def output_width(self) -> int:
        return max(1, int(round(self.width / self.downsample)))

    @property
    def output_height(self) -> int:
        return max(1, int(round(self.height / self.downsample)))


class ImageSource(ABC):
    """Read-only access to image regions plus metadata."""

    @property
    @abstractmethod
    def metadata(self) -> ImageMetadata:
        """Metadata of the full-resolution image."""

    @property
    @abstractmethod
    def source_id(self) -> str:
        """Stable identifier used to build cache keys."""

    @abstractmethod
    def read_region(self, request: RegionRequest) -> np.ndarray:
        """
        Read a region lying inside the image bounds.

        Returns:
            (output_height, output_width, channels) array of the image's pixel type
        """


class ArrayImageSource(ImageSource):
    """
    ImageSource backed by a numpy array.

    Downsampled levels are built with cv2.resize (INTER_AREA) the first time
    they are needed and kept for later reads.

    Args:
        image: (height, width) or (height, width, channels) array
        source_id: Identifier for cache keys; defaults to a name derived
            from the array's shape and dtype plus the object id
        channel_names: Optional channel names
        is_rgb: Whether the image is 8-bit RGB
        pixel_size_um: Optional pixel size in microns
    """

    def __init__(self, image: np.ndarray, source_id: Optional[str] = None,
                 channel_names: Optional[List[str]] = None, is_rgb: Optional[bool] = None,
                 pixel_size_um: Optional[float] = None, tile_size: int = 512):
        image = ensure_3d(np.asarray(image))
        pixel_type = PixelType.from_dtype(image.dtype)
        n_channels = image.shape[2]
        if channel_names is not None:
            if len(channel_names) != n_channels:
                raise ValueError(f"Got {len(channel_names)} channel names for {n_channels} channels")
            channels = get_channel_list(*channel_names)
        elif n_channels == 3 and pixel_type == PixelType.UINT8:
            channels = get_channel_list('Red', 'Green', 'Blue')
        else:
            channels = get_default_channel_list(n_channels)
        if is_rgb is None:
            is_rgb = n_channels == 3 and pixel_type == PixelType.UINT8

        self._image = image
        self._levels: Dict[float, np.ndarray] = {1.0: image}
        self._lock = threading.Lock()
        self._source_id = source_id or f"array:{image.shape}:{image.dtype}:{id(image):x}"
        self._metadata = ImageMetadata(
            width=image.shape[1],
            height=image.shape[0],
            channels=channels,
            pixel_type=pixel_type,
            is_rgb=bool(is_rgb),
            pixel_size_um=pixel_size_um,
            preferred_tile_width=tile_size,
            preferred_tile_height=tile_size,
        )

    @property
    def metadata(self) -> ImageMetadata:
        return self._metadata

    @property
    def source_id(self) -> str:
        return self._source_id

    def _get_level(self, downsample: float) -> np.ndarray:
        level = self._levels.get(downsample)
        if level is None:
            with self._lock:
                level = self._levels.get(downsample)
                if level is None:
                    width = max(1, int(round(self._metadata.width / downsample)))
                    height = max(1, int(round(self._metadata.height / downsample)))
                    logger.debug(f"Building level for downsample {downsample} ({width}x{height})")
                    interpolation = cv2.INTER_AREA if downsample > 1 else cv2.INTER_LINEAR
                    planes = [
                        cv2.resize(np.ascontiguousarray(self._image[:, :, c]), (width, height),
                                   interpolation=interpolation)
                        for c in range(self._image.shape[2])
                    ]
                    level = np.stack(planes, axis=2)
                    self._levels[downsample] = level
        return level

    def read_region(self, request: RegionRequest) -> np.ndarray:
        level = self._get_level(request.downsample)
        x = int(round(request.x / request.downsample))
        y = int(round(request.y / request.downsample))
        region = level[y:y + request.output_height, x:x + request.output_width, :]
        # Rounding at the far edge can leave a region one pixel short
        if region.shape[0] != request.output_height or region.shape[1] != request.output_width:
            region = pad_border(region, 0, request.output_height - region.shape[0],
                                0, request.output_width - region.shape[1], cv2.BORDER_REPLICATE)
        return np.array(region, copy=True)


def read_padded_region(source: ImageSource, request: RegionRequest,
                       padding: Padding = Padding.empty()) -> np.ndarray:
    """
    Read a region plus padding, reflecting pixels beyond the image bounds.

    Padding is given in output (downsampled) pixels, so the full-resolution
    region is expanded by padding * downsample on each side. The result is
    exactly (output_height + padding.y_sum, output_width + padding.x_sum).

    Args:
        source: Image source
        request: Region to read
        padding: Extra pixels required on each side

    Returns:
        Padded region as a (height, width, channels) array
    """
    ds = request.downsample
    meta = source.metadata
    level_width = max(1, int(round(meta.width / ds)))
    level_height = max(1, int(round(meta.height / ds)))

    # Padded extent in output (downsampled) pixels
    ox1 = int(round(request.x / ds)) - padding.x1
    oy1 = int(round(request.y / ds)) - padding.y1
    ox2 = ox1 + request.output_width + padding.x_sum
    oy2 = oy1 + request.output_height + padding.y_sum

    # Part of the extent inside the downsampled image
    cx1, cy1 = max(0, ox1), max(0, oy1)
    cx2, cy2 = min(level_width, ox2), min(level_height, oy2)
    if cx2 <= cx1 or cy2 <= cy1:
        raise ValueError(f"Region {request} does not overlap the image ({meta.width}x{meta.height})")

    inner = RegionRequest(_to_full_resolution(cx1, ds), _to_full_resolution(cy1, ds),
                          _to_full_resolution(cx2 - cx1, ds), _to_full_resolution(cy2 - cy1, ds), ds)
    mat = ensure_3d(source.read_region(inner))
    inner_h, inner_w = cy2 - cy1, cx2 - cx1
    if mat.shape[0] != inner_h or mat.shape[1] != inner_w:
        mat = np.ascontiguousarray(mat[:inner_h, :inner_w, :])
        mat = pad_border(mat, 0, inner_h - mat.shape[0], 0, inner_w - mat.shape[1], cv2.BORDER_REPLICATE)

    top, bottom = cy1 - oy1, oy2 - cy2
    left, right = cx1 - ox1, ox2 - cx2
    if left or top or right or bottom:
        mat = _reflect_pad(mat, top, bottom, left, right)
    return mat


def _to_full_resolution(value: int, downsample: float):
    """Scale an output pixel coordinate back to full resolution, as an int when exact."""
    scaled = value * downsample
    return int(scaled) if scaled == int(scaled) else scaled


def _reflect_pad(mat: np.ndarray, top: int, bottom: int, left: int, right: int) -> np.ndarray:
    """Reflect-pad, repeating the reflection for margins larger than the image."""
    while top or bottom or left or right:
        h, w = mat.shape[:2]
        t, b = min(top, h), min(bottom, h)
        l, r = min(left, w), min(right, w)
        mat = pad_border(mat, t, b, l, r, cv2.BORDER_REFLECT)
        top, bottom, left, right = top - t, bottom - b, left - l, right - r
    return mat
