"""
Base types for image ops.

An ImageOp is an immutable, reusable transform from one (height, width,
channels) numpy array to another. Ops declare how much padding they need
around the region of interest, how they change the channel schema, and how
they change the pixel type. They are shared across threads and tiles, so
any derived state (padding, kernels, matrices) is computed once under a lock.

Ownership of the input array passes to the op on apply(): many ops work
in-place and return the same array, so callers must not rely on the input
remaining unchanged.
"""

import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import cv2
import numpy as np

from pixelops.utils.config import get_config_value
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# PIXEL TYPES
# =============================================================================

class PixelType(Enum):
    """Supported element types, ordered from narrowest to widest."""

    UINT8 = 'uint8'
    UINT16 = 'uint16'
    FLOAT32 = 'float32'
    FLOAT64 = 'float64'

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def is_floating_point(self) -> bool:
        return self in (PixelType.FLOAT32, PixelType.FLOAT64)

    @property
    def bit_depth(self) -> int:
        return self.dtype.itemsize * 8

    @property
    def rank(self) -> int:
        return _PIXEL_TYPE_ORDER.index(self)

    @classmethod
    def from_dtype(cls, dtype) -> 'PixelType':
        """
        Get the PixelType for a numpy dtype.

        Raises:
            ValueError: If the dtype has no matching PixelType
        """
        dtype = np.dtype(dtype)
        for pixel_type in cls:
            if pixel_type.dtype == dtype:
                return pixel_type
        raise ValueError(f"Unsupported pixel dtype: {dtype}")

    @classmethod
    def parse(cls, value) -> 'PixelType':
        """Accept a PixelType, its name ('FLOAT32') or its value ('float32')."""
        if isinstance(value, PixelType):
            return value
        text = str(value)
        if text.upper() in cls.__members__:
            return cls[text.upper()]
        return cls(text.lower())

    @classmethod
    def widest(cls, types: Sequence['PixelType']) -> 'PixelType':
        """Return the widest of the given types (used to reconcile branches)."""
        return max(types, key=lambda t: t.rank)


_PIXEL_TYPE_ORDER = [PixelType.UINT8, PixelType.UINT16, PixelType.FLOAT32, PixelType.FLOAT64]


# =============================================================================
# PADDING
# =============================================================================

@dataclass(frozen=True)
class Padding:
    """
    Pixel margins required on each side of a region.

    x1/x2 are the left/right margins, y1/y2 the top/bottom margins.
    """

    x1: int = 0
    x2: int = 0
    y1: int = 0
    y2: int = 0

    def __post_init__(self):
        for name in ('x1', 'x2', 'y1', 'y2'):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"Padding cannot be negative ({name}={value})")

    @classmethod
    def empty(cls) -> 'Padding':
        return _EMPTY_PADDING

    @classmethod
    def symmetric(cls, pad: int) -> 'Padding':
        return cls(pad, pad, pad, pad)

    @classmethod
    def get_padding(cls, *values: int) -> 'Padding':
        """
        Create padding from (xy), (x, y) or (x1, x2, y1, y2).
        """
        values = tuple(int(v) for v in values)
        if len(values) == 1:
            return cls.symmetric(values[0])
        if len(values) == 2:
            return cls(values[0], values[0], values[1], values[1])
        if len(values) == 4:
            return cls(*values)
        raise ValueError(f"Padding requires 1, 2 or 4 values, got {len(values)}")

    @property
    def x_sum(self) -> int:
        return self.x1 + self.x2

    @property
    def y_sum(self) -> int:
        return self.y1 + self.y2

    def is_empty(self) -> bool:
        return self.x1 == 0 and self.x2 == 0 and self.y1 == 0 and self.y2 == 0

    def is_symmetric(self) -> bool:
        return self.x1 == self.x2 == self.y1 == self.y2

    def add(self, other: 'Padding') -> 'Padding':
        """Sum per side (ops applied one after another)."""
        if other.is_empty():
            return self
        if self.is_empty():
            return other
        return Padding(self.x1 + other.x1, self.x2 + other.x2,
                       self.y1 + other.y1, self.y2 + other.y2)

    def max(self, other: 'Padding') -> 'Padding':
        """Per-side maximum (ops applied in parallel branches)."""
        return Padding(max(self.x1, other.x1), max(self.x2, other.x2),
                       max(self.y1, other.y1), max(self.y2, other.y2))

    def subtract(self, other: 'Padding') -> 'Padding':
        """
        Residual padding after removing other.

        Raises:
            ValueError: If other is larger than this padding on any side
        """
        if other.is_empty():
            return self
        return Padding(self.x1 - other.x1, self.x2 - other.x2,
                       self.y1 - other.y1, self.y2 - other.y2)

    def to_dict(self) -> Dict[str, int]:
        return {'x1': self.x1, 'x2': self.x2, 'y1': self.y1, 'y2': self.y2}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, int]]) -> 'Padding':
        if not data:
            return cls.empty()
        return cls(int(data.get('x1', 0)), int(data.get('x2', 0)),
                   int(data.get('y1', 0)), int(data.get('y2', 0)))


_EMPTY_PADDING = Padding()


# =============================================================================
# CHANNELS
# =============================================================================

def pack_rgb(r: int, g: int, b: int) -> int:
    return ((r & 0xff) << 16) | ((g & 0xff) << 8) | (b & 0xff)


# Default colors cycled for anonymous channels
DEFAULT_CHANNEL_COLORS = [
    pack_rgb(255, 0, 0),
    pack_rgb(0, 255, 0),
    pack_rgb(0, 0, 255),
    pack_rgb(255, 224, 0),
    pack_rgb(0, 224, 224),
    pack_rgb(255, 0, 224),
]


@dataclass(frozen=True)
class ImageChannel:
    """Name and display color (packed 0xRRGGBB, or None) of one channel."""

    name: str
    color: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'color': self.color}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImageChannel':
        return cls(data['name'], data.get('color'))


def get_channel_list(*names: str) -> List[ImageChannel]:
    """Create channels with the given names and default colors."""
    return [
        ImageChannel(name, DEFAULT_CHANNEL_COLORS[i % len(DEFAULT_CHANNEL_COLORS)])
        for i, name in enumerate(names)
    ]


def get_default_channel_list(n_channels: int) -> List[ImageChannel]:
    """Create 'Channel 1'...'Channel n' with default colors."""
    return get_channel_list(*[f"Channel {i + 1}" for i in range(n_channels)])


# =============================================================================
# IMAGE OPS
# =============================================================================

class ImageOp(ABC):
    """
    Abstract base class for pixel transforms.

    Subclasses store their configuration in __init__ and report it through
    get_config(), which must return exactly the keyword arguments needed to
    rebuild an equal op. Two ops are equal when they have the same type and
    configuration.
    """

    def __init__(self):
        self._lock = threading.RLock()

    @abstractmethod
    def apply(self, mat: np.ndarray) -> np.ndarray:
        """
        Apply the op to a (height, width, channels) array.

        The input may be modified in-place and returned. If the op requires
        padding, the output is smaller than the input by that padding.
        """

    def get_padding(self) -> Padding:
        return Padding.empty()

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        return list(channels)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return input_type

    def get_config(self) -> Dict[str, Any]:
        return {}

    def _memoized(self, attr: str, factory):
        """Compute a derived value once, guarded by the instance lock."""
        value = getattr(self, attr, None)
        if value is None:
            with self._lock:
                value = getattr(self, attr, None)
                if value is None:
                    value = factory()
                    setattr(self, attr, value)
        return value

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return NotImplemented
        return _config_equal(self.get_config(), other.get_config())

    def __hash__(self):
        return hash(type(self))

    def __repr__(self):
        params = ', '.join(f"{k}={v!r}" for k, v in self.get_config().items())
        return f"{type(self).__name__}({params})"


def _config_equal(a, b) -> bool:
    """Compare config values, treating NaN as equal to NaN."""
    if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
        return True
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_config_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_config_equal(x, y) for x, y in zip(a, b))
    return a == b


class PaddedOp(ImageOp):
    """
    Base class for ops that need a border of extra pixels.

    Subclasses implement calculate_padding() and transform_padded(); apply()
    strips the padding from the result automatically.
    """

    def __init__(self):
        super().__init__()
        self._padding: Optional[Padding] = None

    @abstractmethod
    def calculate_padding(self) -> Padding:
        """Padding required by this op; depends only on its configuration."""

    @abstractmethod
    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        """Apply the transform without removing the padding."""

    def get_padding(self) -> Padding:
        return self._memoized('_padding', self.calculate_padding)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        result = self.transform_padded(mat)
        padding = self.get_padding()
        if padding.is_empty():
            return result
        return strip_padding(result, padding)


def strip_padding(mat: np.ndarray, padding: Padding) -> np.ndarray:
    """Crop padding from each side of an array, returning a contiguous copy."""
    if padding.is_empty():
        return mat
    h, w = mat.shape[:2]
    if padding.x_sum > w or padding.y_sum > h:
        raise ValueError(
            f"Cannot strip {padding} from an image of size {w}x{h}"
        )
    return np.ascontiguousarray(mat[padding.y1:h - padding.y2, padding.x1:w - padding.x2, ...])


_BORDER_TYPES = {
    'reflect': cv2.BORDER_REFLECT,
    'replicate': cv2.BORDER_REPLICATE,
    'constant': cv2.BORDER_CONSTANT,
}

_NUMPY_PAD_MODES = {
    cv2.BORDER_REFLECT: 'symmetric',
    cv2.BORDER_REFLECT_101: 'reflect',
    cv2.BORDER_REPLICATE: 'edge',
    cv2.BORDER_CONSTANT: 'constant',
}


def get_border_type(name: str) -> int:
    """Map a config border name ('reflect', 'replicate', 'constant') to OpenCV."""
    try:
        return _BORDER_TYPES[name]
    except KeyError:
        raise ValueError(f"Unknown border type '{name}'") from None


def pad_border(mat: np.ndarray, top: int, bottom: int, left: int, right: int,
               border: int = cv2.BORDER_REFLECT) -> np.ndarray:
    """
    Pad an array with OpenCV border semantics, for any number of channels.

    Numpy is used so that arrays with more than four channels are supported.
    """
    if top == 0 and bottom == 0 and left == 0 and right == 0:
        return mat
    mode = _NUMPY_PAD_MODES.get(border)
    if mode is None:
        raise ValueError(f"Unsupported border type {border}")
    widths = [(top, bottom), (left, right)] + [(0, 0)] * (mat.ndim - 2)
    return np.pad(mat, widths, mode=mode)


def pad_and_apply(op: ImageOp, mat: np.ndarray, border: Optional[int] = None) -> np.ndarray:
    """
    Apply an op after adding its padding, so the output matches the input size.

    Because padded ops strip their padding, op.apply(mat) is usually smaller
    than mat. This helper is useful when applying ops to arrays directly
    rather than through an ImageDataOp.

    Args:
        op: Op to apply
        mat: Input array (may be modified)
        border: OpenCV border type; defaults to the 'border_type' config value
    """
    padding = op.get_padding()
    if not padding.is_empty():
        if border is None:
            border = get_border_type(get_config_value('border_type'))
        logger.debug(f"Padding {mat.shape[1]}x{mat.shape[0]} input by {padding} for {type(op).__name__}")
        mat = pad_border(mat, padding.y1, padding.y2, padding.x1, padding.x2, border)
    return op.apply(mat)


def get_default_gaussian_padding(sigma_x: float, sigma_y: float) -> Padding:
    """Padding of ceil(3 * sigma) + 1 on each axis."""
    pad_x = int(math.ceil(sigma_x * 3)) + 1
    pad_y = int(math.ceil(sigma_y * 3)) + 1
    return Padding(pad_x, pad_x, pad_y, pad_y)
