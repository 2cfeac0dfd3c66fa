"""
Spatial filters: Gaussian blur, convolution, circular neighborhood
statistics, morphology, median and multiscale features.

Usage:
    from pixelops.ops import filters

    op = filters.gaussian_blur(2.0)
    op = filters.features([MultiscaleFeature.GAUSSIAN, MultiscaleFeature.LAPLACIAN], 1.0)
"""

from typing import Any, Dict, List, Optional, Sequence

import cv2
import numpy as np
from scipy import ndimage

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import (
    Padding,
    PaddedOp,
    PixelType,
    get_default_gaussian_padding,
)
from pixelops.ops.multiscale import MultiscaleFeature, MultiscaleFeatureOp
from pixelops.ops.opencv_tools import (
    apply_to_channels,
    create_default_kernel,
    float_dtype_for,
    get_circular_kernel,
)
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# GAUSSIAN AND CONVOLUTION
# =============================================================================

class GaussianFilterOp(PaddedOp):
    """Anisotropic Gaussian blur with a reflected border."""

    def __init__(self, sigma_x: float, sigma_y: Optional[float] = None):
        super().__init__()
        if sigma_y is None:
            sigma_y = sigma_x
        if sigma_x < 0 or sigma_y < 0:
            raise ConfigurationError(f"Gaussian sigma must be >= 0, got ({sigma_x}, {sigma_y})")
        self.sigma_x = float(sigma_x)
        self.sigma_y = float(sigma_y)

    def calculate_padding(self) -> Padding:
        if self.sigma_x == 0 and self.sigma_y == 0:
            return Padding.empty()
        return get_default_gaussian_padding(self.sigma_x, self.sigma_y)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        padding = self.get_padding()
        if padding.is_empty():
            return mat
        # An axis with sigma 0 gets a unit kernel (cv2 would derive a sigma from ksize)
        kx = padding.x1 * 2 + 1 if self.sigma_x > 0 else 1
        ky = padding.y1 * 2 + 1 if self.sigma_y > 0 else 1
        return apply_to_channels(
            mat,
            lambda plane: cv2.GaussianBlur(plane, (kx, ky), self.sigma_x,
                                           sigmaY=self.sigma_y, borderType=cv2.BORDER_REFLECT),
        )

    def get_config(self) -> Dict[str, Any]:
        return {'sigma_x': self.sigma_x, 'sigma_y': self.sigma_y}


class Filter2DOp(PaddedOp):
    """General 2-D correlation of each channel with a fixed kernel."""

    def __init__(self, kernel):
        super().__init__()
        kernel = np.asarray(kernel, dtype=np.float64)
        if kernel.ndim != 2 or kernel.size == 0:
            raise ConfigurationError(f"Kernel must be a non-empty 2-D array, got shape {kernel.shape}")
        self.kernel = kernel.tolist()
        self._kernel_mat: Optional[np.ndarray] = None

    def _get_kernel(self) -> np.ndarray:
        return self._memoized('_kernel_mat', lambda: np.asarray(self.kernel, dtype=np.float32))

    def calculate_padding(self) -> Padding:
        rows = len(self.kernel)
        cols = len(self.kernel[0])
        return Padding.get_padding(cols // 2, rows // 2)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        kernel = self._get_kernel()
        return apply_to_channels(
            mat, lambda plane: cv2.filter2D(plane, -1, kernel, borderType=cv2.BORDER_REFLECT)
        )

    def get_config(self) -> Dict[str, Any]:
        return {'kernel': self.kernel}


# =============================================================================
# CIRCULAR NEIGHBORHOOD STATISTICS
# =============================================================================

class CircularFilterOp(PaddedOp):
    """
    Sum, mean, variance or standard deviation within a disk.

    Output is float32 (float64 input stays float64).
    """

    FILTER_TYPES = ('sum', 'mean', 'variance', 'std_dev')

    def __init__(self, filter_type: str, radius: int):
        super().__init__()
        if filter_type not in self.FILTER_TYPES:
            raise ConfigurationError(
                f"Unknown circular filter '{filter_type}'. Available: {', '.join(self.FILTER_TYPES)}"
            )
        if radius < 1:
            raise ConfigurationError(f"Filter radius must be >= 1, got {radius}")
        self.filter_type = filter_type
        self.radius = int(radius)
        self._kernel: Optional[np.ndarray] = None

    def _get_kernel(self) -> np.ndarray:
        return self._memoized('_kernel', lambda: get_circular_kernel(self.radius))

    def calculate_padding(self) -> Padding:
        return Padding.symmetric(self.radius)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        dtype = float_dtype_for(mat.dtype)
        mat = mat.astype(dtype, copy=False)
        kernel = self._get_kernel()
        if self.filter_type == 'sum':
            return self._correlate(mat, kernel)
        kernel = kernel / kernel.sum()
        mean = self._correlate(mat, kernel)
        if self.filter_type == 'mean':
            return mean
        variance = self._correlate(mat * mat, kernel) - mean * mean
        np.maximum(variance, 0, out=variance)
        if self.filter_type == 'variance':
            return variance
        return np.sqrt(variance)

    @staticmethod
    def _correlate(mat: np.ndarray, kernel: np.ndarray) -> np.ndarray:
        return apply_to_channels(
            mat, lambda plane: cv2.filter2D(plane, -1, kernel, borderType=cv2.BORDER_REFLECT)
        )

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT64 if input_type == PixelType.FLOAT64 else PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {'filter_type': self.filter_type, 'radius': self.radius}


# =============================================================================
# MORPHOLOGY
# =============================================================================

class MorphologyOp(PaddedOp):
    """Grey-level maximum, minimum, opening or closing."""

    OPERATIONS = {
        'maximum': cv2.MORPH_DILATE,
        'minimum': cv2.MORPH_ERODE,
        'opening': cv2.MORPH_OPEN,
        'closing': cv2.MORPH_CLOSE,
    }

    def __init__(self, operation: str, radius: int):
        super().__init__()
        if operation not in self.OPERATIONS:
            raise ConfigurationError(
                f"Unknown morphological operation '{operation}'. "
                f"Available: {', '.join(self.OPERATIONS)}"
            )
        if radius < 1:
            raise ConfigurationError(f"Filter radius must be >= 1, got {radius}")
        self.operation = operation
        self.radius = int(radius)
        self._kernel: Optional[np.ndarray] = None

    def _get_kernel(self) -> np.ndarray:
        return self._memoized('_kernel', lambda: create_default_kernel(self.radius))

    def calculate_padding(self) -> Padding:
        return Padding.symmetric(self.radius)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        kernel = self._get_kernel()
        morph_op = self.OPERATIONS[self.operation]
        return apply_to_channels(
            mat,
            lambda plane: cv2.morphologyEx(plane, morph_op, kernel, borderType=cv2.BORDER_REFLECT),
        )

    def get_config(self) -> Dict[str, Any]:
        return {'operation': self.operation, 'radius': self.radius}


class MedianFilterOp(PaddedOp):
    """
    Median filter with a square window of size 2r+1.

    cv2.medianBlur only supports windows larger than 5 for 8-bit images, so
    other cases use scipy.ndimage.median_filter.
    """

    def __init__(self, radius: int):
        super().__init__()
        if radius < 1:
            raise ConfigurationError(f"Median radius must be >= 1, got {radius}")
        self.radius = int(radius)

    def calculate_padding(self) -> Padding:
        return Padding.symmetric(self.radius)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        size = self.radius * 2 + 1
        dtype = mat.dtype
        if dtype == np.uint8 or (self.radius <= 2 and dtype in (np.uint16, np.float32)):
            return apply_to_channels(mat, lambda plane: cv2.medianBlur(plane, size))
        if self.radius > 2:
            logger.warning(
                f"Median filter with radius {self.radius} expects an 8-bit image, "
                f"got {dtype}; using a slower implementation"
            )
        return apply_to_channels(
            mat, lambda plane: ndimage.median_filter(plane, size=size, mode='reflect')
        )

    def get_config(self) -> Dict[str, Any]:
        return {'radius': self.radius}


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def gaussian_blur(sigma_x: float, sigma_y: Optional[float] = None) -> GaussianFilterOp:
    """Gaussian blur; sigma_y defaults to sigma_x."""
    return GaussianFilterOp(sigma_x, sigma_y)


def filter_2d(kernel) -> Filter2DOp:
    return Filter2DOp(kernel)


def sum_filter(radius: int) -> CircularFilterOp:
    return CircularFilterOp('sum', radius)


def mean_filter(radius: int) -> CircularFilterOp:
    return CircularFilterOp('mean', radius)


def variance_filter(radius: int) -> CircularFilterOp:
    return CircularFilterOp('variance', radius)


def std_dev_filter(radius: int) -> CircularFilterOp:
    return CircularFilterOp('std_dev', radius)


def maximum(radius: int) -> MorphologyOp:
    return MorphologyOp('maximum', radius)


def minimum(radius: int) -> MorphologyOp:
    return MorphologyOp('minimum', radius)


def opening(radius: int) -> MorphologyOp:
    return MorphologyOp('opening', radius)


def closing(radius: int) -> MorphologyOp:
    return MorphologyOp('closing', radius)


def median(radius: int) -> MedianFilterOp:
    return MedianFilterOp(radius)


def features(features: Sequence[MultiscaleFeature], sigma_x: float,
             sigma_y: Optional[float] = None) -> MultiscaleFeatureOp:
    """
    Multiscale feature bank.

    Args:
        features: Features to compute (MultiscaleFeature members or their names)
        sigma_x: Horizontal Gaussian sigma
        sigma_y: Vertical Gaussian sigma (defaults to sigma_x)
    """
    return MultiscaleFeatureOp(features, sigma_x, sigma_y)


__all__: List[str] = [
    'GaussianFilterOp',
    'Filter2DOp',
    'CircularFilterOp',
    'MorphologyOp',
    'MedianFilterOp',
    'MultiscaleFeature',
    'MultiscaleFeatureOp',
    'gaussian_blur',
    'filter_2d',
    'sum_filter',
    'mean_filter',
    'variance_filter',
    'std_dev_filter',
    'maximum',
    'minimum',
    'opening',
    'closing',
    'median',
    'features',
]
