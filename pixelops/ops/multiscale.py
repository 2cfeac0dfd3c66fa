"""
Multiscale Gaussian derivative features.

Each input channel is expanded into one channel per requested feature, all
computed at the same (sigma_x, sigma_y) scale with Gaussian derivative
filters from scipy.ndimage. Output is always float32.
"""

import math
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import cv2
import numpy as np
from scipy import ndimage

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import ImageChannel, Padding, PaddedOp, PixelType
from pixelops.ops.opencv_tools import merge_channels, split_channels


class MultiscaleFeature(Enum):
    """Features available from MultiscaleFeatureOp, with display names."""

    GAUSSIAN = 'Gaussian'
    WEIGHTED_STD_DEV = 'Weighted deviation'
    GRADIENT_MAGNITUDE = 'Gradient magnitude'
    LAPLACIAN = 'Laplacian of Gaussian'
    STRUCTURE_TENSOR_EIGENVALUE_MAX = 'Structure tensor max eigenvalue'
    STRUCTURE_TENSOR_EIGENVALUE_MIDDLE = 'Structure tensor middle eigenvalue'
    STRUCTURE_TENSOR_EIGENVALUE_MIN = 'Structure tensor min eigenvalue'
    STRUCTURE_TENSOR_COHERENCE = 'Structure tensor coherence'
    HESSIAN_DETERMINANT = 'Hessian determinant'
    HESSIAN_EIGENVALUE_MAX = 'Hessian max eigenvalue'
    HESSIAN_EIGENVALUE_MIDDLE = 'Hessian middle eigenvalue'
    HESSIAN_EIGENVALUE_MIN = 'Hessian min eigenvalue'

    def __str__(self):
        return self.value

    @property
    def supports_2d(self) -> bool:
        """Middle eigenvalues only exist for 3-D images."""
        return self not in (MultiscaleFeature.HESSIAN_EIGENVALUE_MIDDLE,
                            MultiscaleFeature.STRUCTURE_TENSOR_EIGENVALUE_MIDDLE)

    @classmethod
    def parse(cls, value: Union['MultiscaleFeature', str]) -> 'MultiscaleFeature':
        """Accept a member, its name ('GAUSSIAN') or its display name ('Gaussian')."""
        if isinstance(value, MultiscaleFeature):
            return value
        if value in cls.__members__:
            return cls[value]
        return cls(value)


_SMOOTHED = {MultiscaleFeature.GAUSSIAN, MultiscaleFeature.WEIGHTED_STD_DEV}
_STRUCTURE_TENSOR = {
    MultiscaleFeature.STRUCTURE_TENSOR_EIGENVALUE_MAX,
    MultiscaleFeature.STRUCTURE_TENSOR_EIGENVALUE_MIN,
    MultiscaleFeature.STRUCTURE_TENSOR_COHERENCE,
}
_HESSIAN = {
    MultiscaleFeature.LAPLACIAN,
    MultiscaleFeature.HESSIAN_DETERMINANT,
    MultiscaleFeature.HESSIAN_EIGENVALUE_MAX,
    MultiscaleFeature.HESSIAN_EIGENVALUE_MIN,
}


def symmetric_eigenvalues(a: np.ndarray, b: np.ndarray, c: np.ndarray):
    """Eigenvalues (max, min) of the 2x2 symmetric matrices [[a, b], [b, c]]."""
    mean = (a + c) / 2
    delta = np.sqrt(((a - c) / 2) ** 2 + b * b)
    return mean + delta, mean - delta


def calculate_coherence(eig_max: np.ndarray, eig_min: np.ndarray) -> np.ndarray:
    """((max - min) / (max + min))^2, or 0 where max + min is 0."""
    total = eig_max + eig_min
    difference = eig_max - eig_min
    with np.errstate(divide='ignore', invalid='ignore'):
        coherence = np.where(total == 0, 0.0, (difference / total) ** 2)
    return coherence.astype(np.float32)


def compute_features(plane: np.ndarray, features: Sequence[MultiscaleFeature],
                     sigma_x: float, sigma_y: float) -> Dict[MultiscaleFeature, np.ndarray]:
    """
    Compute the requested features for a single 2-D plane.

    Args:
        plane: 2-D input
        features: Features to compute
        sigma_x: Horizontal sigma
        sigma_y: Vertical sigma

    Returns:
        Dict mapping each requested feature to a float32 plane
    """
    plane = plane.astype(np.float32, copy=False)
    sigma = (sigma_y, sigma_x)
    requested = set(features)
    results: Dict[MultiscaleFeature, np.ndarray] = {}

    def derivative(order_y: int, order_x: int) -> np.ndarray:
        return ndimage.gaussian_filter(plane, sigma=sigma, order=(order_y, order_x), mode='reflect')

    if requested & _SMOOTHED:
        smoothed = derivative(0, 0)
        results[MultiscaleFeature.GAUSSIAN] = smoothed
        if MultiscaleFeature.WEIGHTED_STD_DEV in requested:
            squared = ndimage.gaussian_filter(plane * plane, sigma=sigma, mode='reflect')
            variance = np.maximum(squared - smoothed * smoothed, 0)
            results[MultiscaleFeature.WEIGHTED_STD_DEV] = np.sqrt(variance)

    if requested & _STRUCTURE_TENSOR:
        dx = cv2.Sobel(plane, cv2.CV_32F, 1, 0, borderType=cv2.BORDER_REFLECT)
        dy = cv2.Sobel(plane, cv2.CV_32F, 0, 1, borderType=cv2.BORDER_REFLECT)
        jxx = ndimage.gaussian_filter(dx * dx, sigma=sigma, mode='reflect')
        jxy = ndimage.gaussian_filter(dx * dy, sigma=sigma, mode='reflect')
        jyy = ndimage.gaussian_filter(dy * dy, sigma=sigma, mode='reflect')
        st_max, st_min = symmetric_eigenvalues(jxx, jxy, jyy)
        results[MultiscaleFeature.STRUCTURE_TENSOR_EIGENVALUE_MAX] = st_max
        results[MultiscaleFeature.STRUCTURE_TENSOR_EIGENVALUE_MIN] = st_min
        results[MultiscaleFeature.STRUCTURE_TENSOR_COHERENCE] = calculate_coherence(st_max, st_min)

    if MultiscaleFeature.GRADIENT_MAGNITUDE in requested:
        gx = derivative(0, 1)
        gy = derivative(1, 0)
        results[MultiscaleFeature.GRADIENT_MAGNITUDE] = cv2.magnitude(gx, gy)

    if requested & _HESSIAN:
        dxx = derivative(0, 2)
        dyy = derivative(2, 0)
        dxy = derivative(1, 1)
        results[MultiscaleFeature.LAPLACIAN] = dxx + dyy
        results[MultiscaleFeature.HESSIAN_DETERMINANT] = dxx * dyy - dxy * dxy
        h_max, h_min = symmetric_eigenvalues(dxx, dxy, dyy)
        results[MultiscaleFeature.HESSIAN_EIGENVALUE_MAX] = h_max
        results[MultiscaleFeature.HESSIAN_EIGENVALUE_MIN] = h_min

    return {f: results[f].astype(np.float32, copy=False) for f in features}


class MultiscaleFeatureOp(PaddedOp):
    """Expand each channel into a bank of multiscale features."""

    def __init__(self, features: Sequence[Union[MultiscaleFeature, str]],
                 sigma_x: float, sigma_y: Optional[float] = None):
        super().__init__()
        parsed: List[MultiscaleFeature] = []
        for feature in features:
            feature = MultiscaleFeature.parse(feature)
            if not feature.supports_2d:
                raise ConfigurationError(f"{feature} is only available for 3-D images")
            if feature not in parsed:
                parsed.append(feature)
        if not parsed:
            raise ConfigurationError("At least one multiscale feature is required")
        if sigma_y is None:
            sigma_y = sigma_x
        if sigma_x < 0 or sigma_y < 0:
            raise ConfigurationError(f"Feature sigma must be >= 0, got ({sigma_x}, {sigma_y})")
        self.features = parsed
        self.sigma_x = float(sigma_x)
        self.sigma_y = float(sigma_y)

    def calculate_padding(self) -> Padding:
        pad = int(math.ceil(max(self.sigma_x, self.sigma_y) * 4)) * 2 + 1
        return Padding.symmetric(pad)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        output = []
        for plane in split_channels(mat):
            results = compute_features(plane, self.features, self.sigma_x, self.sigma_y)
            output.extend(results[f] for f in self.features)
        return merge_channels(output)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        return [
            ImageChannel(f"{c.name} ({f}, sigma={self.sigma_x:.1f},{self.sigma_y:.1f})", c.color)
            for c in channels
            for f in self.features
        ]

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {
            'features': [f.name for f in self.features],
            'sigma_x': self.sigma_x,
            'sigma_y': self.sigma_y,
        }
