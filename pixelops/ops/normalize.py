"""
Intensity normalization ops.

Global rescaling (min-max, percentile, zero-mean/unit-variance), per-pixel
rescaling across channels (sum, softmax), sigmoid squashing and local
Gaussian-weighted normalization.

Fractional results are float32, except that float64 input stays float64.
min_max keeps the input type.
"""

from typing import Any, Dict, Optional

import cv2
import numpy as np

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import (
    ImageOp,
    Padding,
    PaddedOp,
    PixelType,
    get_default_gaussian_padding,
)
from pixelops.ops.opencv_tools import (
    apply_to_channels,
    channel_percentiles,
    ensure_3d,
    float_dtype_for,
    saturate_cast,
)
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


def _float_output_type(input_type: PixelType) -> PixelType:
    return PixelType.FLOAT64 if input_type == PixelType.FLOAT64 else PixelType.FLOAT32


class NormalizeMinMaxOp(ImageOp):
    """Rescale each channel so its minimum and maximum map to [output_min, output_max]."""

    def __init__(self, output_min: float = 0.0, output_max: float = 1.0):
        super().__init__()
        self.output_min = float(output_min)
        self.output_max = float(output_max)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        values = mat.astype(np.float64)
        for c in range(values.shape[2]):
            plane = values[:, :, c]
            lo = np.nanmin(plane) if plane.size else 0.0
            hi = np.nanmax(plane) if plane.size else 0.0
            if hi == lo or not np.isfinite(hi - lo):
                plane[...] = self.output_min
            else:
                plane[...] = (plane - lo) * ((self.output_max - self.output_min) / (hi - lo)) + self.output_min
        return saturate_cast(values, mat.dtype)

    def get_config(self) -> Dict[str, Any]:
        return {'output_min': self.output_min, 'output_max': self.output_max}


class NormalizePercentileOp(ImageOp):
    """
    Rescale each channel so that two percentiles map to 0 and 1.

    Raises:
        ConfigurationError: If the two percentiles are equal
    """

    def __init__(self, percentile_min: float, percentile_max: float):
        super().__init__()
        if percentile_min == percentile_max:
            raise ConfigurationError("Percentile min and max values cannot be identical")
        for p in (percentile_min, percentile_max):
            if not 0 <= p <= 100:
                raise ConfigurationError(f"Percentiles must be between 0 and 100, got {p}")
        self.percentile_min = float(percentile_min)
        self.percentile_max = float(percentile_max)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        output = mat.astype(float_dtype_for(mat.dtype))
        ranges = channel_percentiles(mat, [self.percentile_min, self.percentile_max])
        for c in range(output.shape[2]):
            lo, hi = ranges[0, c], ranges[1, c]
            if hi == lo:
                logger.warning(f"Normalization percentiles give the same value ({lo}), scale will be Infinity")
                scale = np.inf
            else:
                scale = 1.0 / (hi - lo)
            with np.errstate(invalid='ignore'):
                output[:, :, c] = (output[:, :, c] - lo) * scale
        return output

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'percentile_min': self.percentile_min, 'percentile_max': self.percentile_max}


class NormalizeChannelsOp(ImageOp):
    """
    Rescale the channels of each pixel to sum to max_value.

    With softmax=False negative values are clipped to 0 first; with
    softmax=True values are exponentiated (after subtracting the per-pixel
    maximum for stability).
    """

    def __init__(self, max_value: float = 1.0, softmax: bool = False):
        super().__init__()
        self.max_value = float(max_value)
        self.softmax = bool(softmax)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        values = mat.astype(float_dtype_for(mat.dtype))
        if self.softmax:
            values = np.exp(values - np.nanmax(values, axis=2, keepdims=True))
        else:
            n_negative = int(np.count_nonzero(values < 0))
            if n_negative > 0:
                percent = n_negative * 100.0 / values.size
                logger.warning(
                    f"Clipping {n_negative} negative values ({percent:.2f}%) to 0 before normalizing channels"
                )
                np.maximum(values, 0, out=values)

        total = values.sum(axis=2, keepdims=True)
        zero_sum = total == 0
        if np.any(zero_sum):
            logger.warning(f"Channel sum is zero for {int(np.count_nonzero(zero_sum))} pixels, output set to 0")
        with np.errstate(divide='ignore', invalid='ignore'):
            values = np.where(zero_sum, 0, values * (self.max_value / total))
        return values.astype(float_dtype_for(mat.dtype), copy=False)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'max_value': self.max_value, 'softmax': self.softmax}


class ZeroMeanUnitVarianceOp(ImageOp):
    """
    Subtract the mean and divide by the standard deviation.

    A standard deviation of 0 gives an output of 0; a non-finite standard
    deviation gives NaN.
    """

    def __init__(self, per_channel: bool = False):
        super().__init__()
        self.per_channel = bool(per_channel)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        output = mat.astype(float_dtype_for(mat.dtype))
        if self.per_channel and output.shape[2] > 1:
            for c in range(output.shape[2]):
                output[:, :, c] = self._normalize(output[:, :, c])
            return output
        return self._normalize(output)

    @staticmethod
    def _normalize(values: np.ndarray) -> np.ndarray:
        mean = np.mean(values, dtype=np.float64)
        std = np.std(values, dtype=np.float64)
        if std == 0:
            logger.warning(f"Standard deviation is zero (constant value {mean}), output set to 0")
            values[...] = 0
        elif not np.isfinite(std):
            logger.warning("Standard deviation is not finite, output set to NaN")
            values[...] = np.nan
        else:
            values[...] = (values - mean) / std
        return values

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'per_channel': self.per_channel}


class SigmoidOp(ImageOp):
    """1 / (1 + exp(-x))"""

    def apply(self, mat: np.ndarray) -> np.ndarray:
        values = mat.astype(float_dtype_for(mat.dtype))
        with np.errstate(over='ignore'):
            return 1.0 / (1.0 + np.exp(-values))

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)


class LocalNormalizationOp(PaddedOp):
    """
    Gaussian-weighted local normalization.

    The Gaussian-smoothed image (sigma_mean) is subtracted; if sigma_variance
    is > 0 the result is divided by the square root of its Gaussian-smoothed
    square (sigma_variance).
    """

    def __init__(self, sigma_mean: float, sigma_variance: float = 0.0):
        super().__init__()
        if sigma_mean <= 0:
            raise ConfigurationError(f"Local normalization sigma must be > 0, got {sigma_mean}")
        if sigma_variance < 0:
            raise ConfigurationError(f"Variance sigma must be >= 0, got {sigma_variance}")
        self.sigma_mean = float(sigma_mean)
        self.sigma_variance = float(sigma_variance)

    def calculate_padding(self) -> Padding:
        sigma = max(self.sigma_mean, self.sigma_variance)
        return get_default_gaussian_padding(sigma, sigma)

    def _blur(self, plane: np.ndarray, sigma: float) -> np.ndarray:
        pad = get_default_gaussian_padding(sigma, sigma).x1
        size = pad * 2 + 1
        return cv2.GaussianBlur(plane, (size, size), sigma, borderType=cv2.BORDER_REFLECT)

    def _normalize_plane(self, plane: np.ndarray) -> np.ndarray:
        subtracted = plane - self._blur(plane, self.sigma_mean)
        if self.sigma_variance <= 0:
            return subtracted
        std = np.sqrt(self._blur(subtracted * subtracted, self.sigma_variance))
        with np.errstate(divide='ignore', invalid='ignore'):
            return subtracted / std

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        values = mat.astype(float_dtype_for(mat.dtype))
        return apply_to_channels(values, self._normalize_plane)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'sigma_mean': self.sigma_mean, 'sigma_variance': self.sigma_variance}


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def min_max(output_min: float = 0.0, output_max: float = 1.0) -> NormalizeMinMaxOp:
    return NormalizeMinMaxOp(output_min, output_max)


def percentile(percentile_min: float, percentile_max: float) -> NormalizePercentileOp:
    return NormalizePercentileOp(percentile_min, percentile_max)


def channel_sum(max_value: float = 1.0) -> NormalizeChannelsOp:
    """Normalize channels to sum to max_value (negative values clipped to 0)."""
    return NormalizeChannelsOp(max_value, softmax=False)


def channel_softmax(max_value: float = 1.0) -> NormalizeChannelsOp:
    return NormalizeChannelsOp(max_value, softmax=True)


def zero_mean_unit_variance(per_channel: bool = False) -> ZeroMeanUnitVarianceOp:
    return ZeroMeanUnitVarianceOp(per_channel)


def sigmoid() -> SigmoidOp:
    return SigmoidOp()


def local_normalization(sigma_mean: float, sigma_variance: Optional[float] = 0.0) -> LocalNormalizationOp:
    return LocalNormalizationOp(sigma_mean, sigma_variance or 0.0)
