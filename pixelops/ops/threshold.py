"""
Per-channel thresholding.

Pixels strictly above the threshold become 1, others 0; the input type is
kept. Where one value is given per channel, the last value is reused for any
remaining channels.
"""

from abc import abstractmethod
from typing import Any, Dict, List, Sequence

import numpy as np

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import ImageOp
from pixelops.ops.opencv_tools import ensure_3d

# Scales the median absolute deviation to a standard deviation for normal data
MAD_TO_STD_DEV = 0.6745


def _as_values(values: Sequence[float], label: str) -> List[float]:
    values = [float(v) for v in values]
    if not values:
        raise ConfigurationError(f"At least one {label} is required")
    return values


class AbstractThresholdOp(ImageOp):
    """Base class for thresholds computed (or looked up) per channel."""

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        output = np.empty_like(mat)
        for c in range(mat.shape[2]):
            plane = mat[:, :, c]
            output[:, :, c] = plane > self.get_threshold(plane, c)
        return output

    @abstractmethod
    def get_threshold(self, plane: np.ndarray, channel: int) -> float:
        """
        Get or compute the threshold for one channel.

        Args:
            plane: 2-D values of the channel
            channel: Index of the channel in the input
        """

    @staticmethod
    def _select(values: List[float], channel: int) -> float:
        return values[min(channel, len(values) - 1)]


class FixedThresholdOp(AbstractThresholdOp):

    def __init__(self, thresholds: Sequence[float]):
        super().__init__()
        self.thresholds = _as_values(thresholds, 'threshold')

    def get_threshold(self, plane: np.ndarray, channel: int) -> float:
        return self._select(self.thresholds, channel)

    def get_config(self) -> Dict[str, Any]:
        return {'thresholds': list(self.thresholds)}


class MeanStdDevThresholdOp(AbstractThresholdOp):
    """Threshold at mean + k * std.dev."""

    def __init__(self, k: Sequence[float]):
        super().__init__()
        self.k = _as_values(k, 'k value')

    def get_threshold(self, plane: np.ndarray, channel: int) -> float:
        values = plane.astype(np.float64, copy=False)
        return float(np.mean(values) + np.std(values) * self._select(self.k, channel))

    def get_config(self) -> Dict[str, Any]:
        return {'k': list(self.k)}


class MedianAbsDevThresholdOp(AbstractThresholdOp):
    """Threshold at median + k * MAD / 0.6745, so k is comparable with mean/std.dev."""

    def __init__(self, k: Sequence[float]):
        super().__init__()
        self.k = _as_values(k, 'k value')

    def get_threshold(self, plane: np.ndarray, channel: int) -> float:
        values = plane.astype(np.float64, copy=False)
        median = np.median(values)
        mad = np.median(np.abs(values - median)) / MAD_TO_STD_DEV
        return float(median + mad * self._select(self.k, channel))

    def get_config(self) -> Dict[str, Any]:
        return {'k': list(self.k)}


def threshold(*thresholds: float) -> FixedThresholdOp:
    return FixedThresholdOp(thresholds)


def threshold_mean_std(*k: float) -> MeanStdDevThresholdOp:
    return MeanStdDevThresholdOp(k)


def threshold_median_abs_dev(*k: float) -> MedianAbsDevThresholdOp:
    return MedianAbsDevThresholdOp(k)
