"""
Channel ops: color deconvolution, extraction, repetition and reduction.
"""

from typing import Any, Dict, List, Union

import numpy as np

from pixelops.data.stains import ColorDeconvolutionStains, deconvolve_rgb
from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import ImageChannel, ImageOp, PixelType
from pixelops.ops.opencv_tools import ensure_3d


class ColorDeconvolutionOp(ImageOp):
    """Convert a 3-channel RGB image to three stain density channels (float32)."""

    def __init__(self, stains: Union[ColorDeconvolutionStains, Dict[str, Any]]):
        super().__init__()
        self.stains = ColorDeconvolutionStains.parse(stains)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        if mat.shape[2] != 3:
            raise ValueError(f"Color deconvolution requires 3 channels, got {mat.shape[2]}")
        return deconvolve_rgb(mat, self.stains)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        return [
            ImageChannel(stain.name, stain.color)
            for stain in (self.stains.get_stain(i) for i in (1, 2, 3))
        ]

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {'stains': self.stains.to_dict()}


class ExtractChannelsOp(ImageOp):
    """Select (and reorder) channels by index."""

    def __init__(self, channels):
        super().__init__()
        channels = [int(c) for c in channels]
        if not channels:
            raise ConfigurationError("At least one channel index is required")
        if any(c < 0 for c in channels):
            raise ConfigurationError(f"Channel indices cannot be negative: {channels}")
        self.channels = channels

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        return np.ascontiguousarray(mat[:, :, self.channels])

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        return [channels[c] for c in self.channels]

    def get_config(self) -> Dict[str, Any]:
        return {'channels': list(self.channels)}


class RepeatChannelsOp(ImageOp):
    """Repeat the full channel set n times, suffixing names with (i)."""

    def __init__(self, num_repeats: int):
        super().__init__()
        if num_repeats < 1:
            raise ConfigurationError(f"Number of repeats must be >= 1, got {num_repeats}")
        self.num_repeats = int(num_repeats)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        if self.num_repeats == 1:
            return mat
        return np.concatenate([ensure_3d(mat)] * self.num_repeats, axis=2)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        if self.num_repeats == 1:
            return list(channels)
        return [
            ImageChannel(f"{c.name}({i})", c.color)
            for i in range(1, self.num_repeats + 1)
            for c in channels
        ]

    def get_config(self) -> Dict[str, Any]:
        return {'num_repeats': self.num_repeats}


class ReduceChannelsOp(ImageOp):
    """
    Reduce all channels to one using sum, mean, minimum or maximum.

    Inputs with a single channel are returned unchanged.
    """

    REDUCTIONS = {
        'sum': ('Sum', np.sum),
        'mean': ('Mean', np.mean),
        'minimum': ('Minimum', np.min),
        'maximum': ('Maximum', np.max),
    }

    def __init__(self, reduction: str):
        super().__init__()
        if reduction not in self.REDUCTIONS:
            raise ConfigurationError(
                f"Unknown channel reduction '{reduction}'. Available: {', '.join(self.REDUCTIONS)}"
            )
        self.reduction = reduction

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        if mat.shape[2] <= 1:
            return mat
        fn = self.REDUCTIONS[self.reduction][1]
        if self.reduction in ('minimum', 'maximum'):
            return fn(mat, axis=2, keepdims=True)
        # Sums and means are computed in floating point then converted back
        result = fn(mat, axis=2, keepdims=True, dtype=np.float64)
        if np.issubdtype(mat.dtype, np.integer):
            info = np.iinfo(mat.dtype)
            result = np.clip(np.rint(result), info.min, info.max)
        return result.astype(mat.dtype)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        if len(channels) <= 1:
            return list(channels)
        label = self.REDUCTIONS[self.reduction][0]
        names = ', '.join(c.name for c in channels)
        return [ImageChannel(f"{label} [{names}]", channels[0].color)]

    def get_config(self) -> Dict[str, Any]:
        return {'reduction': self.reduction}


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def deconvolve(stains: Union[ColorDeconvolutionStains, Dict[str, Any]]) -> ColorDeconvolutionOp:
    return ColorDeconvolutionOp(stains)


def extract(*channels: int) -> ExtractChannelsOp:
    """Extract channels by index, in the order given."""
    return ExtractChannelsOp(channels)


def repeat(num_repeats: int) -> RepeatChannelsOp:
    return RepeatChannelsOp(num_repeats)


def sum() -> ReduceChannelsOp:  # noqa: A001
    return ReduceChannelsOp('sum')


def mean() -> ReduceChannelsOp:
    return ReduceChannelsOp('mean')


def minimum() -> ReduceChannelsOp:
    return ReduceChannelsOp('minimum')


def maximum() -> ReduceChannelsOp:
    return ReduceChannelsOp('maximum')
